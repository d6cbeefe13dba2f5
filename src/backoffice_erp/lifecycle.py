"""Document edit state machine.

Lifecycle states and the statuses past which ordinary edits stop are modelled
explicitly here instead of as ad hoc string lists on each screen::

    Draft -> Pending -> Processing -> Checking -> Loading -> In Transit
          -> Delivered -> Completed

    Draft | Pending | Processing | Checking -> Cancelled

From ``Loading`` onwards (and once ``Cancelled``) a document is locked. A
caller arriving through an adjustment or reconciliation workflow carries
``ActorContext.privileged`` and may still edit it; that flag, not the status
alone, decides write access.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Mapping, Optional

from . import log
from .constants import DocumentStatus
from .exceptions import EditLocked, InvalidStatusTransition


LOCKED_STATUSES: FrozenSet[DocumentStatus] = frozenset(
    {
        DocumentStatus.LOADING,
        DocumentStatus.IN_TRANSIT,
        DocumentStatus.DELIVERED,
        DocumentStatus.COMPLETED,
        DocumentStatus.CANCELLED,
    }
)

INITIAL_STATUS = DocumentStatus.DRAFT

TRANSITIONS: Mapping[DocumentStatus, FrozenSet[DocumentStatus]] = {
    DocumentStatus.DRAFT: frozenset({DocumentStatus.PENDING, DocumentStatus.CANCELLED}),
    DocumentStatus.PENDING: frozenset({DocumentStatus.PROCESSING, DocumentStatus.CANCELLED}),
    DocumentStatus.PROCESSING: frozenset({DocumentStatus.CHECKING, DocumentStatus.CANCELLED}),
    DocumentStatus.CHECKING: frozenset({DocumentStatus.LOADING, DocumentStatus.CANCELLED}),
    DocumentStatus.LOADING: frozenset({DocumentStatus.IN_TRANSIT}),
    DocumentStatus.IN_TRANSIT: frozenset({DocumentStatus.DELIVERED}),
    DocumentStatus.DELIVERED: frozenset({DocumentStatus.COMPLETED}),
    DocumentStatus.COMPLETED: frozenset(),
    DocumentStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class ActorContext:
    """Who is acting, passed explicitly into every mutating operation."""

    actor_id: str
    privileged: bool = False
    display_name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.display_name or self.actor_id


def is_locked(status: DocumentStatus) -> bool:
    return status in LOCKED_STATUSES


def can_edit(status: DocumentStatus, actor: ActorContext) -> bool:
    """Effective write permission: unlocked status or privileged re-entry."""

    return not is_locked(status) or actor.privileged


def ensure_editable(status: DocumentStatus, actor: ActorContext, *, document_id: Optional[str] = None) -> None:
    """Fail fast when ``actor`` may not mutate a document in ``status``.

    Raises:
        EditLocked: If the status is locked and the actor is not privileged.
    """

    if can_edit(status, actor):
        if is_locked(status):
            log.info(
                "Privileged edit by '%s' on document '%s' in locked status '%s'",
                actor.actor_id,
                document_id,
                status.value,
            )
        return
    log.warning(
        "Rejected edit by '%s' on document '%s': status '%s' is locked",
        actor.actor_id,
        document_id,
        status.value,
    )
    raise EditLocked(status, document_id=document_id)


def allowed_transitions(status: DocumentStatus) -> FrozenSet[DocumentStatus]:
    return TRANSITIONS.get(status, frozenset())


def transition(current: DocumentStatus, target: DocumentStatus) -> DocumentStatus:
    """Validate a status change against the transition table.

    Returns:
        DocumentStatus: ``target`` when the move is allowed.

    Raises:
        InvalidStatusTransition: If ``target`` is not reachable from
            ``current`` in one step.
    """

    if target not in allowed_transitions(current):
        log.error("Invalid status transition '%s' -> '%s'", current.value, target.value)
        raise InvalidStatusTransition(
            f"Cannot move a document from '{current.value}' to '{target.value}'"
        )
    return target


def requires_audit(previous_status: Optional[DocumentStatus], new_status: DocumentStatus) -> bool:
    """True when a change touches a document that already had consequences.

    New documents (``previous_status is None``) are never audited; otherwise
    any edit where the status before or after is past ``Draft`` is.
    """

    if previous_status is None:
        return False
    return previous_status is not DocumentStatus.DRAFT or new_status is not DocumentStatus.DRAFT


__all__ = [
    "LOCKED_STATUSES",
    "INITIAL_STATUS",
    "TRANSITIONS",
    "ActorContext",
    "is_locked",
    "can_edit",
    "ensure_editable",
    "allowed_transitions",
    "transition",
    "requires_audit",
]
