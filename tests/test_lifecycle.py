"""Unit tests for the document edit state machine."""

from __future__ import annotations

import pytest

from backoffice_erp import lifecycle
from backoffice_erp.constants import DocumentStatus
from backoffice_erp.exceptions import EditLocked, InvalidStatusTransition


CLERK = lifecycle.ActorContext(actor_id="clerk")
SUPERVISOR = lifecycle.ActorContext(actor_id="sup", privileged=True)

OPEN_STATUSES = [
    DocumentStatus.DRAFT,
    DocumentStatus.PENDING,
    DocumentStatus.PROCESSING,
    DocumentStatus.CHECKING,
]


@pytest.mark.parametrize("status", OPEN_STATUSES)
def test_open_statuses_are_editable_by_anyone(status):
    """Documents before loading can be edited without privileges."""

    assert lifecycle.can_edit(status, CLERK)
    lifecycle.ensure_editable(status, CLERK)


@pytest.mark.parametrize("status", sorted(lifecycle.LOCKED_STATUSES, key=lambda s: s.value))
def test_locked_statuses_reject_ordinary_edits(status):
    """From loading onwards an ordinary user may not edit."""

    assert lifecycle.is_locked(status)
    with pytest.raises(EditLocked) as excinfo:
        lifecycle.ensure_editable(status, CLERK, document_id="INV1")

    assert excinfo.value.status is status
    assert excinfo.value.document_id == "INV1"
    assert status.value in str(excinfo.value)


def test_delivered_document_accepts_privileged_edit():
    """A privileged re-entry may still edit a delivered document."""

    assert lifecycle.can_edit(DocumentStatus.DELIVERED, SUPERVISOR)
    lifecycle.ensure_editable(DocumentStatus.DELIVERED, SUPERVISOR, document_id="INV1")


def test_actor_label_prefers_display_name():
    """The audit label falls back to the actor id."""

    assert CLERK.label == "clerk"
    assert lifecycle.ActorContext("u1", display_name="Asha").label == "Asha"


def test_normal_path_transitions_are_allowed():
    """Each status can advance to the next one along the fulfilment path."""

    path = [
        DocumentStatus.DRAFT,
        DocumentStatus.PENDING,
        DocumentStatus.PROCESSING,
        DocumentStatus.CHECKING,
        DocumentStatus.LOADING,
        DocumentStatus.IN_TRANSIT,
        DocumentStatus.DELIVERED,
        DocumentStatus.COMPLETED,
    ]
    for current, target in zip(path, path[1:]):
        assert lifecycle.transition(current, target) is target


@pytest.mark.parametrize("status", OPEN_STATUSES)
def test_cancel_is_allowed_before_loading(status):
    """Documents not yet loading can be cancelled."""

    assert lifecycle.transition(status, DocumentStatus.CANCELLED) is DocumentStatus.CANCELLED


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (DocumentStatus.DRAFT, DocumentStatus.DELIVERED),
        (DocumentStatus.LOADING, DocumentStatus.CANCELLED),
        (DocumentStatus.COMPLETED, DocumentStatus.DRAFT),
        (DocumentStatus.CANCELLED, DocumentStatus.PENDING),
        (DocumentStatus.PENDING, DocumentStatus.PENDING),
    ],
)
def test_invalid_transitions_raise(current, target):
    """Skipping steps, going backwards or leaving a terminal status fails."""

    with pytest.raises(InvalidStatusTransition):
        lifecycle.transition(current, target)


def test_terminal_statuses_have_no_exits():
    """Completed and cancelled documents stay where they are."""

    assert lifecycle.allowed_transitions(DocumentStatus.COMPLETED) == frozenset()
    assert lifecycle.allowed_transitions(DocumentStatus.CANCELLED) == frozenset()


@pytest.mark.parametrize(
    ("previous", "new", "expected"),
    [
        (None, DocumentStatus.DRAFT, False),
        (DocumentStatus.DRAFT, DocumentStatus.DRAFT, False),
        (DocumentStatus.DRAFT, DocumentStatus.PENDING, True),
        (DocumentStatus.PENDING, DocumentStatus.PENDING, True),
        (DocumentStatus.DELIVERED, DocumentStatus.DELIVERED, True),
    ],
)
def test_requires_audit(previous, new, expected):
    """Only edits that touch a document past draft are audited."""

    assert lifecycle.requires_audit(previous, new) is expected
