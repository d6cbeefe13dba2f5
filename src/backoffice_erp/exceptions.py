"""Exception hierarchy raised by the back-office core.

Domain failures derive from :class:`BusinessRuleViolation` so front-ends can
report them uniformly; persistence and batch outcomes sit outside that tree
because they describe what happened to a write, not a broken rule.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover
    from .constants import DocumentStatus


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised for malformed input caught at the point of entry."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, document, or line is unknown."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when a line asks for more units than are available."""

    def __init__(self, available: Decimal, requested: Decimal | None = None) -> None:
        self.available = available
        self.requested = requested
        super().__init__(f"Insufficient stock! Available: {available}")


class EditLocked(BusinessRuleViolation):
    """Raised when an unprivileged caller mutates a document in a locked status."""

    def __init__(self, status: "DocumentStatus", document_id: str | None = None) -> None:
        self.status = status
        self.document_id = document_id
        label = f"Document '{document_id}'" if document_id else "Document"
        super().__init__(
            f"{label} is locked in status '{status.value}' and cannot be edited "
            "outside an adjustment workflow"
        )


class InvalidStatusTransition(BusinessRuleViolation):
    """Raised when a status change is not permitted by the transition table."""


class PersistenceFailure(Exception):
    """Raised when the backing store rejects or fails to complete a write."""

    GENERIC_MESSAGE = "Failed to save changes"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.GENERIC_MESSAGE)


class PartialBatchFailure(Exception):
    """Raised when only part of a batch submission went through."""

    def __init__(self, result: Any) -> None:
        self.result = result
        super().__init__(
            f"Processed {result.success_count} of {result.total} returns; "
            f"{result.failure_count} failed"
        )


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "MissingReferenceError",
    "InsufficientStock",
    "EditLocked",
    "InvalidStatusTransition",
    "PersistenceFailure",
    "PartialBatchFailure",
]
