"""Enumerations and fixed labels shared across the back-office layers.

The workbook store, the pricing core and the CLI all refer to document kinds,
lifecycle states and sheet names through these enums so a status typed in
one place can never drift from the spelling checked in another.
"""

from __future__ import annotations

from enum import Enum


# Workbook layout version the data layer knows how to read and write.
EXPECTED_SCHEMA_VERSION = "2.2.0"

# Reasons recorded in the audit log when the caller gives none.
DEFAULT_CHANGE_REASON = "Updated"
DRAFT_CHANGE_REASON = "Saved as Draft"


class DocumentKind(str, Enum):
    """Enumerate the priced documents handled by the core."""

    INVOICE = "INVOICE"
    PURCHASE_ORDER = "PURCHASE_ORDER"

    @property
    def id_prefix(self) -> str:
        return "INV" if self is DocumentKind.INVOICE else "PO"


class DocumentStatus(str, Enum):
    """Enumerate the lifecycle states a document moves through.

    Declaration order follows the normal fulfilment path; ``CANCELLED`` is a
    terminal side exit.
    """

    DRAFT = "Draft"
    PENDING = "Pending"
    PROCESSING = "Processing"
    CHECKING = "Checking"
    LOADING = "Loading"
    IN_TRANSIT = "In Transit"
    DELIVERED = "Delivered"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class ReturnType(str, Enum):
    """Condition of goods coming back against a document."""

    GOOD = "Good"
    DAMAGE = "Damage"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    DOCUMENTS = "Documents"
    DOCUMENT_ITEMS = "DocumentItems"
    RETURNS = "Returns"
    AUDIT_LOG = "AuditLog"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_CHANGE_REASON",
    "DRAFT_CHANGE_REASON",
    "DocumentKind",
    "DocumentStatus",
    "ReturnType",
    "SheetName",
]
