"""Data access layer for the back-office workbook store.

This module reads from and writes to the ``backoffice_master.xlsx`` workbook
that plays the role of the persistence collaborator. Business rules belong in
:mod:`backoffice_erp.core_logic`.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, persisting (atomically), and reloading.
3. Sheet operations: parsing rows into validated dataclasses and appending,
   replacing, or updating rows.

Every ``deserialize_*`` helper is the parse-and-validate step at the
boundary: malformed cells raise :class:`RowFormatError` instead of flowing
into the pricing core as loosely typed values.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Type, TypeVar

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import DocumentKind, DocumentStatus, ReturnType, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
DOCUMENTS_SHEET = SheetName.DOCUMENTS.value
DOCUMENT_ITEMS_SHEET = SheetName.DOCUMENT_ITEMS.value
RETURNS_SHEET = SheetName.RETURNS.value
AUDIT_LOG_SHEET = SheetName.AUDIT_LOG.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: [
        "ProductID",
        "SKU",
        "ProductName",
        "UnitOfMeasure",
        "SellingPrice",
        "CostPrice",
        "MRP",
        "AvailableQuantity",
        "IsActive",
        "DamagedQuantity",
    ],
    DOCUMENTS_SHEET: [
        "DocumentID",
        "DocumentKind",
        "PartyID",
        "SalesRepID",
        "DocumentDate",
        "Status",
        "ExtraDiscountPercent",
        "GrandTotal",
        "PaidAmount",
        "UpdatedAt",
        "UpdatedBy",
    ],
    DOCUMENT_ITEMS_SHEET: [
        "DocumentID",
        "LineID",
        "ProductID",
        "SKU",
        "ProductName",
        "UnitOfMeasure",
        "MRP",
        "Quantity",
        "FreeQuantity",
        "UnitPrice",
        "DiscountPercent",
        "DiscountAmount",
        "LineTotal",
    ],
    RETURNS_SHEET: [
        "ReturnID",
        "Timestamp",
        "DocumentID",
        "ProductID",
        "Quantity",
        "SellingPrice",
        "ReturnType",
        "Reason",
        "RecordedBy",
    ],
    AUDIT_LOG_SHEET: [
        "AuditID",
        "ChangedAt",
        "DocumentID",
        "ChangedBy",
        "Reason",
        "PreviousTotal",
        "PreviousStatus",
    ],
}

_EnumT = TypeVar("_EnumT", bound=Enum)


class RowFormatError(ValueError):
    """Raised when a worksheet row cannot be parsed into its record type."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_actor_id: str


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    sku: str
    product_name: str
    unit_of_measure: str
    selling_price: Decimal
    cost_price: Decimal
    mrp: Decimal
    available_quantity: Decimal
    is_active: bool
    damaged_quantity: Decimal = Decimal("0")


@dataclass(frozen=True)
class DocumentRow:
    """Header of an invoice or purchase order from the ``Documents`` sheet.

    ``extra_discount_percent`` is ``None`` for legacy rows that only kept the
    grand total.
    """

    document_id: str
    kind: DocumentKind
    party_id: str
    sales_rep_id: Optional[str]
    document_date: str
    status: DocumentStatus
    extra_discount_percent: Optional[Decimal]
    grand_total: Decimal
    paid_amount: Decimal
    updated_at: Optional[str]
    updated_by: Optional[str]


@dataclass(frozen=True)
class DocumentItemRow:
    """One persisted line from the ``DocumentItems`` sheet."""

    document_id: str
    line_id: str
    product_id: str
    sku: str
    product_name: str
    unit_of_measure: str
    mrp: Decimal
    quantity: Decimal
    free_quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal
    discount_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class ReturnRow:
    """Goods returned against a document, priced at return time."""

    return_id: str
    timestamp_iso: str
    document_id: str
    product_id: str
    quantity: Decimal
    selling_price: Decimal
    return_type: ReturnType
    reason: Optional[str]
    recorded_by: Optional[str]

    @property
    def refund_value(self) -> Decimal:
        return self.quantity * self.selling_price


@dataclass(frozen=True)
class AuditRow:
    """Append-only record of a change to an already finalized document."""

    audit_id: str
    changed_at: str
    document_id: str
    changed_by: str
    reason: str
    previous_total: Decimal
    previous_status: Optional[DocumentStatus]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    An explicit path wins without verification. Otherwise the search walks up
    from the current working directory toward the filesystem root and returns
    the first ``CONFIG_FILE_NAME`` found.

    Args:
        explicit_path (Path | None): Optional path to use instead of the
            upward search.

    Returns:
        Path: The caller's path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored to ``base_path`` (normally the
    directory holding ``config.ini``), falling back to the working directory.

    Raises:
        KeyError: If one of the required sections or options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        default_actor = parser.get("Defaults", "DefaultActor")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = ((base_path or Path.cwd()) / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_actor_id=default_actor,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook atomically at ``destination``.

    The workbook is first written to a staging file next to the target and
    then renamed over it, so a failure part-way through never leaves a
    half-written store behind: either the previous file or the complete new
    one is on disk.

    Raises:
        OSError: If the staging write or the rename fails. The staging file
            is removed before the error propagates.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f".{dest.stem}.saving{dest.suffix}")
    try:
        workbook.save(staging)
        staging.replace(dest)
    except OSError:
        staging.unlink(missing_ok=True)
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Yield typed product records from the ``Products`` sheet."""

    for raw in _iter_sheet(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_documents(workbook: Workbook) -> Iterable[DocumentRow]:
    """Yield typed document headers from the ``Documents`` sheet."""

    for raw in _iter_sheet(workbook, DOCUMENTS_SHEET):
        yield deserialize_document(raw)


def iter_document_items(workbook: Workbook) -> Iterable[DocumentItemRow]:
    """Yield every persisted line, across all documents, in sheet order."""

    for raw in _iter_sheet(workbook, DOCUMENT_ITEMS_SHEET):
        yield deserialize_document_item(raw)


def iter_returns(workbook: Workbook) -> Iterable[ReturnRow]:
    """Yield return records in the order they were appended."""

    for raw in _iter_sheet(workbook, RETURNS_SHEET):
        yield deserialize_return(raw)


def iter_audit_log(workbook: Workbook) -> Iterable[AuditRow]:
    """Yield audit entries in the order they were appended (oldest first)."""

    for raw in _iter_sheet(workbook, AUDIT_LOG_SHEET):
        yield deserialize_audit(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_return(workbook: Workbook, record: ReturnRow) -> None:
    workbook[RETURNS_SHEET].append(serialize_return(record))


def append_audit(workbook: Workbook, record: AuditRow) -> None:
    workbook[AUDIT_LOG_SHEET].append(serialize_audit(record))


def upsert_document(workbook: Workbook, record: DocumentRow) -> None:
    """Write a document header, overwriting the existing row if present.

    Args:
        workbook (Workbook): Workbook holding the ``Documents`` sheet.
        record (DocumentRow): Complete header to store.
    """

    values = serialize_document(record)
    row_index = locate_row(workbook, DOCUMENTS_SHEET, "DocumentID", record.document_id)
    sheet = workbook[DOCUMENTS_SHEET]
    if row_index is None:
        sheet.append(values)
        return
    for column, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column, value=value)


def replace_document_items(workbook: Workbook, document_id: str, records: Sequence[DocumentItemRow]) -> None:
    """Replace every line belonging to ``document_id`` with ``records``.

    Existing rows for the document are deleted bottom-up so earlier row
    indices stay valid, then the new lines are appended in order.
    """

    sheet = workbook[DOCUMENT_ITEMS_SHEET]
    key_col = _header_map(sheet)["DocumentID"]
    stale = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col - 1] == document_id
    ]
    for row_idx in reversed(stale):
        sheet.delete_rows(row_idx)
    for record in records:
        if record.document_id != document_id:
            raise ValueError(
                f"Line '{record.line_id}' belongs to '{record.document_id}', not '{document_id}'"
            )
        sheet.append(serialize_document_item(record))
    log.debug("Replaced %d line(s) with %d for document '%s'", len(stale), len(records), document_id)


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[PRODUCTS_SHEET]
    header_map = _header_map(sheet)
    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown product field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def update_document_status(workbook: Workbook, document_id: str, status: DocumentStatus, *, updated_at: str, updated_by: str) -> None:
    """Overwrite the status and last-change stamp of a document header.

    Raises:
        KeyError: If no header row exists for ``document_id``.
    """

    row_index = locate_row(workbook, DOCUMENTS_SHEET, "DocumentID", document_id)
    if row_index is None:
        raise KeyError(f"Document not found: {document_id}")

    sheet = workbook[DOCUMENTS_SHEET]
    header_map = _header_map(sheet)
    sheet.cell(row=row_index, column=header_map["Status"], value=status.value)
    sheet.cell(row=row_index, column=header_map["UpdatedAt"], value=updated_at)
    sheet.cell(row=row_index, column=header_map["UpdatedBy"], value=updated_by)


def _header_map(sheet: Worksheet) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    return [
        record.product_id,
        record.sku,
        record.product_name,
        record.unit_of_measure,
        record.selling_price,
        record.cost_price,
        record.mrp,
        record.available_quantity,
        record.is_active,
        record.damaged_quantity,
    ]


def serialize_document(record: DocumentRow) -> list[object]:
    return [
        record.document_id,
        record.kind.value,
        record.party_id,
        record.sales_rep_id,
        record.document_date,
        record.status.value,
        record.extra_discount_percent,
        record.grand_total,
        record.paid_amount,
        record.updated_at,
        record.updated_by,
    ]


def serialize_document_item(record: DocumentItemRow) -> list[object]:
    return [
        record.document_id,
        record.line_id,
        record.product_id,
        record.sku,
        record.product_name,
        record.unit_of_measure,
        record.mrp,
        record.quantity,
        record.free_quantity,
        record.unit_price,
        record.discount_percent,
        record.discount_amount,
        record.line_total,
    ]


def serialize_return(record: ReturnRow) -> list[object]:
    return [
        record.return_id,
        record.timestamp_iso,
        record.document_id,
        record.product_id,
        record.quantity,
        record.selling_price,
        record.return_type.value,
        record.reason,
        record.recorded_by,
    ]


def serialize_audit(record: AuditRow) -> list[object]:
    return [
        record.audit_id,
        record.changed_at,
        record.document_id,
        record.changed_by,
        record.reason,
        record.previous_total,
        record.previous_status.value if record.previous_status is not None else None,
    ]


def _to_decimal(raw: object, field: str, *, default: Optional[str] = "0") -> Optional[Decimal]:
    """Coerce a cell into ``Decimal``; blank cells become ``default``."""

    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return Decimal(default) if default is not None else None
    if isinstance(raw, bool):
        raise RowFormatError(f"{field}: expected a number, got {raw!r}")
    try:
        return Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise RowFormatError(f"{field}: expected a number, got {raw!r}") from exc


def _to_enum(enum_type: Type[_EnumT], raw: object, field: str) -> _EnumT:
    try:
        return enum_type(str(raw).strip())
    except ValueError as exc:
        raise RowFormatError(f"{field}: unknown value {raw!r}") from exc


def _to_text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _to_required_text(raw: object, field: str) -> str:
    text = _to_text(raw)
    if text is None:
        raise RowFormatError(f"{field}: value is required")
    return text


def _to_iso_date(raw: object, field: str) -> str:
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    return _to_required_text(raw, field)


def _pad(raw_row: Sequence[object], width: int) -> List[object]:
    """Extend short rows with ``None`` so trailing blank cells unpack cleanly."""

    values = list(raw_row)[:width]
    return values + [None] * (width - len(values))


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw ``Products`` row into a validated :class:`ProductRow`."""

    (
        product_id,
        sku,
        product_name,
        unit_of_measure,
        selling_raw,
        cost_raw,
        mrp_raw,
        available_raw,
        is_active,
        damaged_raw,
    ) = _pad(raw_row, len(SHEET_COLUMNS[PRODUCTS_SHEET]))

    product_id_text = _to_required_text(product_id, "ProductID")
    return ProductRow(
        product_id=product_id_text,
        sku=_to_text(sku) or product_id_text,
        product_name=_to_text(product_name) or product_id_text,
        unit_of_measure=_to_text(unit_of_measure) or "unit",
        selling_price=_to_decimal(selling_raw, "SellingPrice", default="0.00"),
        cost_price=_to_decimal(cost_raw, "CostPrice", default="0.00"),
        mrp=_to_decimal(mrp_raw, "MRP", default="0.00"),
        available_quantity=_to_decimal(available_raw, "AvailableQuantity"),
        is_active=bool(is_active) if is_active is not None else True,
        damaged_quantity=_to_decimal(damaged_raw, "DamagedQuantity"),
    )


def deserialize_document(raw_row: Sequence[object]) -> DocumentRow:
    """Convert a raw ``Documents`` row into a validated :class:`DocumentRow`.

    A blank ``ExtraDiscountPercent`` stays ``None`` so the business layer can
    tell a legacy row apart from an explicit zero.
    """

    (
        document_id,
        kind,
        party_id,
        sales_rep_id,
        document_date,
        status,
        extra_raw,
        grand_raw,
        paid_raw,
        updated_at,
        updated_by,
    ) = _pad(raw_row, len(SHEET_COLUMNS[DOCUMENTS_SHEET]))

    return DocumentRow(
        document_id=_to_required_text(document_id, "DocumentID"),
        kind=_to_enum(DocumentKind, kind, "DocumentKind"),
        party_id=_to_required_text(party_id, "PartyID"),
        sales_rep_id=_to_text(sales_rep_id),
        document_date=_to_iso_date(document_date, "DocumentDate"),
        status=_to_enum(DocumentStatus, status, "Status"),
        extra_discount_percent=_to_decimal(extra_raw, "ExtraDiscountPercent", default=None),
        grand_total=_to_decimal(grand_raw, "GrandTotal", default="0.00"),
        paid_amount=_to_decimal(paid_raw, "PaidAmount", default="0.00"),
        updated_at=_to_text(updated_at),
        updated_by=_to_text(updated_by),
    )


def deserialize_document_item(raw_row: Sequence[object]) -> DocumentItemRow:
    """Convert a raw ``DocumentItems`` row into a :class:`DocumentItemRow`."""

    (
        document_id,
        line_id,
        product_id,
        sku,
        product_name,
        unit_of_measure,
        mrp_raw,
        quantity_raw,
        free_raw,
        unit_price_raw,
        discount_raw,
        discount_amount_raw,
        line_total_raw,
    ) = _pad(raw_row, len(SHEET_COLUMNS[DOCUMENT_ITEMS_SHEET]))

    product_id_text = _to_required_text(product_id, "ProductID")
    return DocumentItemRow(
        document_id=_to_required_text(document_id, "DocumentID"),
        line_id=_to_required_text(line_id, "LineID"),
        product_id=product_id_text,
        sku=_to_text(sku) or product_id_text,
        product_name=_to_text(product_name) or "",
        unit_of_measure=_to_text(unit_of_measure) or "unit",
        mrp=_to_decimal(mrp_raw, "MRP", default="0.00"),
        quantity=_to_decimal(quantity_raw, "Quantity"),
        free_quantity=_to_decimal(free_raw, "FreeQuantity"),
        unit_price=_to_decimal(unit_price_raw, "UnitPrice", default="0.00"),
        discount_percent=_to_decimal(discount_raw, "DiscountPercent"),
        discount_amount=_to_decimal(discount_amount_raw, "DiscountAmount", default="0.00"),
        line_total=_to_decimal(line_total_raw, "LineTotal", default="0.00"),
    )


def deserialize_return(raw_row: Sequence[object]) -> ReturnRow:
    """Convert a raw ``Returns`` row into a :class:`ReturnRow`."""

    (
        return_id,
        timestamp_iso,
        document_id,
        product_id,
        quantity_raw,
        selling_raw,
        return_type,
        reason,
        recorded_by,
    ) = _pad(raw_row, len(SHEET_COLUMNS[RETURNS_SHEET]))

    return ReturnRow(
        return_id=_to_required_text(return_id, "ReturnID"),
        timestamp_iso=_to_text(timestamp_iso) or "",
        document_id=_to_required_text(document_id, "DocumentID"),
        product_id=_to_required_text(product_id, "ProductID"),
        quantity=_to_decimal(quantity_raw, "Quantity"),
        selling_price=_to_decimal(selling_raw, "SellingPrice", default="0.00"),
        return_type=_to_enum(ReturnType, return_type or ReturnType.GOOD.value, "ReturnType"),
        reason=_to_text(reason),
        recorded_by=_to_text(recorded_by),
    )


def deserialize_audit(raw_row: Sequence[object]) -> AuditRow:
    """Convert a raw ``AuditLog`` row into an :class:`AuditRow`."""

    (
        audit_id,
        changed_at,
        document_id,
        changed_by,
        reason,
        previous_raw,
        previous_status,
    ) = _pad(raw_row, len(SHEET_COLUMNS[AUDIT_LOG_SHEET]))

    return AuditRow(
        audit_id=_to_required_text(audit_id, "AuditID"),
        changed_at=_to_text(changed_at) or "",
        document_id=_to_required_text(document_id, "DocumentID"),
        changed_by=_to_text(changed_by) or "Unknown User",
        reason=_to_text(reason) or "General Update",
        previous_total=_to_decimal(previous_raw, "PreviousTotal", default="0.00"),
        previous_status=(
            _to_enum(DocumentStatus, previous_status, "PreviousStatus")
            if _to_text(previous_status) is not None
            else None
        ),
    )
