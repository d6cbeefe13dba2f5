"""Business logic layer for the back-office ERP.

This module orchestrates document editing, saving, status changes, returns
and the audit trail. Arithmetic lives in :mod:`backoffice_erp.pricing`, the
stock gate in :mod:`backoffice_erp.stock` and the edit lock in
:mod:`backoffice_erp.lifecycle`; this layer wires them to the workbook store
reached through :mod:`backoffice_erp.data_manager`.

Editing operations (``add_line_item`` and friends) act on an in-memory
:class:`Document` and never touch the workbook. Only :func:`save_document`,
:func:`change_status`, :func:`record_return`, :func:`record_returns` and
:func:`add_product` write, and each of them commits the workbook as one unit:
when staging or persisting fails the in-memory workbook is reloaded from disk
and a :class:`~backoffice_erp.exceptions.PersistenceFailure` is raised.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    DEFAULT_CHANGE_REASON,
    DRAFT_CHANGE_REASON,
    EXPECTED_SCHEMA_VERSION,
    DocumentKind,
    DocumentStatus,
    ReturnType,
)
from .exceptions import (
    BusinessRuleViolation,
    InvalidStatusTransition,
    MissingReferenceError,
    PartialBatchFailure,
    PersistenceFailure,
    ValidationError,
)
from .lifecycle import INITIAL_STATUS, ActorContext, ensure_editable, requires_audit, transition
from .pricing import (
    ZERO,
    LineItem,
    Totals,
    aggregate,
    clamp_percent,
    clamp_quantity,
    infer_extra_discount_percent,
    refund_total,
    to_money,
)
from .stock import StockSnapshot, check_availability, effective_available


@dataclass
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL.

    The workbook handle is swapped for a fresh copy when a commit fails, so
    the context itself is mutable.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass
class Document:
    """Invoice or purchase order being edited in memory.

    ``persisted_total`` and ``persisted_status`` hold what the store had when
    the document was loaded (``None`` for a document never saved) and decide
    whether a save is audited. ``released_quantities`` tracks stock units
    committed by saved lines that were removed during this session, so that
    re-adding the same product is checked against the right availability.
    """

    document_id: str
    kind: DocumentKind
    party_id: str
    sales_rep_id: Optional[str]
    document_date: str
    status: DocumentStatus = INITIAL_STATUS
    items: List[LineItem] = field(default_factory=list)
    extra_discount_percent: Decimal = ZERO
    refund_total: Decimal = ZERO
    paid_amount: Decimal = ZERO
    extra_discount_inferred: bool = False
    persisted_total: Optional[Decimal] = None
    persisted_status: Optional[DocumentStatus] = None
    released_quantities: Dict[str, Decimal] = field(default_factory=dict, repr=False)

    @property
    def is_new(self) -> bool:
        return self.persisted_status is None

    def find_line(self, line_id: str) -> LineItem:
        for line in self.items:
            if line.line_id == line_id:
                return line
        log.warning("Line '%s' not found on document '%s'", line_id, self.document_id)
        raise MissingReferenceError(f"Unknown line id: {line_id}")


@dataclass(frozen=True)
class LineItemCommand:
    """User intent for adding or updating a line.

    ``unit_price`` of ``None`` means "use the catalog price for this kind of
    document".
    """

    product_id: Optional[str]
    quantity: Decimal
    free_quantity: Decimal = ZERO
    discount_percent: Decimal = ZERO
    unit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class ReturnCommand:
    """User intent for returning goods against an invoice."""

    document_id: str
    product_id: str
    quantity: Decimal
    return_type: ReturnType = ReturnType.GOOD
    reason_code: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass
class ReturnBatchResult:
    """Outcome of :func:`record_returns`.

    ``failed`` pairs each rejected command with the message of the rule it
    broke; rejected commands never reach the workbook.
    """

    succeeded: List[data_manager.ReturnRow] = field(default_factory=list)
    failed: List[Tuple[ReturnCommand, str]] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count

    def raise_for_failures(self) -> None:
        """Raise :class:`PartialBatchFailure` when any command was rejected."""

        if self.failed:
            raise PartialBatchFailure(self)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are keyed by sheet (products, documents, items, returns, audit)
    and hold parsed rows plus lookup dictionaries so repeated reads do not
    rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after mutating workbook state.

    Called with no names, every bucket is dropped.
    """

    targets = names or tuple(context._cache)
    if not targets:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(targets))
    for name in targets:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["active"] = [product for product in all_products if product.is_active]
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug(
            "Populated products cache with %d entries (%d active)",
            len(all_products),
            len(bucket["active"]),
        )
    return bucket


def _ensure_documents_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "documents")
    if "by_id" not in bucket:
        bucket["by_id"] = {row.document_id: row for row in data_manager.iter_documents(context.workbook)}
        log.debug("Populated documents cache with %d entries", len(bucket["by_id"]))
    return bucket


def _ensure_items_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "document_items")
    if "by_document" not in bucket:
        by_document: Dict[str, List[data_manager.DocumentItemRow]] = {}
        for row in data_manager.iter_document_items(context.workbook):
            by_document.setdefault(row.document_id, []).append(row)
        bucket["by_document"] = by_document
        log.debug("Populated document items cache for %d documents", len(by_document))
    return bucket


def _ensure_returns_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "returns")
    if "all" not in bucket:
        all_returns = list(data_manager.iter_returns(context.workbook))
        by_document: Dict[str, List[data_manager.ReturnRow]] = {}
        for row in all_returns:
            by_document.setdefault(row.document_id, []).append(row)
        bucket["all"] = all_returns
        bucket["by_document"] = by_document
        log.debug("Populated returns cache with %d entries", len(all_returns))
    return bucket


def _ensure_audit_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "audit")
    if "all" not in bucket:
        bucket["all"] = list(data_manager.iter_audit_log(context.workbook))
        log.debug("Populated audit cache with %d entries", len(bucket["all"]))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to write into a workbook laid out for another schema version.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return cached product rows, active ones only unless asked otherwise."""
    cache = _ensure_products_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    return list(source)


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def product_catalog(context: RuntimeContext) -> Dict[str, data_manager.ProductRow]:
    """Snapshot of every product keyed by id, for the editing operations."""
    return dict(_ensure_products_cache(context)["by_id"])


def load_stock_snapshot(context: RuntimeContext) -> StockSnapshot:
    """Build the read-only availability view from the ``Products`` sheet."""
    products = _ensure_products_cache(context)["all"]
    return StockSnapshot({product.product_id: product.available_quantity for product in products})


def add_product(context: RuntimeContext, product: data_manager.ProductRow) -> data_manager.ProductRow:
    """Register a new product and commit the workbook.

    Raises:
        ValidationError: If the id is blank or already used, or a price or
            the opening quantity is negative.
    """
    if not product.product_id or not product.product_id.strip():
        raise ValidationError("Product id is required")
    if product.product_id in _ensure_products_cache(context)["by_id"]:
        log.warning("Duplicate product id '%s'", product.product_id)
        raise ValidationError(f"Product '{product.product_id}' already exists")
    for amount in (product.selling_price, product.cost_price, product.mrp):
        require_nonnegative_money(amount)
    if product.available_quantity < ZERO:
        log.warning("Negative opening stock for product '%s'", product.product_id)
        raise ValidationError("Opening quantity must be zero or positive")

    ensure_schema_version(context)
    with _staging(context, f"product '{product.product_id}'"):
        data_manager.append_product(context.workbook, product)
    _invalidate_cache(context, "products")
    _commit(context)
    log.info("Added product '%s' (%s)", product.product_id, product.product_name)
    return product


# ---------------------------------------------------------------------------
# Document editing (in memory)
# ---------------------------------------------------------------------------


def generate_identifier(prefix: str, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier ``{prefix}{YYYYMMDDHHMMSSffffff}``.

    Caller supplied timestamps allow deterministic identifiers in tests.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def generate_document_id(kind: DocumentKind, when: Optional[datetime] = None) -> str:
    return generate_identifier(kind.id_prefix, when)


def new_document(
    kind: DocumentKind,
    party_id: str,
    sales_rep_id: Optional[str] = None,
    document_date: Optional[str] = None,
    *,
    document_id: Optional[str] = None,
    when: Optional[datetime] = None,
) -> Document:
    """Start an unsaved ``Draft`` document with no lines.

    Args:
        kind (DocumentKind): Invoice or purchase order.
        party_id (str): Customer (invoice) or supplier (purchase order).
        sales_rep_id (str | None): Sales representative, required on invoices
            before a non-draft save.
        document_date (str | None): ISO date; defaults to the date of
            ``when``.
        document_id (str | None): Explicit id, generated from ``kind`` and
            ``when`` otherwise.
        when (datetime | None): Creation timestamp.

    Raises:
        ValidationError: If ``party_id`` is blank.
    """
    if not party_id or not party_id.strip():
        log.warning("Rejected new %s without a party", kind.value)
        raise ValidationError("A customer or supplier is required")

    timestamp = _resolve_timestamp(when)
    document = Document(
        document_id=document_id or generate_document_id(kind, timestamp),
        kind=kind,
        party_id=party_id.strip(),
        sales_rep_id=sales_rep_id,
        document_date=document_date or timestamp.date().isoformat(),
    )
    log.debug("Started %s '%s' for party '%s'", kind.value, document.document_id, document.party_id)
    return document


def compute_totals(document: Document) -> Totals:
    """Recompute every figure for ``document`` from its current lines."""

    return aggregate(document.items, document.extra_discount_percent, document.refund_total)


def _lock_status(document: Document) -> DocumentStatus:
    # Stored documents are locked by what is on disk, not by the mutable field.
    if document.persisted_status is not None:
        return document.persisted_status
    return document.status


def add_line_item(
    document: Document,
    command: LineItemCommand,
    *,
    catalog: Mapping[str, data_manager.ProductRow],
    stock: StockSnapshot,
    actor: ActorContext,
) -> LineItem:
    """Validate and append a product line.

    Args:
        document (Document): Document being edited.
        command (LineItemCommand): Product, quantities, discount and an
            optional price override.
        catalog (Mapping[str, ProductRow]): Products keyed by id.
        stock (StockSnapshot): Availability used to gate invoice lines.
        actor (ActorContext): Caller, checked against the edit lock.

    Returns:
        LineItem: The appended line.

    Raises:
        EditLocked: If the document is locked for ``actor``.
        ValidationError: If the product is missing or already on the
            document, or the quantity is not positive.
        MissingReferenceError: If the product is not in ``catalog``.
        BusinessRuleViolation: If the product is inactive.
        InsufficientStock: If an invoice line asks for more than is available.
    """
    ensure_editable(_lock_status(document), actor, document_id=document.document_id)
    product_id = _require_product_id(command.product_id)
    require_positive_quantity(command.quantity)
    product = _resolve_catalog_product(catalog, product_id)
    _reject_duplicate_product(document, product_id)

    free_quantity = clamp_quantity(command.free_quantity)
    committed = document.released_quantities.get(product_id, ZERO)
    if document.kind is DocumentKind.INVOICE:
        check_availability(command.quantity, free_quantity, effective_available(stock, product_id, committed))

    line = _build_line(
        document,
        product,
        line_id=_next_line_id(document),
        command=command,
        free_quantity=free_quantity,
        unit_price=command.unit_price,
        committed=committed,
    )
    document.released_quantities.pop(product_id, None)
    document.items.append(line)
    log.info(
        "Added line '%s' to '%s': product '%s' qty=%s free=%s discount=%s%%",
        line.line_id,
        document.document_id,
        product_id,
        line.quantity,
        line.free_quantity,
        line.discount_percent,
    )
    return line


def update_line_item(
    document: Document,
    line_id: str,
    command: LineItemCommand,
    *,
    catalog: Mapping[str, data_manager.ProductRow],
    stock: StockSnapshot,
    actor: ActorContext,
) -> LineItem:
    """Replace the inputs of an existing line.

    The stock gate credits the units the saved copy of the line already
    holds, so re-saving a line at its current quantity never fails. A
    ``command.product_id`` of ``None`` keeps the line's product; keeping the
    product also keeps its unit price unless the command overrides it.

    Raises:
        EditLocked: If the document is locked for ``actor``.
        MissingReferenceError: If ``line_id`` or the product is unknown.
        ValidationError: If the quantity is not positive or the new product is
            already on another line.
        InsufficientStock: If an invoice line asks for more than is available.
    """
    ensure_editable(_lock_status(document), actor, document_id=document.document_id)
    current = document.find_line(line_id)
    product_id = (command.product_id or "").strip() or current.product_id
    require_positive_quantity(command.quantity)
    product = _resolve_catalog_product(catalog, product_id)

    same_product = product_id == current.product_id
    if same_product:
        committed = current.committed_quantity
        unit_price = command.unit_price if command.unit_price is not None else current.unit_price
    else:
        _reject_duplicate_product(document, product_id, ignore_line=line_id)
        committed = document.released_quantities.get(product_id, ZERO)
        unit_price = command.unit_price

    free_quantity = clamp_quantity(command.free_quantity)
    if document.kind is DocumentKind.INVOICE:
        check_availability(command.quantity, free_quantity, effective_available(stock, product_id, committed))

    updated = _build_line(
        document,
        product,
        line_id=line_id,
        command=command,
        free_quantity=free_quantity,
        unit_price=unit_price,
        committed=committed,
    )
    if not same_product:
        _release(document, current)
        document.released_quantities.pop(product_id, None)
    document.items[document.items.index(current)] = updated
    log.info(
        "Updated line '%s' on '%s': product '%s' qty=%s free=%s discount=%s%%",
        line_id,
        document.document_id,
        product_id,
        updated.quantity,
        updated.free_quantity,
        updated.discount_percent,
    )
    return updated


def remove_line_item(document: Document, line_id: str, *, actor: ActorContext) -> LineItem:
    """Drop a line from the document and return it.

    Raises:
        EditLocked: If the document is locked for ``actor``.
        MissingReferenceError: If ``line_id`` is not on the document.
    """
    ensure_editable(_lock_status(document), actor, document_id=document.document_id)
    line = document.find_line(line_id)
    document.items.remove(line)
    _release(document, line)
    log.info("Removed line '%s' (product '%s') from '%s'", line_id, line.product_id, document.document_id)
    return line


def set_extra_discount(document: Document, percent: Decimal, *, actor: ActorContext) -> Totals:
    """Set the document-level discount, clamped to ``[0, 100]``."""
    ensure_editable(_lock_status(document), actor, document_id=document.document_id)
    document.extra_discount_percent = clamp_percent(percent)
    document.extra_discount_inferred = False
    totals = compute_totals(document)
    log.info(
        "Set extra discount on '%s' to %s%% (grand total %s)",
        document.document_id,
        document.extra_discount_percent,
        totals.grand_total,
    )
    return totals


def _require_product_id(product_id: Optional[str]) -> str:
    if product_id is None or not str(product_id).strip():
        log.warning("Line rejected: no product selected")
        raise ValidationError("Please select a product")
    return str(product_id).strip()


def _resolve_catalog_product(
    catalog: Mapping[str, data_manager.ProductRow], product_id: str
) -> data_manager.ProductRow:
    product = catalog.get(product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    if not product.is_active:
        log.warning("Attempted to add inactive product '%s'", product_id)
        raise BusinessRuleViolation(f"Product '{product_id}' is inactive")
    return product


def _reject_duplicate_product(document: Document, product_id: str, *, ignore_line: Optional[str] = None) -> None:
    for line in document.items:
        if line.product_id == product_id and line.line_id != ignore_line:
            log.warning("Product '%s' already on '%s' as line '%s'", product_id, document.document_id, line.line_id)
            raise ValidationError(f"Product '{product_id}' is already on this document")


def _release(document: Document, line: LineItem) -> None:
    if line.committed_quantity > ZERO:
        held = document.released_quantities.get(line.product_id, ZERO)
        document.released_quantities[line.product_id] = held + line.committed_quantity


def _next_line_id(document: Document) -> str:
    numbers = []
    for line in document.items:
        suffix = line.line_id.rsplit("-", 1)[-1]
        if suffix.isdigit():
            numbers.append(int(suffix))
    return f"{document.document_id}-{max(numbers, default=0) + 1:03d}"


def _default_unit_price(kind: DocumentKind, product: data_manager.ProductRow) -> Decimal:
    return product.selling_price if kind is DocumentKind.INVOICE else product.cost_price


def _build_line(
    document: Document,
    product: data_manager.ProductRow,
    *,
    line_id: str,
    command: LineItemCommand,
    free_quantity: Decimal,
    unit_price: Optional[Decimal],
    committed: Decimal,
) -> LineItem:
    if unit_price is None:
        unit_price = _default_unit_price(document.kind, product)
    require_nonnegative_money(unit_price)
    return LineItem(
        line_id=line_id,
        product_id=product.product_id,
        sku=product.sku,
        product_name=product.product_name,
        quantity=Decimal(command.quantity),
        free_quantity=free_quantity,
        unit_price=Decimal(unit_price),
        discount_percent=clamp_percent(command.discount_percent),
        unit_of_measure=product.unit_of_measure,
        mrp=product.mrp,
        committed_quantity=committed,
    )


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValidationError: If ``quantity`` is zero or negative.
    """
    if quantity <= Decimal("0"):
        log.warning("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValidationError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.warning("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be zero or positive")


# ---------------------------------------------------------------------------
# Loading and saving
# ---------------------------------------------------------------------------


def _get_document_row(context: RuntimeContext, document_id: str) -> data_manager.DocumentRow:
    try:
        return _ensure_documents_cache(context)["by_id"][document_id]
    except KeyError as exc:
        log.warning("Document lookup failed for id '%s'", document_id)
        raise MissingReferenceError(f"Unknown document id: {document_id}") from exc


def list_documents(context: RuntimeContext) -> List[data_manager.DocumentRow]:
    """Return every stored document header in sheet order."""
    return list(_ensure_documents_cache(context)["by_id"].values())


def load_document(context: RuntimeContext, document_id: str) -> Document:
    """Rebuild an editable :class:`Document` from the workbook.

    Lines come back with ``committed_quantity`` set to the stock units they
    hold, refunds are folded from the ``Returns`` sheet, and a blank stored
    extra discount is reconstructed from the stored grand total (flagged via
    ``extra_discount_inferred``).

    Raises:
        MissingReferenceError: If the document does not exist.
    """
    header = _get_document_row(context, document_id)
    rows = _ensure_items_cache(context)["by_document"].get(document_id, [])
    items = [
        LineItem(
            line_id=row.line_id,
            product_id=row.product_id,
            sku=row.sku,
            product_name=row.product_name,
            quantity=row.quantity,
            free_quantity=row.free_quantity,
            unit_price=row.unit_price,
            discount_percent=row.discount_percent,
            unit_of_measure=row.unit_of_measure,
            mrp=row.mrp,
            committed_quantity=row.quantity + row.free_quantity,
        )
        for row in rows
    ]
    refunds = refund_total(list_returns(context, document_id))

    inferred = header.extra_discount_percent is None
    if inferred:
        line_sum = sum((line.total for line in items), ZERO)
        extra = infer_extra_discount_percent(line_sum, refunds, header.grand_total)
        log.info("Inferred extra discount %s%% for legacy document '%s'", extra, document_id)
    else:
        extra = header.extra_discount_percent

    document = Document(
        document_id=header.document_id,
        kind=header.kind,
        party_id=header.party_id,
        sales_rep_id=header.sales_rep_id,
        document_date=header.document_date,
        status=header.status,
        items=items,
        extra_discount_percent=extra,
        refund_total=refunds,
        paid_amount=header.paid_amount,
        extra_discount_inferred=inferred,
        persisted_total=header.grand_total,
        persisted_status=header.status,
    )
    log.debug("Loaded document '%s' with %d line(s)", document_id, len(items))
    return document


def _validate_for_save(document: Document, *, as_draft: bool) -> None:
    if not document.party_id:
        raise ValidationError("A customer or supplier is required")
    if as_draft:
        return
    if document.kind is DocumentKind.INVOICE and not document.sales_rep_id:
        log.warning("Rejected save of '%s': no sales representative", document.document_id)
        raise ValidationError("Please select a sales representative")
    if not document.items:
        log.warning("Rejected save of '%s': no line items", document.document_id)
        raise ValidationError("Please add at least one item")


def _stock_deltas(context: RuntimeContext, document: Document) -> Dict[str, Decimal]:
    """Per-product change in units held by the document since its last save."""
    deltas: Dict[str, Decimal] = {}
    for row in _ensure_items_cache(context)["by_document"].get(document.document_id, []):
        deltas[row.product_id] = deltas.get(row.product_id, ZERO) - (row.quantity + row.free_quantity)
    for line in document.items:
        deltas[line.product_id] = deltas.get(line.product_id, ZERO) + line.stock_quantity
    return {product_id: delta for product_id, delta in deltas.items() if delta != ZERO}


def _item_rows(document: Document) -> List[data_manager.DocumentItemRow]:
    return [
        data_manager.DocumentItemRow(
            document_id=document.document_id,
            line_id=line.line_id,
            product_id=line.product_id,
            sku=line.sku,
            product_name=line.product_name,
            unit_of_measure=line.unit_of_measure,
            mrp=line.mrp,
            quantity=line.quantity,
            free_quantity=line.free_quantity,
            unit_price=line.unit_price,
            discount_percent=line.discount_percent,
            discount_amount=to_money(line.discount_amount),
            line_total=to_money(line.total),
        )
        for line in document.items
    ]


def save_document(
    context: RuntimeContext,
    document: Document,
    *,
    actor: ActorContext,
    change_reason: Optional[str] = None,
    as_draft: bool = False,
    when: Optional[datetime] = None,
) -> Totals:
    """Write the full document payload and commit the workbook.

    One save stores the header (including the explicit extra-discount
    percentage), replaces every line, moves stock by the difference from the
    previously saved lines (out for invoices, in for purchase orders) and, if
    the document had already left ``Draft``, appends one audit entry carrying
    the previous total and status.

    Args:
        context (RuntimeContext): Runtime state with the workbook.
        document (Document): Document to store. It is only updated (committed
            quantities, persisted total and status) once the commit succeeds.
        actor (ActorContext): Caller, checked against the edit lock before any
            write.
        change_reason (str | None): Reason recorded in the audit trail.
        as_draft (bool): Draft saves skip the sales representative and
            non-empty checks and default the reason to "Saved as Draft".
        when (datetime | None): Timestamp for the audit entry.

    Returns:
        Totals: Figures that were stored.

    Raises:
        EditLocked: If the stored document is locked for ``actor``.
        InvalidStatusTransition: If ``document.status`` differs from the
            stored status (or from ``Draft`` for a new document); status
            changes go through :func:`change_status`.
        ValidationError: If the header or lines are incomplete.
        MissingReferenceError: If a line refers to a product no longer in the
            catalog.
        PersistenceFailure: If the workbook cannot be written; nothing from
            this save survives in memory or on disk.
    """
    ensure_editable(_lock_status(document), actor, document_id=document.document_id)
    expected_status = INITIAL_STATUS if document.is_new else document.persisted_status
    if document.status is not expected_status:
        log.warning(
            "Refusing to save '%s' with status '%s' (stored '%s')",
            document.document_id,
            document.status.value,
            expected_status.value,
        )
        raise InvalidStatusTransition(
            f"Cannot save '{document.document_id}' as '{document.status.value}'; use change_status to move it from '{expected_status.value}'"
        )
    _validate_for_save(document, as_draft=as_draft)
    ensure_schema_version(context)

    totals = compute_totals(document)
    stored_total = to_money(totals.grand_total)
    timestamp = _resolve_timestamp(when)
    deltas = _stock_deltas(context, document)
    sign = Decimal("-1") if document.kind is DocumentKind.INVOICE else Decimal("1")
    new_levels = {
        product_id: get_product(context, product_id).available_quantity + sign * delta
        for product_id, delta in deltas.items()
    }

    header = data_manager.DocumentRow(
        document_id=document.document_id,
        kind=document.kind,
        party_id=document.party_id,
        sales_rep_id=document.sales_rep_id,
        document_date=document.document_date,
        status=document.status,
        extra_discount_percent=document.extra_discount_percent,
        grand_total=stored_total,
        paid_amount=document.paid_amount,
        updated_at=timestamp.isoformat(),
        updated_by=actor.actor_id,
    )
    with _staging(context, f"document '{document.document_id}'"):
        data_manager.upsert_document(context.workbook, header)
        data_manager.replace_document_items(context.workbook, document.document_id, _item_rows(document))
        for product_id, level in new_levels.items():
            data_manager.update_product(context.workbook, product_id, field_values={"AvailableQuantity": level})
        if requires_audit(document.persisted_status, document.status):
            reason = change_reason or (DRAFT_CHANGE_REASON if as_draft else DEFAULT_CHANGE_REASON)
            record_change(
                context,
                document.document_id,
                actor,
                reason,
                previous_total=document.persisted_total if document.persisted_total is not None else ZERO,
                previous_status=document.persisted_status,
                when=timestamp,
            )
    _invalidate_cache(context, "documents", "document_items", "products")
    _commit(context)

    document.items[:] = [replace(line, committed_quantity=line.stock_quantity) for line in document.items]
    document.released_quantities.clear()
    document.persisted_total = stored_total
    document.persisted_status = document.status
    log.info(
        "Saved %s '%s' by '%s' (grand total %s, %d line(s), stock moved for %d product(s))",
        document.kind.value,
        document.document_id,
        actor.actor_id,
        stored_total,
        len(document.items),
        len(deltas),
    )
    return totals


def change_status(
    context: RuntimeContext,
    document_id: str,
    target: DocumentStatus,
    *,
    actor: ActorContext,
    reason: Optional[str] = None,
    when: Optional[datetime] = None,
) -> data_manager.DocumentRow:
    """Move a stored document one step along the transition table.

    Progressing a locked document (``Loading`` to ``In Transit`` and so on)
    is a workflow step, not a content edit, so the edit lock does not apply.
    Stock levels are not touched. Every status change past ``Draft`` is
    audited.

    Raises:
        MissingReferenceError: If the document does not exist.
        InvalidStatusTransition: If ``target`` is not reachable in one step.
        PersistenceFailure: If the workbook cannot be written.
    """
    header = _get_document_row(context, document_id)
    transition(header.status, target)
    ensure_schema_version(context)

    timestamp = _resolve_timestamp(when)
    with _staging(context, f"status change of '{document_id}'"):
        data_manager.update_document_status(
            context.workbook,
            document_id,
            target,
            updated_at=timestamp.isoformat(),
            updated_by=actor.actor_id,
        )
        if requires_audit(header.status, target):
            record_change(
                context,
                document_id,
                actor,
                reason or f"Status changed from {header.status.value} to {target.value}",
                previous_total=header.grand_total,
                previous_status=header.status,
                when=timestamp,
            )
    _invalidate_cache(context, "documents")
    _commit(context)
    log.info("Moved '%s' from '%s' to '%s' by '%s'", document_id, header.status.value, target.value, actor.actor_id)
    return replace(header, status=target, updated_at=timestamp.isoformat(), updated_by=actor.actor_id)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


def record_change(
    context: RuntimeContext,
    document_id: str,
    actor: ActorContext,
    reason: Optional[str],
    previous_total: Decimal,
    previous_status: Optional[DocumentStatus],
    *,
    when: Optional[datetime] = None,
) -> data_manager.AuditRow:
    """Append exactly one audit entry to the workbook.

    The entry is staged in memory; the caller's commit makes it durable
    together with the change it describes. Entries are never updated.
    """
    timestamp = _resolve_timestamp(when)
    entry = data_manager.AuditRow(
        audit_id=_next_audit_id(context, timestamp),
        changed_at=timestamp.isoformat(),
        document_id=document_id,
        changed_by=actor.label,
        reason=(reason or "").strip() or DEFAULT_CHANGE_REASON,
        previous_total=to_money(previous_total),
        previous_status=previous_status,
    )
    data_manager.append_audit(context.workbook, entry)
    _invalidate_cache(context, "audit")
    log.info(
        "Audit entry '%s' for '%s' by '%s': %s (previous total %s, previous status %s)",
        entry.audit_id,
        document_id,
        entry.changed_by,
        entry.reason,
        entry.previous_total,
        previous_status.value if previous_status is not None else None,
    )
    return entry


def _next_audit_id(context: RuntimeContext, when: datetime) -> str:
    """``A{timestamp}-{nnn}``; the counter separates entries sharing a timestamp."""
    base = generate_identifier("A", when)
    highest = 0
    for entry in _ensure_audit_cache(context)["all"]:
        stem, _, suffix = entry.audit_id.rpartition("-")
        if stem == base and suffix.isdigit():
            highest = max(highest, int(suffix))
        elif entry.audit_id == base:
            highest = max(highest, 1)
    return f"{base}-{highest + 1:03d}"


def list_history(context: RuntimeContext, document_id: str) -> List[data_manager.AuditRow]:
    """Audit entries for ``document_id``, newest first."""
    entries = [entry for entry in _ensure_audit_cache(context)["all"] if entry.document_id == document_id]
    entries.reverse()
    entries.sort(key=lambda entry: entry.changed_at, reverse=True)
    return entries


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------


def list_returns(context: RuntimeContext, document_id: str) -> List[data_manager.ReturnRow]:
    """Return records for ``document_id`` in the order they were recorded."""
    return list(_ensure_returns_cache(context)["by_document"].get(document_id, []))


def _next_return_number(context: RuntimeContext) -> int:
    highest = 0
    for row in _ensure_returns_cache(context)["all"]:
        suffix = row.return_id.rsplit("-", 1)[-1]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest + 1


def _return_reason(command: ReturnCommand) -> str:
    reason = f"[{command.document_id}] {command.reason_code or 'Return'}"
    if command.notes:
        reason = f"{reason}: {command.notes}"
    return reason


def _stage_return(context: RuntimeContext, command: ReturnCommand, actor: ActorContext) -> data_manager.ReturnRow:
    """Validate one return and append it (and its stock update) to the workbook."""
    header = _get_document_row(context, command.document_id)
    if header.kind is not DocumentKind.INVOICE:
        log.warning("Return rejected: '%s' is not an invoice", command.document_id)
        raise ValidationError(f"Returns can only be recorded against invoices, not '{command.document_id}'")
    product = get_product(context, command.product_id)
    require_positive_quantity(command.quantity)
    if not isinstance(command.return_type, ReturnType):
        raise ValidationError(f"Unsupported return type: {command.return_type}")

    sold = sum(
        (
            row.quantity + row.free_quantity
            for row in _ensure_items_cache(context)["by_document"].get(command.document_id, [])
            if row.product_id == command.product_id
        ),
        ZERO,
    )
    already_returned = sum(
        (row.quantity for row in list_returns(context, command.document_id) if row.product_id == command.product_id),
        ZERO,
    )
    if already_returned + command.quantity > sold:
        log.warning(
            "Return quantity for '%s' on '%s' exceeds quantity sold (%s returned of %s)",
            command.product_id,
            command.document_id,
            already_returned + command.quantity,
            sold,
        )

    timestamp = _resolve_timestamp(command.timestamp)
    record = data_manager.ReturnRow(
        return_id=f"RET-{_next_return_number(context):06d}",
        timestamp_iso=timestamp.isoformat(),
        document_id=command.document_id,
        product_id=command.product_id,
        quantity=command.quantity,
        selling_price=product.selling_price,
        return_type=command.return_type,
        reason=_return_reason(command),
        recorded_by=actor.actor_id,
    )
    data_manager.append_return(context.workbook, record)
    _invalidate_cache(context, "returns")
    if command.return_type is ReturnType.GOOD:
        data_manager.update_product(
            context.workbook,
            product.product_id,
            field_values={"AvailableQuantity": product.available_quantity + command.quantity},
        )
        _invalidate_cache(context, "products")
    elif command.return_type is ReturnType.DAMAGE:
        data_manager.update_product(
            context.workbook,
            product.product_id,
            field_values={"DamagedQuantity": product.damaged_quantity + command.quantity},
        )
        _invalidate_cache(context, "products")
    log.info(
        "Recorded %s return '%s' on '%s': product '%s' qty=%s refund=%s",
        command.return_type.value,
        record.return_id,
        command.document_id,
        command.product_id,
        command.quantity,
        record.refund_value,
    )
    return record


def record_return(context: RuntimeContext, command: ReturnCommand, *, actor: ActorContext) -> data_manager.ReturnRow:
    """Record one return and commit the workbook.

    ``Good`` returns go back into sellable stock; ``Damage`` returns are
    added to the product's damaged quantity instead. The refund is priced
    at the product's current selling price.

    Raises:
        MissingReferenceError: If the document or product is unknown.
        ValidationError: If the quantity is not positive or the document is
            not an invoice.
        PersistenceFailure: If the return cannot be staged or the workbook
            cannot be written.
    """
    ensure_schema_version(context)
    with _staging(context, f"return on '{command.document_id}'"):
        record = _stage_return(context, command, actor)
    _commit(context)
    return record


def record_returns(
    context: RuntimeContext,
    commands: Iterable[ReturnCommand],
    *,
    actor: ActorContext,
) -> ReturnBatchResult:
    """Record several returns and commit once.

    Commands that break a rule are collected in ``failed``; the rest are
    stored. Call :meth:`ReturnBatchResult.raise_for_failures` to turn a
    partial result into an exception.

    Raises:
        PersistenceFailure: If a return cannot be staged or the workbook
            cannot be written. No return from the batch survives in that
            case.
    """
    ensure_schema_version(context)
    result = ReturnBatchResult()
    for command in commands:
        try:
            with _staging(context, f"return on '{command.document_id}'"):
                result.succeeded.append(_stage_return(context, command, actor))
        except BusinessRuleViolation as exc:
            # Rules are checked before anything is staged for the command.
            log.warning("Return for '%s' on '%s' rejected: %s", command.product_id, command.document_id, exc)
            result.failed.append((command, str(exc)))

    if result.succeeded:
        _commit(context)
    log.info("Processed %d of %d returns", result.success_count, result.total)
    return result


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook in place, discarding unsaved modifications.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    context.workbook = data_manager.refresh_workbook(context.settings.data_file)
    _invalidate_cache(context)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return context


def _rollback(context: RuntimeContext) -> None:
    log.warning("Discarding staged changes for '%s'", context.settings.data_file)
    refresh_context(context)


@contextmanager
def _staging(context: RuntimeContext, subject: str) -> Iterator[None]:
    """Discard every staged write when staging ``subject`` fails part-way.

    Rule violations are raised before anything is written and pass through
    untouched. Any other error (a missing row, a value openpyxl
    refuses to store) reloads the workbook and surfaces as
    :class:`PersistenceFailure`.
    """
    try:
        yield
    except BusinessRuleViolation:
        raise
    except Exception as exc:
        log.error("Failed to stage %s: %s", subject, exc)
        _rollback(context)
        raise PersistenceFailure(str(exc) or None) from exc


def _commit(context: RuntimeContext) -> None:
    """Persist the workbook, rolling the in-memory copy back on failure.

    Raises:
        PersistenceFailure: Wrapping the underlying error.
    """
    try:
        persist_context(context)
    except Exception as exc:
        log.error("Failed to persist workbook '%s': %s", context.settings.data_file, exc)
        _rollback(context)
        raise PersistenceFailure(str(exc) or None) from exc


__all__ = [
    "RuntimeContext",
    "Document",
    "LineItemCommand",
    "ReturnCommand",
    "ReturnBatchResult",
    "load_runtime_context",
    "ensure_schema_version",
    "list_products",
    "get_product",
    "product_catalog",
    "load_stock_snapshot",
    "add_product",
    "generate_identifier",
    "generate_document_id",
    "new_document",
    "compute_totals",
    "add_line_item",
    "update_line_item",
    "remove_line_item",
    "set_extra_discount",
    "list_documents",
    "load_document",
    "save_document",
    "change_status",
    "record_change",
    "list_history",
    "list_returns",
    "record_return",
    "record_returns",
    "persist_context",
    "refresh_context",
]
