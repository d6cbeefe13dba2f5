"""Line pricing and document totals.

Every invoice, purchase order and adjustment screen prices its lines through
:func:`price` and folds them through :func:`aggregate`, so there is exactly one
place where discount arithmetic lives. All figures are :class:`~decimal.Decimal`
and nothing here touches the workbook.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Iterable, Sequence

from . import log

if TYPE_CHECKING:  # pragma: no cover
    from .data_manager import ReturnRow


ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")


@dataclass(frozen=True)
class LinePrice:
    """Discount and net total for one priced line."""

    discount_amount: Decimal
    total: Decimal


@dataclass(frozen=True)
class LineItem:
    """One product entry on a document.

    Monetary figures are derived from the inputs on every access and are
    never stored separately. ``committed_quantity`` holds the stock units the
    persisted copy of this line already consumes, which is what an edit may
    reclaim when the availability check runs.
    """

    line_id: str
    product_id: str
    sku: str
    product_name: str
    quantity: Decimal
    free_quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal
    unit_of_measure: str = "unit"
    mrp: Decimal = ZERO
    committed_quantity: Decimal = ZERO

    @property
    def gross(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def discount_amount(self) -> Decimal:
        return price(self.unit_price, self.quantity, self.discount_percent).discount_amount

    @property
    def total(self) -> Decimal:
        return price(self.unit_price, self.quantity, self.discount_percent).total

    @property
    def stock_quantity(self) -> Decimal:
        """Units leaving stock, free units included."""
        return self.quantity + self.free_quantity


@dataclass(frozen=True)
class Totals:
    """Summary figures for a document, recomputed from scratch on every call."""

    gross_total: Decimal
    item_discount_total: Decimal
    subtotal: Decimal
    extra_discount_percent: Decimal
    extra_discount_amount: Decimal
    refund_total: Decimal
    grand_total: Decimal

    @property
    def is_negative(self) -> bool:
        return self.grand_total < ZERO


def clamp_percent(value: Decimal) -> Decimal:
    """Clamp a percentage into ``[0, 100]``."""

    return min(max(Decimal(value), ZERO), HUNDRED)


def clamp_quantity(value: Decimal) -> Decimal:
    """Clamp a quantity to be non-negative."""

    return max(Decimal(value), ZERO)


def price(unit_price: Decimal, quantity: Decimal, discount_percent: Decimal) -> LinePrice:
    """Price one line.

    Args:
        unit_price (Decimal): Selling price (invoices) or cost price
            (purchase orders) per unit before discount.
        quantity (Decimal): Charged units. Free units are not passed here.
        discount_percent (Decimal): Line discount, already clamped to
            ``[0, 100]`` by the caller.

    Returns:
        LinePrice: ``discount_amount = unit_price * quantity * pct / 100`` and
            ``total = unit_price * quantity - discount_amount``.

    Inputs are not re-validated; with non-negative price and quantity and a
    clamped percentage the total can never go below zero.
    """

    gross = unit_price * quantity
    discount_amount = gross * discount_percent / HUNDRED
    return LinePrice(discount_amount=discount_amount, total=gross - discount_amount)


def aggregate(
    lines: Sequence[LineItem],
    extra_discount_percent: Decimal = ZERO,
    refund_total: Decimal = ZERO,
) -> Totals:
    """Fold priced lines, the extra discount and refunds into document totals.

    The extra discount is applied once to the sum of already discounted line
    totals. Refunds from returns are subtracted last. A negative grand total is
    reported, not clamped: it normally means over-discounting or
    over-refunding and the caller has to see it.

    Args:
        lines (Sequence[LineItem]): Lines on the document, any order.
        extra_discount_percent (Decimal): Document-level percentage.
        refund_total (Decimal): Value of goods returned against the document.

    Returns:
        Totals: Gross, item discounts, subtotal, extra discount, refunds and
            grand total.
    """

    gross_total = ZERO
    item_discount_total = ZERO
    subtotal = ZERO
    for line in lines:
        line_price = price(line.unit_price, line.quantity, line.discount_percent)
        gross_total += line.unit_price * line.quantity
        item_discount_total += line_price.discount_amount
        subtotal += line_price.total

    extra_discount_amount = subtotal * extra_discount_percent / HUNDRED
    grand_total = subtotal - extra_discount_amount - refund_total
    totals = Totals(
        gross_total=gross_total,
        item_discount_total=item_discount_total,
        subtotal=subtotal,
        extra_discount_percent=extra_discount_percent,
        extra_discount_amount=extra_discount_amount,
        refund_total=refund_total,
        grand_total=grand_total,
    )
    if totals.is_negative:
        log.warning(
            "Grand total is negative (%s): subtotal=%s extra_discount=%s refunds=%s",
            grand_total,
            subtotal,
            extra_discount_amount,
            refund_total,
        )
    return totals


def refund_total(returns: Iterable["ReturnRow"]) -> Decimal:
    """Sum ``quantity * selling_price`` over return records."""

    return sum((row.quantity * row.selling_price for row in returns), ZERO)


def infer_extra_discount_percent(
    line_total_sum: Decimal,
    refund_total: Decimal,
    stored_grand_total: Decimal,
) -> Decimal:
    """Recover the extra-discount percentage from a stored grand total.

    Only legacy documents saved without an explicit percentage need this.
    The result is a best-effort reconstruction rounded to two decimals and is
    never negative; differences of a cent or less are treated as rounding
    noise and yield zero.
    """

    if line_total_sum <= ZERO:
        return ZERO
    difference = (line_total_sum - refund_total) - stored_grand_total
    if difference <= CENT:
        return ZERO
    percent = difference / line_total_sum * HUNDRED
    return percent.quantize(CENT, rounding=ROUND_HALF_UP)


def balance_due(grand_total: Decimal, paid_amount: Decimal) -> Decimal:
    """Outstanding amount after payments; negative means credit owed."""

    return grand_total - paid_amount


def to_money(amount: Decimal) -> Decimal:
    """Round a figure to cents for display or storage."""

    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


__all__ = [
    "LineItem",
    "LinePrice",
    "Totals",
    "clamp_percent",
    "clamp_quantity",
    "price",
    "aggregate",
    "refund_total",
    "infer_extra_discount_percent",
    "balance_due",
    "to_money",
]
