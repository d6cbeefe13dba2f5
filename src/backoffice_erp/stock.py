"""Stock availability gate for invoice lines."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterator, Mapping

from . import log
from .exceptions import InsufficientStock


ZERO = Decimal("0")


class StockSnapshot(Mapping[str, Decimal]):
    """Read-only view of ``product_id -> available quantity``.

    Products missing from the snapshot are reported as having nothing
    available rather than raising, matching how the catalog treats products
    without a stock row.
    """

    def __init__(self, levels: Mapping[str, Decimal] | None = None) -> None:
        self._levels = {key: Decimal(value) for key, value in (levels or {}).items()}

    def __getitem__(self, product_id: str) -> Decimal:
        return self._levels[product_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._levels)

    def __len__(self) -> int:
        return len(self._levels)

    def available(self, product_id: str) -> Decimal:
        return self._levels.get(product_id, ZERO)

    def __repr__(self) -> str:
        return f"StockSnapshot({self._levels!r})"


def effective_available(snapshot: StockSnapshot, product_id: str, committed_quantity: Decimal = ZERO) -> Decimal:
    """Availability for a line, counting units the line already holds.

    When an existing, previously saved line is edited its own committed units
    are still reserved in the snapshot, so they are added back before the
    check. New lines pass ``committed_quantity=0``.
    """

    return snapshot.available(product_id) + committed_quantity


def check_availability(requested_qty: Decimal, free_qty: Decimal, available: Decimal) -> None:
    """Reject a request for more units than are available.

    Args:
        requested_qty (Decimal): Charged units on the line.
        free_qty (Decimal): Free units, which also leave stock.
        available (Decimal): Units available to this line, already inflated
            by :func:`effective_available` when editing.

    Raises:
        InsufficientStock: If ``requested_qty + free_qty`` exceeds
            ``available``. Asking for exactly ``available`` units passes.
    """

    requested = requested_qty + free_qty
    if requested > available:
        log.warning("Stock check failed: requested %s, available %s", requested, available)
        raise InsufficientStock(available, requested=requested)


__all__ = ["StockSnapshot", "effective_available", "check_availability"]
