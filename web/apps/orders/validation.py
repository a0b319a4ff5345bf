"""Stock pre-check for a cart snapshot.

``validate_cart`` compares the cart against a catalog snapshot and never
mutates anything. Its answer can be stale by the time stock is reserved;
the inventory store re-checks every line when it applies the decrement.
The pre-check exists to fail fast with a complete diagnostic.
"""

from dataclasses import dataclass
from typing import Iterable, List, Mapping

from .domain import CartLine, LineFailure, ProductSnapshot, StockDelta
from .errors import NotFound


@dataclass(frozen=True)
class Satisfiable:
    """Every line can be served; ``deltas`` are the decrements to apply."""

    deltas: List[StockDelta]
    satisfiable = True


@dataclass(frozen=True)
class Unsatisfiable:
    """At least one line cannot be served; ``failures`` lists all of them."""

    failures: List[LineFailure]
    satisfiable = False


def merge_lines(lines: Iterable[CartLine]) -> List[StockDelta]:
    """Sum quantities per ``(product_id, size)``, keeping first-seen order.

    Raises:
        ValueError: If a line carries a quantity below 1.
    """
    totals: dict[tuple[str, int], int] = {}
    for line in lines:
        if line.quantity < 1:
            raise ValueError("INVALID_QUANTITY")
        key = (line.product_id, int(line.size))
        totals[key] = totals.get(key, 0) + line.quantity
    return [StockDelta(product_id=pid, size=size, quantity=qty) for (pid, size), qty in totals.items()]


def validate_cart(
    lines: Iterable[CartLine],
    catalog: Mapping[str, ProductSnapshot],
) -> Satisfiable | Unsatisfiable:
    """Classify a cart against current stock.

    Lines that target the same product and size are checked against their
    combined quantity, so splitting a request over two lines cannot get
    past the check.

    Args:
        lines: Cart lines as submitted by the caller.
        catalog: Snapshots for every product referenced by ``lines``.

    Returns:
        ``Satisfiable`` with deltas ordered by ``(product_id, size)``, or
        ``Unsatisfiable`` carrying every failing product/size.

    Raises:
        NotFound: When a line references a product missing from ``catalog``.
    """
    failures: List[LineFailure] = []
    deltas: List[StockDelta] = []

    for delta in merge_lines(lines):
        product = catalog.get(delta.product_id)
        if product is None:
            raise NotFound("product", delta.product_id)

        available = product.stock_for(delta.size)
        if available is None:
            failures.append(
                LineFailure(delta.product_id, delta.size, delta.quantity, 0, reason="UNKNOWN_SIZE")
            )
        elif available < delta.quantity:
            failures.append(LineFailure(delta.product_id, delta.size, delta.quantity, available))
        else:
            deltas.append(delta)

    if failures:
        return Unsatisfiable(failures=failures)
    return Satisfiable(deltas=sorted(deltas, key=lambda d: (d.product_id, d.size)))
