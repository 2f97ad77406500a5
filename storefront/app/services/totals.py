from __future__ import annotations

import math
from typing import Any, Iterable, Mapping

from storefront.app.models.cart import CartTotals


def _field(line: Any, name: str) -> Any:
    if isinstance(line, Mapping):
        return line.get(name)
    return getattr(line, name, None)


def _number(v: Any) -> float:
    """Finite, non-negative number or 0.0."""
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return 0.0
    v = float(v)
    if not math.isfinite(v) or v < 0:
        return 0.0
    return v


def line_amount(line: Any) -> float:
    return _number(_field(line, "price")) * _number(_field(line, "quantity"))


def compute_totals(lines: Iterable[Any]) -> CartTotals:
    """subtotal = sum(price * quantity); a line with an unusable price or quantity adds 0."""
    subtotal = round(math.fsum(line_amount(ln) for ln in (lines or [])), 2)
    # tax and shipping are computed downstream by checkout
    return CartTotals(subtotal=subtotal, total=subtotal)
