# storefront/app/services/projection.py
"""
Cart Projection: raw authoritative cart payload -> NormalizedCartLine list.

Pure and deterministic. Malformed input never raises: a missing or
non-list `items` yields [], an item without a product id is skipped, and
unreadable prices or quantities come through as None for the totals to
treat as zero.
"""
from __future__ import annotations

import logging
import math
from typing import Any, List, Mapping, Optional, Set

from storefront.app.models.cart import NormalizedCartLine

log = logging.getLogger(__name__)

_ABSOLUTE_PREFIXES = ("http://", "https://", "//", "data:", "blob:")


def resolve_image_url(ref: Any, base_url: str = "") -> str:
    """Relative refs are joined onto base_url; absolute refs pass through; empty -> ""."""
    if not isinstance(ref, str) or not ref.strip():
        return ""
    ref = ref.strip()
    if ref.lower().startswith(_ABSOLUTE_PREFIXES) or not base_url:
        return ref
    return f"{base_url.rstrip('/')}/{ref.lstrip('/')}"


def _as_int(v: Any) -> Optional[int]:
    if isinstance(v, bool) or v is None:
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v) if math.isfinite(v) else None
    if isinstance(v, str):
        try:
            f = float(v.strip())
        except ValueError:
            return None
        return int(f) if math.isfinite(f) else None
    return None


def cents_to_price(cents: Optional[int]) -> Optional[float]:
    if cents is None:
        return None
    return round(cents / 100, 2)


def _first_image(product: Mapping[str, Any]) -> Any:
    urls = product.get("image_urls")
    if isinstance(urls, list) and urls:
        return urls[0]
    return product.get("image_url") or product.get("image")


def project_line(
    raw: Any,
    *,
    image_base_url: str = "",
) -> Optional[NormalizedCartLine]:
    if not isinstance(raw, Mapping):
        return None
    product = raw.get("product")
    if not isinstance(product, Mapping):
        product = {}

    product_id = raw.get("product_id") or product.get("id")
    if not product_id:
        return None

    final_cents = _as_int(raw.get("unit_final_price_cents", product.get("final_price_cents")))
    original_cents = _as_int(raw.get("unit_original_price_cents", product.get("price_cents")))
    if original_cents is None:
        original_cents = final_cents
    stock = _as_int(raw.get("stock_quantity", product.get("stock_quantity")))
    quantity = _as_int(raw.get("quantity"))

    return NormalizedCartLine(
        id=str(product_id),
        cart_item_id=str(raw.get("id") or raw.get("cart_item_id") or ""),
        title=str(product.get("name") or product.get("title") or ""),
        quantity=quantity,
        price=cents_to_price(final_cents),
        original_price_cents=original_cents,
        final_price_cents=final_cents,
        image=resolve_image_url(_first_image(product), image_base_url),
        stock_quantity=max(stock or 0, 0),
        has_active_discount=bool(raw.get("has_active_discount", product.get("has_active_discount", False))),
    )


def project_cart(
    payload: Any,
    *,
    image_base_url: str = "",
    overlay: Optional[Mapping[str, int]] = None,
) -> List[NormalizedCartLine]:
    """
    `overlay` maps product id -> pending display quantity; it replaces the
    authoritative quantity for rendering only.
    """
    items = payload.get("items") if isinstance(payload, Mapping) else None
    if not isinstance(items, list):
        if items is not None:
            log.warning("cart payload has no readable item list; projecting an empty cart")
        return []

    overlay = overlay or {}
    lines: List[NormalizedCartLine] = []
    seen: Set[str] = set()
    for raw in items:
        line = project_line(raw, image_base_url=image_base_url)
        if line is None:
            log.debug("skipping unreadable cart item")
            continue
        # one line per product id
        if line.id in seen:
            continue
        seen.add(line.id)
        if line.id in overlay:
            line = line.model_copy(update={"quantity": overlay[line.id]})
        lines.append(line)
    return lines
