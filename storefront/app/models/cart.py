# storefront/app/models/cart.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


# ----------------------------
# Identity
# ----------------------------

@dataclass(frozen=True)
class CartIdentity:
    """Who the cart belongs to. Authenticated carts are keyed by user, guests by session."""

    guest_id: str
    user_id: Optional[str] = None
    token: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id and self.token)

    @property
    def cart_key(self) -> str:
        if self.is_authenticated:
            return f"user:{self.user_id}"
        return f"guest:{self.guest_id}"


# ----------------------------
# Authoritative (remote) line item
# ----------------------------

class RemoteCartItem(BaseModel):
    """A line item as the Remote Cart Source reports it. Read-only mirror."""
    model_config = ConfigDict(extra="ignore")

    cart_item_id: str
    product_id: str
    quantity: int = Field(ge=1)
    unit_final_price_cents: int = 0
    unit_original_price_cents: int = 0
    stock_quantity: int = Field(default=0, ge=0)
    has_active_discount: bool = False

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> "RemoteCartItem":
        """
        Accepts the backend's item shape:
          {"id", "product_id", "quantity", "product": {"final_price_cents", "price_cents",
           "stock_quantity", "has_active_discount", ...}}
        Item-level unit_* fields win over the nested product snapshot.
        """
        product = raw.get("product") or {}
        if not isinstance(product, Mapping):
            product = {}
        final = raw.get("unit_final_price_cents", product.get("final_price_cents"))
        original = raw.get("unit_original_price_cents", product.get("price_cents", final))
        return cls(
            cart_item_id=str(raw.get("id") or raw.get("cart_item_id") or ""),
            product_id=str(raw.get("product_id") or product.get("id") or ""),
            quantity=raw.get("quantity", 1),
            unit_final_price_cents=final or 0,
            unit_original_price_cents=original or 0,
            stock_quantity=raw.get("stock_quantity", product.get("stock_quantity", 0)) or 0,
            has_active_discount=bool(raw.get("has_active_discount", product.get("has_active_discount", False))),
        )


# ----------------------------
# UI-facing projection
# ----------------------------

class NormalizedCartLine(BaseModel):
    """The only cart structure the UI reads. `id` is the product id."""

    id: str
    cart_item_id: str
    title: str = ""
    quantity: Optional[int] = None
    price: Optional[float] = None          # decimal currency, post-discount
    original_price_cents: Optional[int] = None
    final_price_cents: Optional[int] = None
    image: str = ""
    stock_quantity: int = 0
    has_active_discount: bool = False


class CartTotals(BaseModel):
    subtotal: float = 0.0
    total: float = 0.0


class Notice(BaseModel):
    """Dismissible, non-fatal message surfaced to the shopper."""

    id: str
    kind: str  # network | denied | commit_failed | checkout_failed
    message: str
    product_id: Optional[str] = None
    created_at: float


class CartView(BaseModel):
    cart_key: str
    items: List[NormalizedCartLine] = Field(default_factory=list)
    subtotal: float = 0.0
    total: float = 0.0
    currency: str = "DZD"
    is_loading: bool = False
    is_error: bool = False
    in_flight: Dict[str, bool] = Field(default_factory=dict)
    pending: Dict[str, int] = Field(default_factory=dict)
    notices: List[Notice] = Field(default_factory=list)


# ----------------------------
# Request bodies
# ----------------------------

class AddItemIn(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    stock_quantity: Optional[int] = Field(default=None, ge=0)


class QuantityIn(BaseModel):
    quantity: int


class CheckoutIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    delivery_service_id: Optional[str] = None
    shipping_address: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
