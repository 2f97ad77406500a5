# storefront/routes/api_cart.py
from __future__ import annotations

import re
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response

from storefront.app.models.cart import AddItemIn, CartIdentity, QuantityIn
from storefront.app.services.cart_session import CartSession
from storefront.app.services.session_registry import get_registry

router = APIRouter(prefix="/api", tags=["cart"])

_SESSION_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def resolve_identity(
    session_id: Optional[str],
    authorization: Optional[str] = None,
    user_id: Optional[str] = None,
) -> CartIdentity:
    """
    Guest carts are keyed by the X-Cart-Session header (minted when absent).
    A bearer token plus X-User-Id from the auth layer switches to the user's cart.
    """
    if session_id is None or not session_id.strip():
        session_id = uuid.uuid4().hex
    elif not _SESSION_RE.match(session_id):
        raise HTTPException(status_code=400, detail="Invalid X-Cart-Session")

    token = None
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            token = value.strip()
    return CartIdentity(guest_id=session_id, user_id=(user_id or None), token=token)


async def current_session(
    response: Response,
    x_cart_session: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> CartSession:
    identity = resolve_identity(x_cart_session, authorization, x_user_id)
    response.headers["X-Cart-Session"] = identity.guest_id
    return await get_registry().session_for(identity)


def _view(session: CartSession) -> Dict[str, Any]:
    return session.view().model_dump()


@router.get("/cart")
async def get_cart(
    settle: bool = Query(default=False),
    session: CartSession = Depends(current_session),
):
    if settle:
        await session.settle()
    await session.load()
    return _view(session)


@router.post("/cart/items")
async def add_item(body: AddItemIn, session: CartSession = Depends(current_session)):
    product: Dict[str, Any] = {"id": body.product_id}
    if body.stock_quantity is not None:
        product["stock_quantity"] = body.stock_quantity
    ok = await session.add_to_cart(product, body.quantity)
    return {"ok": ok, "cart": _view(session)}


@router.put("/cart/items/{product_id}", status_code=202)
async def update_item(
    product_id: str,
    body: QuantityIn,
    session: CartSession = Depends(current_session),
):
    await session.ensure_loaded()
    line = session.reconciler.find_line(product_id)
    if line is None:
        raise HTTPException(status_code=404, detail=f"Product '{product_id}' is not in the cart")
    shown = session.update_quantity(product_id, body.quantity)
    if shown is None:
        raise HTTPException(status_code=400, detail=f"Product '{product_id}' is out of stock")
    return {"ok": True, "quantity": shown, "cart": _view(session)}


@router.delete("/cart/items/{product_id}")
async def remove_item(product_id: str, session: CartSession = Depends(current_session)):
    await session.ensure_loaded()
    if session.reconciler.find_line(product_id) is None:
        raise HTTPException(status_code=404, detail=f"Product '{product_id}' is not in the cart")
    ok = await session.remove_from_cart(product_id)
    return {"ok": ok, "cart": _view(session)}


@router.delete("/cart")
async def clear_cart(session: CartSession = Depends(current_session)):
    ok = await session.clear_cart()
    return {"ok": ok, "cart": _view(session)}


@router.get("/cart/notices")
async def list_notices(session: CartSession = Depends(current_session)):
    return [n.model_dump() for n in session.list_notices()]


@router.delete("/cart/notices/{notice_id}")
async def dismiss_notice(notice_id: str, session: CartSession = Depends(current_session)):
    if not session.dismiss_notice(notice_id):
        raise HTTPException(status_code=404, detail="Notice not found")
    return {"ok": True}
