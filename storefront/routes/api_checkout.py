# storefront/routes/api_checkout.py
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from storefront.app.models.cart import CheckoutIn
from storefront.app.services.cart_session import CartSession
from storefront.routes.api_cart import current_session

router = APIRouter(prefix="/api", tags=["checkout"])


@router.post("/checkout")
async def checkout(body: CheckoutIn, session: CartSession = Depends(current_session)):
    # pending quantity edits land before the cart is read for the order
    await session.settle()
    await session.ensure_loaded()
    if not session.cart:
        raise HTTPException(status_code=400, detail="Cart is empty")

    order = await session.checkout(body.model_dump(exclude_none=True))
    if order is None:
        return {"ok": False, "order": None, "cart": session.view().model_dump()}
    return {"ok": True, "order": order, "cart": session.view().model_dump()}
