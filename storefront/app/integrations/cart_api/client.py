from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from storefront.app.core.config import settings
from storefront.app.models.cart import CartIdentity, RemoteCartItem

log = logging.getLogger(__name__)


class CartSourceError(RuntimeError):
    """Raised when the Remote Cart Source did not apply (or answer) an operation."""

    def __init__(self, message: str, *, operation: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        return self.status_code is None or self.status_code >= 500


class CartItemNotFound(CartSourceError):
    """The line (or product) is no longer there. Callers treat this as a no-op."""


class OrderRejected(CartSourceError):
    """The order backend refused to create the order."""


@runtime_checkable
class RemoteCartSource(Protocol):
    """Authoritative cart store. Every call may suspend and may fail with CartSourceError."""

    async def fetch_cart(self, identity: CartIdentity) -> Dict[str, Any]: ...
    async def add_item(self, identity: CartIdentity, product_id: str, quantity: int) -> Optional[RemoteCartItem]: ...
    async def set_quantity(self, identity: CartIdentity, cart_item_id: str, quantity: int) -> Optional[RemoteCartItem]: ...
    async def remove_item(self, identity: CartIdentity, cart_item_id: str) -> None: ...
    async def clear_cart(self, identity: CartIdentity) -> None: ...
    async def create_order(self, identity: CartIdentity, order: Dict[str, Any]) -> Dict[str, Any]: ...


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, CartSourceError) and exc.transient


class HttpCartSource:
    """httpx client for the storefront REST backend (/cart, /cart/items, /orders)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        fetch_attempts: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._fetch_attempts = fetch_attempts or settings.cart_api_fetch_attempts
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.cart_api_base_url).rstrip("/"),
            timeout=timeout or settings.cart_api_timeout_seconds,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _headers(identity: CartIdentity) -> Dict[str, str]:
        if identity.is_authenticated:
            return {"Authorization": f"Bearer {identity.token}"}
        return {"X-Session-Id": identity.guest_id}

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        identity: CartIdentity,
        *,
        json: Optional[Dict[str, Any]] = None,
        not_found: type[CartSourceError] = CartItemNotFound,
        rejected: type[CartSourceError] = CartSourceError,
    ) -> httpx.Response:
        try:
            r = await self._client.request(method, path, json=json, headers=self._headers(identity))
        except httpx.HTTPError as e:
            raise CartSourceError(f"{operation}: {e.__class__.__name__}: {e}", operation=operation) from e

        if r.status_code == 404:
            raise not_found(f"{operation}: not found", operation=operation, status_code=404)
        if 400 <= r.status_code < 500:
            raise rejected(f"{operation}: rejected ({r.status_code})", operation=operation, status_code=r.status_code)
        if r.status_code >= 500:
            raise CartSourceError(
                f"{operation}: upstream error ({r.status_code})", operation=operation, status_code=r.status_code
            )
        return r

    @staticmethod
    def _json(r: httpx.Response, operation: str) -> Any:
        try:
            return r.json()
        except ValueError:
            log.warning("%s returned a non-JSON body (%d bytes)", operation, len(r.content))
            return None

    def _item(self, r: httpx.Response, operation: str) -> Optional[RemoteCartItem]:
        # The write was accepted either way; the refetch carries the truth.
        body = self._json(r, operation)
        try:
            return RemoteCartItem.from_payload(body if isinstance(body, dict) else {})
        except ValidationError as e:
            log.warning("%s echoed an unreadable item (%d errors)", operation, e.error_count())
            return None

    async def fetch_cart(self, identity: CartIdentity) -> Dict[str, Any]:
        # GET is idempotent; transient failures are retried, 4xx are not
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            stop=stop_after_attempt(self._fetch_attempts),
            reraise=True,
        ):
            with attempt:
                r = await self._request("fetch_cart", "GET", "/cart", identity)
        body = self._json(r, "fetch_cart")
        return body if isinstance(body, dict) else {"items": None}

    async def add_item(self, identity: CartIdentity, product_id: str, quantity: int) -> Optional[RemoteCartItem]:
        r = await self._request(
            "add_item", "POST", "/cart/items", identity, json={"product_id": product_id, "quantity": quantity}
        )
        return self._item(r, "add_item")

    async def set_quantity(self, identity: CartIdentity, cart_item_id: str, quantity: int) -> Optional[RemoteCartItem]:
        r = await self._request(
            "set_quantity", "PUT", f"/cart/items/{cart_item_id}", identity, json={"quantity": quantity}
        )
        return self._item(r, "set_quantity")

    async def remove_item(self, identity: CartIdentity, cart_item_id: str) -> None:
        await self._request("remove_item", "DELETE", f"/cart/items/{cart_item_id}", identity)

    async def clear_cart(self, identity: CartIdentity) -> None:
        await self._request("clear_cart", "DELETE", "/cart", identity)

    async def create_order(self, identity: CartIdentity, order: Dict[str, Any]) -> Dict[str, Any]:
        r = await self._request(
            "create_order", "POST", "/orders", identity, json=order, not_found=OrderRejected, rejected=OrderRejected
        )
        body = self._json(r, "create_order")
        return body if isinstance(body, dict) else {}


def build_cart_source() -> RemoteCartSource:
    if settings.cart_source_backend.lower() == "memory":
        from storefront.app.integrations.cart_api.memory import InMemoryCartSource

        return InMemoryCartSource.with_demo_catalog()
    return HttpCartSource()
