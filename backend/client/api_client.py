"""
Cart API client - the engine's view of the server cart endpoints.

Every failure (transport error, timeout, non-2xx, unreadable body) surfaces as
``CartSyncError`` so the engine has exactly one thing to roll back on.
"""

from typing import Any, Optional

import httpx
import pydantic
import structlog

from client.session import SessionContext
from errors import CartSyncError
from schemas.carts import Cart, SyncLine

logger = structlog.get_logger().bind(component="cart_api_client")


class CartApiClient:
    """Thin async wrapper over ``/api/cart``"""

    def __init__(
        self,
        base_url: str,
        session: Optional[SessionContext] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session = session or SessionContext.guest()
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def close(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Cart:
        try:
            response = await self._client.request(
                method, path, json=json, headers=self.session.auth_headers()
            )
        except httpx.TimeoutException as e:
            logger.warning("cart_request_timeout", method=method, path=path)
            raise CartSyncError(f"Cart request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            logger.warning("cart_request_failed", method=method, path=path, error=str(e))
            raise CartSyncError(f"Cart request failed: {e}") from e

        body = self._body(response)
        if not response.is_success:
            message = body.get("error") if isinstance(body, dict) else None
            raise CartSyncError(message or f"HTTP {response.status_code}", response.status_code)
        try:
            return Cart.model_validate(body)
        except pydantic.ValidationError as e:
            logger.warning("cart_response_unreadable", method=method, path=path, error=str(e))
            raise CartSyncError(f"Unreadable cart response: {method} {path}", 502) from e

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"error": response.text}

    async def get_cart(self) -> Cart:
        return await self._request("GET", "/api/cart")

    async def add(self, product_id: str, quantity: int = 1) -> Cart:
        return await self._request("POST", "/api/cart/add", {"productId": product_id, "quantity": quantity})

    async def update(self, product_id: str, quantity: int) -> Cart:
        return await self._request("PUT", f"/api/cart/update/{product_id}", {"quantity": quantity})

    async def remove(self, product_id: str) -> Cart:
        return await self._request("DELETE", f"/api/cart/remove/{product_id}")

    async def clear(self) -> Cart:
        return await self._request("DELETE", "/api/cart/clear")

    async def sync(self, lines: list[SyncLine]) -> Cart:
        items = [line.model_dump(by_alias=True) for line in lines]
        return await self._request("POST", "/api/cart/sync", {"items": items})
