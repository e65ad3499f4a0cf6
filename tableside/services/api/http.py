"""
HTTP Ordering API Implementation

Production implementation talking to the REST gateway with httpx.
Used when ENV_MODE=production or ENV_MODE=staging.

Every response is wrapped in the gateway envelope {code, message, data}
where code 1000 means success. Translation to the error taxonomy:

    no response / timeout        -> TransientNetworkError
    HTTP 401 or code 1002        -> SessionExpiredError
    code 4017                    -> PaymentNotSettledError
    any other non-success        -> ApiError(status_code, code)
    payload failing validation   -> ApiError (code 9001)

The session refresh relies on the refresh cookie, so one AsyncClient (and
its cookie jar) is kept for the lifetime of the instance.
"""

import logging
from typing import Any, Callable, Optional

import httpx
from pydantic import BaseModel, ValidationError

from tableside.core.exceptions import (
    ApiError,
    ORDER_NOT_PAID_CODE,
    PaymentNotSettledError,
    SERVER_ERROR_CODE,
    SESSION_EXPIRED_CODE,
    SessionExpiredError,
    SUCCESS_CODE,
    TransientNetworkError,
)
from tableside.schemas import (
    AddCartItemRequest,
    Bill,
    Cart,
    CheckoutRequest,
    ItemStatus,
    Order,
    OrderPage,
    PaymentQR,
    PaymentRequest,
    PaymentStatus,
    TokenGrant,
)
from tableside.services.api.base import BaseOrderingAPI

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]


class HttpOrderingAPI(BaseOrderingAPI):
    """
    REST gateway client.

    Args:
        base_url: Gateway base URL including the version prefix
        api_key: Sent as x-api-key on every request
        timeout: Timeout for ordinary calls in seconds
        token_provider: Returns the current bearer token (or None for guests)
        client: Pre-built AsyncClient (tests pass one with an ASGI transport)

    Example:
        >>> api = HttpOrderingAPI("http://localhost:8888/api/v1", "key", 30.0)
        >>> page = await api.list_orders("tenant-1", "table-4")
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        token_provider: Optional[TokenProvider] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._token_provider = token_provider
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

        logger.info(f"HttpOrderingAPI initialized (base_url={self._base_url})")

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "http"

    def set_token_provider(self, token_provider: Optional[TokenProvider]) -> None:
        self._token_provider = token_provider

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        token = self._token_provider() if self._token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request and return the envelope's data."""
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                params={k: v for k, v in (params or {}).items() if v is not None},
                json=json,
                headers=self._headers(),
                timeout=timeout or self._timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"HTTP: {method} {path} timed out")
            raise TransientNetworkError(f"Request timed out: {method} {path}") from e
        except httpx.RequestError as e:
            logger.warning(f"HTTP: {method} {path} failed - {e}")
            raise TransientNetworkError(f"Network error: {e}") from e

        return self._unwrap(method, path, response)

    def _unwrap(self, method: str, path: str, response: httpx.Response) -> Any:
        try:
            body = response.json()
        except ValueError:
            body = None

        code = None
        message = response.reason_phrase or "Request failed"
        data = body
        if isinstance(body, dict) and "code" in body:
            code = body.get("code")
            message = body.get("message") or message
            data = body.get("data")

        if response.status_code == 401 or code == SESSION_EXPIRED_CODE:
            raise SessionExpiredError(message)
        if code == ORDER_NOT_PAID_CODE:
            raise PaymentNotSettledError(message)
        if response.status_code >= 400 or (code is not None and code != SUCCESS_CODE):
            logger.debug(
                f"HTTP: {method} {path} -> {response.status_code} (code={code}) {message}"
            )
            raise ApiError(message, status_code=response.status_code, code=code)
        return data

    @staticmethod
    def _parse(model: type[BaseModel], data: Any) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.error(f"HTTP: malformed {model.__name__} payload - {e}")
            raise ApiError(
                f"Malformed {model.__name__} payload",
                status_code=502,
                code=SERVER_ERROR_CODE,
            ) from e

    @staticmethod
    def _table_path(tenant_id: str, table_id: str) -> str:
        return f"/tenants/{tenant_id}/tables/{table_id}"

    # =========================================================================
    # CART
    # =========================================================================

    async def get_cart(self, tenant_id: str, table_id: str) -> Cart:
        try:
            data = await self._request("GET", f"{self._table_path(tenant_id, table_id)}/cart")
        except ApiError as e:
            if e.status_code == 404:
                return Cart()
            raise
        if not data:
            return Cart()
        return self._parse(Cart, data)

    async def add_cart_item(
        self,
        tenant_id: str,
        table_id: str,
        item: AddCartItemRequest,
    ) -> None:
        await self._request(
            "POST",
            f"{self._table_path(tenant_id, table_id)}/cart/items",
            json=item.to_wire(),
        )

    async def update_cart_item(
        self,
        tenant_id: str,
        table_id: str,
        item_key: str,
        quantity: int,
    ) -> None:
        await self._request(
            "PATCH",
            f"{self._table_path(tenant_id, table_id)}/cart/items/{item_key}",
            json={"quantity": quantity},
        )

    async def remove_cart_item(self, tenant_id: str, table_id: str, item_key: str) -> None:
        await self._request(
            "DELETE",
            f"{self._table_path(tenant_id, table_id)}/cart/items/{item_key}",
        )

    async def clear_cart(self, tenant_id: str, table_id: str) -> None:
        await self._request("DELETE", f"{self._table_path(tenant_id, table_id)}/cart")

    async def checkout_cart(
        self,
        tenant_id: str,
        table_id: str,
        notes: Optional[str] = None,
    ) -> Order:
        data = await self._request(
            "POST",
            f"{self._table_path(tenant_id, table_id)}/cart/checkout",
            json=CheckoutRequest(notes=notes).to_wire(),
        )
        return self._parse(Order, data)

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def list_orders(
        self,
        tenant_id: str,
        table_id: str,
        payment_status: Optional[PaymentStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> OrderPage:
        data = await self._request(
            "GET",
            "/orders",
            params={
                "tenantId": tenant_id,
                "tableId": table_id,
                "paymentStatus": payment_status.value if payment_status else None,
                "page": page,
                "limit": limit,
            },
        )
        if isinstance(data, list):
            raw_orders, meta = data, {}
        elif isinstance(data, dict):
            raw_orders, meta = data.get("orders") or [], data
        else:
            raw_orders, meta = [], {}

        # One malformed order must not hide the rest of the table's orders
        orders = []
        for raw in raw_orders:
            try:
                orders.append(Order.model_validate(raw))
            except ValidationError as e:
                order_id = raw.get("id") if isinstance(raw, dict) else None
                logger.warning(f"HTTP: skipping malformed order {order_id} - {e}")

        return OrderPage(
            orders=orders,
            total=meta.get("total", len(orders)),
            page=meta.get("page", page),
            limit=meta.get("limit", limit),
        )

    async def get_order(self, order_id: str) -> Order:
        data = await self._request("GET", f"/orders/{order_id}")
        return self._parse(Order, data)

    async def cancel_order(self, order_id: str, reason: str) -> Order:
        data = await self._request(
            "POST",
            f"/orders/{order_id}/cancel",
            json={"reason": reason},
        )
        return self._parse(Order, data)

    async def update_items_status(
        self,
        order_id: str,
        item_ids: list[str],
        status: ItemStatus,
    ) -> Order:
        data = await self._request(
            "POST",
            f"/orders/{order_id}/items/status",
            json={"itemIds": list(item_ids), "status": status.value},
        )
        return self._parse(Order, data)

    # =========================================================================
    # PAYMENT
    # =========================================================================

    async def create_payment_qr(self, tenant_id: str, order_id: str) -> PaymentQR:
        data = await self._request(
            "POST",
            "/payment/qr",
            json=PaymentRequest(tenant_id=tenant_id, order_id=order_id).to_wire(),
        )
        return self._parse(PaymentQR, data)

    async def generate_bill(self, tenant_id: str, order_id: str) -> Bill:
        data = await self._request(
            "POST",
            "/payment/bill",
            json=PaymentRequest(tenant_id=tenant_id, order_id=order_id).to_wire(),
        )
        return self._parse(Bill, data)

    # =========================================================================
    # IDENTITY
    # =========================================================================

    async def refresh_session(self) -> TokenGrant:
        data = await self._request("GET", "/identity/auth/refresh")
        return self._parse(TokenGrant, data)

    async def health_check(self) -> bool:
        """Check gateway reachability via the health endpoint."""
        try:
            await self._request("GET", "/health")
            return True
        except (TransientNetworkError, ApiError) as e:
            logger.error(f"HTTP: Health check failed - {e}")
            return False

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
