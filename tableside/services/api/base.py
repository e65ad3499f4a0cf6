"""
Ordering API Abstract Base Class

Defines the interface contract for the gateway REST calls the engine
makes. Both MockOrderingAPI (in-memory server of record) and
HttpOrderingAPI (httpx against the gateway) implement these methods, so
the synchronization components never know which one they talk to.

Design Pattern: Strategy Pattern
    - Development mode runs entirely in-process against the mock
    - Staging/production talk to the real gateway
    - Tests drive the mock deterministically (failure injection, staff actions)

Error contract:
    Implementations raise tableside.core.exceptions.OrderingError
    subclasses and nothing else.
"""

from abc import ABC, abstractmethod
from typing import Optional

from tableside.schemas import (
    AddCartItemRequest,
    Bill,
    Cart,
    ItemStatus,
    Order,
    OrderPage,
    PaymentQR,
    PaymentStatus,
    TokenGrant,
)


class BaseOrderingAPI(ABC):
    """
    Abstract base class for ordering API clients.

    Example:
        >>> api = get_ordering_api()
        >>> cart = await api.get_cart("tenant-1", "table-4")
        >>> print(cart.total_price)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the API provider.

        Returns:
            str: Provider name (e.g., "mock", "http")
        """
        pass

    # --------------------------------------------------------------------- cart

    @abstractmethod
    async def get_cart(self, tenant_id: str, table_id: str) -> Cart:
        """Fetch the table cart. A missing cart is an empty cart."""
        pass

    @abstractmethod
    async def add_cart_item(
        self,
        tenant_id: str,
        table_id: str,
        item: AddCartItemRequest,
    ) -> None:
        """
        Add a line to the table cart.

        Lines with the same item key accumulate quantity on the server.
        """
        pass

    @abstractmethod
    async def update_cart_item(
        self,
        tenant_id: str,
        table_id: str,
        item_key: str,
        quantity: int,
    ) -> None:
        """Set the quantity of an existing cart line."""
        pass

    @abstractmethod
    async def remove_cart_item(self, tenant_id: str, table_id: str, item_key: str) -> None:
        """Delete a cart line."""
        pass

    @abstractmethod
    async def clear_cart(self, tenant_id: str, table_id: str) -> None:
        """Delete every line of the table cart."""
        pass

    @abstractmethod
    async def checkout_cart(
        self,
        tenant_id: str,
        table_id: str,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Turn the cart into order items.

        The server appends to the table's open (unpaid) order when there is
        one, otherwise it creates a new order. The cart is emptied.
        """
        pass

    # ------------------------------------------------------------------- orders

    @abstractmethod
    async def list_orders(
        self,
        tenant_id: str,
        table_id: str,
        payment_status: Optional[PaymentStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> OrderPage:
        """List a table's orders, newest first."""
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Order:
        """Fetch a single order."""
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str, reason: str) -> Order:
        """Request cancellation of a whole order (reason required)."""
        pass

    @abstractmethod
    async def update_items_status(
        self,
        order_id: str,
        item_ids: list[str],
        status: ItemStatus,
    ) -> Order:
        """Request a status change for some items of an order."""
        pass

    # ------------------------------------------------------------------ payment

    @abstractmethod
    async def create_payment_qr(self, tenant_id: str, order_id: str) -> PaymentQR:
        """Generate the payment QR code and fallback link for an order."""
        pass

    @abstractmethod
    async def generate_bill(self, tenant_id: str, order_id: str) -> Bill:
        """
        Fetch the receipt of a paid order.

        Raises:
            PaymentNotSettledError: The provider has not settled yet
        """
        pass

    # ----------------------------------------------------------------- identity

    @abstractmethod
    async def refresh_session(self) -> TokenGrant:
        """
        Exchange the refresh cookie for a new access token.

        Raises:
            SessionExpiredError: No valid refresh cookie
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the gateway.

        Returns:
            bool: True if the API is reachable and operational
        """
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        return None
