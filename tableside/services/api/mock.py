"""
Mock Ordering API Implementation

In-memory server of record implementing the gateway contract without any
network. Used in development mode (ENV_MODE=development) and by the
sandbox server to:
    - Run a complete table session locally
    - Simulate staff-side item progression and payment settlement
    - Exercise failure paths deterministically in tests

Behavior:
    - Optional simulated latency and random transient failures
    - fail_next() queues a specific error for the next call of an operation
    - block() holds an operation until the returned event is set
    - Item status changes made through the staff helpers are broadcast to
      registered event listeners (the realtime hub / Socket.IO server)
    - Every returned model is a deep copy, never live server state
"""

import asyncio
import base64
import logging
import random
import uuid
from collections import Counter
from typing import Awaitable, Callable, Optional

from tableside.core.exceptions import (
    ApiError,
    OrderingError,
    PaymentNotSettledError,
    SessionExpiredError,
    TransientNetworkError,
    VALIDATION_ERROR_CODE,
)
from tableside.schemas import (
    AddCartItemRequest,
    Bill,
    BillItem,
    BillSummary,
    Cart,
    CartItem,
    CUSTOMER_CANCELLABLE_STATUSES,
    ITEM_STATUS_TRANSITIONS,
    ItemStatus,
    Order,
    OrderItem,
    OrderPage,
    OrderStatus,
    PaymentQR,
    PaymentStatus,
    TokenGrant,
    utcnow,
)
from tableside.services.api.base import BaseOrderingAPI

logger = logging.getLogger(__name__)

# Error codes of the order service
CART_EMPTY_CODE = 4014
ORDER_NOT_FOUND_CODE = 4001
CART_ITEM_NOT_FOUND_CODE = 4102
INVALID_STATUS_TRANSITION_CODE = 4016

# Item statuses that are broadcast to the order room
STATUS_BROADCAST_EVENTS = {
    ItemStatus.ACCEPTED: "order.items.accepted",
    ItemStatus.PREPARING: "order.items.preparing",
    ItemStatus.READY: "order.items.ready",
    ItemStatus.SERVED: "order.items.served",
    ItemStatus.REJECTED: "order.items.rejected",
}

EventListener = Callable[[str, str, dict], Awaitable[None]]


class MockOrderingAPI(BaseOrderingAPI):
    """
    Mock implementation of the ordering API.

    Attributes:
        failure_rate: Probability of a simulated transient failure (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        refresh_cookie_valid: Whether refresh_session() succeeds
        refresh_delay: Extra seconds refresh_session() takes
        calls: Number of calls per operation name

    Example:
        >>> api = MockOrderingAPI()
        >>> await api.add_cart_item("t1", "table-1", AddCartItemRequest(menu_item_id="pho"))
        >>> order = await api.checkout_cart("t1", "table-1")
        >>> await api.set_items_status(order.id, [order.items[0].id], ItemStatus.ACCEPTED)
    """

    def __init__(
        self,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
        tax_rate: float = 0.1,
        currency: str = "VND",
        payment_base_url: str = "https://pay.example.com/checkout",
    ):
        """
        Initialize the mock backend.

        Args:
            failure_rate: Probability of a transient failure per call
            min_latency: Minimum response time in seconds
            max_latency: Maximum response time in seconds
            tax_rate: Tax applied to bills
            currency: Currency of all amounts
            payment_base_url: Base of the fallback payment link
        """
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.tax_rate = tax_rate
        self.currency = currency
        self.payment_base_url = payment_base_url.rstrip("/")

        self.refresh_cookie_valid = False
        self.refresh_delay = 0.0
        self.calls: Counter = Counter()

        self._carts: dict[tuple[str, str], dict[str, CartItem]] = {}
        self._orders: dict[str, Order] = {}
        self._forced_failures: dict[str, list[OrderingError]] = {}
        self._gates: dict[str, asyncio.Event] = {}
        self._listeners: list[EventListener] = []

        logger.info(
            f"MockOrderingAPI initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    # =========================================================================
    # SIMULATION CONTROLS
    # =========================================================================

    def fail_next(self, operation: str, error: Optional[OrderingError] = None) -> None:
        """Make the next call of `operation` raise `error` (default: network failure)."""
        if error is None:
            error = TransientNetworkError(f"Mock: simulated network failure on {operation}")
        self._forced_failures.setdefault(operation, []).append(error)

    def block(self, operation: str) -> asyncio.Event:
        """Hold every call of `operation` until the returned event is set."""
        gate = asyncio.Event()
        self._gates[operation] = gate
        return gate

    def unblock(self, operation: str) -> None:
        gate = self._gates.pop(operation, None)
        if gate is not None:
            gate.set()

    def add_event_listener(self, listener: EventListener) -> None:
        """Register a coroutine called with (event, order_id, payload)."""
        self._listeners.append(listener)

    async def _simulate_latency(self) -> None:
        if self.max_latency <= 0:
            return
        await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))

    def _should_fail(self) -> bool:
        return self.failure_rate > 0 and random.random() < self.failure_rate

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        gate = self._gates.get(operation)
        if gate is not None:
            await gate.wait()
        await self._simulate_latency()

        queued = self._forced_failures.get(operation)
        if queued:
            error = queued.pop(0)
            logger.debug(f"Mock: forced failure on {operation} - {error.message}")
            raise error
        if self._should_fail():
            logger.debug(f"Mock: random failure on {operation}")
            raise TransientNetworkError(f"Mock: simulated network failure on {operation}")

    async def _publish(self, event: str, order: Order, payload: dict) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event, order.id, payload)
            except Exception:
                logger.exception(f"Mock: event listener failed for {event}")

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _cart(self, tenant_id: str, table_id: str) -> dict[str, CartItem]:
        return self._carts.setdefault((tenant_id, table_id), {})

    def _order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise ApiError("Order not found", status_code=404, code=ORDER_NOT_FOUND_CODE)
        return order

    @staticmethod
    def _recalculate(order: Order) -> None:
        billable = [
            item for item in order.items
            if item.status not in (ItemStatus.CANCELLED, ItemStatus.REJECTED)
        ]
        order.total = round(
            sum(
                (item.unit_price + sum(m.price for m in item.modifiers)) * item.quantity
                for item in billable
            ),
            2,
        )
        if order.status in (OrderStatus.CANCELLED, OrderStatus.COMPLETED):
            return
        if billable and all(item.status == ItemStatus.SERVED for item in billable):
            order.status = (
                OrderStatus.COMPLETED
                if order.payment_status == PaymentStatus.PAID
                else OrderStatus.SERVED
            )
        elif any(item.status != ItemStatus.PENDING for item in order.items):
            order.status = OrderStatus.IN_PROGRESS

    def _open_order_for(self, tenant_id: str, table_id: str) -> Optional[Order]:
        for order in sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True):
            if (
                order.tenant_id == tenant_id
                and order.table_id == table_id
                and order.payment_status != PaymentStatus.PAID
                and order.status not in (OrderStatus.CANCELLED, OrderStatus.COMPLETED)
            ):
                return order
        return None

    # =========================================================================
    # CART
    # =========================================================================

    async def get_cart(self, tenant_id: str, table_id: str) -> Cart:
        await self._enter("get_cart")
        lines = self._cart(tenant_id, table_id)
        return Cart(items=[line.model_copy(deep=True) for line in lines.values()])

    async def add_cart_item(
        self,
        tenant_id: str,
        table_id: str,
        item: AddCartItemRequest,
    ) -> None:
        await self._enter("add_cart_item")
        lines = self._cart(tenant_id, table_id)
        key = item.item_key

        existing = lines.get(key)
        if existing is not None:
            existing.quantity += item.quantity
            existing.total = round(existing.unit_total * existing.quantity, 2)
            logger.debug(f"Mock: cart line {key} now x{existing.quantity}")
            return

        line = CartItem(
            item_key=key,
            menu_item_id=item.menu_item_id,
            name=item.name,
            price=item.price,
            quantity=item.quantity,
            modifiers=[m.model_copy() for m in item.modifiers],
            notes=item.notes,
        )
        line.total = round(line.unit_total * line.quantity, 2)
        lines[key] = line
        logger.debug(f"Mock: cart line {key} added for {tenant_id}/{table_id}")

    async def update_cart_item(
        self,
        tenant_id: str,
        table_id: str,
        item_key: str,
        quantity: int,
    ) -> None:
        await self._enter("update_cart_item")
        if quantity < 1:
            raise ApiError("Invalid cart quantity", status_code=400, code=VALIDATION_ERROR_CODE)
        line = self._cart(tenant_id, table_id).get(item_key)
        if line is None:
            raise ApiError("Cart item not found", status_code=404, code=CART_ITEM_NOT_FOUND_CODE)
        line.quantity = quantity
        line.total = round(line.unit_total * quantity, 2)

    async def remove_cart_item(self, tenant_id: str, table_id: str, item_key: str) -> None:
        await self._enter("remove_cart_item")
        lines = self._cart(tenant_id, table_id)
        if item_key not in lines:
            raise ApiError("Cart item not found", status_code=404, code=CART_ITEM_NOT_FOUND_CODE)
        del lines[item_key]

    async def clear_cart(self, tenant_id: str, table_id: str) -> None:
        await self._enter("clear_cart")
        self._carts.pop((tenant_id, table_id), None)

    async def checkout_cart(
        self,
        tenant_id: str,
        table_id: str,
        notes: Optional[str] = None,
    ) -> Order:
        await self._enter("checkout_cart")
        lines = self._cart(tenant_id, table_id)
        if not lines:
            raise ApiError(
                "Order must contain at least one item",
                status_code=400,
                code=CART_EMPTY_CODE,
            )

        created_at = utcnow()
        new_items = [
            OrderItem(
                id=str(uuid.uuid4()),
                menu_item_id=line.menu_item_id,
                name=line.name,
                quantity=line.quantity,
                unit_price=line.price,
                modifiers=[m.model_copy() for m in line.modifiers],
                notes=line.notes or None,
                status=ItemStatus.PENDING,
                created_at=created_at,
            )
            for line in lines.values()
        ]

        order = self._open_order_for(tenant_id, table_id)
        if order is None:
            order = Order(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                table_id=table_id,
                status=OrderStatus.PENDING,
                created_at=created_at,
            )
            self._orders[order.id] = order
            logger.info(f"Mock: order {order.id} created for {tenant_id}/{table_id}")
        else:
            logger.info(f"Mock: {len(new_items)} item(s) appended to order {order.id}")

        order.items.extend(new_items)
        self._recalculate(order)
        self._carts.pop((tenant_id, table_id), None)
        return order.model_copy(deep=True)

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
        await self._enter("list_orders")
        matching = [
            order for order in self._orders.values()
            if order.tenant_id == tenant_id
            and order.table_id == table_id
            and (payment_status is None or order.payment_status == payment_status)
        ]
        matching.sort(key=lambda o: o.created_at, reverse=True)
        start = max(page - 1, 0) * limit
        return OrderPage(
            orders=[o.model_copy(deep=True) for o in matching[start:start + limit]],
            total=len(matching),
            page=page,
            limit=limit,
        )

    async def get_order(self, order_id: str) -> Order:
        await self._enter("get_order")
        return self._order(order_id).model_copy(deep=True)

    async def cancel_order(self, order_id: str, reason: str) -> Order:
        await self._enter("cancel_order")
        if not reason or not reason.strip():
            raise ApiError(
                "Cancellation reason is required",
                status_code=400,
                code=VALIDATION_ERROR_CODE,
            )
        order = self._order(order_id)
        if order.payment_status == PaymentStatus.PAID:
            raise ApiError(
                "Paid orders cannot be cancelled",
                status_code=400,
                code=INVALID_STATUS_TRANSITION_CODE,
            )
        for item in order.items:
            if not item.is_terminal:
                item.status = ItemStatus.CANCELLED
        order.status = OrderStatus.CANCELLED
        self._recalculate(order)
        logger.info(f"Mock: order {order_id} cancelled ({reason.strip()})")
        return order.model_copy(deep=True)

    async def update_items_status(
        self,
        order_id: str,
        item_ids: list[str],
        status: ItemStatus,
    ) -> Order:
        """Customer-side status request: only CANCELLED of PENDING/ACCEPTED items."""
        await self._enter("update_items_status")
        order = self._order(order_id)
        if status != ItemStatus.CANCELLED:
            raise ApiError(
                f"Customers may not set items to {status.value}",
                status_code=403,
                code=INVALID_STATUS_TRANSITION_CODE,
            )
        for item_id in item_ids:
            item = order.find_item(item_id)
            if item is None or item.status not in CUSTOMER_CANCELLABLE_STATUSES:
                raise ApiError(
                    "Invalid status transition",
                    status_code=400,
                    code=INVALID_STATUS_TRANSITION_CODE,
                )
        for item_id in item_ids:
            order.find_item(item_id).status = ItemStatus.CANCELLED
        self._recalculate(order)
        return order.model_copy(deep=True)

    # =========================================================================
    # STAFF SIDE (simulation only)
    # =========================================================================

    async def set_items_status(
        self,
        order_id: str,
        item_ids: list[str],
        status: ItemStatus,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Apply a kitchen/waiter status change and broadcast it.

        Transitions follow the order service rules; an invalid transition
        raises ApiError and changes nothing.
        """
        order = self._order(order_id)
        items = []
        for item_id in item_ids:
            item = order.find_item(item_id)
            if item is None:
                raise ApiError("Order item not found", status_code=404, code=4015)
            if status not in ITEM_STATUS_TRANSITIONS[item.status]:
                raise ApiError(
                    f"Invalid status transition {item.status.value} -> {status.value}",
                    status_code=400,
                    code=INVALID_STATUS_TRANSITION_CODE,
                )
            items.append(item)

        for item in items:
            item.status = status
            if status == ItemStatus.REJECTED:
                item.rejection_reason = reason
        self._recalculate(order)
        logger.info(f"Mock: {len(items)} item(s) of {order_id} -> {status.value}")

        event = STATUS_BROADCAST_EVENTS.get(status)
        if event is not None:
            await self._publish(
                event,
                order,
                {
                    "orderId": order.id,
                    "tableId": order.table_id,
                    "itemIds": list(item_ids),
                    "status": status.value,
                },
            )
        return order.model_copy(deep=True)

    async def settle_payment(self, order_id: str) -> Order:
        """Mark an order as paid, as the payment provider webhook would."""
        order = self._order(order_id)
        order.payment_status = PaymentStatus.PAID
        self._recalculate(order)
        logger.info(f"Mock: payment settled for order {order_id}")
        return order.model_copy(deep=True)

    # =========================================================================
    # PAYMENT
    # =========================================================================

    async def create_payment_qr(self, tenant_id: str, order_id: str) -> PaymentQR:
        await self._enter("create_payment_qr")
        order = self._order(order_id)
        if order.tenant_id != tenant_id:
            raise ApiError("Order not found", status_code=404, code=ORDER_NOT_FOUND_CODE)

        summary = self._summarize(order)
        payment_url = f"{self.payment_base_url}/{order_id}"
        qr_code = base64.b64encode(payment_url.encode("utf-8")).decode("ascii")
        return PaymentQR(
            qr_code=qr_code,
            amount=summary.total,
            currency=self.currency,
            payment_url=payment_url,
            order_id=order_id,
        )

    def _summarize(self, order: Order) -> BillSummary:
        lines = self._bill_items(order)
        subtotal = round(sum(line.subtotal for line in lines), 2)
        modifiers_total = round(sum(line.modifiers_total for line in lines), 2)
        tax = round((subtotal + modifiers_total) * self.tax_rate, 2)
        return BillSummary(
            subtotal=subtotal,
            modifiers_total=modifiers_total,
            tax=tax,
            discount=0.0,
            total=round(subtotal + modifiers_total + tax, 2),
            currency=self.currency,
            total_items=len(lines),
            total_quantity=sum(line.quantity for line in lines),
        )

    def _bill_items(self, order: Order) -> list[BillItem]:
        lines = []
        for item in order.items:
            if item.status in (ItemStatus.CANCELLED, ItemStatus.REJECTED):
                continue
            subtotal = round(item.unit_price * item.quantity, 2)
            modifiers_total = round(sum(m.price for m in item.modifiers) * item.quantity, 2)
            lines.append(
                BillItem(
                    id=item.id,
                    menu_item_id=item.menu_item_id,
                    name=item.name,
                    unit_price=item.unit_price,
                    quantity=item.quantity,
                    subtotal=subtotal,
                    modifiers=[m.model_copy() for m in item.modifiers],
                    modifiers_total=modifiers_total,
                    total=round(subtotal + modifiers_total, 2),
                    status=item.status.value,
                )
            )
        return lines

    async def generate_bill(self, tenant_id: str, order_id: str) -> Bill:
        await self._enter("generate_bill")
        order = self._order(order_id)
        if order.payment_status != PaymentStatus.PAID:
            raise PaymentNotSettledError()
        return Bill(
            items=self._bill_items(order),
            summary=self._summarize(order),
            bill_number=f"BILL-{order_id[:8].upper()}",
        )

    # =========================================================================
    # IDENTITY
    # =========================================================================

    async def refresh_session(self) -> TokenGrant:
        await self._enter("refresh_session")
        if self.refresh_delay > 0:
            await asyncio.sleep(self.refresh_delay)
        if not self.refresh_cookie_valid:
            raise SessionExpiredError("Refresh token missing or expired")
        return TokenGrant(
            access_token=f"tok_mock_{uuid.uuid4().hex[:24]}",
            user_id="user-mock",
            username="mock.customer",
            roles=["CUSTOMER"],
        )

    async def health_check(self) -> bool:
        """Mock health check always returns True."""
        logger.debug("Mock: Health check passed")
        return True
