"""
Order Tracker

Fetch target of the RefreshScheduler and owner of the table's order list.

Each fetch lists the table's orders, derives a DisplayOrder per order and
keeps the device's active-order reference current: the newest unpaid,
not cancelled, not completed order is remembered; once it is paid or
cancelled it is forgotten.

Customer-side mutations (whole-order cancellation, item cancellation) are
validated locally before any request and reported as OrderActionResult.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from tableside.core.events import EventBus, Handler, Subscription
from tableside.core.exceptions import (
    LocalValidationError,
    OrderingError,
    TableNotBoundError,
)
from tableside.models import DisplayOrder, Notice, NoticeLevel, Notifier, OrderBatch
from tableside.schemas import (
    CancelOrderRequest,
    CUSTOMER_CANCELLABLE_STATUSES,
    DisplayStatus,
    ItemStatus,
    Order,
    OrderStatus,
    PaymentStatus,
)
from tableside.services.device_store import DeviceStore
from tableside.services.order_status import aggregate_order, group_into_batches

logger = logging.getLogger(__name__)

ORDERS_UPDATED = "orders.updated"


@dataclass
class OrderActionResult:
    """Outcome of a customer-side order mutation."""
    success: bool
    order: Optional[Order] = None
    error_message: Optional[str] = None
    error_code: Optional[int] = None


class OrderTracker:
    """
    Client-local view of a table's orders.

    Args:
        api: Ordering API
        store: Device store holding the active order reference
        page_size: Orders requested per fetch
        notifier: Receives user-facing notices
    """

    def __init__(
        self,
        api,
        store: Optional[DeviceStore] = None,
        page_size: int = 20,
        notifier: Optional[Notifier] = None,
    ):
        self.api = api
        self.store = store
        self.page_size = page_size
        self.notifier = notifier
        self.bus: EventBus[str] = EventBus({ORDERS_UPDATED})

        self.tenant_id: Optional[str] = None
        self.table_id: Optional[str] = None
        self.orders: list[Order] = []
        self.displays: dict[str, DisplayOrder] = {}
        self.active_order_id: Optional[str] = None
        self.last_error: Optional[OrderingError] = None

    def bind(self, tenant_id: str, table_id: str) -> None:
        if (tenant_id, table_id) != (self.tenant_id, self.table_id):
            self.orders = []
            self.displays = {}
            self.active_order_id = None
        self.tenant_id = tenant_id
        self.table_id = table_id

    def subscribe(self, handler: Handler) -> Subscription:
        return self.bus.subscribe(ORDERS_UPDATED, handler)

    # =========================================================================
    # FETCH
    # =========================================================================

    async def fetch(self) -> list[Order]:
        """
        List the table's orders and refresh derived state.

        Raises:
            OrderingError: The list could not be fetched (local state kept)
        """
        if not self.tenant_id or not self.table_id:
            raise TableNotBoundError()

        try:
            page = await self.api.list_orders(
                self.tenant_id, self.table_id, limit=self.page_size
            )
        except OrderingError as e:
            self.last_error = e
            raise

        self.last_error = None
        self._apply(sorted(page.orders, key=lambda o: o.created_at, reverse=True))
        logger.debug(f"Orders: fetched {len(self.orders)} order(s) for table {self.table_id}")
        return self.orders

    def _apply(self, orders: list[Order]) -> None:
        self.orders = orders
        self.displays = {order.id: aggregate_order(order) for order in orders}
        self._track_active()
        self.bus.publish(ORDERS_UPDATED, self.orders)

    def _replace(self, order: Order) -> None:
        orders = [order if o.id == order.id else o for o in self.orders]
        if not any(o.id == order.id for o in self.orders):
            orders.insert(0, order)
        self._apply(orders)

    def _is_open(self, order: Order) -> bool:
        if order.payment_status == PaymentStatus.PAID:
            return False
        if order.status in (OrderStatus.CANCELLED, OrderStatus.COMPLETED):
            return False
        display = self.displays.get(order.id)
        return display is None or display.status not in (
            DisplayStatus.CANCELLED,
            DisplayStatus.COMPLETED,
        )

    def _track_active(self) -> None:
        candidate = next((o for o in self.orders if self._is_open(o)), None)

        if candidate is not None:
            if candidate.id != self.active_order_id and self.store is not None:
                self.store.remember_active_order(candidate.id, self.table_id)
            if candidate.id != self.active_order_id:
                logger.info(f"Orders: active order is now {candidate.id}")
            self.active_order_id = candidate.id
            return

        remembered = self.active_order_id
        if remembered is None and self.store is not None:
            remembered = self.store.get_active_order(self.table_id)
        if remembered is not None and any(o.id == remembered for o in self.orders):
            if self.store is not None:
                self.store.forget_active_order(remembered)
            logger.info(f"Orders: order {remembered} settled, no active order")
        self.active_order_id = None

    def remember(self, order: Order) -> None:
        """Adopt an order returned by checkout before the next fetch."""
        self._replace(order)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def has_pending_work(self) -> bool:
        """True while any known order can still change status."""
        return any(not display.is_terminal for display in self.displays.values())

    def get(self, order_id: str) -> Optional[Order]:
        for order in self.orders:
            if order.id == order_id:
                return order
        return None

    def display(self, order_id: str) -> Optional[DisplayOrder]:
        return self.displays.get(order_id)

    def batches(self, order_id: str) -> list[OrderBatch]:
        order = self.get(order_id)
        return group_into_batches(order.items) if order is not None else []

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def _fail(self, error: OrderingError, title: str) -> OrderActionResult:
        self.last_error = error
        logger.warning(f"Orders: {title} - {error.message}")
        if self.notifier is not None:
            self.notifier(Notice(level=NoticeLevel.ERROR, title=title, message=error.message))
        return OrderActionResult(success=False, error_message=error.message, error_code=error.code)

    async def cancel_order(self, order_id: str, reason: str) -> OrderActionResult:
        try:
            request = CancelOrderRequest(reason=reason or "")
        except ValidationError:
            return self._fail(
                LocalValidationError("Cancellation reason is required"),
                "Could not cancel order",
            )

        try:
            order = await self.api.cancel_order(order_id, request.reason)
        except OrderingError as e:
            return self._fail(e, "Could not cancel order")

        self._replace(order)
        if self.notifier is not None:
            self.notifier(Notice(
                level=NoticeLevel.INFO,
                title="Order cancelled",
                message=f"Order {order_id[:8]} was cancelled",
            ))
        return OrderActionResult(success=True, order=order)

    async def cancel_items(self, order_id: str, item_ids: list[str]) -> OrderActionResult:
        """Cancel items still PENDING or ACCEPTED."""
        if not item_ids:
            return self._fail(
                LocalValidationError("No items selected"),
                "Could not cancel items",
            )

        known = self.get(order_id)
        if known is not None:
            for item_id in item_ids:
                item = known.find_item(item_id)
                if item is None or item.status not in CUSTOMER_CANCELLABLE_STATUSES:
                    return self._fail(
                        LocalValidationError("Only pending or accepted items can be cancelled"),
                        "Could not cancel items",
                    )

        try:
            order = await self.api.update_items_status(order_id, item_ids, ItemStatus.CANCELLED)
        except OrderingError as e:
            return self._fail(e, "Could not cancel items")

        self._replace(order)
        return OrderActionResult(success=True, order=order)
