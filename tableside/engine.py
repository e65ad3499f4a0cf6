"""
Table Session Orchestrator

Wires the synchronization components for one (tenant, table) and runs the
control flow:

    restore session
      -> forced cart load
      -> forced order fetch
      -> realtime connect; on connection.success join the active order room
      -> item events feed the refresh scheduler, which fetches orders
      -> checkout / payment drive the payment flow, which pauses refreshes

Usage:
    async with TableSession("tenant-1", "table-4") as table:
        await table.add_to_cart(AddCartItemRequest(menu_item_id="pho", price=55000))
        result = await table.checkout()
        await table.open_payment()
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from tableside.core.config import Settings, get_settings
from tableside.core.events import Subscription
from tableside.core.exceptions import LocalValidationError, OrderingError
from tableside.models import Notice, NoticeLevel, Notifier, PaymentStep, Session
from tableside.schemas import AddCartItemRequest, ItemStatus
from tableside.services.api import get_ordering_api
from tableside.services.api.base import BaseOrderingAPI
from tableside.services.api.http import HttpOrderingAPI
from tableside.services.cart import CartResult, CartSynchronizer
from tableside.services.channel import ROOM_JOINED, RealtimeEventChannel
from tableside.services.checkout import PaymentFlow
from tableside.services.device_store import DeviceStore
from tableside.services.orders import OrderActionResult, OrderTracker
from tableside.services.realtime import create_realtime_transport
from tableside.services.realtime.base import (
    BaseRealtimeTransport,
    ITEM_STATUS_EVENTS,
    ItemStatusNotice,
    RealtimeEvent,
)
from tableside.services.refresh import RefreshScheduler
from tableside.services.session import SessionHolder, SessionRestorer

logger = logging.getLogger(__name__)

# Customer-facing wording per item event
EVENT_NOTICES = {
    ItemStatus.ACCEPTED: (NoticeLevel.INFO, "Order accepted", "The kitchen accepted your items"),
    ItemStatus.PREPARING: (NoticeLevel.INFO, "Preparing", "Your items are being prepared"),
    ItemStatus.READY: (NoticeLevel.SUCCESS, "Ready", "Your items are ready"),
    ItemStatus.SERVED: (NoticeLevel.SUCCESS, "Served", "Enjoy your meal"),
    ItemStatus.REJECTED: (NoticeLevel.WARNING, "Item unavailable", "Some items could not be prepared"),
}


class TableSession:
    """
    One customer device at one table.

    Every collaborator can be injected; anything omitted comes from the
    service factories and settings.
    """

    def __init__(
        self,
        tenant_id: str,
        table_id: str,
        api: Optional[BaseOrderingAPI] = None,
        transport: Optional[BaseRealtimeTransport] = None,
        store: Optional[DeviceStore] = None,
        holder: Optional[SessionHolder] = None,
        settings: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.tenant_id = tenant_id
        self.table_id = table_id

        self.api = api or get_ordering_api()
        self.store = store or DeviceStore(
            self.settings.device_store_path,
            lock_timeout=self.settings.device_store_lock_timeout,
        )
        self.holder = holder or SessionHolder()
        self.notices: list[Notice] = []
        self._external_notifier = notifier

        if isinstance(self.api, HttpOrderingAPI):
            self.api.set_token_provider(lambda: self.holder.token)

        self.restorer = SessionRestorer(
            self.api,
            self.store,
            self.holder,
            refresh_timeout=self.settings.session_refresh_timeout_seconds,
        )
        self.cart = CartSynchronizer(
            self.api,
            min_reload_interval=self.settings.cart_min_reload_interval_seconds,
            notifier=self._notify,
            clock=clock,
        )
        self.orders = OrderTracker(
            self.api,
            store=self.store,
            page_size=self.settings.orders_page_size,
            notifier=self._notify,
        )
        self.scheduler = RefreshScheduler(
            self.orders.fetch,
            debounce_seconds=self.settings.refresh_debounce_seconds,
            min_interval_seconds=self.settings.order_min_fetch_interval_seconds,
            poll_interval_seconds=self.settings.auto_poll_interval_seconds,
            has_pending_work=self.orders.has_pending_work,
            clock=clock,
        )
        self.channel = RealtimeEventChannel(
            transport or create_realtime_transport(),
            store=self.store,
            holder=self.holder,
        )
        self.payment = PaymentFlow(
            self.api,
            self.scheduler,
            bill_display_delay=self.settings.bill_display_delay_seconds,
            notifier=self._notify,
            on_done=self._after_payment,
        )

        self.started = False
        self._subscriptions: list[Subscription] = []
        self._tasks: set[asyncio.Task] = set()

    async def __aenter__(self) -> "TableSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def session(self) -> Session:
        return self.holder.session

    def _notify(self, notice: Notice) -> None:
        self.notices.append(notice)
        if self._external_notifier is not None:
            self._external_notifier(notice)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> Session:
        """Run the startup control flow; returns the resolved session."""
        if self.started:
            return self.session

        session = await self.restorer.restore()
        logger.info(
            f"Table {self.tenant_id}/{self.table_id}: session {session.kind.value}"
        )

        self.cart.bind(self.tenant_id, self.table_id)
        self.orders.bind(self.tenant_id, self.table_id)

        await self.cart.reload(force=True)
        await self.scheduler.refresh(force=True)

        for event in ITEM_STATUS_EVENTS:
            self._subscriptions.append(self.channel.subscribe(event, self._on_item_event))
        self._subscriptions.append(
            self.channel.subscribe(RealtimeEvent.CONNECTION_SUCCESS, self._on_connected)
        )
        self._subscriptions.append(self.channel.subscribe(ROOM_JOINED, self._on_room_joined))

        await self.channel.connect(self.tenant_id, self.table_id)
        self.started = True
        return session

    async def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        self.payment.close()
        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self.scheduler.close()
        await self.channel.teardown()
        self.started = False
        logger.info(f"Table {self.tenant_id}/{self.table_id}: closed")

    # =========================================================================
    # REALTIME HANDLERS
    # =========================================================================

    def _on_item_event(self, notice: ItemStatusNotice) -> None:
        wording = EVENT_NOTICES.get(notice.status)
        if wording is not None:
            level, title, message = wording
            self._notify(Notice(level=level, title=title, message=message))
        self.scheduler.notify()

    def _on_connected(self, info: dict) -> None:
        if info.get("reconnect"):
            logger.info("Realtime reconnected, reloading cart")
            self._spawn(self.cart.reload())

    def _on_room_joined(self, order_id: str) -> None:
        self._spawn(self.scheduler.refresh())

    # =========================================================================
    # CART
    # =========================================================================

    async def add_to_cart(self, request: AddCartItemRequest) -> CartResult:
        return await self.cart.add_item(request)

    async def update_quantity(self, item_key: str, quantity: int) -> CartResult:
        return await self.cart.update_quantity(item_key, quantity)

    async def remove_from_cart(self, item_key: str) -> CartResult:
        return await self.cart.remove_item(item_key)

    async def clear_cart(self) -> CartResult:
        return await self.cart.clear()

    async def checkout(self, notes: Optional[str] = None) -> OrderActionResult:
        """Turn the cart into order items and start tracking the order."""
        if not self.cart.cart.items:
            return self._checkout_failed(LocalValidationError("Cart is empty"))

        try:
            order = await self.api.checkout_cart(self.tenant_id, self.table_id, notes)
        except OrderingError as e:
            return self._checkout_failed(e)

        logger.info(f"Table {self.table_id}: checked out into order {order.id}")
        self.orders.remember(order)
        self.cart.reset()
        await self.channel.join_order(order.id)
        await self.cart.reload(force=True)
        await self.scheduler.refresh(force=True)
        self._notify(Notice(
            level=NoticeLevel.SUCCESS,
            title="Order placed",
            message="Your order was sent to the kitchen",
        ))
        return OrderActionResult(success=True, order=self.orders.get(order.id) or order)

    def _checkout_failed(self, error: OrderingError) -> OrderActionResult:
        logger.warning(f"Table {self.table_id}: checkout failed - {error.message}")
        self._notify(Notice(level=NoticeLevel.ERROR, title="Checkout failed", message=error.message))
        return OrderActionResult(success=False, error_message=error.message, error_code=error.code)

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def refresh_orders(self, force: bool = False) -> bool:
        return await self.scheduler.refresh(force=force)

    async def cancel_order(self, order_id: str, reason: str) -> OrderActionResult:
        result = await self.orders.cancel_order(order_id, reason)
        if result.success and self.channel.room_order_id == order_id:
            await self.channel.leave_order()
        return result

    async def cancel_items(self, order_id: str, item_ids: list[str]) -> OrderActionResult:
        return await self.orders.cancel_items(order_id, item_ids)

    # =========================================================================
    # PAYMENT
    # =========================================================================

    async def open_payment(self, order_id: Optional[str] = None) -> PaymentStep:
        order_id = order_id or self.orders.active_order_id
        if order_id is None:
            self._notify(Notice(
                level=NoticeLevel.WARNING,
                title="Nothing to pay",
                message="There is no open order for this table",
            ))
            return self.payment.step
        return await self.payment.open(self.tenant_id, order_id)

    async def confirm_payment(self) -> PaymentStep:
        return await self.payment.confirm_paid()

    async def retry_payment(self) -> PaymentStep:
        return await self.payment.retry()

    def payment_back(self) -> PaymentStep:
        return self.payment.back()

    def close_payment(self) -> PaymentStep:
        return self.payment.close()

    async def _after_payment(self) -> None:
        order_id = self.payment.order_id
        logger.info(f"Table {self.table_id}: payment of {order_id} complete")
        if order_id is not None:
            self.store.forget_active_order(order_id)
            if self.channel.room_order_id == order_id:
                await self.channel.leave_order()
        await self.scheduler.refresh(force=True)
