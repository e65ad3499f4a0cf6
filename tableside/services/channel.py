"""
Realtime Event Channel

Owns the realtime connection of one table and the order room it listens
to. States:

    DISCONNECTED -> CONNECTING -> CONNECTED -> ROOM_JOINING -> ROOM_JOINED

connection.success (first connection or any reconnection) moves to
CONNECTED and triggers exactly one join of the table's active order, if
the device store remembers one. Joins are idempotent per order and
concurrent callers share the attempt in flight.

Every join attempt is stamped with the channel generation. Teardown,
transport drops and fresh connections bump the generation, so a late
acknowledgement from an abandoned attempt changes nothing.

Listeners subscribe through a closed topic set and get Subscription
handles back; item-status payloads are reduced to ItemStatusNotice
values before delivery.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Optional, Union

from pydantic import ValidationError

from tableside.core.events import EventBus, Handler, Subscription
from tableside.core.exceptions import ApiError, OrderingError
from tableside.schemas import RoomAck
from tableside.services.device_store import DeviceStore
from tableside.services.realtime.base import (
    BaseRealtimeTransport,
    ITEM_STATUS_EVENTS,
    ItemStatusNotice,
    JOIN_ORDER,
    LEAVE_ORDER,
    RealtimeEvent,
)
from tableside.services.session import SessionHolder

logger = logging.getLogger(__name__)

ROOM_JOINED = "room.joined"

CHANNEL_TOPICS = {event.value for event in RealtimeEvent} | {ROOM_JOINED}


class ChannelState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ROOM_JOINING = "ROOM_JOINING"
    ROOM_JOINED = "ROOM_JOINED"


class RealtimeEventChannel:
    """
    Connection and room state machine over a realtime transport.

    Args:
        transport: Realtime pipe (Socket.IO or mock)
        store: Device store consulted for the active order on connect
        holder: Session cell; guests connect without a credential
    """

    def __init__(
        self,
        transport: BaseRealtimeTransport,
        store: Optional[DeviceStore] = None,
        holder: Optional[SessionHolder] = None,
    ):
        self.transport = transport
        self.store = store
        self.holder = holder
        self.bus: EventBus[str] = EventBus(CHANNEL_TOPICS)

        self.state = ChannelState.DISCONNECTED
        self.tenant_id: Optional[str] = None
        self.table_id: Optional[str] = None
        self.room_order_id: Optional[str] = None
        self.generation = 0
        self.connection_count = 0
        self.last_error: Optional[OrderingError] = None

        self._wanted_order_id: Optional[str] = None
        self._join_future: Optional[asyncio.Future] = None
        self._tasks: set[asyncio.Task] = set()

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe(self, event: Union[RealtimeEvent, str], handler: Handler) -> Subscription:
        """Register handler for event; unknown event names raise ValueError."""
        topic = event.value if isinstance(event, RealtimeEvent) else event
        return self.bus.subscribe(topic, handler)

    def _set_state(self, state: ChannelState) -> None:
        if state != self.state:
            logger.debug(f"Channel: {self.state.value} -> {state.value}")
            self.state = state

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # =========================================================================
    # CONNECTION
    # =========================================================================

    async def connect(self, tenant_id: str, table_id: str) -> bool:
        """
        Open the connection for a table; a no-op if already open for it.

        Returns:
            bool: False when the transport could not connect
        """
        if self.state != ChannelState.DISCONNECTED:
            if (tenant_id, table_id) == (self.tenant_id, self.table_id):
                return True
            await self.teardown()

        self.generation += 1
        self.tenant_id = tenant_id
        self.table_id = table_id
        self._set_state(ChannelState.CONNECTING)
        self.transport.set_handler(self._on_event)

        token = self.holder.token if self.holder is not None else None
        try:
            await self.transport.connect(tenant_id, table_id, token)
        except OrderingError as e:
            self.last_error = e
            self._set_state(ChannelState.DISCONNECTED)
            self.transport.set_handler(None)
            logger.warning(f"Channel: connect failed for {tenant_id}/{table_id} - {e.message}")
            return False

        logger.info(
            f"Channel: connecting {tenant_id}/{table_id} "
            f"({'authenticated' if token else 'guest'})"
        )
        return True

    def _on_event(self, event: str, payload: Any) -> None:
        if self.state == ChannelState.DISCONNECTED:
            return

        if event == RealtimeEvent.DISCONNECTED.value:
            self.generation += 1
            self.room_order_id = None
            self._set_state(ChannelState.CONNECTING)
            self.bus.publish(event, payload)
            return

        if event == RealtimeEvent.CONNECTION_SUCCESS.value:
            self._on_connected(payload)
            return

        try:
            realtime_event = RealtimeEvent(event)
        except ValueError:
            logger.debug(f"Channel: ignoring unknown event {event}")
            return

        if realtime_event in ITEM_STATUS_EVENTS:
            notice = ItemStatusNotice.from_payload(realtime_event, payload)
            logger.debug(f"Channel: {event} for order {notice.order_id}")
            self.bus.publish(event, notice)

    def _on_connected(self, payload: Any) -> None:
        self.generation += 1
        self.connection_count += 1
        self.room_order_id = None
        self._join_future = None
        self._set_state(ChannelState.CONNECTED)

        info = dict(payload) if isinstance(payload, dict) else {}
        info["reconnect"] = self.connection_count > 1
        self.bus.publish(RealtimeEvent.CONNECTION_SUCCESS.value, info)

        order_id = None
        if self.store is not None and self.table_id:
            order_id = self.store.get_active_order(self.table_id)
        order_id = order_id or self._wanted_order_id
        if order_id:
            self._spawn(self.join_order(order_id))

    # =========================================================================
    # ROOMS
    # =========================================================================

    async def join_order(self, order_id: str) -> bool:
        """
        Join the order's room.

        Idempotent: joined or joining the same order issues no new request.
        Before the connection is confirmed the order is remembered and
        joined on connection.success.
        """
        self._wanted_order_id = order_id

        if self.room_order_id == order_id:
            if self.state == ChannelState.ROOM_JOINED:
                return True
            if self.state == ChannelState.ROOM_JOINING and self._join_future is not None:
                return await self._await_join(self._join_future)

        if self.state == ChannelState.ROOM_JOINING and self._join_future is not None:
            await self._await_join(self._join_future)
        if self.state == ChannelState.ROOM_JOINED and self.room_order_id != order_id:
            await self.leave_order(forget=False)

        if self.state != ChannelState.CONNECTED:
            logger.debug(f"Channel: join of {order_id} deferred until connected")
            return False

        self.room_order_id = order_id
        self._set_state(ChannelState.ROOM_JOINING)
        self._join_future = asyncio.ensure_future(self._join(order_id, self.generation))
        return await self._await_join(self._join_future)

    @staticmethod
    async def _await_join(future: asyncio.Future) -> bool:
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if future.cancelled():
                return False
            raise

    async def _join(self, order_id: str, generation: int) -> bool:
        try:
            raw_ack = await self.transport.request(JOIN_ORDER, {"orderId": order_id})
            ack = RoomAck.model_validate(raw_ack)
        except (OrderingError, ValidationError) as e:
            if generation != self.generation:
                return False
            error = e if isinstance(e, OrderingError) else ApiError("Malformed join acknowledgement")
            return self._join_failed(order_id, error)

        if generation != self.generation:
            logger.debug(f"Channel: ignoring late join acknowledgement for {order_id}")
            return False
        if not ack.success:
            return self._join_failed(order_id, ApiError(ack.error or "Join refused", status_code=400))

        self._set_state(ChannelState.ROOM_JOINED)
        logger.info(f"Channel: joined room of order {order_id}")
        self.bus.publish(ROOM_JOINED, order_id)
        return True

    def _join_failed(self, order_id: str, error: OrderingError) -> bool:
        self.last_error = error
        self.room_order_id = None
        self._set_state(ChannelState.CONNECTED)
        logger.warning(f"Channel: join of order {order_id} failed - {error.message}")
        return False

    async def leave_order(self, forget: bool = True) -> None:
        """Leave the joined room, if any."""
        order_id = self.room_order_id
        if forget:
            self._wanted_order_id = None
        if self.state != ChannelState.ROOM_JOINED or order_id is None:
            return

        self.room_order_id = None
        self._set_state(ChannelState.CONNECTED)
        try:
            await self.transport.request(LEAVE_ORDER, {"orderId": order_id})
        except OrderingError as e:
            logger.debug(f"Channel: leave of {order_id} failed - {e.message}")

    # =========================================================================
    # TEARDOWN
    # =========================================================================

    async def teardown(self) -> None:
        """Unregister listeners, leave the room, disconnect and reset."""
        self.bus.clear()

        if self.state == ChannelState.ROOM_JOINED:
            await self.leave_order()

        self.generation += 1
        pending = [t for t in self._tasks if not t.done()]
        if self._join_future is not None and not self._join_future.done():
            pending.append(self._join_future)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self.transport.set_handler(None)
        await self.transport.disconnect()

        self._join_future = None
        self._wanted_order_id = None
        self.room_order_id = None
        self.tenant_id = None
        self.table_id = None
        self._set_state(ChannelState.DISCONNECTED)
        logger.info("Channel: torn down")
