"""
Realtime Transport Abstract Base Class

A transport is the raw pipe under the RealtimeEventChannel: it connects a
table to the server, forwards every server event to a single sink and
sends acknowledged requests (order.join / order.leave). Connection state,
room bookkeeping and listener fan-out live in the channel, not here.

Implementations:
    - SocketIOTransport: python-socketio AsyncClient against the gateway
    - MockRealtimeTransport: in-process, driven by a MockRealtimeHub
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from tableside.schemas import ItemStatus


class RealtimeEvent(str, Enum):
    """Server events the channel understands."""
    CONNECTION_SUCCESS = "connection.success"
    ITEMS_ACCEPTED = "order.items.accepted"
    ITEMS_PREPARING = "order.items.preparing"
    ITEMS_READY = "order.items.ready"
    ITEMS_SERVED = "order.items.served"
    ITEMS_REJECTED = "order.items.rejected"
    # Raised locally by the transport, never sent by the server
    DISCONNECTED = "disconnect"


ITEM_STATUS_EVENTS = {
    RealtimeEvent.ITEMS_ACCEPTED: ItemStatus.ACCEPTED,
    RealtimeEvent.ITEMS_PREPARING: ItemStatus.PREPARING,
    RealtimeEvent.ITEMS_READY: ItemStatus.READY,
    RealtimeEvent.ITEMS_SERVED: ItemStatus.SERVED,
    RealtimeEvent.ITEMS_REJECTED: ItemStatus.REJECTED,
}

# Client -> server requests answered with {success, error?}
JOIN_ORDER = "order.join"
LEAVE_ORDER = "order.leave"

EventSink = Callable[[str, Any], None]


@dataclass(frozen=True)
class ItemStatusNotice:
    """
    An item-status event reduced to its references.

    Payloads are treated as hints only: the notice says which order moved,
    the next fetch says where it is now.
    """
    event: RealtimeEvent
    order_id: Optional[str]
    item_ids: tuple[str, ...] = ()
    status: Optional[ItemStatus] = None
    table_id: Optional[str] = None

    @classmethod
    def from_payload(cls, event: RealtimeEvent, payload: Any) -> "ItemStatusNotice":
        """
        Build a notice from either a bare payload or the server's
        {event, data, timestamp} wrapper; missing fields stay empty.
        """
        body = payload if isinstance(payload, dict) else {}
        if isinstance(body.get("data"), dict):
            body = body["data"]

        item_ids = body.get("itemIds")
        if item_ids is None:
            item_ids = [
                item.get("id") for item in body.get("items") or []
                if isinstance(item, dict) and item.get("id")
            ]

        return cls(
            event=event,
            order_id=body.get("orderId"),
            item_ids=tuple(str(i) for i in item_ids or ()),
            status=ITEM_STATUS_EVENTS.get(event),
            table_id=body.get("tableId"),
        )


class BaseRealtimeTransport(ABC):
    """Abstract realtime pipe; see module docstring."""

    def __init__(self):
        self._sink: Optional[EventSink] = None

    def set_handler(self, sink: Optional[EventSink]) -> None:
        """Route every incoming event (name, payload) to sink."""
        self._sink = sink

    def _deliver(self, event: str, payload: Any = None) -> None:
        if self._sink is not None:
            self._sink(event, payload)

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    async def connect(self, tenant_id: str, table_id: str, token: Optional[str] = None) -> None:
        """
        Open the connection. Guests pass no token.

        Raises:
            TransientNetworkError: The server could not be reached
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def request(self, event: str, payload: dict) -> dict:
        """
        Send an acknowledged request and return the acknowledgement.

        Raises:
            TransientNetworkError: Not connected or no acknowledgement in time
        """
        pass
