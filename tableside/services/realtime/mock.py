"""
Mock Realtime Hub and Transport

In-process stand-in for the Socket.IO server. A MockRealtimeHub keeps
order rooms (order:{orderId}) and routes broadcasts to the transports in
a room; MockRealtimeTransport is the client end.

Like the real server, the hub announces connection.success
asynchronously after connect() returns, so listeners observe the same
ordering they would on the network.

Simulation controls:
    - fail_join(order_id, error): the next join of that order is refused
    - refuse_connections: number of upcoming connects to reject
    - join_gate: hold join acknowledgements until the event is set
    - simulate_reconnect(): drop and re-announce every connection
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Optional

from tableside.core.exceptions import TransientNetworkError
from tableside.services.realtime.base import (
    BaseRealtimeTransport,
    JOIN_ORDER,
    LEAVE_ORDER,
    RealtimeEvent,
)

logger = logging.getLogger(__name__)


def room_name(order_id: str) -> str:
    return f"order:{order_id}"


class MockRealtimeHub:
    """In-memory realtime server."""

    def __init__(self):
        self._connections: dict["MockRealtimeTransport", dict] = {}
        self._rooms: dict[str, set["MockRealtimeTransport"]] = {}
        self._join_failures: dict[str, str] = {}
        self.refuse_connections = 0
        self.join_gate: Optional[asyncio.Event] = None
        self.requests: Counter = Counter()

        logger.info("MockRealtimeHub initialized")

    # ----------------------------------------------------------- connections

    def attach(self, transport: "MockRealtimeTransport", auth: dict) -> None:
        if self.refuse_connections > 0:
            self.refuse_connections -= 1
            raise TransientNetworkError("Mock: realtime connection refused")
        self._connections[transport] = auth
        asyncio.get_running_loop().call_soon(self._announce, transport)

    def detach(self, transport: "MockRealtimeTransport") -> None:
        self._connections.pop(transport, None)
        for members in self._rooms.values():
            members.discard(transport)

    def _announce(self, transport: "MockRealtimeTransport") -> None:
        auth = self._connections.get(transport)
        if auth is None:
            return
        transport._deliver(
            RealtimeEvent.CONNECTION_SUCCESS.value,
            {
                "tenantId": auth.get("tenantId"),
                "tableId": auth.get("tableId"),
                "authenticated": bool(auth.get("token")),
            },
        )

    def simulate_reconnect(self) -> None:
        """Drop every connection's rooms and announce a fresh connection."""
        for members in self._rooms.values():
            members.clear()
        for transport in list(self._connections):
            transport._deliver(RealtimeEvent.DISCONNECTED.value, None)
            asyncio.get_running_loop().call_soon(self._announce, transport)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def members(self, order_id: str) -> int:
        return len(self._rooms.get(room_name(order_id), ()))

    # ----------------------------------------------------------------- rooms

    def fail_join(self, order_id: str, error: str = "Order room not available") -> None:
        self._join_failures[order_id] = error

    async def handle(self, transport: "MockRealtimeTransport", event: str, payload: dict) -> dict:
        self.requests[event] += 1
        order_id = (payload or {}).get("orderId")
        if not order_id:
            return {"success": False, "error": "orderId is required"}

        if event == JOIN_ORDER:
            if self.join_gate is not None:
                await self.join_gate.wait()
            error = self._join_failures.pop(order_id, None)
            if error is not None:
                return {"success": False, "error": error}
            if transport not in self._connections:
                return {"success": False, "error": "Not connected"}
            self._rooms.setdefault(room_name(order_id), set()).add(transport)
            return {"success": True, "message": f"Joined order room: {order_id}"}

        if event == LEAVE_ORDER:
            self._rooms.get(room_name(order_id), set()).discard(transport)
            return {"success": True, "message": f"Left order room: {order_id}"}

        return {"success": False, "error": f"Unknown event {event}"}

    async def broadcast(self, event: str, order_id: str, payload: Any) -> int:
        """Deliver event to every transport in the order's room."""
        members = list(self._rooms.get(room_name(order_id), ()))
        for transport in members:
            transport._deliver(event, payload)
        logger.debug(f"Mock hub: {event} -> {len(members)} member(s) of {room_name(order_id)}")
        return len(members)


class MockRealtimeTransport(BaseRealtimeTransport):
    """Client end of a MockRealtimeHub."""

    def __init__(self, hub: MockRealtimeHub):
        super().__init__()
        self.hub = hub
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self, tenant_id: str, table_id: str, token: Optional[str] = None) -> None:
        auth = {"tenantId": tenant_id, "tableId": table_id}
        if token:
            auth["token"] = token
        self.hub.attach(self, auth)
        self._connected = True

    async def disconnect(self) -> None:
        if self._connected:
            self.hub.detach(self)
            self._connected = False

    async def request(self, event: str, payload: dict) -> dict:
        if not self._connected:
            raise TransientNetworkError(f"Realtime channel not connected ({event})")
        return await self.hub.handle(self, event, payload)
