"""
Socket.IO Realtime Transport

Production transport using python-socketio's AsyncClient against the
gateway's /realtime namespace. Used when ENV_MODE=production or staging.

Connection:
    auth = {token, tenantId, tableId}; guests send no token
    reconnection: 1 s initial delay, 5 s cap, 5 attempts

The server emits connection.success after authenticating the socket, on
the first connection and after every automatic reconnection. Room joins
are acknowledged calls returning {success, error?}.
"""

import logging
from typing import Any, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketIOConnectionError
from socketio.exceptions import SocketIOError, TimeoutError as SocketIOTimeoutError

from tableside.core.exceptions import TransientNetworkError
from tableside.services.realtime.base import BaseRealtimeTransport, RealtimeEvent

logger = logging.getLogger(__name__)


class SocketIOTransport(BaseRealtimeTransport):
    """
    python-socketio client transport.

    Example:
        >>> transport = SocketIOTransport("http://localhost:8888")
        >>> transport.set_handler(lambda event, payload: print(event))
        >>> await transport.connect("tenant-1", "table-4", token=None)
    """

    def __init__(
        self,
        url: str,
        namespace: str = "/realtime",
        reconnection_attempts: int = 5,
        reconnection_delay: float = 1.0,
        reconnection_delay_max: float = 5.0,
        ack_timeout: float = 10.0,
    ):
        super().__init__()
        self._url = url
        self._namespace = namespace
        self._reconnection_attempts = reconnection_attempts
        self._reconnection_delay = reconnection_delay
        self._reconnection_delay_max = reconnection_delay_max
        self._ack_timeout = ack_timeout
        self._client: Optional[socketio.AsyncClient] = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.connected

    def _forwarder(self, event: str):
        async def forward(data: Any = None) -> None:
            self._deliver(event, data)
        return forward

    def _build_client(self) -> socketio.AsyncClient:
        client = socketio.AsyncClient(
            reconnection=True,
            reconnection_attempts=self._reconnection_attempts,
            reconnection_delay=self._reconnection_delay,
            reconnection_delay_max=self._reconnection_delay_max,
            logger=False,
            engineio_logger=False,
        )
        for event in RealtimeEvent:
            if event == RealtimeEvent.DISCONNECTED:
                continue
            client.on(event.value, self._forwarder(event.value), namespace=self._namespace)

        async def on_disconnect(*args) -> None:
            logger.info("Socket.IO: disconnected")
            self._deliver(RealtimeEvent.DISCONNECTED.value, None)

        client.on("disconnect", on_disconnect, namespace=self._namespace)
        return client

    async def connect(self, tenant_id: str, table_id: str, token: Optional[str] = None) -> None:
        if self._client is not None:
            await self.disconnect()

        auth = {"tenantId": tenant_id, "tableId": table_id}
        if token:
            auth["token"] = token

        client = self._build_client()
        self._client = client
        try:
            await client.connect(
                self._url,
                auth=auth,
                namespaces=[self._namespace],
                wait_timeout=self._ack_timeout,
            )
        except SocketIOConnectionError as e:
            self._client = None
            logger.warning(f"Socket.IO: connection to {self._url} failed - {e}")
            raise TransientNetworkError(f"Realtime connection failed: {e}") from e

        logger.info(f"Socket.IO: connected to {self._url}{self._namespace} ({tenant_id}/{table_id})")

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except SocketIOError as e:
            logger.debug(f"Socket.IO: error while disconnecting - {e}")

    async def request(self, event: str, payload: dict) -> dict:
        if not self.is_connected:
            raise TransientNetworkError(f"Realtime channel not connected ({event})")
        try:
            ack = await self._client.call(
                event,
                payload,
                namespace=self._namespace,
                timeout=self._ack_timeout,
            )
        except SocketIOTimeoutError as e:
            raise TransientNetworkError(f"No acknowledgement for {event}") from e
        except SocketIOError as e:
            raise TransientNetworkError(f"Realtime request {event} failed: {e}") from e
        return ack if isinstance(ack, dict) else {"success": bool(ack)}
