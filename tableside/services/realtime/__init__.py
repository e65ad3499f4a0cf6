"""
Realtime Transport Factory

Usage:
    from tableside.services.realtime import create_realtime_transport

    transport = create_realtime_transport()

Environment Switching:
    - ENV_MODE=development -> MockRealtimeTransport on the shared hub
    - ENV_MODE=staging / production -> SocketIOTransport

Each table session owns its transport, so transports are built per call.
The development hub is shared and cached, and it is wired to the mock
ordering API so staff-side status changes reach the order rooms.
"""

import logging
from functools import lru_cache

from tableside.core.config import get_settings
from tableside.services.api import get_ordering_api
from tableside.services.api.mock import MockOrderingAPI
from tableside.services.realtime.base import (
    BaseRealtimeTransport,
    ItemStatusNotice,
    ITEM_STATUS_EVENTS,
    RealtimeEvent,
)
from tableside.services.realtime.mock import MockRealtimeHub, MockRealtimeTransport
from tableside.services.realtime.socketio_client import SocketIOTransport

logger = logging.getLogger(__name__)


@lru_cache()
def get_realtime_hub() -> MockRealtimeHub:
    """Shared in-process hub for development mode."""
    hub = MockRealtimeHub()
    api = get_ordering_api()
    if isinstance(api, MockOrderingAPI):
        api.add_event_listener(hub.broadcast)
    return hub


def create_realtime_transport() -> BaseRealtimeTransport:
    """Build a transport for one table session."""
    settings = get_settings()

    if settings.is_development:
        logger.debug("Realtime: Using MockRealtimeTransport (development mode)")
        return MockRealtimeTransport(get_realtime_hub())

    logger.debug(f"Realtime: Using SocketIOTransport ({settings.env_mode.value} mode)")
    return SocketIOTransport(
        url=settings.realtime_url,
        namespace=settings.realtime_namespace,
        reconnection_attempts=settings.realtime_reconnect_attempts,
        reconnection_delay=settings.realtime_reconnect_delay_seconds,
        reconnection_delay_max=settings.realtime_reconnect_delay_max_seconds,
        ack_timeout=settings.realtime_ack_timeout_seconds,
    )


def reset_realtime_hub() -> None:
    get_realtime_hub.cache_clear()
    logger.debug("Realtime hub cache cleared")


__all__ = [
    "create_realtime_transport",
    "get_realtime_hub",
    "reset_realtime_hub",
    "BaseRealtimeTransport",
    "ItemStatusNotice",
    "ITEM_STATUS_EVENTS",
    "MockRealtimeHub",
    "MockRealtimeTransport",
    "RealtimeEvent",
    "SocketIOTransport",
]
