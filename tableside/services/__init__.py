"""
                        Services Module

Synchronization components of a table session. Network-facing services
have Mock (development) and Real (production) implementations behind a
factory.

Services:
    - api: REST gateway client (HttpOrderingAPI / MockOrderingAPI)
    - realtime: Socket.IO / in-process realtime transports
    - session: session restoration
    - cart: optimistic cart synchronization
    - order_status: item -> order display status aggregation
    - orders: order tracking and cancellation
    - refresh: debounced, rate limited fetch scheduling
    - channel: realtime connection and room state machine
    - checkout: payment / bill hand-off
    - device_store: persisted per-device state
"""

from tableside.services.device_store import DeviceStore

__all__ = ["DeviceStore"]
