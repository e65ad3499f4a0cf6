"""
                Tableside Order Sync

Client-side order lifecycle synchronization engine for multi-tenant
restaurant table ordering: session restoration, optimistic cart sync,
order status aggregation, realtime room tracking, refresh throttling and
the QR payment hand-off.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
