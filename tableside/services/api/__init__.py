"""
Ordering API Factory

Single entry point for obtaining the REST client. The rest of the engine
only sees BaseOrderingAPI.

Usage:
    from tableside.services.api import get_ordering_api

    api = get_ordering_api()
    cart = await api.get_cart("tenant-1", "table-4")

Environment Switching:
    - ENV_MODE=development -> MockOrderingAPI (in-memory, no network)
    - ENV_MODE=staging     -> HttpOrderingAPI
    - ENV_MODE=production  -> HttpOrderingAPI
"""

import logging
from functools import lru_cache

from tableside.core.config import get_settings
from tableside.services.api.base import BaseOrderingAPI
from tableside.services.api.http import HttpOrderingAPI
from tableside.services.api.mock import MockOrderingAPI

logger = logging.getLogger(__name__)


@lru_cache()
def get_ordering_api() -> BaseOrderingAPI:
    """
    Get the configured ordering API instance.

    The instance is cached so the mock backend keeps its state and the
    HTTP client keeps its cookie jar.

    Returns:
        BaseOrderingAPI: Configured API client
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Ordering API: Using MockOrderingAPI (development mode)")
        return MockOrderingAPI(
            failure_rate=settings.mock_failure_rate,
            min_latency=settings.mock_min_latency,
            max_latency=settings.mock_max_latency,
            tax_rate=settings.tax_rate,
            currency=settings.currency,
            payment_base_url=settings.payment_base_url,
        )

    logger.info(
        f"Ordering API: Using HttpOrderingAPI ({settings.env_mode.value} mode)"
    )
    return HttpOrderingAPI(
        base_url=settings.api_base_url,
        api_key=settings.api_key,
        timeout=settings.http_timeout_seconds,
    )


def reset_ordering_api() -> None:
    """Clear the cached API instance; the next call builds a new one."""
    get_ordering_api.cache_clear()
    logger.debug("Ordering API cache cleared")


__all__ = [
    "get_ordering_api",
    "reset_ordering_api",
    "BaseOrderingAPI",
    "HttpOrderingAPI",
    "MockOrderingAPI",
]
