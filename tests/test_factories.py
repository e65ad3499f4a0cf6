"""
Cached service factories switching between mock and real providers by
environment mode.
"""
import pytest

from tableside.core.config import EnvironmentMode, get_settings
from tableside.services.api import (
    HttpOrderingAPI,
    MockOrderingAPI,
    get_ordering_api,
    reset_ordering_api,
)
from tableside.services.realtime import (
    create_realtime_transport,
    get_realtime_hub,
    reset_realtime_hub,
)
from tableside.services.realtime.mock import MockRealtimeTransport
from tableside.services.realtime.socketio_client import SocketIOTransport


@pytest.fixture
def env_mode(monkeypatch):
    def use(mode: str) -> None:
        monkeypatch.setenv("ENV_MODE", mode)
        get_settings.cache_clear()
        reset_ordering_api()
        reset_realtime_hub()

    yield use
    get_settings.cache_clear()
    reset_ordering_api()
    reset_realtime_hub()


def test_development_uses_shared_mock_backend(env_mode):
    env_mode("development")

    assert get_settings().env_mode == EnvironmentMode.DEVELOPMENT
    api = get_ordering_api()
    assert isinstance(api, MockOrderingAPI)
    assert get_ordering_api() is api


def test_development_transports_share_one_hub(env_mode):
    env_mode("development")

    first = create_realtime_transport()
    second = create_realtime_transport()
    assert isinstance(first, MockRealtimeTransport)
    assert first is not second
    assert first.hub is second.hub is get_realtime_hub()


def test_reset_builds_a_fresh_instance(env_mode):
    env_mode("development")
    api = get_ordering_api()

    reset_ordering_api()
    assert get_ordering_api() is not api


@pytest.mark.asyncio
async def test_staging_uses_real_providers(env_mode):
    env_mode("staging")

    api = get_ordering_api()
    assert isinstance(api, HttpOrderingAPI)
    assert api.provider_name == "http"
    assert isinstance(create_realtime_transport(), SocketIOTransport)
    await api.aclose()


def test_unknown_mode_is_rejected(env_mode):
    env_mode("qa")

    with pytest.raises(ValueError, match="Invalid env_mode"):
        get_settings()
