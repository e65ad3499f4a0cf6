"""
Shared fixtures: an in-memory backend and realtime hub, a device store in
a temporary directory, fast timing settings and a controllable clock.
"""
import asyncio

import pytest
import pytest_asyncio

from tableside.core.config import EnvironmentMode, Settings
from tableside.schemas import AddCartItemRequest, ModifierSelection
from tableside.services.api.mock import MockOrderingAPI
from tableside.services.device_store import DeviceStore
from tableside.services.realtime.mock import MockRealtimeHub, MockRealtimeTransport

TENANT = "tenant-1"
TABLE = "table-4"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle(rounds: int = 10) -> None:
    """Let scheduled callbacks and short-lived tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def pho(quantity: int = 1, **extra) -> AddCartItemRequest:
    return AddCartItemRequest(
        menu_item_id="pho-bo",
        name="Pho Bo",
        price=55000,
        quantity=quantity,
        **extra,
    )


def spring_rolls(quantity: int = 1) -> AddCartItemRequest:
    return AddCartItemRequest(
        menu_item_id="cha-gio",
        name="Cha Gio",
        price=35000,
        quantity=quantity,
        modifiers=[
            ModifierSelection(modifier_group_id="sauce", modifier_option_id="fish", price=0),
            ModifierSelection(modifier_group_id="size", modifier_option_id="large", price=10000),
        ],
    )


# ─── Fixtures ──────────────────────────────────────────────────────────────────
@pytest.fixture
def fast_settings(tmp_path) -> Settings:
    return Settings(
        env_mode=EnvironmentMode.DEVELOPMENT,
        data_directory=str(tmp_path),
        refresh_debounce_seconds=0.05,
        order_min_fetch_interval_seconds=0.2,
        cart_min_reload_interval_seconds=0.2,
        auto_poll_interval_seconds=60.0,
        bill_display_delay_seconds=0.05,
        session_refresh_timeout_seconds=0.2,
    )


@pytest.fixture
def api() -> MockOrderingAPI:
    return MockOrderingAPI()


@pytest.fixture
def hub(api) -> MockRealtimeHub:
    hub = MockRealtimeHub()
    api.add_event_listener(hub.broadcast)
    return hub


@pytest.fixture
def transport(hub) -> MockRealtimeTransport:
    return MockRealtimeTransport(hub)


@pytest.fixture
def store(tmp_path) -> DeviceStore:
    return DeviceStore(tmp_path / "device.json", lock_timeout=1.0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def placed_order(api):
    """A two-line order placed directly on the backend."""
    await api.add_cart_item(TENANT, TABLE, pho(2))
    await api.add_cart_item(TENANT, TABLE, spring_rolls())
    order = await api.checkout_cart(TENANT, TABLE)
    return order
