"""
Realtime event channel: connection state machine, idempotent room joins,
event delivery, reconnection and teardown.
"""
import asyncio

import pytest

from tableside.schemas import ItemStatus
from tableside.services.channel import ChannelState, ROOM_JOINED, RealtimeEventChannel
from tableside.services.realtime.base import ItemStatusNotice, JOIN_ORDER, RealtimeEvent
from tableside.services.session import SessionHolder

from conftest import TABLE, TENANT, settle


@pytest.fixture
def channel(transport, store):
    return RealtimeEventChannel(transport, store=store, holder=SessionHolder())


# ─── Connection ────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_connected_only_after_connection_success(channel, hub):
    seen = []
    channel.subscribe(RealtimeEvent.CONNECTION_SUCCESS, seen.append)

    assert await channel.connect(TENANT, TABLE)
    assert channel.state == ChannelState.CONNECTING

    await settle()
    assert channel.state == ChannelState.CONNECTED
    assert seen and seen[0]["reconnect"] is False
    assert seen[0]["authenticated"] is False


@pytest.mark.asyncio
async def test_refused_connection_stays_disconnected(channel, hub):
    hub.refuse_connections = 1
    assert await channel.connect(TENANT, TABLE) is False
    assert channel.state == ChannelState.DISCONNECTED
    assert channel.last_error is not None


@pytest.mark.asyncio
async def test_connect_is_idempotent_per_table(channel, hub):
    await channel.connect(TENANT, TABLE)
    await channel.connect(TENANT, TABLE)
    assert hub.connection_count == 1


@pytest.mark.asyncio
async def test_unknown_event_names_are_refused(channel):
    with pytest.raises(ValueError):
        channel.subscribe("order.items.teleported", lambda payload: None)


# ─── Rooms ─────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_remembered_active_order_is_joined_once_on_connect(channel, hub, store):
    store.remember_active_order("order-1", TABLE)
    joined = []
    channel.subscribe(ROOM_JOINED, joined.append)

    await channel.connect(TENANT, TABLE)
    await settle()

    assert channel.state == ChannelState.ROOM_JOINED
    assert channel.room_order_id == "order-1"
    assert hub.requests[JOIN_ORDER] == 1
    assert hub.members("order-1") == 1
    assert joined == ["order-1"]


@pytest.mark.asyncio
async def test_active_order_of_another_table_is_not_joined(channel, hub, store):
    store.remember_active_order("order-9", "table-9")
    await channel.connect(TENANT, TABLE)
    await settle()

    assert channel.state == ChannelState.CONNECTED
    assert hub.requests[JOIN_ORDER] == 0


@pytest.mark.asyncio
async def test_concurrent_joins_share_one_request(channel, hub):
    await channel.connect(TENANT, TABLE)
    await settle()
    hub.join_gate = asyncio.Event()

    first = asyncio.ensure_future(channel.join_order("order-1"))
    second = asyncio.ensure_future(channel.join_order("order-1"))
    await settle()
    assert channel.state == ChannelState.ROOM_JOINING

    hub.join_gate.set()
    assert await asyncio.gather(first, second) == [True, True]
    assert hub.requests[JOIN_ORDER] == 1

    assert await channel.join_order("order-1") is True
    assert hub.requests[JOIN_ORDER] == 1


@pytest.mark.asyncio
async def test_refused_join_returns_to_connected(channel, hub):
    await channel.connect(TENANT, TABLE)
    await settle()
    hub.fail_join("order-1", "Order not found")

    assert await channel.join_order("order-1") is False
    assert channel.state == ChannelState.CONNECTED
    assert channel.last_error.message == "Order not found"


@pytest.mark.asyncio
async def test_joining_another_order_leaves_the_first(channel, hub):
    await channel.connect(TENANT, TABLE)
    await settle()
    await channel.join_order("order-1")
    await channel.join_order("order-2")

    assert channel.room_order_id == "order-2"
    assert hub.members("order-1") == 0
    assert hub.members("order-2") == 1


@pytest.mark.asyncio
async def test_join_before_connection_is_deferred(channel, hub):
    assert await channel.join_order("order-1") is False
    await channel.connect(TENANT, TABLE)
    await settle()
    assert channel.state == ChannelState.ROOM_JOINED


# ─── Events ────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_item_events_arrive_as_notices(channel, hub):
    notices = []
    channel.subscribe(RealtimeEvent.ITEMS_READY, notices.append)
    await channel.connect(TENANT, TABLE)
    await settle()
    await channel.join_order("order-1")

    await hub.broadcast(
        RealtimeEvent.ITEMS_READY.value,
        "order-1",
        {"event": "order.items.ready", "data": {"orderId": "order-1", "items": [{"id": "i-1"}]}},
    )

    assert notices == [
        ItemStatusNotice(
            event=RealtimeEvent.ITEMS_READY,
            order_id="order-1",
            item_ids=("i-1",),
            status=ItemStatus.READY,
        )
    ]


@pytest.mark.asyncio
async def test_subscription_handle_unsubscribes(channel, hub):
    received = []
    subscription = channel.subscribe(RealtimeEvent.ITEMS_SERVED, received.append)
    await channel.connect(TENANT, TABLE)
    await settle()
    await channel.join_order("order-1")

    subscription.unsubscribe()
    await hub.broadcast(RealtimeEvent.ITEMS_SERVED.value, "order-1", {"orderId": "order-1"})
    assert received == []


# ─── Reconnect / teardown ──────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_reconnect_rejoins_the_room(channel, hub):
    seen = []
    channel.subscribe(RealtimeEvent.CONNECTION_SUCCESS, seen.append)
    await channel.connect(TENANT, TABLE)
    await settle()
    await channel.join_order("order-1")

    hub.simulate_reconnect()
    assert channel.state == ChannelState.CONNECTING
    await settle()

    assert channel.state == ChannelState.ROOM_JOINED
    assert hub.members("order-1") == 1
    assert hub.requests[JOIN_ORDER] == 2
    assert [info["reconnect"] for info in seen] == [False, True]


@pytest.mark.asyncio
async def test_teardown_resets_and_ignores_late_acknowledgement(channel, hub):
    await channel.connect(TENANT, TABLE)
    await settle()
    hub.join_gate = asyncio.Event()
    joined = []
    channel.subscribe(ROOM_JOINED, joined.append)

    pending = asyncio.ensure_future(channel.join_order("order-1"))
    await settle()
    await channel.teardown()
    hub.join_gate.set()

    assert await pending is False
    assert channel.state == ChannelState.DISCONNECTED
    assert channel.bus.listener_count() == 0
    assert hub.connection_count == 0
    assert joined == []


@pytest.mark.asyncio
async def test_teardown_leaves_joined_room(channel, hub):
    await channel.connect(TENANT, TABLE)
    await settle()
    await channel.join_order("order-1")

    await channel.teardown()
    assert hub.members("order-1") == 0
    assert channel.room_order_id is None
