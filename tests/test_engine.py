"""
End-to-end table session against the in-memory backend and realtime hub:
startup, checkout, live item events, payment and reconnection.
"""
import asyncio

import pytest
import pytest_asyncio

from tableside.engine import TableSession
from tableside.models import NoticeLevel, PaymentStep
from tableside.schemas import DisplayStatus, ItemStatus
from tableside.services.channel import ChannelState
from tableside.services.realtime.base import JOIN_ORDER

from conftest import TABLE, TENANT, pho, settle, spring_rolls


@pytest_asyncio.fixture
async def table(api, transport, store, fast_settings):
    session = TableSession(
        TENANT,
        TABLE,
        api=api,
        transport=transport,
        store=store,
        settings=fast_settings,
    )
    yield session
    await session.close()


async def start(table: TableSession) -> None:
    await table.start()
    await settle()


async def place_order(table: TableSession):
    await table.add_to_cart(pho(2))
    await table.add_to_cart(spring_rolls())
    result = await table.checkout()
    assert result.success
    return result.order


# ─── Startup ───────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_start_resolves_guest_and_connects(table, api, hub):
    await start(table)

    assert table.session.is_guest
    assert table.channel.state == ChannelState.CONNECTED
    assert api.calls["get_cart"] == 1
    assert api.calls["list_orders"] == 1
    assert hub.requests[JOIN_ORDER] == 0


@pytest.mark.asyncio
async def test_start_joins_the_remembered_order(table, hub, store, placed_order):
    store.remember_active_order(placed_order.id, TABLE)
    await start(table)

    assert table.orders.active_order_id == placed_order.id
    assert table.channel.state == ChannelState.ROOM_JOINED
    assert hub.members(placed_order.id) == 1
    assert hub.requests[JOIN_ORDER] == 1


# ─── Checkout ──────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_checkout_tracks_order_and_joins_its_room(table, api, hub, store):
    await start(table)
    order = await place_order(table)

    assert table.cart.cart.items == []
    assert store.get_active_order(TABLE) == order.id
    assert table.channel.room_order_id == order.id
    assert hub.members(order.id) == 1
    assert table.orders.display(order.id).status == DisplayStatus.RECEIVED
    assert table.notices[-1].title == "Order placed"


@pytest.mark.asyncio
async def test_empty_cart_checkout_fails_locally(table, api):
    await start(table)
    result = await table.checkout()

    assert not result.success
    assert api.calls["checkout_cart"] == 0
    assert table.notices[-1].level == NoticeLevel.ERROR


@pytest.mark.asyncio
async def test_second_checkout_appends_a_new_batch(table):
    await start(table)
    first = await place_order(table)
    await asyncio.sleep(1.1)

    await table.add_to_cart(pho(1, notes="extra herbs"))
    second = (await table.checkout()).order

    assert second.id == first.id
    assert len(table.orders.batches(first.id)) == 2


# ─── Live updates ──────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_item_event_burst_triggers_one_fetch(table, api):
    await start(table)
    order = await place_order(table)
    await asyncio.sleep(0.25)
    item_ids = [item.id for item in order.items]
    before = table.scheduler.fetch_count

    await api.set_items_status(order.id, item_ids[:1], ItemStatus.ACCEPTED)
    await api.set_items_status(order.id, item_ids[1:], ItemStatus.ACCEPTED)
    await api.set_items_status(order.id, item_ids[:1], ItemStatus.PREPARING)
    await asyncio.sleep(0.4)

    assert table.scheduler.fetch_count - before == 1
    assert table.orders.display(order.id).status == DisplayStatus.PREPARING
    titles = [notice.title for notice in table.notices]
    assert titles.count("Order accepted") == 2
    assert "Preparing" in titles


@pytest.mark.asyncio
async def test_served_and_rejected_items(table, api):
    await start(table)
    order = await place_order(table)
    await asyncio.sleep(0.25)
    first, second = [item.id for item in order.items]

    await api.set_items_status(order.id, [second], ItemStatus.REJECTED, reason="Out of rice paper")
    for status in (ItemStatus.ACCEPTED, ItemStatus.PREPARING, ItemStatus.READY, ItemStatus.SERVED):
        await api.set_items_status(order.id, [first], status)
    await asyncio.sleep(0.4)

    display = table.orders.display(order.id)
    assert display.status == DisplayStatus.REJECTED
    assert display.rejection_reason == "Cha Gio: Out of rice paper"


@pytest.mark.asyncio
async def test_cancel_order_leaves_the_room(table, hub):
    await start(table)
    order = await place_order(table)

    result = await table.cancel_order(order.id, "Wrong table")
    assert result.success
    assert table.channel.room_order_id is None
    assert hub.members(order.id) == 0
    assert table.orders.display(order.id).status == DisplayStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_pending_item(table):
    await start(table)
    order = await place_order(table)

    result = await table.cancel_items(order.id, [order.items[0].id])
    assert result.success
    assert result.order.items[0].status == ItemStatus.CANCELLED


# ─── Payment ───────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_payment_flow_hands_off_and_releases_the_order(table, api, store, hub):
    await start(table)
    order = await place_order(table)

    assert await table.open_payment() == PaymentStep.QR_READY
    assert table.scheduler.is_paused

    await api.set_items_status(order.id, [order.items[0].id], ItemStatus.ACCEPTED)
    assert await table.confirm_payment() == PaymentStep.BILL_UNSETTLED

    await api.settle_payment(order.id)
    assert await table.retry_payment() == PaymentStep.BILL_READY
    await table.payment.wait_for_handoff()

    assert table.payment.step == PaymentStep.DONE
    assert not table.scheduler.is_paused
    assert store.get_active_order() is None
    assert table.orders.active_order_id is None
    assert hub.members(order.id) == 0


@pytest.mark.asyncio
async def test_open_payment_without_order_warns(table, api):
    await start(table)

    assert await table.open_payment() == PaymentStep.IDLE
    assert table.notices[-1].title == "Nothing to pay"
    assert api.calls["create_payment_qr"] == 0


# ─── Reconnection / teardown ───────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_reconnect_reloads_cart_and_rejoins(table, api, hub):
    await start(table)
    order = await place_order(table)
    await asyncio.sleep(0.25)
    reloads = api.calls["get_cart"]

    hub.simulate_reconnect()
    await settle()
    await asyncio.sleep(0.05)

    assert api.calls["get_cart"] == reloads + 1
    assert table.channel.state == ChannelState.ROOM_JOINED
    assert hub.members(order.id) == 1


@pytest.mark.asyncio
async def test_close_disconnects(table, hub):
    await start(table)
    await place_order(table)
    await table.close()

    assert table.channel.state == ChannelState.DISCONNECTED
    assert hub.connection_count == 0
    assert not table.started
