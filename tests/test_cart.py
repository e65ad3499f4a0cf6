"""
Cart synchronizer: forced reload after add, optimistic update/remove with
rollback, local validation, reload rate limiting and per-key serialization.
"""
import asyncio

import pytest

from tableside.core.exceptions import (
    ApiError,
    NETWORK_ERROR_CODE,
    VALIDATION_ERROR_CODE,
)
from tableside.models import NoticeLevel
from tableside.schemas import make_item_key, ModifierSelection
from tableside.services.cart import CartSynchronizer

from conftest import TABLE, TENANT, pho, settle, spring_rolls


@pytest.fixture
def notices():
    return []


@pytest.fixture
def cart(api, clock, notices):
    sync = CartSynchronizer(api, min_reload_interval=2.0, notifier=notices.append, clock=clock)
    sync.bind(TENANT, TABLE)
    return sync


# ─── Item keys ─────────────────────────────────────────────────────────────────
def test_item_key_ignores_modifier_order():
    a = ModifierSelection(modifier_group_id="size", modifier_option_id="l")
    b = ModifierSelection(modifier_group_id="sauce", modifier_option_id="fish")
    assert make_item_key("cha-gio", [a, b]) == make_item_key("cha-gio", [b, a])
    assert make_item_key("cha-gio", [a]) != make_item_key("cha-gio", [b])


# ─── Add ───────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_same_key_add_accumulates(cart, api):
    """Two additions of the same item yield one line with the summed quantity."""
    await cart.add_item(pho(1))
    result = await cart.add_item(pho(2))

    assert result.success
    assert len(result.cart.items) == 1
    assert result.cart.items[0].quantity == 3
    assert result.cart.items[0].item_key == pho().item_key


@pytest.mark.asyncio
async def test_add_forces_a_full_reload(cart, api):
    await cart.reload(force=True)
    await cart.add_item(spring_rolls())
    # The reload right after the write ignores the rate limit
    assert api.calls["get_cart"] == 2
    assert cart.cart.total_price == 45000


@pytest.mark.asyncio
async def test_add_without_table_fails_locally(api):
    sync = CartSynchronizer(api)
    result = await sync.add_item(pho())

    assert not result.success
    assert result.error_code == VALIDATION_ERROR_CODE
    assert api.calls["add_cart_item"] == 0


@pytest.mark.asyncio
async def test_failed_add_keeps_cart_and_notifies(cart, api, notices):
    api.fail_next("add_cart_item")
    result = await cart.add_item(pho())

    assert not result.success
    assert result.error_code == NETWORK_ERROR_CODE
    assert cart.cart.items == []
    assert notices and notices[-1].level == NoticeLevel.ERROR


# ─── Update / remove ───────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_update_applies_optimistically_before_response(cart, api):
    await cart.add_item(pho(1))
    key = pho().item_key
    gate = api.block("update_cart_item")

    task = asyncio.ensure_future(cart.update_quantity(key, 4))
    await settle()
    assert cart.cart.find(key).quantity == 4
    assert not task.done()

    gate.set()
    result = await task
    assert result.success
    server = await api.get_cart(TENANT, TABLE)
    assert server.find(key).quantity == 4


@pytest.mark.asyncio
async def test_failed_update_rolls_back_to_snapshot(cart, api, notices):
    await cart.add_item(pho(2))
    await cart.add_item(spring_rolls(1))
    before = cart.cart.model_copy(deep=True)

    api.fail_next("update_cart_item", ApiError("Server error", status_code=500))
    result = await cart.update_quantity(pho().item_key, 7)

    assert not result.success
    assert result.rolled_back
    assert cart.cart == before
    assert notices[-1].title == "Could not update quantity"


@pytest.mark.asyncio
async def test_quantity_below_one_is_rejected_without_network(cart, api):
    await cart.add_item(pho(2))
    result = await cart.update_quantity(pho().item_key, 0)

    assert not result.success
    assert result.error_code == VALIDATION_ERROR_CODE
    assert api.calls["update_cart_item"] == 0
    assert cart.cart.items[0].quantity == 2


@pytest.mark.asyncio
async def test_failed_remove_restores_line_in_place(cart, api):
    await cart.add_item(pho(1))
    await cart.add_item(spring_rolls(1))
    order_before = [line.item_key for line in cart.cart.items]

    gate = api.block("remove_cart_item")
    api.fail_next("remove_cart_item")
    task = asyncio.ensure_future(cart.remove_item(order_before[0]))
    await settle()
    assert cart.cart.find(order_before[0]) is None

    gate.set()
    result = await task
    assert result.rolled_back
    assert [line.item_key for line in cart.cart.items] == order_before


@pytest.mark.asyncio
async def test_remove_success(cart, api):
    await cart.add_item(pho(1))
    result = await cart.remove_item(pho().item_key)

    assert result.success
    assert cart.cart.items == []
    assert (await api.get_cart(TENANT, TABLE)).items == []


@pytest.mark.asyncio
async def test_clear_rolls_back_whole_cart_on_failure(cart, api):
    await cart.add_item(pho(1))
    await cart.add_item(spring_rolls(2))
    before = cart.cart.model_copy(deep=True)

    api.fail_next("clear_cart")
    result = await cart.clear()
    assert result.rolled_back
    assert cart.cart == before

    result = await cart.clear()
    assert result.success
    assert cart.cart.items == []


# ─── Serialization ─────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_same_key_mutations_are_serialized(cart, api):
    await cart.add_item(pho(1))
    key = pho().item_key
    gate = api.block("update_cart_item")

    first = asyncio.ensure_future(cart.update_quantity(key, 2))
    second = asyncio.ensure_future(cart.update_quantity(key, 3))
    await settle()
    # The second call waits for the first key lock before touching the line
    assert api.calls["update_cart_item"] == 1
    assert cart.cart.find(key).quantity == 2

    gate.set()
    await asyncio.gather(first, second)
    assert api.calls["update_cart_item"] == 2
    assert cart.cart.find(key).quantity == 3


@pytest.mark.asyncio
async def test_rollback_of_one_key_keeps_concurrent_change_of_another(cart, api):
    await cart.add_item(pho(1))
    await cart.add_item(spring_rolls(1))
    pho_key, rolls_key = pho().item_key, spring_rolls().item_key

    gate = api.block("update_cart_item")
    api.fail_next("update_cart_item")
    failing = asyncio.ensure_future(cart.update_quantity(pho_key, 5))
    await settle()
    removing = asyncio.ensure_future(cart.remove_item(rolls_key))
    gate.set()
    await asyncio.gather(failing, removing)

    assert cart.cart.find(pho_key).quantity == 1
    assert cart.cart.find(rolls_key) is None


# ─── Reload ────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_reload_is_rate_limited_unless_forced(cart, api, clock):
    await cart.reload()
    skipped = await cart.reload()
    assert skipped.skipped
    assert api.calls["get_cart"] == 1

    await cart.reload(force=True)
    assert api.calls["get_cart"] == 2

    clock.advance(2.5)
    result = await cart.reload()
    assert not result.skipped
    assert api.calls["get_cart"] == 3


@pytest.mark.asyncio
async def test_failed_reload_keeps_local_cart(cart, api):
    await cart.add_item(pho(2))
    api.fail_next("get_cart")
    result = await cart.reload(force=True)

    assert not result.success
    assert cart.cart.items[0].quantity == 2
    assert cart.last_error is not None


@pytest.mark.asyncio
async def test_reload_during_pending_update_keeps_optimistic_quantity(cart, api):
    await cart.add_item(pho(1))
    key = pho().item_key
    gate = api.block("update_cart_item")

    task = asyncio.ensure_future(cart.update_quantity(key, 5))
    await settle()
    reloaded = await cart.reload(force=True)
    assert reloaded.success
    assert cart.cart.find(key).quantity == 5

    gate.set()
    assert (await task).success
    server = await api.get_cart(TENANT, TABLE)
    assert cart.cart.find(key).quantity == server.find(key).quantity == 5


@pytest.mark.asyncio
async def test_reload_during_pending_remove_keeps_line_removed(cart, api):
    await cart.add_item(pho(1))
    await cart.add_item(spring_rolls(1))
    key = spring_rolls().item_key
    gate = api.block("remove_cart_item")

    task = asyncio.ensure_future(cart.remove_item(key))
    await settle()
    await cart.reload(force=True)
    assert cart.cart.find(key) is None
    assert cart.cart.find(pho().item_key).quantity == 1

    gate.set()
    assert (await task).success
    assert cart.cart.find(key) is None


@pytest.mark.asyncio
async def test_failed_update_after_mid_flight_reload_rolls_back(cart, api):
    await cart.add_item(pho(2))
    key = pho().item_key
    gate = api.block("update_cart_item")
    api.fail_next("update_cart_item")

    task = asyncio.ensure_future(cart.update_quantity(key, 6))
    await settle()
    await cart.reload(force=True)
    gate.set()
    result = await task

    assert result.rolled_back
    assert cart.cart.find(key).quantity == 2
    assert (await cart.reload(force=True)).cart.find(key).quantity == 2
