"""
Session restoration precedence and the timeout on the silent refresh.
"""
import pytest

from tableside.core.exceptions import TransientNetworkError
from tableside.models import Session, SessionKind
from tableside.services.session import SessionHolder, SessionRestorer


@pytest.fixture
def holder():
    return SessionHolder()


@pytest.fixture
def restorer(api, store, holder):
    return SessionRestorer(api, store, holder, refresh_timeout=0.2)


@pytest.mark.asyncio
async def test_in_memory_token_wins_without_network(restorer, holder, api, store):
    holder._replace(Session.authenticated("tok-live", {"userId": "u-1"}))
    store.set_guest_mode(True)

    session = await restorer.restore()
    assert session.token == "tok-live"
    assert api.calls["refresh_session"] == 0


@pytest.mark.asyncio
async def test_explicit_guest_flag_skips_refresh(restorer, api, store):
    store.set_guest_mode(True)
    store.save_session_record({"userId": "u-1"})

    session = await restorer.restore()
    assert session.is_guest
    assert session.explicit_guest
    assert api.calls["refresh_session"] == 0


@pytest.mark.asyncio
async def test_record_is_refreshed_into_authenticated_session(restorer, holder, api, store):
    store.save_session_record({"userId": "u-1"})
    api.refresh_cookie_valid = True

    session = await restorer.restore()
    assert session.kind == SessionKind.AUTHENTICATED
    assert session.token.startswith("tok_mock_")
    assert holder.token == session.token
    assert store.get_session_record()["user"]["username"] == "mock.customer"


@pytest.mark.asyncio
async def test_failed_refresh_clears_record_and_falls_back_to_guest(restorer, api, store):
    store.save_session_record({"userId": "u-1"})

    session = await restorer.restore()
    assert session.is_guest
    assert not session.explicit_guest
    assert store.get_session_record() is None


@pytest.mark.asyncio
async def test_refresh_timeout_is_bounded(restorer, api, store):
    store.save_session_record({"userId": "u-1"})
    api.refresh_cookie_valid = True
    api.refresh_delay = 5.0

    session = await restorer.restore()
    assert session.is_guest
    assert store.get_session_record() is None


@pytest.mark.asyncio
async def test_network_failure_during_refresh_is_not_raised(restorer, api, store):
    store.save_session_record({"userId": "u-1"})
    api.fail_next("refresh_session", TransientNetworkError("offline"))

    session = await restorer.restore()
    assert session.is_guest


@pytest.mark.asyncio
async def test_nothing_stored_means_guest_without_network(restorer, api):
    session = await restorer.restore()
    assert session.is_guest
    assert api.calls["refresh_session"] == 0


def test_login_and_logout_update_the_device(restorer, holder, store):
    restorer.continue_as_guest()
    assert store.is_guest_mode()

    restorer.login("tok-1", {"userId": "u-1"})
    assert holder.token == "tok-1"
    assert not store.is_guest_mode()
    assert store.get_session_record() is not None

    restorer.logout()
    assert holder.token is None
    assert store.get_session_record() is None
