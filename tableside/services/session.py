"""
Session Restorer

Resolves the identity a table session acts under, exactly once per start,
before any cart or order traffic. Precedence:

    1. token already held in memory       -> authenticated (no network)
    2. explicit guest flag on the device  -> guest (no network)
    3. persisted session record           -> silent cookie-backed refresh,
                                             bounded by a timeout; on
                                             failure the record is cleared
    4. nothing usable                     -> guest-allowed fallback

Failures are logged and never raised: the worst outcome of restore() is a
guest session.
"""

import asyncio
import logging
from typing import Optional

from tableside.core.exceptions import OrderingError
from tableside.models import Session
from tableside.services.api.base import BaseOrderingAPI
from tableside.services.device_store import DeviceStore

logger = logging.getLogger(__name__)


class SessionHolder:
    """
    The single cell holding the current Session.

    Readers use .session / .token; only SessionRestorer writes.
    """

    def __init__(self, session: Optional[Session] = None):
        self._session = session or Session.unresolved()

    @property
    def session(self) -> Session:
        return self._session

    @property
    def token(self) -> Optional[str]:
        return self._session.token if self._session.is_authenticated else None

    def _replace(self, session: Session) -> None:
        self._session = session


class SessionRestorer:
    """
    Produces a resolved Session and owns every write to the holder.

    Args:
        api: Ordering API (used for GET /identity/auth/refresh)
        store: Device store with the session record and guest flag
        holder: Session cell shared with the API client and channel
        refresh_timeout: Upper bound for the silent refresh in seconds
    """

    def __init__(
        self,
        api: BaseOrderingAPI,
        store: DeviceStore,
        holder: SessionHolder,
        refresh_timeout: float = 10.0,
    ):
        self.api = api
        self.store = store
        self.holder = holder
        self.refresh_timeout = refresh_timeout
        self._lock = asyncio.Lock()

    async def restore(self) -> Session:
        async with self._lock:
            current = self.holder.session
            if current.is_authenticated and current.token:
                logger.debug("Session: using in-memory token")
                return current

            if self.store.is_guest_mode():
                session = Session.guest(explicit=True)
                logger.info("Session: explicit guest mode")
            else:
                session = await self._refresh_from_record()
                if session is None:
                    session = Session.guest(explicit=False)
                    logger.info("Session: no usable session, continuing as guest")

            self.holder._replace(session)
            return session

    async def _refresh_from_record(self) -> Optional[Session]:
        record = self.store.get_session_record()
        if record is None:
            return None

        try:
            grant = await asyncio.wait_for(
                self.api.refresh_session(), timeout=self.refresh_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Session: refresh timed out after {self.refresh_timeout}s, clearing record"
            )
            self.store.clear_session_record()
            return None
        except OrderingError as e:
            logger.warning(f"Session: refresh failed ({e.message}), clearing record")
            self.store.clear_session_record()
            return None

        user = grant.user_record()
        self.store.save_session_record(user)
        logger.info(f"Session: restored for {grant.username or grant.user_id}")
        return Session.authenticated(grant.access_token, user)

    def login(self, token: str, user: Optional[dict] = None) -> Session:
        """Install a token obtained by an explicit sign-in."""
        session = Session.authenticated(token, user)
        self.store.set_guest_mode(False)
        self.store.save_session_record(user)
        self.holder._replace(session)
        return session

    def continue_as_guest(self) -> Session:
        """Explicit guest choice; remembered on the device."""
        session = Session.guest(explicit=True)
        self.store.set_guest_mode(True)
        self.holder._replace(session)
        return session

    def logout(self) -> Session:
        session = Session.guest(explicit=False)
        self.store.clear_session_record()
        self.store.set_guest_mode(False)
        self.holder._replace(session)
        logger.info("Session: logged out")
        return session
