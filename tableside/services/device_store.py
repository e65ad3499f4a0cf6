"""
Device Store with Concurrency Control

Persisted per-device client state shared by every session ("tab") on the
device:
    - session record: the last authenticated user (never the token)
    - active order reference: {orderId, tableId}
    - guest-mode flag

One JSON file guarded by a FileLock. A lock timeout or an unreadable file
is logged and degrades to the defaults; nothing here raises into the
engine.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

SESSION_KEY = "session"
ACTIVE_ORDER_KEY = "activeOrder"
GUEST_MODE_KEY = "guestMode"


class DeviceStore:
    """
    File-backed key/value store for client state.

    Args:
        path: JSON file location (parent directory is created on demand)
        lock_timeout: Seconds to wait for the file lock
    """

    def __init__(self, path: Path, lock_timeout: float = 5.0):
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self._lock_path = self.path.with_name(self.path.name + ".lock")

    def _ensure_dir(self) -> None:
        if not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {self.path.parent}")

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Error reading {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _read(self) -> dict:
        self._ensure_dir()
        try:
            with FileLock(str(self._lock_path), timeout=self.lock_timeout):
                return self._load()
        except Timeout:
            logger.error(f"Lock timeout reading {self.path}")
            return {}

    def _update(self, mutate: Callable[[dict], None]) -> bool:
        self._ensure_dir()
        try:
            with FileLock(str(self._lock_path), timeout=self.lock_timeout):
                data = self._load()
                mutate(data)
                tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
                tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
                tmp_path.replace(self.path)
                return True
        except Timeout:
            logger.error(f"Lock timeout writing {self.path}")
            return False
        except OSError as e:
            logger.error(f"Error writing {self.path}: {e}")
            return False

    # ------------------------------------------------------------- session

    def get_session_record(self) -> Optional[dict]:
        record = self._read().get(SESSION_KEY)
        return record if isinstance(record, dict) else None

    def save_session_record(self, user: Optional[dict]) -> bool:
        record = {
            "user": user or {},
            "savedAt": datetime.now(timezone.utc).isoformat(),
        }
        return self._update(lambda data: data.__setitem__(SESSION_KEY, record))

    def clear_session_record(self) -> bool:
        return self._update(lambda data: data.pop(SESSION_KEY, None))

    # ---------------------------------------------------------- guest mode

    def is_guest_mode(self) -> bool:
        return bool(self._read().get(GUEST_MODE_KEY, False))

    def set_guest_mode(self, enabled: bool) -> bool:
        def mutate(data: dict) -> None:
            if enabled:
                data[GUEST_MODE_KEY] = True
            else:
                data.pop(GUEST_MODE_KEY, None)
        return self._update(mutate)

    # -------------------------------------------------------- active order

    def get_active_order(self, table_id: Optional[str] = None) -> Optional[str]:
        """Remembered active order id, optionally only if it belongs to table_id."""
        ref = self._read().get(ACTIVE_ORDER_KEY)
        if not isinstance(ref, dict) or not ref.get("orderId"):
            return None
        if table_id is not None and ref.get("tableId") != table_id:
            return None
        return ref["orderId"]

    def remember_active_order(self, order_id: str, table_id: str) -> bool:
        ref = {"orderId": order_id, "tableId": table_id}
        return self._update(lambda data: data.__setitem__(ACTIVE_ORDER_KEY, ref))

    def forget_active_order(self, order_id: Optional[str] = None) -> bool:
        """Drop the active order; with order_id, only if it is that order."""
        def mutate(data: dict) -> None:
            ref = data.get(ACTIVE_ORDER_KEY)
            if order_id is None or (isinstance(ref, dict) and ref.get("orderId") == order_id):
                data.pop(ACTIVE_ORDER_KEY, None)
        return self._update(mutate)

    def clear(self) -> bool:
        return self._update(lambda data: data.clear())

    def snapshot(self) -> dict[str, Any]:
        return dict(self._read())
