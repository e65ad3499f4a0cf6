"""
Device store: persisted session record, guest flag and active order,
shared between store instances through the file lock.
"""
import json

from filelock import FileLock

from tableside.services.device_store import DeviceStore


def test_empty_store_has_defaults(store):
    assert store.get_session_record() is None
    assert store.is_guest_mode() is False
    assert store.get_active_order() is None
    assert store.snapshot() == {}


def test_session_record_never_holds_a_token(store):
    store.save_session_record({"userId": "u-1", "username": "lan"})
    record = store.get_session_record()

    assert record["user"] == {"userId": "u-1", "username": "lan"}
    assert "savedAt" in record
    assert "token" not in json.dumps(store.snapshot())

    store.clear_session_record()
    assert store.get_session_record() is None


def test_guest_flag_round_trip(store):
    store.set_guest_mode(True)
    assert store.is_guest_mode()
    store.set_guest_mode(False)
    assert "guestMode" not in store.snapshot()


def test_active_order_is_scoped_to_its_table(store):
    store.remember_active_order("order-1", "table-4")

    assert store.get_active_order() == "order-1"
    assert store.get_active_order("table-4") == "order-1"
    assert store.get_active_order("table-5") is None


def test_forget_only_matching_order(store):
    store.remember_active_order("order-1", "table-4")

    store.forget_active_order("order-2")
    assert store.get_active_order() == "order-1"

    store.forget_active_order("order-1")
    assert store.get_active_order() is None


def test_two_stores_share_the_same_file(tmp_path):
    """A second tab on the device sees what the first one wrote."""
    first = DeviceStore(tmp_path / "device.json")
    second = DeviceStore(tmp_path / "device.json")

    first.remember_active_order("order-7", "table-1")
    first.set_guest_mode(True)

    assert second.get_active_order("table-1") == "order-7"
    assert second.is_guest_mode()


def test_corrupt_file_degrades_to_defaults(tmp_path):
    path = tmp_path / "device.json"
    path.write_text("{not json", encoding="utf-8")
    store = DeviceStore(path)

    assert store.snapshot() == {}
    assert store.remember_active_order("order-1", "table-4")
    assert store.get_active_order() == "order-1"


def test_lock_timeout_is_reported_not_raised(tmp_path):
    path = tmp_path / "device.json"
    store = DeviceStore(path, lock_timeout=0.05)
    store.remember_active_order("order-1", "table-4")

    held = FileLock(str(tmp_path / "device.json.lock"))
    with held:
        assert store.remember_active_order("order-2", "table-4") is False
        assert store.get_active_order() is None

    assert store.get_active_order() == "order-1"


def test_data_directory_is_created(tmp_path):
    store = DeviceStore(tmp_path / "nested" / "dir" / "device.json")
    assert store.set_guest_mode(True)
    assert (tmp_path / "nested" / "dir" / "device.json").exists()
