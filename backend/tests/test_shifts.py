from datetime import datetime, timedelta, timezone

from backend.app.reporting.shifts import SHIFTS, resolve_shift, shift_document
from backend.app.store.memory import MemoryStore

DAY_START = datetime(2024, 5, 1, 23, 0, tzinfo=timezone.utc)
KEY = "2024-05-02"


def _shift(store, shift_id, status="open", start=None, end=None, user="u1", key=KEY):
    doc = shift_document("st", user, "An", key, start or DAY_START)
    doc.update({"status": status, "endTime": end})
    store.set(SHIFTS, shift_id, doc)


def _resolve(store, client_shift_id=None, user="u1"):
    return store.run_transaction(
        lambda tx: resolve_shift(tx, store, "st", user, KEY, client_shift_id, DAY_START)
    )


def test_new_shift_starts_at_business_day_start():
    res = _resolve(MemoryStore())
    assert res.is_new is True
    assert res.start_time == DAY_START
    assert res.shift_id


def test_newest_open_shift_is_reused():
    store = MemoryStore()
    _shift(store, "old", start=DAY_START + timedelta(hours=1))
    _shift(store, "new", start=DAY_START + timedelta(hours=3))
    res = _resolve(store)
    assert (res.shift_id, res.is_new) == ("new", False)
    assert res.start_time == DAY_START + timedelta(hours=3)


def test_new_shift_chains_to_last_closed_shift():
    store = MemoryStore()
    _shift(store, "a", status="closed", end=DAY_START + timedelta(hours=4))
    _shift(store, "b", status="closed", end=DAY_START + timedelta(hours=8))
    res = _resolve(store)
    assert res.is_new is True
    assert res.start_time == DAY_START + timedelta(hours=8)


def test_shifts_of_other_users_and_days_are_ignored():
    store = MemoryStore()
    _shift(store, "other-user", user="u2")
    _shift(store, "other-day", key="2024-05-01")
    res = _resolve(store)
    assert res.is_new is True
    assert res.shift_id not in {"other-user", "other-day"}


def test_client_shift_id_takes_priority_over_open_shift():
    store = MemoryStore()
    _shift(store, "open-one", start=DAY_START + timedelta(hours=3))
    _shift(store, "client", status="closed", start=DAY_START + timedelta(hours=1), end=DAY_START + timedelta(hours=2))
    res = _resolve(store, client_shift_id="client")
    assert (res.shift_id, res.is_new) == ("client", False)
    assert res.start_time == DAY_START + timedelta(hours=1)


def test_unknown_client_shift_id_becomes_a_new_shift(capsys):
    store = MemoryStore()
    _shift(store, "done", status="closed", end=DAY_START + timedelta(hours=5))
    res = _resolve(store, client_shift_id="from-device")
    assert (res.shift_id, res.is_new) == ("from-device", True)
    assert res.start_time == DAY_START + timedelta(hours=5)
    assert "shift.client_id_not_found" in capsys.readouterr().err


def test_shift_document_is_open():
    doc = shift_document("st", "u1", "An", KEY, DAY_START)
    assert doc["status"] == "open"
    assert doc["endTime"] is None
    assert doc["openingBalance"] == 0


def test_foreign_client_shift_is_kept_but_logged(capsys):
    store = MemoryStore()
    _shift(store, "theirs", user="u2")
    res = _resolve(store, client_shift_id="theirs")
    assert (res.shift_id, res.is_new) == ("theirs", False)
    assert "shift.client_id_owner_mismatch" in capsys.readouterr().err

    _shift(store, "mine")
    _resolve(store, client_shift_id="mine")
    assert "shift.client_id_owner_mismatch" not in capsys.readouterr().err
