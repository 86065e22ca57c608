"""PersistentActivityStore and LocalStore unit tests."""

from __future__ import annotations

import json

import pytest

from modules.core.errors import StorageCapacityExceeded, StorageError
from modules.core.types import ActivityRecord, ImageFilter, OperationKind, OperationSettings, ResultItem
from modules.services.history_service import ACTIVITY_NAMESPACE, PersistentActivityStore
from modules.services.local_store import LocalStore, encoded_size, fit


def make_record(name: str, payload_size: int = 16) -> ActivityRecord:
    return ActivityRecord(
        id=f"id-{name}",
        instruction=name,
        parameters=OperationSettings(),
        results=[ResultItem(payload="x" * payload_size)],
        operation_kind=OperationKind.GENERATE,
    )


def build_store(tmp_path, capacity: int = 1024 * 1024, limit: int = 10) -> PersistentActivityStore:
    store = LocalStore(tmp_path / "data", capacity_bytes=capacity)
    store.init()
    return PersistentActivityStore(store, limit=limit)


def test_append_keeps_newest_first_and_caps(tmp_path):
    activity = build_store(tmp_path, limit=3)
    for name in ("A", "B", "C", "D"):
        assert activity.append(make_record(name)) is True

    assert [record.instruction for record in activity.list()] == ["D", "C", "B"]

    reloaded = build_store(tmp_path, limit=3)
    reloaded.load()
    assert [record.instruction for record in reloaded.list()] == ["D", "C", "B"]


def test_capacity_evicts_oldest_without_raising(tmp_path):
    one = encoded_size([make_record("A", 200).to_dict()])
    activity = build_store(tmp_path, capacity=one * 2 + 10)

    for name in ("A", "B", "C", "D"):
        assert activity.append(make_record(name, 200)) is True

    names = [record.instruction for record in activity.list()]
    assert names[0] == "D"
    assert 1 <= len(names) <= 2
    assert "A" not in names


def test_record_larger_than_budget_clears_log(tmp_path):
    activity = build_store(tmp_path, capacity=1024)
    assert activity.append(make_record("small", 8)) is True

    assert activity.append(make_record("huge", 4096)) is False
    assert activity.list() == []
    assert not (tmp_path / "data" / f"{ACTIVITY_NAMESPACE}.json").exists()


def test_storage_error_leaves_memory_untouched(tmp_path, monkeypatch):
    activity = build_store(tmp_path)
    activity.append(make_record("A"))

    def broken_save(namespace, value):
        raise StorageError("disk on fire")

    monkeypatch.setattr(activity.store, "save", broken_save)

    assert activity.append(make_record("B")) is False
    assert [record.instruction for record in activity.list()] == ["A"]


def test_capacity_error_from_disk_triggers_eviction(tmp_path, monkeypatch):
    activity = build_store(tmp_path)
    activity.append(make_record("A"))
    original_save = activity.store.save
    attempts = []

    def picky_save(namespace, value):
        attempts.append(len(value))
        if len(value) > 1:
            raise StorageCapacityExceeded("quota")
        original_save(namespace, value)

    monkeypatch.setattr(activity.store, "save", picky_save)

    assert activity.append(make_record("B")) is True
    assert attempts == [2, 1]
    assert [record.instruction for record in activity.list()] == ["B"]


def test_remove_and_clear(tmp_path):
    activity = build_store(tmp_path)
    for name in ("A", "B", "C"):
        activity.append(make_record(name))

    assert activity.remove(["id-B", "id-missing"]) is True
    assert [record.instruction for record in activity.list()] == ["C", "A"]

    assert activity.clear() is True
    assert len(activity) == 0
    reloaded = build_store(tmp_path)
    assert reloaded.load() == []


def test_apply_filter_updates_single_item(tmp_path):
    activity = build_store(tmp_path)
    activity.append(make_record("A"))

    assert activity.apply_filter("id-A", 0, ImageFilter.SEPIA) is True
    assert activity.get("id-A").results[0].applied_filter is ImageFilter.SEPIA

    assert activity.apply_filter("id-A", 0, ImageFilter.NONE) is True
    assert activity.get("id-A").results[0].applied_filter is None

    with pytest.raises(IndexError):
        activity.apply_filter("id-A", 3, ImageFilter.BLUR)
    with pytest.raises(KeyError):
        activity.apply_filter("id-missing", 0, ImageFilter.BLUR)


def test_load_skips_unreadable_entries(tmp_path):
    activity = build_store(tmp_path)
    path = tmp_path / "data" / f"{ACTIVITY_NAMESPACE}.json"
    path.write_text(json.dumps([make_record("A").to_dict(), {"instruction": "no id"}]), encoding="utf-8")

    records = activity.load()

    assert [record.instruction for record in records] == ["A"]


def test_load_corrupt_document_starts_empty(tmp_path):
    activity = build_store(tmp_path)
    (tmp_path / "data" / f"{ACTIVITY_NAMESPACE}.json").write_text("{not json", encoding="utf-8")

    assert activity.load() == []


def test_fit_is_pure():
    records = [3, 2, 1]

    fitted = fit(records, lambda items: sum(items), 5)

    assert fitted == [3, 2]
    assert records == [3, 2, 1]
    assert fit(records, lambda items: sum(items), 0) == []


def test_local_store_round_trip_and_budget(tmp_path):
    store = LocalStore(tmp_path, capacity_bytes=64)
    store.save("small", {"a": 1})

    assert store.load("small") == {"a": 1}
    assert store.load("missing") is None
    with pytest.raises(StorageCapacityExceeded):
        store.save("big", {"payload": "y" * 128})
    assert not (tmp_path / "big.json").exists()
    assert list(tmp_path.glob("*.tmp")) == []


def test_local_store_rejects_unserializable(tmp_path):
    store = LocalStore(tmp_path)

    with pytest.raises(StorageError):
        store.save("bad", {"value": object()})
