"""
Tests for the SQLite read store

Verifies:
- Entries and checkpoints commit together or not at all
- Checkpoints never move backwards
- Lazy, restartable listing in insertion order
- Parked events and gap records
"""

from datetime import datetime, timezone

import pytest

from eventfold.kernel.envelopes import Checkpoint
from eventfold.kernel.errors import EntryNotFound
from eventfold.kernel.read_store import GapRecord, ReadStoreEntry, SQLiteReadStore
from tests.helpers import make_event


def entry(resource_id: str, version: int = 1, deleted: bool = False, **state) -> ReadStoreEntry:
    return ReadStoreEntry(
        resource_type="entries",
        resource_id=resource_id,
        version=version,
        state=state,
        deleted=deleted,
    )


def test_upsert_and_get(read_store: SQLiteReadStore) -> None:
    """Test storing an entry and reading it back"""
    read_store.upsert(entry("e1", title="A"))

    stored = read_store.get("entries", "e1")

    assert stored.version == 1
    assert stored.state == {"title": "A"}
    assert stored.deleted is False
    assert stored.exists


def test_upsert_replaces_existing(read_store: SQLiteReadStore) -> None:
    read_store.upsert(entry("e1", title="A"))
    read_store.upsert(entry("e1", version=2, title="B"))

    assert read_store.get("entries", "e1").state == {"title": "B"}
    assert read_store.count_entries("entries") == 1


def test_get_missing_raises(read_store: SQLiteReadStore) -> None:
    with pytest.raises(EntryNotFound):
        read_store.get("entries", "missing")

    assert read_store.find("entries", "missing") is None


def test_find_is_scoped_by_resource_type(read_store: SQLiteReadStore) -> None:
    read_store.upsert(entry("e1", title="A"))

    assert read_store.find("notes", "e1") is None


def test_deleted_entry_does_not_exist(read_store: SQLiteReadStore) -> None:
    read_store.upsert(entry("e1", version=2, deleted=True, title="A"))

    stored = read_store.get("entries", "e1")

    assert stored.deleted
    assert not stored.exists


def test_checkpoint_defaults_to_zero(read_store: SQLiteReadStore) -> None:
    assert read_store.load_checkpoint("commands", 0).offset == 0


def test_checkpoint_never_moves_backwards(read_store: SQLiteReadStore) -> None:
    """Test that a late, lower checkpoint cannot rewind a consumer"""
    read_store.save_checkpoint(Checkpoint(log_name="events", partition=1, offset=7))
    read_store.save_checkpoint(Checkpoint(log_name="events", partition=1, offset=3))

    assert read_store.load_checkpoint("events", 1).offset == 7
    assert read_store.load_checkpoint("events", 0).offset == 0


def test_upsert_with_checkpoint_is_atomic(read_store: SQLiteReadStore) -> None:
    checkpoint = Checkpoint(log_name="events", partition=2, offset=5)

    read_store.upsert(entry("e1", title="A"), checkpoint)

    assert read_store.find("entries", "e1") is not None
    assert read_store.load_checkpoint("events", 2).offset == 5


def test_failed_transaction_rolls_back(read_store: SQLiteReadStore) -> None:
    """Test that neither entry nor checkpoint survive a failed unit"""
    with pytest.raises(RuntimeError):
        with read_store.transaction() as tx:
            tx.upsert_entry(entry("e1", title="A"))
            tx.save_checkpoint(Checkpoint(log_name="events", partition=0, offset=1))
            raise RuntimeError("crash before commit")

    assert read_store.find("entries", "e1") is None
    assert read_store.load_checkpoint("events", 0).offset == 0


def test_list_in_insertion_order(read_store: SQLiteReadStore) -> None:
    for rid in ["c", "a", "b"]:
        read_store.upsert(entry(rid, title=rid))
    # Updating keeps the original position
    read_store.upsert(entry("c", version=2, title="c2"))

    ids = [e.resource_id for e in read_store.list("entries")]

    assert ids == ["c", "a", "b"]


def test_list_skips_deleted_unless_asked(read_store: SQLiteReadStore) -> None:
    read_store.upsert(entry("live", title="x"))
    read_store.upsert(entry("gone", version=2, deleted=True, title="y"))

    assert [e.resource_id for e in read_store.list("entries")] == ["live"]
    assert [e.resource_id for e in read_store.list("entries", include_deleted=True)] == [
        "live",
        "gone",
    ]


def test_list_pages_lazily_and_restarts(read_store: SQLiteReadStore) -> None:
    """Test that listing works across pages and can be started again"""
    for i in range(5):
        read_store.upsert(entry(f"e{i}", title=str(i)))

    iterator = read_store.list("entries", page_size=2)
    first = next(iterator)
    rest = list(iterator)

    assert first.resource_id == "e0"
    assert [e.resource_id for e in rest] == ["e1", "e2", "e3", "e4"]
    assert len(list(read_store.list("entries", page_size=2))) == 5


def test_find_by_field_only_live(read_store: SQLiteReadStore) -> None:
    read_store.upsert(entry("e1", slug="hello"))
    read_store.upsert(entry("e2", version=2, deleted=True, slug="hello"))
    read_store.upsert(entry("e3", slug="other"))

    found = read_store.find_by_field("entries", "slug", "hello")

    assert [e.resource_id for e in found] == ["e1"]


def test_find_by_field_rejects_structured_values(read_store: SQLiteReadStore) -> None:
    with pytest.raises(ValueError):
        read_store.find_by_field("entries", "tags", ["a"])


def test_parked_events_ordered_by_version(read_store: SQLiteReadStore) -> None:
    with read_store.transaction() as tx:
        tx.park(make_event("e1", 4))
        tx.park(make_event("e1", 3))
        tx.park(make_event("other", 2))

    parked = read_store.parked_events("e1")

    assert [e.version for e in parked] == [3, 4]


def test_parking_twice_is_idempotent(read_store: SQLiteReadStore) -> None:
    event = make_event("e1", 3)
    with read_store.transaction() as tx:
        tx.park(event)
        tx.park(event)

    assert len(read_store.parked_events("e1")) == 1

    with read_store.transaction() as tx:
        tx.unpark(event.id)

    assert read_store.parked_events("e1") == []


def test_gap_records(read_store: SQLiteReadStore) -> None:
    gap = GapRecord(
        resource_type="entries",
        resource_id="e1",
        expected_version=2,
        parked_count=4,
        detected_at=datetime(2025, 1, 15, tzinfo=timezone.utc),
    )
    with read_store.transaction() as tx:
        tx.record_gap(gap)

    assert read_store.has_gap("e1")
    assert read_store.gaps() == [gap]

    with read_store.transaction() as tx:
        tx.clear_gap("e1")

    assert not read_store.has_gap("e1")
    assert read_store.gaps() == []
