"""
Tests for the SQLite partitioned log

Verifies core log properties:
- Append-only, dense offsets per partition starting at 0
- Stable routing of a key to one partition
- Idempotent append via entry_id
- Resumable reads from an explicit offset
"""

from pathlib import Path

import pytest

from eventfold.kernel.errors import LogError
from eventfold.kernel.log_store import COMMAND_LOG, EVENT_LOG, SQLitePartitionedLog


def test_append_assigns_dense_offsets(temp_db: Path) -> None:
    """Test that a single-partition log numbers entries 0, 1, 2, ..."""
    log = SQLitePartitionedLog(temp_db, COMMAND_LOG, 1)

    entries = [log.append(f"key-{i}", f"value-{i}") for i in range(3)]

    assert [e.offset for e in entries] == [0, 1, 2]
    assert all(e.partition == 0 for e in entries)
    assert log.head(0) == 3
    assert log.count() == 3


def test_same_key_same_partition(command_log: SQLitePartitionedLog) -> None:
    """Test that every entry for a key lands in the key's partition"""
    partition = command_log.partition_for("resource-1")

    first = command_log.append("resource-1", "a")
    second = command_log.append("resource-1", "b")

    assert first.partition == second.partition == partition
    assert second.offset == first.offset + 1


def test_idempotent_append_with_entry_id(command_log: SQLitePartitionedLog) -> None:
    """Test that re-appending an entry_id returns the original entry"""
    first = command_log.append("r1", "original", entry_id="cmd-1")
    again = command_log.append("r1", "something else", entry_id="cmd-1")

    assert again == first
    assert again.value == "original"
    assert command_log.count() == 1


def test_find_by_entry_id(command_log: SQLitePartitionedLog) -> None:
    entry = command_log.append("r1", "v", entry_id="cmd-1")

    assert command_log.find("cmd-1") == entry
    assert command_log.find("missing") is None


def test_read_from_offset_with_limit(temp_db: Path) -> None:
    """Test that consumers can resume from any offset"""
    log = SQLitePartitionedLog(temp_db, EVENT_LOG, 1)
    for i in range(5):
        log.append("k", str(i))

    assert [e.value for e in log.read(0, from_offset=2)] == ["2", "3", "4"]
    assert [e.value for e in log.read(0, from_offset=1, limit=2)] == ["1", "2"]
    assert log.read(0, from_offset=5) == []


def test_iter_partition_pages_through_everything(temp_db: Path) -> None:
    log = SQLitePartitionedLog(temp_db, EVENT_LOG, 1)
    for i in range(7):
        log.append("k", str(i))

    values = [e.value for e in log.iter_partition(0, from_offset=1, batch_size=3)]

    assert values == ["1", "2", "3", "4", "5", "6"]


def test_head_of_empty_partition_is_zero(command_log: SQLitePartitionedLog) -> None:
    assert all(command_log.head(p) == 0 for p in range(command_log.partitions))


def test_read_rejects_unknown_partition(command_log: SQLitePartitionedLog) -> None:
    with pytest.raises(ValueError):
        command_log.read(command_log.partitions)


def test_entries_for_key_in_append_order(command_log: SQLitePartitionedLog) -> None:
    command_log.append("r1", "first")
    command_log.append("r2", "other")
    command_log.append("r1", "second")

    assert [e.value for e in command_log.entries_for_key("r1")] == ["first", "second"]
    assert command_log.last_for_key("r1").value == "second"
    assert command_log.last_for_key("unknown") is None


def test_logs_share_database_but_not_offsets(
    command_log: SQLitePartitionedLog, event_log: SQLitePartitionedLog
) -> None:
    """Test that the command log and event log are independent"""
    command_log.append("r1", "command")
    entry = event_log.append("r1", "event")

    assert entry.offset == 0
    assert command_log.count() == 1
    assert event_log.count() == 1
    assert event_log.entries_for_key("r1")[0].value == "event"


def test_entry_ids_scoped_per_log(
    command_log: SQLitePartitionedLog, event_log: SQLitePartitionedLog
) -> None:
    command_log.append("r1", "command", entry_id="same-id")
    event_log.append("r1", "event", entry_id="same-id")

    assert command_log.find("same-id").value == "command"
    assert event_log.find("same-id").value == "event"


def test_partition_count_is_fixed(temp_db: Path) -> None:
    """Test that reopening a log with another partition count fails"""
    SQLitePartitionedLog(temp_db, COMMAND_LOG, 4)

    with pytest.raises(LogError, match="partitions"):
        SQLitePartitionedLog(temp_db, COMMAND_LOG, 8)

    # Same count reopens fine
    assert SQLitePartitionedLog(temp_db, COMMAND_LOG, 4).partitions == 4


def test_invalid_partition_count(temp_db: Path) -> None:
    with pytest.raises(ValueError):
        SQLitePartitionedLog(temp_db, COMMAND_LOG, 0)


def test_entries_survive_reopen(temp_db: Path) -> None:
    """Test that appended entries are durable"""
    SQLitePartitionedLog(temp_db, COMMAND_LOG, 2).append("r1", "persisted")

    reopened = SQLitePartitionedLog(temp_db, COMMAND_LOG, 2)

    assert reopened.last_for_key("r1").value == "persisted"
