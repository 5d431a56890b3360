"""
SQLite partitioned log - append-only, keyed, offset-addressed

Both the Command Log and the Event Log are instances of this class with
different names; they may share one database file. Each log is split into
a fixed number of partitions and every entry is routed by its key, so all
entries for one resource sit in one partition in append order.

Guarantees:
- Append-only (entries are never modified or deleted)
- Dense offsets per partition, starting at 0
- Idempotent append when an entry_id is given (same id = same entry)
- Consumers resume from any explicit offset
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from eventfold.kernel.envelopes import LogEntry
from eventfold.kernel.errors import LogError
from eventfold.kernel.logging import get_logger
from eventfold.kernel.metrics import log_entries_appended_total
from eventfold.kernel.partitioning import partition_for
from eventfold.kernel.retry import retry_on_sqlite_lock

logger = get_logger(__name__)

COMMAND_LOG = "commands"
EVENT_LOG = "events"


class SQLitePartitionedLog:
    """
    SQLite-based partitioned log

    Schema:
    - log_entries table: (log_name, part, pos) primary key
    - Unique constraint: (log_name, entry_id) for idempotent appends
    - Index on (log_name, key, part, pos) for per-key lookups
    """

    def __init__(self, db_path: str | Path, log_name: str, partitions: int) -> None:
        """
        Args:
            db_path: Path to SQLite database file
            log_name: Name of this log (e.g. "commands", "events")
            partitions: Number of partitions; must not change for a database
        """
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self.db_path = Path(db_path)
        self.log_name = log_name
        self.partitions = partitions
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS log_entries (
                    log_name TEXT NOT NULL,
                    part INTEGER NOT NULL,
                    pos INTEGER NOT NULL,
                    key TEXT NOT NULL,
                    entry_id TEXT,
                    value TEXT NOT NULL,
                    appended_at TEXT NOT NULL,

                    PRIMARY KEY (log_name, part, pos),
                    UNIQUE (log_name, entry_id)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_log_entries_key "
                "ON log_entries(log_name, key, part, pos)"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS log_meta (
                    log_name TEXT PRIMARY KEY,
                    partitions INTEGER NOT NULL
                )
            """)
            row = conn.execute(
                "SELECT partitions FROM log_meta WHERE log_name = ?", (self.log_name,)
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO log_meta (log_name, partitions) VALUES (?, ?)",
                    (self.log_name, self.partitions),
                )
            elif row["partitions"] != self.partitions:
                raise LogError(
                    f"Log {self.log_name} was created with {row['partitions']} partitions, "
                    f"not {self.partitions} - repartitioning would break per-key ordering"
                )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """
        Connection in autocommit mode

        Writers open explicit BEGIN IMMEDIATE transactions so offset
        allocation is serialized across threads and processes.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=5.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def partition_for(self, key: str) -> int:
        """Partition that entries with this key are routed to"""
        return partition_for(key, self.partitions)

    @retry_on_sqlite_lock()
    def append(self, key: str, value: str, entry_id: str | None = None) -> LogEntry:
        """
        Append a value to the partition owned by key

        Returning means the entry is durable (the acknowledgement).

        Args:
            key: Routing key (resource id)
            value: Encoded envelope
            entry_id: Optional idempotency key; re-appending the same id
                returns the original entry instead of a new one

        Returns:
            The stored entry with its partition and offset
        """
        partition = self.partition_for(key)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if entry_id is not None:
                    existing = self._find(conn, entry_id)
                    if existing is not None:
                        conn.execute("COMMIT")
                        logger.debug(
                            "Idempotent append - entry already present",
                            log_name=self.log_name,
                            entry_id=entry_id,
                            offset=existing.offset,
                        )
                        return existing

                offset = self._head(conn, partition)
                conn.execute(
                    """
                    INSERT INTO log_entries (
                        log_name, part, pos, key, entry_id, value, appended_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        self.log_name,
                        partition,
                        offset,
                        key,
                        entry_id,
                        value,
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.execute("COMMIT")
            except sqlite3.OperationalError:
                conn.execute("ROLLBACK")
                raise
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise LogError(f"Failed to append to {self.log_name}: {e}") from e

        log_entries_appended_total.labels(log_name=self.log_name).inc()
        return LogEntry(key=key, value=value, partition=partition, offset=offset)

    def read(self, partition: int, from_offset: int = 0, limit: int = 100) -> list[LogEntry]:
        """
        Read entries of one partition in offset order

        Args:
            partition: Partition number
            from_offset: First offset to return (inclusive)
            limit: Maximum number of entries

        Returns:
            Entries with offset >= from_offset, oldest first
        """
        if not 0 <= partition < self.partitions:
            raise ValueError(f"partition {partition} out of range for {self.log_name}")
        with self._connect() as conn:
            cursor = conn.execute(
                """
                SELECT key, value, part, pos FROM log_entries
                WHERE log_name = ? AND part = ? AND pos >= ?
                ORDER BY pos ASC
                LIMIT ?
            """,
                (self.log_name, partition, from_offset, limit),
            )
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    def iter_partition(self, partition: int, from_offset: int = 0, batch_size: int = 500) -> Iterator[LogEntry]:
        """Lazily iterate a whole partition from an offset"""
        offset = from_offset
        while True:
            batch = self.read(partition, offset, batch_size)
            if not batch:
                return
            yield from batch
            offset = batch[-1].offset + 1

    def head(self, partition: int) -> int:
        """Next offset to be assigned in a partition (0 when empty)"""
        with self._connect() as conn:
            return self._head(conn, partition)

    def find(self, entry_id: str) -> LogEntry | None:
        """Entry appended with this entry_id, if any"""
        with self._connect() as conn:
            return self._find(conn, entry_id)

    def last_for_key(self, key: str) -> LogEntry | None:
        """Most recently appended entry for a key"""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT key, value, part, pos FROM log_entries
                WHERE log_name = ? AND key = ? AND part = ?
                ORDER BY pos DESC
                LIMIT 1
            """,
                (self.log_name, key, self.partition_for(key)),
            ).fetchone()
            return self._row_to_entry(row) if row else None

    def entries_for_key(self, key: str) -> list[LogEntry]:
        """All entries for a key in append order"""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                SELECT key, value, part, pos FROM log_entries
                WHERE log_name = ? AND key = ? AND part = ?
                ORDER BY pos ASC
            """,
                (self.log_name, key, self.partition_for(key)),
            )
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    def count(self) -> int:
        """Total number of entries across partitions"""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM log_entries WHERE log_name = ?", (self.log_name,)
            ).fetchone()
            return row[0]

    def _head(self, conn: sqlite3.Connection, partition: int) -> int:
        row = conn.execute(
            "SELECT MAX(pos) FROM log_entries WHERE log_name = ? AND part = ?",
            (self.log_name, partition),
        ).fetchone()
        return row[0] + 1 if row[0] is not None else 0

    def _find(self, conn: sqlite3.Connection, entry_id: str) -> LogEntry | None:
        row = conn.execute(
            """
            SELECT key, value, part, pos FROM log_entries
            WHERE log_name = ? AND entry_id = ?
        """,
            (self.log_name, entry_id),
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def _row_to_entry(self, row: sqlite3.Row) -> LogEntry:
        return LogEntry(
            key=row["key"],
            value=row["value"],
            partition=row["part"],
            offset=row["pos"],
        )
