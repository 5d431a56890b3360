"""
Read Store - current state per resource, built from events

The read store is the materialized view of the event log. It also holds
everything the materializer needs to resume after a crash: per-partition
checkpoints, events parked behind a version gap, and unresolved gap
records. All of these change together inside one SQLite transaction, so
readers see either the state before an apply or after it, never between.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field

from eventfold.kernel.codec import encode
from eventfold.kernel.envelopes import Checkpoint, Event
from eventfold.kernel.errors import EntryNotFound, LogError
from eventfold.kernel.retry import retry_on_sqlite_lock


class ReadStoreEntry(BaseModel):
    """
    Current state of one resource

    version equals the version of the last applied event; 0 means the
    resource has never been seen.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    resource_type: str = Field(..., alias="resourceType")
    resource_id: str = Field(..., alias="resourceId")
    version: int = Field(default=0, ge=0)
    state: dict[str, Any] = Field(default_factory=dict)
    deleted: bool = False

    @property
    def exists(self) -> bool:
        """True for live resources (created and not deleted)"""
        return self.version > 0 and not self.deleted


class GapRecord(BaseModel):
    """A resource halted on a missing event"""

    model_config = ConfigDict(frozen=True)

    resource_type: str
    resource_id: str
    expected_version: int
    parked_count: int
    detected_at: datetime


class ReadStoreTransaction:
    """
    Mutations that commit or roll back together

    Obtained from SQLiteReadStore.transaction(); not used directly.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def upsert_entry(self, entry: ReadStoreEntry) -> None:
        self._conn.execute(
            """
            INSERT INTO entries (resource_type, resource_id, version, state_json, deleted, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(resource_type, resource_id) DO UPDATE SET
                version = excluded.version,
                state_json = excluded.state_json,
                deleted = excluded.deleted,
                updated_at = excluded.updated_at
        """,
            (
                entry.resource_type,
                entry.resource_id,
                entry.version,
                json.dumps(entry.state, sort_keys=True),
                int(entry.deleted),
                _now(),
            ),
        )

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        # Never move a checkpoint backwards
        self._conn.execute(
            """
            INSERT INTO checkpoints (log_name, part, pos, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(log_name, part) DO UPDATE SET
                pos = MAX(pos, excluded.pos),
                updated_at = excluded.updated_at
        """,
            (checkpoint.log_name, checkpoint.partition, checkpoint.offset, _now()),
        )

    def park(self, event: Event) -> None:
        self._conn.execute(
            """
            INSERT OR IGNORE INTO parked_events (
                event_id, resource_type, resource_id, version, event_json, parked_at
            ) VALUES (?, ?, ?, ?, ?, ?)
        """,
            (
                event.id,
                event.resource_type,
                event.resource_id,
                event.version,
                encode(event),
                _now(),
            ),
        )

    def unpark(self, event_id: str) -> None:
        self._conn.execute("DELETE FROM parked_events WHERE event_id = ?", (event_id,))

    def record_gap(self, gap: GapRecord) -> None:
        self._conn.execute(
            """
            INSERT INTO gaps (resource_id, resource_type, expected_version, parked_count, detected_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(resource_id) DO UPDATE SET
                expected_version = excluded.expected_version,
                parked_count = excluded.parked_count
        """,
            (
                gap.resource_id,
                gap.resource_type,
                gap.expected_version,
                gap.parked_count,
                gap.detected_at.isoformat(),
            ),
        )

    def clear_gap(self, resource_id: str) -> None:
        self._conn.execute("DELETE FROM gaps WHERE resource_id = ?", (resource_id,))


class SQLiteReadStore:
    """
    SQLite-based read store

    Schema:
    - entries: one row per (resource_type, resource_id); rowid keeps insertion order
    - checkpoints: next offset per (log_name, partition)
    - parked_events: events waiting for a missing predecessor
    - gaps: resources halted on an unresolved gap
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Args:
            db_path: Path to SQLite database file (can be shared with the logs)
        """
        self.db_path = Path(db_path)
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    resource_type TEXT NOT NULL,
                    resource_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    state_json TEXT NOT NULL,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,

                    PRIMARY KEY (resource_type, resource_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    log_name TEXT NOT NULL,
                    part INTEGER NOT NULL,
                    pos INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,

                    PRIMARY KEY (log_name, part)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS parked_events (
                    event_id TEXT PRIMARY KEY,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    event_json TEXT NOT NULL,
                    parked_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_parked_resource "
                "ON parked_events(resource_id, version)"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS gaps (
                    resource_id TEXT PRIMARY KEY,
                    resource_type TEXT NOT NULL,
                    expected_version INTEGER NOT NULL,
                    parked_count INTEGER NOT NULL,
                    detected_at TEXT NOT NULL
                )
            """)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=5.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[ReadStoreTransaction]:
        """
        Atomic unit of read store mutations

        Example:
            with store.transaction() as tx:
                tx.upsert_entry(entry)
                tx.save_checkpoint(checkpoint)
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield ReadStoreTransaction(conn)
            except sqlite3.OperationalError:
                conn.execute("ROLLBACK")
                raise
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise LogError(f"Read store transaction failed: {e}") from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    @retry_on_sqlite_lock()
    def upsert(self, entry: ReadStoreEntry, checkpoint: Checkpoint | None = None) -> None:
        """
        Persist an entry and its checkpoint as one unit

        Args:
            entry: New state of the resource
            checkpoint: Log position that produced it
        """
        with self.transaction() as tx:
            tx.upsert_entry(entry)
            if checkpoint is not None:
                tx.save_checkpoint(checkpoint)

    @retry_on_sqlite_lock()
    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Persist a checkpoint on its own (no state change)"""
        with self.transaction() as tx:
            tx.save_checkpoint(checkpoint)

    def load_checkpoint(self, log_name: str, partition: int) -> Checkpoint:
        """Checkpoint for a log partition (offset 0 if never committed)"""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT pos FROM checkpoints WHERE log_name = ? AND part = ?",
                (log_name, partition),
            ).fetchone()
        return Checkpoint(
            log_name=log_name, partition=partition, offset=row["pos"] if row else 0
        )

    def find(self, resource_type: str, resource_id: str) -> ReadStoreEntry | None:
        """Entry for a resource, or None (deleted entries are returned)"""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM entries WHERE resource_type = ? AND resource_id = ?",
                (resource_type, resource_id),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def get(self, resource_type: str, resource_id: str) -> ReadStoreEntry:
        """
        Entry for a resource

        Raises:
            EntryNotFound: If the resource was never materialized
        """
        entry = self.find(resource_type, resource_id)
        if entry is None:
            raise EntryNotFound(resource_type, resource_id)
        return entry

    def find_by_field(self, resource_type: str, field: str, value: Any) -> list[ReadStoreEntry]:
        """
        Live entries whose state[field] equals value

        Used by uniqueness rules. Only scalar values are comparable.
        """
        if isinstance(value, (dict, list)):
            raise ValueError("find_by_field only supports scalar values")
        path = '$."' + field.replace('"', '\\"') + '"'
        with self._connect() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM entries
                WHERE resource_type = ? AND deleted = 0
                  AND json_extract(state_json, ?) = ?
                ORDER BY rowid ASC
            """,
                (resource_type, path, value),
            )
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    def parked_events(self, resource_id: str) -> list[Event]:
        """Events parked for a resource, lowest version first"""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                SELECT event_json FROM parked_events
                WHERE resource_id = ?
                ORDER BY version ASC, event_id ASC
            """,
                (resource_id,),
            )
            return [Event.model_validate_json(row["event_json"]) for row in cursor.fetchall()]

    def gaps(self) -> list[GapRecord]:
        """Resources currently halted on an unresolved gap"""
        with self._connect() as conn:
            cursor = conn.execute("SELECT * FROM gaps ORDER BY detected_at ASC")
            return [
                GapRecord(
                    resource_type=row["resource_type"],
                    resource_id=row["resource_id"],
                    expected_version=row["expected_version"],
                    parked_count=row["parked_count"],
                    detected_at=datetime.fromisoformat(row["detected_at"]),
                )
                for row in cursor.fetchall()
            ]

    def has_gap(self, resource_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM gaps WHERE resource_id = ?", (resource_id,)
            ).fetchone()
        return row is not None

    def count_entries(self, resource_type: str | None = None) -> int:
        with self._connect() as conn:
            if resource_type is None:
                row = conn.execute("SELECT COUNT(*) FROM entries").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM entries WHERE resource_type = ?", (resource_type,)
                ).fetchone()
        return row[0]

    def list(
        self,
        resource_type: str,
        include_deleted: bool = False,
        page_size: int = 200,
    ) -> Iterator[ReadStoreEntry]:
        """
        Lazily iterate the entries of a resource type in insertion order

        The iterator pages through the table, so it never holds more than
        page_size rows and can be restarted by calling list() again.
        """
        last_rowid = 0
        while True:
            with self._connect() as conn:
                query = "SELECT rowid, * FROM entries WHERE resource_type = ? AND rowid > ?"
                if not include_deleted:
                    query += " AND deleted = 0"
                query += " ORDER BY rowid ASC LIMIT ?"
                rows = conn.execute(query, (resource_type, last_rowid, page_size)).fetchall()
            if not rows:
                return
            for row in rows:
                yield self._row_to_entry(row)
            last_rowid = rows[-1]["rowid"]

    def _row_to_entry(self, row: sqlite3.Row) -> ReadStoreEntry:
        return ReadStoreEntry(
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            version=row["version"],
            state=json.loads(row["state_json"]),
            deleted=bool(row["deleted"]),
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
