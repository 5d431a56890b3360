"""
Rejection sink - append-only record of refused commands

Rejections are terminal: nothing in the pipeline consumes them. They exist
for observability tooling and for the validator's idempotency check (a
redelivered command that was already refused gets the same rejection).
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from eventfold.kernel.envelopes import Rejection, RejectionCode
from eventfold.kernel.errors import LogError
from eventfold.kernel.retry import retry_on_sqlite_lock


class SQLiteRejectionSink:
    """
    SQLite-backed rejection sink

    Schema:
    - rejections table keyed by caused_by (one rejection per command id)
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS rejections (
                    caused_by TEXT PRIMARY KEY,
                    code TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    command_type TEXT,
                    resource_id TEXT,
                    recorded_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_rejections_code ON rejections(code)"
            )
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @retry_on_sqlite_lock()
    def record(self, rejection: Rejection) -> Rejection:
        """
        Durably record a rejection

        Recording the same command id twice keeps the first rejection and
        returns it.

        Returns:
            The stored rejection
        """
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO rejections (
                        caused_by, code, reason, command_type, resource_id, recorded_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                    (
                        rejection.caused_by,
                        rejection.code.value,
                        rejection.reason,
                        rejection.command_type,
                        rejection.resource_id,
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.commit()
            except sqlite3.OperationalError:
                conn.rollback()
                raise
            except sqlite3.Error as e:
                conn.rollback()
                raise LogError(f"Failed to record rejection: {e}") from e

            stored = self._find(conn, rejection.caused_by)
        if stored is None:
            raise LogError(f"Rejection for {rejection.caused_by} vanished after insert")
        return stored

    def find(self, caused_by: str) -> Rejection | None:
        """Rejection recorded for a command id, if any"""
        with self._connect() as conn:
            return self._find(conn, caused_by)

    def list(self, code: RejectionCode | None = None, limit: int | None = None) -> list[Rejection]:
        """
        Recorded rejections, oldest first

        Args:
            code: Only rejections with this code
            limit: Maximum number to return
        """
        query = "SELECT * FROM rejections"
        params: list = []
        if code is not None:
            query += " WHERE code = ?"
            params.append(code.value)
        query += " ORDER BY recorded_at ASC, caused_by ASC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            return [self._row_to_rejection(row) for row in conn.execute(query, params)]

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM rejections").fetchone()[0]

    def _find(self, conn: sqlite3.Connection, caused_by: str) -> Rejection | None:
        row = conn.execute(
            "SELECT * FROM rejections WHERE caused_by = ?", (caused_by,)
        ).fetchone()
        return self._row_to_rejection(row) if row else None

    def _row_to_rejection(self, row: sqlite3.Row) -> Rejection:
        return Rejection(
            caused_by=row["caused_by"],
            code=RejectionCode(row["code"]),
            reason=row["reason"],
            command_type=row["command_type"],
            resource_id=row["resource_id"],
        )
