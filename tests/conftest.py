"""
Pytest configuration and shared fixtures

Every test gets its own temporary SQLite file, so logs, checkpoints and the
read store never leak between tests. Ids and timestamps are deterministic.
"""

import json
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import pytest

from eventfold.kernel.ids import SequentialIdFactory
from eventfold.kernel.log_store import COMMAND_LOG, EVENT_LOG, SQLitePartitionedLog
from eventfold.kernel.read_store import SQLiteReadStore
from eventfold.kernel.rejection_sink import SQLiteRejectionSink
from eventfold.kernel.settings import Settings
from eventfold.kernel.time import ManualTimeProvider
from eventfold.pipeline import Pipeline
from eventfold.schema.registry import SchemaRegistry
from eventfold.schema.rules import RulesRegistry

SETTINGS_DATA: dict[str, Any] = {
    "contentTypes": [
        {
            "base": "entries",
            "name": "Entry",
            "fields": [
                {"id": "title", "type": "string", "required": True},
                {"id": "slug", "type": "string"},
                {"id": "count", "type": "number"},
                {"id": "published", "type": "boolean"},
                {"id": "tags", "type": "array"},
                {"id": "meta", "type": "object"},
            ],
            "unique": ["slug"],
        },
        {
            "base": "notes",
            "name": "Note",
            "fields": [{"id": "text", "type": "string", "required": True}],
        },
    ],
    "partitions": 4,
    "gapWindow": 3,
    "pollIntervalMs": 10,
    "batchSize": 50,
}


@pytest.fixture
def temp_db() -> Iterator[Path]:
    """Provide a temporary database file that's cleaned up after test"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # WAL mode leaves sidecar files next to the database
    for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        if path.exists():
            path.unlink()


@pytest.fixture
def settings(temp_db: Path) -> Settings:
    """Two resource types: entries (slug unique) and notes"""
    return Settings.model_validate({**SETTINGS_DATA, "dbPath": str(temp_db)})


@pytest.fixture
def settings_file(tmp_path: Path, settings: Settings) -> Path:
    """The test settings written to disk, as the CLI reads them"""
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({**SETTINGS_DATA, "dbPath": settings.db_path}))
    return path


@pytest.fixture
def test_time() -> ManualTimeProvider:
    """
    Provide a controllable time provider for deterministic tests

    Default time: 2025-01-15 12:00:00 UTC
    """
    return ManualTimeProvider(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def pipeline(settings: Settings, test_time: ManualTimeProvider) -> Iterator[Pipeline]:
    """Fully wired pipeline with sequential command ids (cmd-1, cmd-2, ...)"""
    p = Pipeline(settings, time_provider=test_time, id_factory=SequentialIdFactory())
    yield p
    p.stop()


@pytest.fixture
def schemas(settings: Settings) -> SchemaRegistry:
    return SchemaRegistry.from_settings(settings)


@pytest.fixture
def rules(schemas: SchemaRegistry) -> RulesRegistry:
    return RulesRegistry(schemas)


@pytest.fixture
def command_log(temp_db: Path) -> SQLitePartitionedLog:
    return SQLitePartitionedLog(temp_db, COMMAND_LOG, 4)


@pytest.fixture
def event_log(temp_db: Path) -> SQLitePartitionedLog:
    return SQLitePartitionedLog(temp_db, EVENT_LOG, 4)


@pytest.fixture
def read_store(temp_db: Path) -> SQLiteReadStore:
    """Provide a fresh read store for each test"""
    return SQLiteReadStore(temp_db)


@pytest.fixture
def rejection_sink(temp_db: Path) -> SQLiteRejectionSink:
    return SQLiteRejectionSink(temp_db)
