"""
Pipeline - main facade

Wires the schema registry, logs, validator, materializer and read store
for one database and exposes the operations the outer surfaces need.

Example:
    >>> from eventfold import Pipeline
    >>> pipeline = Pipeline(load_settings("settings.json"))
    >>> command = pipeline.submit("createEntry", {"title": "A"})
    >>> pipeline.process()            # drain validator, then materializer
    >>> pipeline.get("entries", command.id).state
    {'title': 'A'}
"""

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Iterator

from eventfold.gateway import CommandGateway
from eventfold.kernel.envelopes import CommandEnvelope, Rejection, RejectionCode
from eventfold.kernel.ids import IdFactory
from eventfold.kernel.log_store import COMMAND_LOG, EVENT_LOG, SQLitePartitionedLog
from eventfold.kernel.logging import get_logger
from eventfold.kernel.read_store import GapRecord, ReadStoreEntry, SQLiteReadStore
from eventfold.kernel.rejection_sink import SQLiteRejectionSink
from eventfold.kernel.settings import Settings
from eventfold.kernel.time import TimeProvider
from eventfold.kernel.worker import WorkerGroup
from eventfold.materializer.materializer import Materializer
from eventfold.schema.registry import SchemaRegistry
from eventfold.schema.rules import ResourceRules, RulesRegistry
from eventfold.validator.validator import Validator

logger = get_logger(__name__)


class Pipeline:
    """
    eventfold main facade

    Args:
        settings: Frozen process configuration
        rules: Custom ResourceRules per resource type (defaults elsewhere)
        time_provider: Clock for command timestamps
        id_factory: Command id generator
        db_path: Overrides settings.db_path
    """

    def __init__(
        self,
        settings: Settings,
        rules: Mapping[str, ResourceRules] | None = None,
        time_provider: TimeProvider | None = None,
        id_factory: IdFactory | None = None,
        db_path: str | Path | None = None,
    ) -> None:
        self.settings = settings
        self.db_path = Path(db_path or settings.db_path)

        self.schemas = SchemaRegistry.from_settings(settings)
        self.rules = RulesRegistry(self.schemas, rules)

        self.command_log = SQLitePartitionedLog(self.db_path, COMMAND_LOG, settings.partitions)
        self.event_log = SQLitePartitionedLog(self.db_path, EVENT_LOG, settings.partitions)
        self.rejections = SQLiteRejectionSink(self.db_path)
        self.read_store = SQLiteReadStore(self.db_path)

        self.gateway = CommandGateway(self.command_log, self.schemas, id_factory, time_provider)
        self.validator = Validator(
            self.schemas,
            self.rules,
            self.command_log,
            self.event_log,
            self.rejections,
            self.read_store,
        )
        self.materializer = Materializer(
            self.rules, self.event_log, self.read_store, gap_window=settings.gap_window
        )

        poll_interval = settings.poll_interval_ms / 1000.0
        self.validator_workers = WorkerGroup(
            "validator",
            self.command_log,
            self.validator.handle_entry,
            self.read_store,
            poll_interval=poll_interval,
            batch_size=settings.batch_size,
        )
        self.materializer_workers = WorkerGroup(
            "materializer",
            self.event_log,
            self.materializer.handle_entry,
            self.read_store,
            poll_interval=poll_interval,
            batch_size=settings.batch_size,
        )

    # Command side

    def submit(
        self,
        command_type: str,
        body: dict[str, Any] | None = None,
        resource_id: str | None = None,
        user: str | None = None,
        command_id: str | None = None,
    ) -> CommandEnvelope:
        """Append a command to the command log (see CommandGateway.submit)"""
        return self.gateway.submit(command_type, body, resource_id, user, command_id)

    def process(self) -> tuple[int, int]:
        """
        Drain both stages once in the calling thread

        Returns:
            (commands handled, events handled)
        """
        commands = self.validator_workers.run_once()
        events = self.materializer_workers.run_once()
        return commands, events

    # Background workers

    def start(self, validator: bool = True, materializer: bool = True) -> None:
        if validator:
            self.validator_workers.start()
        if materializer:
            self.materializer_workers.start()
        logger.info(
            "Pipeline started",
            validator=validator,
            materializer=materializer,
            partitions=self.settings.partitions,
        )

    def stop(self) -> None:
        """Stop pulling, let in-flight units commit, then join the workers"""
        self.validator_workers.stop()
        self.materializer_workers.stop()
        logger.info("Pipeline stopped")

    # Query side

    def get(self, resource_type: str, resource_id: str) -> ReadStoreEntry:
        """
        Raises:
            SchemaNotFound: Unknown resource type
            EntryNotFound: No such resource
        """
        self.schemas.content_type(resource_type)
        return self.read_store.get(resource_type, resource_id)

    def list(self, resource_type: str, include_deleted: bool = False) -> Iterator[ReadStoreEntry]:
        self.schemas.content_type(resource_type)
        return self.read_store.list(resource_type, include_deleted=include_deleted)

    # Observability

    def list_rejections(self, code: RejectionCode | None = None, limit: int | None = None) -> "list[Rejection]":
        return self.rejections.list(code=code, limit=limit)

    def gaps(self) -> "list[GapRecord]":
        return self.read_store.gaps()

    def lag(self) -> dict[str, int]:
        """Unconsumed entries per log across all partitions"""
        lag = {}
        for log in (self.command_log, self.event_log):
            lag[log.log_name] = sum(
                log.head(p) - self.read_store.load_checkpoint(log.log_name, p).offset
                for p in range(log.partitions)
            )
        return lag

    def status(self) -> dict[str, Any]:
        return {
            "commands": self.command_log.count(),
            "events": self.event_log.count(),
            "rejections": self.rejections.count(),
            "entries": self.read_store.count_entries(),
            "lag": self.lag(),
            "unresolved_gaps": len(self.gaps()),
        }
