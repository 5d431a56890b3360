"""
Materializer - folds the event log into the read store

Each event is compared against the stored version of its resource:

- version <= current: already applied, skipped (checkpoint still moves)
- version == current + 1 and consistent with the resource's state:
  reduced into the state and committed together with the checkpoint
- anything else: parked until its predecessor shows up; too many parked
  events for one resource is an unresolved gap and halts that resource

Per resource the state machine is
    Unknown -create-> Live -update*-> Live -delete-> Tombstoned
"""

from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum

from eventfold.kernel.codec import decode_event
from eventfold.kernel.envelopes import Checkpoint, Event, LogEntry
from eventfold.kernel.errors import CorruptEnvelope, UnresolvedGap
from eventfold.kernel.log_store import SQLitePartitionedLog
from eventfold.kernel.logging import (
    LogOperation,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
)
from eventfold.kernel.metrics import (
    apply_duration_seconds,
    corrupt_envelopes_total,
    events_materialized_total,
    track_duration,
    unresolved_gaps_total,
)
from eventfold.kernel.read_store import GapRecord, ReadStoreEntry, SQLiteReadStore
from eventfold.kernel.retry import retry_on_sqlite_lock
from eventfold.schema.rules import RulesRegistry

logger = get_logger(__name__)


class ApplyResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    PARKED = "parked"
    GAP_UNRESOLVED = "gap_unresolved"


def follows(current: ReadStoreEntry, event: Event) -> bool:
    """
    True if event is the next legal step for current

    The version must be exactly one ahead and the event kind must fit the
    resource's lifecycle state.
    """
    if event.version != current.version + 1:
        return False
    kind = event.kind
    if kind == "create":
        return current.version == 0
    if kind in ("update", "delete"):
        return current.version > 0 and not current.deleted
    return False


def fold(current: ReadStoreEntry, event: Event, rules: RulesRegistry) -> ReadStoreEntry:
    """Pure transition: state after applying event to current"""
    reducer = rules.rules_for(event.resource_type)
    return ReadStoreEntry(
        resource_type=event.resource_type,
        resource_id=event.resource_id,
        version=event.version,
        state=reducer.reduce(current.state, event),
        deleted=current.deleted or event.kind == "delete",
    )


def replay(events: Iterable[Event], rules: RulesRegistry) -> dict[tuple[str, str], ReadStoreEntry]:
    """
    Fold a sequence of events from scratch

    Events that do not follow their resource's current version are
    ignored, exactly as the incremental path ignores duplicates.

    Returns:
        Final entry per (resource_type, resource_id)
    """
    entries: dict[tuple[str, str], ReadStoreEntry] = {}
    for event in events:
        key = (event.resource_type, event.resource_id)
        current = entries.get(key) or ReadStoreEntry(
            resource_type=event.resource_type, resource_id=event.resource_id
        )
        if follows(current, event):
            entries[key] = fold(current, event, rules)
    return entries


class Materializer:
    """
    Event -> Read Store

    Args:
        rules: Reducers per resource type
        event_log: Source of events (used by handle_entry and rebuild)
        read_store: Destination and checkpoint owner
        gap_window: Parked events per resource tolerated before the gap
            is reported as unresolved
    """

    def __init__(
        self,
        rules: RulesRegistry,
        event_log: SQLitePartitionedLog,
        read_store: SQLiteReadStore,
        gap_window: int = 16,
    ) -> None:
        self.rules = rules
        self.event_log = event_log
        self.read_store = read_store
        self.gap_window = gap_window

    @track_duration(apply_duration_seconds, lambda self, event, checkpoint=None: event.resource_type)
    def apply(self, event: Event, checkpoint: Checkpoint | None = None) -> ApplyResult:
        """
        Apply one event idempotently

        Args:
            event: Event from the event log
            checkpoint: Log position to commit together with the outcome

        Returns:
            What happened to the event
        """
        token = set_correlation_id(event.id)
        try:
            with LogOperation(
                logger,
                "apply_event",
                event_type=event.type,
                resource_id=event.resource_id,
                version=event.version,
            ):
                result = self._apply(event, checkpoint)
            events_materialized_total.labels(
                resource_type=event.resource_type, result=result.value
            ).inc()
            return result
        finally:
            reset_correlation_id(token)

    def handle_entry(self, entry: LogEntry) -> ApplyResult | None:
        """
        Process one event log entry, committing its offset

        Corrupt entries are logged and skipped with the offset advanced.
        """
        checkpoint = Checkpoint(
            log_name=self.event_log.log_name, partition=entry.partition, offset=entry.offset + 1
        )
        try:
            event = decode_event(self.event_log.log_name, entry)
        except CorruptEnvelope as e:
            corrupt_envelopes_total.labels(log_name=self.event_log.log_name).inc()
            logger.error(
                "Skipping corrupt event envelope",
                partition=entry.partition,
                offset=entry.offset,
                reason=e.reason,
            )
            self.read_store.save_checkpoint(checkpoint)
            return None
        return self.apply(event, checkpoint)

    def rebuild(self, resource_id: str | None = None) -> dict[tuple[str, str], ReadStoreEntry]:
        """
        Rebuild entries from the full event log without touching the store

        Args:
            resource_id: Limit the rebuild to one resource

        Returns:
            Entries keyed by (resource_type, resource_id)
        """
        if resource_id is not None:
            entries = self.event_log.entries_for_key(resource_id)
        else:
            entries = [
                entry
                for partition in range(self.event_log.partitions)
                for entry in self.event_log.iter_partition(partition)
            ]
        events = []
        for entry in entries:
            try:
                events.append(decode_event(self.event_log.log_name, entry))
            except CorruptEnvelope:
                continue
        # Per-resource order is version order
        events.sort(key=lambda e: (e.resource_id, e.version))
        return replay(events, self.rules)

    def verify(self) -> list[tuple[str, str]]:
        """
        Compare a full replay with the stored entries

        Returns:
            (resource_type, resource_id) pairs whose stored entry differs
        """
        replayed = self.rebuild()
        mismatched = []
        for key, expected in replayed.items():
            if self.read_store.find(*key) != expected:
                mismatched.append(key)
        return sorted(mismatched)

    def _load(self, event: Event) -> ReadStoreEntry:
        return self.read_store.find(event.resource_type, event.resource_id) or ReadStoreEntry(
            resource_type=event.resource_type, resource_id=event.resource_id
        )

    def _apply(self, event: Event, checkpoint: Checkpoint | None) -> ApplyResult:
        result = self._write(event, checkpoint)
        if result is ApplyResult.APPLIED:
            self._drain(event.resource_type, event.resource_id)
        return result

    @retry_on_sqlite_lock()
    def _write(self, event: Event, checkpoint: Checkpoint | None) -> ApplyResult:
        # A retry after a committed write reads the event back as a duplicate
        current = self._load(event)

        if event.version <= current.version:
            logger.debug(
                "Duplicate event skipped",
                event_id=event.id,
                version=event.version,
                current_version=current.version,
            )
            with self.read_store.transaction() as tx:
                tx.unpark(event.id)
                if checkpoint is not None:
                    tx.save_checkpoint(checkpoint)
            return ApplyResult.DUPLICATE

        if not follows(current, event):
            return self._park(event, current, checkpoint)

        self._commit(current, event, checkpoint)
        return ApplyResult.APPLIED

    def _commit(self, current: ReadStoreEntry, event: Event, checkpoint: Checkpoint | None) -> ReadStoreEntry:
        new_entry = fold(current, event, self.rules)
        with self.read_store.transaction() as tx:
            tx.upsert_entry(new_entry)
            tx.unpark(event.id)
            if checkpoint is not None:
                tx.save_checkpoint(checkpoint)
        logger.info(
            "Event applied",
            event_type=event.type,
            resource_id=event.resource_id,
            version=new_entry.version,
            deleted=new_entry.deleted,
        )
        return new_entry

    def _park(self, event: Event, current: ReadStoreEntry, checkpoint: Checkpoint | None) -> ApplyResult:
        with self.read_store.transaction() as tx:
            tx.park(event)
            if checkpoint is not None:
                tx.save_checkpoint(checkpoint)

        parked = self.read_store.parked_events(event.resource_id)
        logger.warning(
            "Event parked behind a gap",
            event_id=event.id,
            event_type=event.type,
            resource_id=event.resource_id,
            version=event.version,
            expected_version=current.version + 1,
            parked_count=len(parked),
        )
        if len(parked) <= self.gap_window:
            return ApplyResult.PARKED

        first_report = not self.read_store.has_gap(event.resource_id)
        with self.read_store.transaction() as tx:
            tx.record_gap(
                GapRecord(
                    resource_type=event.resource_type,
                    resource_id=event.resource_id,
                    expected_version=current.version + 1,
                    parked_count=len(parked),
                    detected_at=datetime.now(timezone.utc),
                )
            )
        if first_report:
            unresolved_gaps_total.labels(resource_type=event.resource_type).inc()
        logger.error(
            "Unresolved gap - resource halted until the missing event arrives",
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            expected_version=current.version + 1,
            parked_count=len(parked),
        )
        return ApplyResult.GAP_UNRESOLVED

    def assert_no_gaps(self) -> None:
        """
        Raise for the oldest unresolved gap, if any

        Raises:
            UnresolvedGap: When at least one resource is halted
        """
        gaps = self.read_store.gaps()
        if gaps:
            first = gaps[0]
            raise UnresolvedGap(first.resource_id, first.expected_version, first.parked_count)

    @retry_on_sqlite_lock()
    def _drain(self, resource_type: str, resource_id: str) -> None:
        """Apply parked events that now follow the stored version"""
        while True:
            parked = self.read_store.parked_events(resource_id)
            if not parked:
                break
            current = self.read_store.find(resource_type, resource_id) or ReadStoreEntry(
                resource_type=resource_type, resource_id=resource_id
            )
            stale = [e for e in parked if e.version <= current.version]
            if stale:
                with self.read_store.transaction() as tx:
                    for event in stale:
                        tx.unpark(event.id)
                continue
            ready = next((e for e in parked if follows(current, e)), None)
            if ready is None:
                break
            self._commit(current, ready, None)

        if self.read_store.has_gap(resource_id):
            remaining = len(self.read_store.parked_events(resource_id))
            if remaining <= self.gap_window:
                with self.read_store.transaction() as tx:
                    tx.clear_gap(resource_id)
                logger.info("Gap resolved", resource_id=resource_id, parked_count=remaining)
