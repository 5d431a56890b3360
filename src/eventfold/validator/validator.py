"""
Validator - turns each command into exactly one Event or Rejection

For every command the validator:
1. Returns the prior outcome if this command id was already decided
2. Checks the body against the resource schema
3. Asks the resource type's rules whether the change is allowed
4. Appends the resulting event (or records the rejection)
5. Lets the caller commit the command log offset only after step 4

Domain failures are outcomes, not faults: they never escape validate().
Only log/store faults propagate and stop the consumption loop.
"""

from eventfold.kernel.codec import decode_command, decode_event, encode, recover_command_id
from eventfold.kernel.envelopes import (
    Checkpoint,
    CommandEnvelope,
    Event,
    LogEntry,
    Outcome,
    Rejection,
    RejectionCode,
    event_type_for,
)
from eventfold.kernel.errors import Conflict, CorruptEnvelope, DomainRejection, NotFound, SchemaInvalid
from eventfold.kernel.ids import derive_event_id
from eventfold.kernel.log_store import SQLitePartitionedLog
from eventfold.kernel.logging import (
    LogOperation,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
)
from eventfold.kernel.metrics import (
    commands_validated_total,
    corrupt_envelopes_total,
    rejections_total,
    track_duration,
    validate_duration_seconds,
)
from eventfold.kernel.read_store import ReadStoreEntry, SQLiteReadStore
from eventfold.kernel.rejection_sink import SQLiteRejectionSink
from eventfold.schema.registry import SchemaRegistry
from eventfold.schema.rules import RulesRegistry

logger = get_logger(__name__)


class Validator:
    """
    Command -> Event | Rejection

    Stateless between commands: everything it needs to stay idempotent
    lives in the event log and the rejection sink.
    """

    def __init__(
        self,
        schemas: SchemaRegistry,
        rules: RulesRegistry,
        command_log: SQLitePartitionedLog,
        event_log: SQLitePartitionedLog,
        rejections: SQLiteRejectionSink,
        read_store: SQLiteReadStore,
    ) -> None:
        self.schemas = schemas
        self.rules = rules
        self.command_log = command_log
        self.event_log = event_log
        self.rejections = rejections
        self.read_store = read_store

    @track_duration(validate_duration_seconds, lambda self, command: command.type)
    def validate(self, command: CommandEnvelope) -> Outcome:
        """
        Decide a command and durably record the decision

        Calling this twice with the same command returns the same outcome
        and appends nothing the second time.

        Args:
            command: Decoded command envelope

        Returns:
            The Event appended to the event log, or the recorded Rejection
        """
        token = set_correlation_id(command.id)
        try:
            prior = self.prior_outcome(command.id)
            if prior is not None:
                commands_validated_total.labels(command_type=command.type, outcome="duplicate").inc()
                logger.info(
                    "Command already decided - returning prior outcome",
                    command_id=command.id,
                    outcome=type(prior).__name__,
                )
                return prior

            with LogOperation(logger, "validate_command", command_type=command.type, command_id=command.id):
                try:
                    outcome: Outcome = self._decide(command)
                except DomainRejection as e:
                    outcome = Rejection(
                        caused_by=command.id,
                        reason=e.reason,
                        code=e.code,
                        command_type=command.type,
                        resource_id=command.target_id,
                    )
                return self._record(command, outcome)
        finally:
            reset_correlation_id(token)

    def prior_outcome(self, command_id: str) -> Outcome | None:
        """Event or Rejection already recorded for a command id"""
        entry = self.event_log.find(derive_event_id(command_id))
        if entry is not None:
            return decode_event(self.event_log.log_name, entry)
        return self.rejections.find(command_id)

    def current_state(self, resource_type: str, resource_id: str) -> ReadStoreEntry:
        """
        Write-side view of a resource

        The newest event in the event log wins over the read store, which
        may lag behind the materializer. State comes from the read store.
        """
        stored = self.read_store.find(resource_type, resource_id)
        head_entry = self.event_log.last_for_key(resource_id)
        if head_entry is None:
            return stored or ReadStoreEntry(resource_type=resource_type, resource_id=resource_id)

        head = decode_event(self.event_log.log_name, head_entry)
        if stored is not None and stored.version >= head.version:
            return stored
        return ReadStoreEntry(
            resource_type=head.resource_type,
            resource_id=resource_id,
            version=head.version,
            state=stored.state if stored is not None else {},
            deleted=head.kind == "delete",
        )

    def handle_entry(self, entry: LogEntry) -> Outcome | None:
        """
        Process one command log entry and commit its offset

        The checkpoint is saved only after the outcome is durable, so a
        crash in between causes a redelivery that validate() absorbs.
        Corrupt entries are logged and skipped.
        """
        checkpoint = Checkpoint(
            log_name=self.command_log.log_name, partition=entry.partition, offset=entry.offset + 1
        )
        try:
            command = decode_command(self.command_log.log_name, entry)
        except CorruptEnvelope as e:
            self._skip_corrupt(entry, e)
            self.read_store.save_checkpoint(checkpoint)
            return None

        if command.target_id != entry.key:
            logger.warning(
                "Command key does not match its resource id",
                command_id=command.id,
                key=entry.key,
                resource_id=command.target_id,
            )

        outcome = self.validate(command)
        self.read_store.save_checkpoint(checkpoint)
        return outcome

    def _decide(self, command: CommandEnvelope) -> Event:
        verb, content_type = self.schemas.resolve(command.type)
        resource_type = content_type.base

        if verb in ("update", "delete") and not command.resource_id:
            raise SchemaInvalid(f"resourceId is required for {command.type}")

        self.schemas.check_body(resource_type, command.body, verb)

        resource_id = command.target_id
        current = self.current_state(resource_type, resource_id)
        if current.version > 0 and current.resource_type != resource_type:
            # Resource ids are global; the id belongs to another type
            if verb == "create":
                raise Conflict(f"Resource id {resource_id} is used by {current.resource_type}")
            raise NotFound(resource_type, resource_id)

        rules = self.rules.rules_for(resource_type)
        if verb == "create":
            rules.validate_create(command, current, self.read_store)
        elif verb == "update":
            rules.validate_update(command, current, self.read_store)
        else:
            rules.validate_delete(command, current, self.read_store)

        return Event(
            id=derive_event_id(command.id),
            type=event_type_for(verb, content_type.name),
            resource_id=resource_id,
            resource_type=resource_type,
            body=command.body,
            version=current.version + 1,
            caused_by=command.id,
            occurred_at=command.meta.timestamp,
        )

    def _record(self, command: CommandEnvelope, outcome: Outcome) -> Outcome:
        if isinstance(outcome, Event):
            self.event_log.append(outcome.resource_id, encode(outcome), entry_id=outcome.id)
            commands_validated_total.labels(command_type=command.type, outcome="accepted").inc()
            logger.info(
                "Command accepted",
                command_id=command.id,
                event_type=outcome.type,
                resource_id=outcome.resource_id,
                version=outcome.version,
            )
            return outcome

        stored = self.rejections.record(outcome)
        commands_validated_total.labels(command_type=command.type, outcome="rejected").inc()
        rejections_total.labels(code=stored.code.value).inc()
        logger.info(
            "Command rejected",
            command_id=command.id,
            code=stored.code.value,
            reason=stored.reason,
        )
        return stored

    def _skip_corrupt(self, entry: LogEntry, error: CorruptEnvelope) -> None:
        corrupt_envelopes_total.labels(log_name=self.command_log.log_name).inc()
        logger.error(
            "Skipping corrupt command envelope",
            partition=entry.partition,
            offset=entry.offset,
            reason=error.reason,
        )
        command_id = recover_command_id(entry)
        if command_id is not None and self.prior_outcome(command_id) is None:
            self.rejections.record(
                Rejection(
                    caused_by=command_id,
                    reason=f"Corrupt command envelope: {error.reason}",
                    code=RejectionCode.SCHEMA_INVALID,
                    resource_id=entry.key,
                )
            )
