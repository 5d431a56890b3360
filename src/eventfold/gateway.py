"""
Command gateway - the ingestion boundary

Builds command envelopes and appends them to the command log keyed by
resource id. Creates without an explicit resource id get a fresh id that
serves as both the command id and the future resource id.
"""

from typing import Any

from eventfold.kernel.codec import encode
from eventfold.kernel.envelopes import CommandEnvelope, CommandMeta, LogEntry
from eventfold.kernel.ids import IdFactory, default_id_factory
from eventfold.kernel.log_store import SQLitePartitionedLog
from eventfold.kernel.logging import get_logger
from eventfold.kernel.time import TimeProvider, default_time_provider
from eventfold.schema.registry import SchemaRegistry

logger = get_logger(__name__)


class CommandGateway:
    def __init__(
        self,
        command_log: SQLitePartitionedLog,
        schemas: SchemaRegistry,
        id_factory: IdFactory | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self.command_log = command_log
        self.schemas = schemas
        self.id_factory = id_factory or default_id_factory
        self.time_provider = time_provider or default_time_provider

    def build(
        self,
        command_type: str,
        body: dict[str, Any] | None = None,
        resource_id: str | None = None,
        user: str | None = None,
        command_id: str | None = None,
    ) -> CommandEnvelope:
        """
        Build (but do not submit) a command envelope

        Raises:
            SchemaInvalid: If the command type names no known verb/resource
        """
        self.schemas.resolve(command_type)
        return CommandEnvelope(
            id=command_id or self.id_factory.generate(),
            type=command_type,
            resource_id=resource_id,
            body=body or {},
            meta=CommandMeta(user=user, timestamp=self.time_provider.now()),
        )

    def append(self, command: CommandEnvelope) -> LogEntry:
        """
        Append an envelope to the command log

        Appending the same command id twice is a no-op.
        """
        entry = self.command_log.append(command.target_id, encode(command), entry_id=command.id)
        logger.info(
            "Command submitted",
            command_id=command.id,
            command_type=command.type,
            resource_id=command.target_id,
            partition=entry.partition,
            offset=entry.offset,
        )
        return entry

    def submit(
        self,
        command_type: str,
        body: dict[str, Any] | None = None,
        resource_id: str | None = None,
        user: str | None = None,
        command_id: str | None = None,
    ) -> CommandEnvelope:
        """
        Build a command and append it to the command log

        Args:
            command_type: e.g. "createEntry"
            body: Command body
            resource_id: Target resource (required for update/delete)
            user: Issuing user, stored in the envelope meta
            command_id: Explicit command id (generated when omitted)

        Returns:
            The submitted envelope
        """
        command = self.build(command_type, body, resource_id, user, command_id)
        self.append(command)
        return command
