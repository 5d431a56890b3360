"""
JSON codec for log values

Log entries carry JSON-encoded envelopes. Decoding failures become
CorruptEnvelope so consumers can log and skip the poison entry.
"""

import json
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from eventfold.kernel.envelopes import CommandEnvelope, Event, LogEntry, to_wire
from eventfold.kernel.errors import CorruptEnvelope

M = TypeVar("M", bound=BaseModel)


def encode(envelope: BaseModel) -> str:
    """Serialize an envelope to the JSON stored in a log entry"""
    return json.dumps(to_wire(envelope), sort_keys=True, separators=(",", ":"))


def _decode(model: type[M], log_name: str, entry: LogEntry) -> M:
    try:
        return model.model_validate_json(entry.value)
    except ValidationError as e:
        raise CorruptEnvelope(
            log_name, entry.partition, entry.offset, f"{e.error_count()} validation errors"
        ) from e
    except ValueError as e:
        raise CorruptEnvelope(log_name, entry.partition, entry.offset, str(e)) from e


def decode_command(log_name: str, entry: LogEntry) -> CommandEnvelope:
    """Decode a Command Log entry"""
    return _decode(CommandEnvelope, log_name, entry)


def decode_event(log_name: str, entry: LogEntry) -> Event:
    """Decode an Event Log entry"""
    return _decode(Event, log_name, entry)


def recover_command_id(entry: LogEntry) -> str | None:
    """
    Best-effort extraction of the command id from a corrupt entry

    Used so a poison command can still leave a rejection behind.
    """
    try:
        raw = json.loads(entry.value)
    except ValueError:
        return None
    if isinstance(raw, dict) and isinstance(raw.get("id"), str) and raw["id"]:
        return raw["id"]
    return None
