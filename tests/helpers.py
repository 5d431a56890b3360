"""
Test helper functions - builders for envelopes

Events and commands are built the way the validator and the gateway
build them, so tests can feed the materializer out of order or hand the
validator envelopes that never went through the gateway.
"""

from datetime import datetime, timezone
from typing import Any

from eventfold.kernel.envelopes import CommandEnvelope, CommandMeta, Event
from eventfold.kernel.ids import derive_event_id

_PAST = {"create": "Created", "update": "Updated", "delete": "Deleted"}


def make_event(
    resource_id: str,
    version: int,
    kind: str = "update",
    body: dict[str, Any] | None = None,
    resource_type: str = "entries",
    name: str = "entry",
) -> Event:
    """
    Builder for events as the validator would emit them

    The causing command id is derived from resource id and version, so the
    same arguments always produce the same event id.

    Example:
        >>> make_event("e1", 1, "create", {"title": "A"}).type
        'entryCreated'
    """
    caused_by = f"{resource_id}-v{version}"
    return Event(
        id=derive_event_id(caused_by),
        type=f"{name}{_PAST[kind]}",
        resource_id=resource_id,
        resource_type=resource_type,
        body=body or {},
        version=version,
        caused_by=caused_by,
    )


def make_command(
    command_id: str,
    command_type: str,
    body: dict[str, Any] | None = None,
    resource_id: str | None = None,
) -> CommandEnvelope:
    """Builder for command envelopes that bypass the gateway"""
    return CommandEnvelope(
        id=command_id,
        type=command_type,
        resource_id=resource_id,
        body=body or {},
        meta=CommandMeta(user="tester", timestamp=datetime(2025, 1, 15, tzinfo=timezone.utc)),
    )
