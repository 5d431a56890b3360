"""
Envelope models - the records that travel through the logs

Commands are requests, events are accepted facts, rejections are terminal
refusals. All three are immutable once built. Their JSON form uses the
camelCase keys of the wire contract (resourceId, causedBy, ...).
"""

from datetime import datetime
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

COMMAND_VERBS = ("create", "update", "delete")

_PAST_TENSE = {"create": "Created", "update": "Updated", "delete": "Deleted"}


class RejectionCode(str, Enum):
    """Why a command was refused"""

    SCHEMA_INVALID = "SchemaInvalid"
    BUSINESS_RULE_VIOLATION = "BusinessRuleViolation"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"


class CommandMeta(BaseModel):
    """Who issued a command and when"""

    model_config = ConfigDict(frozen=True)

    user: str | None = None
    timestamp: datetime


class CommandEnvelope(BaseModel):
    """
    A requested state change, not yet validated

    The id is generated by the ingestion gateway. For creates it doubles as
    the future resource id unless the caller supplies one.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1, description="Verb + resource name, e.g. 'createEntry'")
    resource_id: str | None = Field(default=None, alias="resourceId")
    body: dict[str, Any] = Field(default_factory=dict)
    meta: CommandMeta

    @property
    def verb(self) -> str:
        """Leading verb of the command type ('create', 'update', 'delete' or '')"""
        for verb in COMMAND_VERBS:
            if self.type.startswith(verb):
                return verb
        return ""

    @property
    def resource_name(self) -> str:
        """Resource name following the verb ('Entry' for 'createEntry')"""
        return self.type[len(self.verb):]

    @property
    def target_id(self) -> str:
        """Resource this command acts on (command id for creates without one)"""
        return self.resource_id or self.id


class Event(BaseModel):
    """
    An accepted, immutable fact about a resource

    The id is derived from caused_by, so redelivering a command can never
    produce a second, different event. Version is monotonic per resource
    and starts at 1.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    type: str = Field(..., description="Past-tense outcome, e.g. 'entryCreated'")
    resource_id: str = Field(..., alias="resourceId")
    resource_type: str = Field(..., alias="resourceType")
    body: dict[str, Any] = Field(default_factory=dict)
    version: int = Field(..., ge=1)
    caused_by: str = Field(..., alias="causedBy")
    occurred_at: datetime | None = Field(default=None, alias="occurredAt")

    @property
    def kind(self) -> str:
        """'create', 'update' or 'delete', recovered from the event type"""
        for verb, suffix in _PAST_TENSE.items():
            if self.type.endswith(suffix):
                return verb
        return ""


class Rejection(BaseModel):
    """A command that was refused. Recorded for observability, never replayed."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    caused_by: str = Field(..., alias="causedBy")
    reason: str
    code: RejectionCode
    command_type: str | None = Field(default=None, alias="commandType")
    resource_id: str | None = Field(default=None, alias="resourceId")


Outcome = Union[Event, Rejection]


class LogEntry(BaseModel):
    """One record of a partitioned log as consumers see it"""

    model_config = ConfigDict(frozen=True)

    key: str
    value: str
    partition: int
    offset: int


class Checkpoint(BaseModel):
    """Next offset a consumer will read from a log partition"""

    model_config = ConfigDict(frozen=True)

    log_name: str
    partition: int
    offset: int = Field(..., ge=0)


def event_type_for(verb: str, resource_name: str) -> str:
    """
    Build the past-tense event type for a command

    >>> event_type_for("create", "Entry")
    'entryCreated'
    """
    return resource_name[:1].lower() + resource_name[1:] + _PAST_TENSE[verb]


def to_wire(envelope: BaseModel) -> dict[str, Any]:
    """Dump an envelope using its wire (camelCase) keys"""
    return envelope.model_dump(mode="json", by_alias=True)
