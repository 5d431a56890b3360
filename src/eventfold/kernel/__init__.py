"""
Kernel - shared pipeline infrastructure

Envelopes and their codec, the partitioned logs, the read store, ids,
time, settings, logging, metrics, retries and partition workers. The
validator and materializer are built on top of these pieces.
"""

from eventfold.kernel.envelopes import (
    Checkpoint,
    CommandEnvelope,
    CommandMeta,
    Event,
    LogEntry,
    Outcome,
    Rejection,
    RejectionCode,
)
from eventfold.kernel.errors import (
    BusinessRuleViolation,
    ConfigurationError,
    Conflict,
    CorruptEnvelope,
    DomainRejection,
    EntryNotFound,
    EventfoldError,
    LogError,
    NotFound,
    SchemaInvalid,
    SchemaNotFound,
    UnresolvedGap,
)
from eventfold.kernel.ids import derive_event_id, generate_id
from eventfold.kernel.time import ManualTimeProvider, RealTimeProvider, TimeProvider

__all__ = [
    # Envelopes
    "Checkpoint",
    "CommandEnvelope",
    "CommandMeta",
    "Event",
    "LogEntry",
    "Outcome",
    "Rejection",
    "RejectionCode",
    # Errors
    "EventfoldError",
    "ConfigurationError",
    "LogError",
    "CorruptEnvelope",
    "SchemaNotFound",
    "EntryNotFound",
    "UnresolvedGap",
    "DomainRejection",
    "SchemaInvalid",
    "BusinessRuleViolation",
    "NotFound",
    "Conflict",
    # IDs
    "generate_id",
    "derive_event_id",
    # Time
    "TimeProvider",
    "RealTimeProvider",
    "ManualTimeProvider",
]
