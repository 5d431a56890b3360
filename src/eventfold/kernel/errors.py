"""
Custom exceptions for eventfold

Two families live here. Infrastructure faults (log/store failures, corrupt
envelopes, configuration problems) propagate as exceptions. Domain
rejections (schema, business rule, not found, conflict) are raised by
schema checks and resource rules, then caught by the validator and turned
into Rejection records - they never stop a consumption loop.
"""

from eventfold.kernel.envelopes import RejectionCode


class EventfoldError(Exception):
    """Base exception for all eventfold errors"""

    pass


class ConfigurationError(EventfoldError):
    """Raised when the settings file is missing or malformed"""

    pass


class LogError(EventfoldError):
    """Base class for command/event log and read store faults"""

    pass


class CorruptEnvelope(LogError):
    """
    Raised when a log entry cannot be decoded into an envelope

    Poison messages are skipped with the offset advanced; retrying them
    cannot succeed.
    """

    def __init__(
        self, log_name: str, partition: int, offset: int, reason: str
    ) -> None:
        self.log_name = log_name
        self.partition = partition
        self.offset = offset
        self.reason = reason
        super().__init__(
            f"Corrupt envelope in {log_name}[{partition}] at offset {offset}: {reason}"
        )


class SchemaNotFound(EventfoldError):
    """Raised when no schema is registered for a resource type"""

    def __init__(self, resource_type: str) -> None:
        self.resource_type = resource_type
        super().__init__(f"No schema registered for resource type {resource_type!r}")


class EntryNotFound(EventfoldError):
    """Raised by read store lookups when no entry exists"""

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} {resource_id} not found")


class UnresolvedGap(EventfoldError):
    """
    Raised when parked events for a resource exceed the gap window

    The resource is halted until the missing event arrives or an operator
    intervenes; other resources keep flowing.
    """

    def __init__(
        self, resource_id: str, expected_version: int, parked_count: int
    ) -> None:
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.parked_count = parked_count
        super().__init__(
            f"Resource {resource_id} is waiting for version {expected_version} "
            f"with {parked_count} parked events"
        )


# Domain rejections


class DomainRejection(EventfoldError):
    """
    Base class for expected command failures

    Every subclass carries the RejectionCode recorded in the rejection sink.
    """

    code: RejectionCode = RejectionCode.BUSINESS_RULE_VIOLATION

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class SchemaInvalid(DomainRejection):
    """Command body does not match the resource schema"""

    code = RejectionCode.SCHEMA_INVALID


class BusinessRuleViolation(DomainRejection):
    """A resource-specific rule refused the command"""

    code = RejectionCode.BUSINESS_RULE_VIOLATION


class NotFound(DomainRejection):
    """Update or delete targets a missing or deleted resource"""

    code = RejectionCode.NOT_FOUND

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} {resource_id} does not exist")


class Conflict(DomainRejection):
    """Create would duplicate an existing resource or unique value"""

    code = RejectionCode.CONFLICT
