"""
Resource rules - per-resource-type business validation and reducers

Each resource type gets one ResourceRules implementation. The validator
calls validate_create / validate_update / validate_delete, which raise a
DomainRejection to refuse the command. The materializer calls reduce to
fold an accepted event into the stored state.

Rules are registered once at startup in a RulesRegistry. Types without a
custom implementation get DefaultRules, which covers existence and
declared unique fields.
"""

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Protocol

from eventfold.kernel.envelopes import CommandEnvelope, Event
from eventfold.kernel.errors import Conflict, NotFound, SchemaNotFound
from eventfold.kernel.read_store import ReadStoreEntry, SQLiteReadStore
from eventfold.kernel.settings import ContentType
from eventfold.schema.registry import SchemaRegistry


class ResourceRules(Protocol):
    """
    Capability set of one resource type

    current is the write-side view of the target resource: its version and
    deleted flag reflect every event already accepted, even those the
    materializer has not applied yet.
    """

    def validate_create(
        self, command: CommandEnvelope, current: ReadStoreEntry, store: SQLiteReadStore
    ) -> None: ...

    def validate_update(
        self, command: CommandEnvelope, current: ReadStoreEntry, store: SQLiteReadStore
    ) -> None: ...

    def validate_delete(
        self, command: CommandEnvelope, current: ReadStoreEntry, store: SQLiteReadStore
    ) -> None: ...

    def reduce(self, state: dict[str, Any], event: Event) -> dict[str, Any]: ...


class DefaultRules:
    """
    Rules every resource type gets unless overridden

    - create: the id must be unused (tombstoned ids stay taken) and unique
      fields must not collide with another live entry
    - update/delete: the resource must exist and not be deleted
    - reduce: create sets the body, update merges it (null removes a
      field), delete keeps the last state

    Unique fields are checked against the read store only. Two creates
    validated before the materializer applies either of them can both be
    accepted with the same value; the check is eventually consistent.
    """

    def __init__(self, content_type: ContentType) -> None:
        self.content_type = content_type

    def validate_create(
        self, command: CommandEnvelope, current: ReadStoreEntry, store: SQLiteReadStore
    ) -> None:
        if current.version > 0:
            state = "was deleted" if current.deleted else "already exists"
            raise Conflict(f"{self.content_type.name} {current.resource_id} {state}")
        self._check_unique(command, current.resource_id, store)

    def validate_update(
        self, command: CommandEnvelope, current: ReadStoreEntry, store: SQLiteReadStore
    ) -> None:
        if not current.exists:
            raise NotFound(self.content_type.base, current.resource_id)
        self._check_unique(command, current.resource_id, store)

    def validate_delete(
        self, command: CommandEnvelope, current: ReadStoreEntry, store: SQLiteReadStore
    ) -> None:
        if not current.exists:
            raise NotFound(self.content_type.base, current.resource_id)

    def reduce(self, state: dict[str, Any], event: Event) -> dict[str, Any]:
        kind = event.kind
        if kind == "create":
            return {k: v for k, v in event.body.items() if v is not None}
        if kind == "update":
            merged = dict(state)
            for key, value in event.body.items():
                if value is None:
                    merged.pop(key, None)
                else:
                    merged[key] = value
            return merged
        return dict(state)

    def _check_unique(self, command: CommandEnvelope, resource_id: str, store: SQLiteReadStore) -> None:
        for field in self.content_type.unique:
            value = command.body.get(field)
            if value is None or isinstance(value, (dict, list)):
                continue
            holders = [
                entry
                for entry in store.find_by_field(self.content_type.base, field, value)
                if entry.resource_id != resource_id
            ]
            if holders:
                raise Conflict(
                    f'{self.content_type.name} with {field}={value!r} already exists '
                    f"({holders[0].resource_id})"
                )


class RulesRegistry:
    """
    Resource type -> ResourceRules, fixed at construction

    Args:
        schemas: Registered resource types
        overrides: Custom rules keyed by resource type; every other type
            gets DefaultRules
    """

    def __init__(
        self,
        schemas: SchemaRegistry,
        overrides: Mapping[str, ResourceRules] | None = None,
    ) -> None:
        overrides = dict(overrides or {})
        unknown = set(overrides) - set(schemas.resource_types)
        if unknown:
            raise SchemaNotFound(sorted(unknown)[0])

        rules: dict[str, ResourceRules] = {}
        for resource_type in schemas.resource_types:
            rules[resource_type] = overrides.get(resource_type) or DefaultRules(
                schemas.content_type(resource_type)
            )
        self._rules = MappingProxyType(rules)

    def rules_for(self, resource_type: str) -> ResourceRules:
        """
        Raises:
            SchemaNotFound: If the resource type is not registered
        """
        try:
            return self._rules[resource_type]
        except KeyError:
            raise SchemaNotFound(resource_type) from None
