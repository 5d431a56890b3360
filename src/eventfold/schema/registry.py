"""
Schema Registry - resource type -> field schema

Built once from the settings at startup and never mutated afterwards. The
validator and the command API both use it for structural validation.
"""

from types import MappingProxyType
from typing import Any

from eventfold.kernel.envelopes import COMMAND_VERBS
from eventfold.kernel.errors import SchemaInvalid, SchemaNotFound
from eventfold.kernel.settings import ContentType, FieldSpec, Settings

FieldSchema = tuple[FieldSpec, ...]


def _json_type_of(value: Any) -> str:
    """JSON type name of a decoded value (bool is not a number)"""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return type(value).__name__


class SchemaRegistry:
    """
    Read-only mapping of resource types to their content type

    Resource types are the content type bases ("entries"); command types
    use the singular name ("createEntry").
    """

    def __init__(self, content_types: tuple[ContentType, ...]) -> None:
        self._by_base = MappingProxyType({ct.base: ct for ct in content_types})
        self._by_name = MappingProxyType({ct.name: ct for ct in content_types})

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchemaRegistry":
        return cls(settings.content_types)

    @property
    def resource_types(self) -> tuple[str, ...]:
        return tuple(self._by_base)

    def content_type(self, resource_type: str) -> ContentType:
        """
        Raises:
            SchemaNotFound: If the resource type is not registered
        """
        try:
            return self._by_base[resource_type]
        except KeyError:
            raise SchemaNotFound(resource_type) from None

    def schema_for(self, resource_type: str) -> FieldSchema:
        """
        Ordered field schema of a resource type

        Raises:
            SchemaNotFound: If the resource type is not registered
        """
        return self.content_type(resource_type).fields

    def resolve(self, command_type: str) -> tuple[str, ContentType]:
        """
        Split a command type into verb and content type

        >>> registry.resolve("createEntry")
        ('create', ContentType(base='entries', name='Entry', ...))

        Raises:
            SchemaInvalid: If the verb or resource name is unknown
        """
        for verb in COMMAND_VERBS:
            if command_type.startswith(verb):
                content_type = self._by_name.get(command_type[len(verb):])
                if content_type is not None:
                    return verb, content_type
                break
        raise SchemaInvalid(f"Unknown command type {command_type!r}")

    def check_body(self, resource_type: str, body: dict[str, Any], verb: str) -> None:
        """
        Structural validation of a command body

        create: every required field present and non-null.
        update: body is a patch; required fields may be omitted, not nulled.
        delete: body is ignored.
        Every present field must be declared and carry its declared type.

        Raises:
            SchemaInvalid: On the first violation found
            SchemaNotFound: If the resource type is not registered
        """
        schema = self.schema_for(resource_type)
        if verb == "delete":
            return

        declared = {spec.id: spec for spec in schema}

        for spec in schema:
            if not spec.required:
                continue
            if verb == "create" and body.get(spec.id) is None:
                raise SchemaInvalid(f'Required field "{spec.id}" is missing')
            if verb == "update" and spec.id in body and body[spec.id] is None:
                raise SchemaInvalid(f'Required field "{spec.id}" cannot be null')

        for field, value in body.items():
            spec = declared.get(field)
            if spec is None:
                raise SchemaInvalid(f'Field "{field}" is not part of the {resource_type} schema')
            if value is None:
                continue
            actual = _json_type_of(value)
            if actual != spec.type:
                raise SchemaInvalid(
                    f'Field "{field}" should be of type "{spec.type}" but is of type "{actual}"'
                )
