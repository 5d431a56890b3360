"""
Settings - process-wide configuration loaded once at startup

The settings file describes the content types (resource schemas) and the
runtime knobs of the pipeline. After load_settings() returns, the object
is frozen and passed by reference to every component.
"""

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from eventfold.kernel.errors import ConfigurationError

FieldType = Literal["string", "number", "boolean", "object", "array"]


class FieldSpec(BaseModel):
    """One declared field of a resource schema"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    type: FieldType
    required: bool = False


class ContentType(BaseModel):
    """
    A resource type served by the pipeline

    base is the plural URL segment and resource type key ("entries"),
    name is the singular used in command and event types ("Entry").
    """

    model_config = ConfigDict(frozen=True)

    base: str = Field(..., pattern=r"^[a-z][a-z0-9_-]*$")
    name: str = Field(..., pattern=r"^[A-Z][A-Za-z0-9]*$")
    fields: tuple[FieldSpec, ...] = ()
    unique: tuple[str, ...] = Field(
        default=(),
        description="Field ids whose values must be unique among live entries",
    )

    @model_validator(mode="after")
    def _unique_fields_declared(self) -> "ContentType":
        declared = {f.id for f in self.fields}
        unknown = [u for u in self.unique if u not in declared]
        if unknown:
            raise ValueError(f"unique fields {unknown} are not declared in {self.base}")
        return self


class Ports(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    command_api: int = Field(default=8081, alias="commandApi")
    query_api: int = Field(default=8082, alias="queryApi")
    metrics: int = 9090


class Settings(BaseModel):
    """
    Runtime configuration

    Defaults are suitable for a single-host development setup.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    content_types: tuple[ContentType, ...] = Field(default=(), alias="contentTypes")

    db_path: str = Field(default="eventfold.db", alias="dbPath")

    partitions: int = Field(
        default=4,
        ge=1,
        le=256,
        description="Partitions per log; fixed for the lifetime of a database",
    )

    gap_window: int = Field(
        default=16,
        ge=1,
        alias="gapWindow",
        description="Parked events per resource before a gap is reported as unresolved",
    )

    poll_interval_ms: int = Field(default=200, ge=1, alias="pollIntervalMs")

    batch_size: int = Field(default=100, ge=1, alias="batchSize")

    host: str = "127.0.0.1"

    ports: Ports = Field(default_factory=Ports)

    debug: bool = False

    @model_validator(mode="after")
    def _bases_unique(self) -> "Settings":
        bases = [ct.base for ct in self.content_types]
        names = [ct.name for ct in self.content_types]
        if len(set(bases)) != len(bases) or len(set(names)) != len(names):
            raise ValueError("content type bases and names must be unique")
        return self


def load_settings(path: str | Path) -> Settings:
    """
    Load and validate the settings file

    Args:
        path: JSON settings file

    Returns:
        Frozen Settings

    Raises:
        ConfigurationError: If the file is missing, not JSON, or invalid
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Could not open configuration file {path}: {e}") from e
    except ValueError as e:
        raise ConfigurationError(f"Could not parse configuration file {path}: {e}") from e

    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {path}:\n{e}") from e
