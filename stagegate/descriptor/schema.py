"""Pydantic models for build descriptor validation.

A build descriptor enumerates the stages of a multi-stage build with
their base image, optional platform, commands, exported artifacts,
consumed upstream artifacts and verification checks. Platform and
artifact provenance are first-class fields rather than implicit.
"""

import re
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stagegate.platforms.models import PlatformTarget
from stagegate.types import ArtifactKind

STAGE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")


def _validate_platform_value(v: Any) -> Any:
    """Validate that a platform value parses, keeping the raw form."""
    if v is None:
        return v
    try:
        PlatformTarget.from_value(v)
    except ValueError as e:
        raise ValueError(str(e)) from e
    return v


class PlatformSchema(BaseModel):
    """Schema for a platform given as a mapping."""

    model_config = ConfigDict(extra="forbid")

    os: str
    architecture: str
    libc_flavor: str | None = None
    libc_version: str | None = None
    runtime_lib_version: str | None = None


class ArtifactSchema(BaseModel):
    """Schema for an artifact exported by a stage.

    Attributes:
        path: Absolute path of the artifact inside the stage.
        kind: Artifact kind (source, compiled_binary, mixed).
    """

    model_config = ConfigDict(extra="forbid")

    path: str = Field(description="Artifact path inside the stage")
    kind: ArtifactKind = Field(default=ArtifactKind.SOURCE)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate path is absolute."""
        if not v.startswith("/"):
            raise ValueError("artifact path must start with '/'")
        return v


class ConsumeSchema(BaseModel):
    """Schema for an artifact consumed from an upstream stage.

    Attributes:
        stage: Upstream stage id.
        path: Artifact path exported by the upstream stage.
        dest: Destination path in this stage (defaults to ``path``).
    """

    model_config = ConfigDict(extra="forbid")

    stage: str = Field(description="Upstream stage id")
    path: str = Field(description="Artifact path in the upstream stage")
    dest: str | None = Field(default=None, description="Destination path")

    @field_validator("path", "dest")
    @classmethod
    def validate_paths(cls, v: str | None) -> str | None:
        """Validate paths are absolute."""
        if v is not None and not v.startswith("/"):
            raise ValueError("paths must start with '/'")
        return v


class ExpectSchema(BaseModel):
    """Schema for the expected outcome of a check."""

    model_config = ConfigDict(extra="forbid")

    exit_code: int = Field(default=0)
    output_contains: str | None = Field(default=None)


class CheckSchema(BaseModel):
    """Schema for a verification check."""

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=255)]
    command: Annotated[str, Field(min_length=1)]
    expect: ExpectSchema = Field(default_factory=ExpectSchema)


class StageSchema(BaseModel):
    """Schema for a single build stage.

    Attributes:
        id: Unique stage identifier.
        base_image: Base image reference.
        platform: Optional declared platform (string or mapping).
        commands: Opaque build-executor instructions.
        artifacts: Artifacts exported by the stage.
        consumes: Artifacts copied in from upstream stages.
        checks: Verification checks run after transfers complete.
    """

    model_config = ConfigDict(extra="forbid")

    id: Annotated[str, Field(min_length=1, max_length=255)]
    base_image: Annotated[str, Field(min_length=1)]
    platform: str | PlatformSchema | None = Field(default=None)
    commands: list[str] = Field(default_factory=list)
    artifacts: list[ArtifactSchema] = Field(default_factory=list)
    consumes: list[ConsumeSchema] = Field(default_factory=list)
    checks: list[CheckSchema] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate stage id matches safe pattern."""
        if not STAGE_ID_PATTERN.match(v):
            raise ValueError(
                f"stage id must match pattern {STAGE_ID_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("platform", mode="before")
    @classmethod
    def validate_platform(cls, v: Any) -> Any:
        """Validate the platform parses."""
        return _validate_platform_value(v)

    @model_validator(mode="after")
    def validate_unique_names(self) -> "StageSchema":
        """Validate artifact paths and check names are unique within the stage."""
        paths = [a.path for a in self.artifacts]
        if len(paths) != len(set(paths)):
            raise ValueError(f"duplicate artifact paths in stage '{self.id}'")
        names = [c.name for c in self.checks]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate check names in stage '{self.id}'")
        destinations = [c.dest or c.path for c in self.consumes]
        if len(destinations) != len(set(destinations)):
            raise ValueError(f"duplicate consume destinations in stage '{self.id}'")
        return self

    def declared_platform(self) -> PlatformTarget | None:
        """Return the declared platform, if any."""
        if self.platform is None:
            return None
        if isinstance(self.platform, PlatformSchema):
            return PlatformTarget.from_value(self.platform.model_dump())
        return PlatformTarget.from_value(self.platform)


class BuildDescriptorSchema(BaseModel):
    """Complete build descriptor.

    Attributes:
        name: Descriptor name.
        target: Terminal ("runtime") stage id; defaults to the single sink.
        stages: Stage definitions.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=255)]
    target: str | None = Field(default=None, description="Terminal stage id")
    stages: Annotated[list[StageSchema], Field(min_length=1)]

    @model_validator(mode="after")
    def validate_unique_stage_ids(self) -> "BuildDescriptorSchema":
        """Validate stage ids are unique."""
        seen: set[str] = set()
        duplicates: set[str] = set()
        for stage in self.stages:
            if stage.id in seen:
                duplicates.add(stage.id)
            seen.add(stage.id)
        if duplicates:
            raise ValueError(f"duplicate stage ids: {sorted(duplicates)}")
        return self


__all__ = [
    "STAGE_ID_PATTERN",
    "ArtifactSchema",
    "BuildDescriptorSchema",
    "CheckSchema",
    "ConsumeSchema",
    "ExpectSchema",
    "PlatformSchema",
    "StageSchema",
]
