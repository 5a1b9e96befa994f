"""Shared type definitions for stagegate.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class StageStatus(str, Enum):
    """Status of a build stage within one run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"


class RunStatus(str, Enum):
    """Overall status of a build run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ArtifactKind(str, Enum):
    """Kind of artifact a stage exports."""

    SOURCE = "source"
    COMPILED_BINARY = "compiled_binary"
    MIXED = "mixed"

    @property
    def is_platform_bound(self) -> bool:
        """Whether artifacts of this kind depend on the producing platform."""
        return self is not ArtifactKind.SOURCE


class CheckOutcome(str, Enum):
    """Result of a single verification check."""

    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True)
class ArtifactRef:
    """Reference to an artifact exported by an upstream stage.

    Attributes:
        stage_id: Producing stage.
        path: Artifact path inside the producing stage.
        destination_path: Path inside the consuming stage (defaults to path).
    """

    stage_id: str
    path: str
    destination_path: str | None = None

    @property
    def effective_destination(self) -> str:
        """Return the path the artifact lands on in the consuming stage."""
        return self.destination_path or self.path


@dataclass(frozen=True)
class ArtifactDecl:
    """An artifact a stage declares it will export."""

    path: str
    kind: ArtifactKind = ArtifactKind.SOURCE


@dataclass(frozen=True)
class ExpectedOutcome:
    """Expected outcome of a verification check.

    Attributes:
        exit_code: Exit code the check command must return.
        output_contains: Optional substring the captured output must contain.
    """

    exit_code: int = 0
    output_contains: str | None = None


@dataclass(frozen=True)
class VerificationCheck:
    """A declarative post-transfer check gating stage promotion.

    Attributes:
        name: Check name, unique within its stage.
        target_stage_id: Stage the check runs inside.
        command: Opaque command handed to the build executor.
        expected: Expected outcome.
    """

    name: str
    target_stage_id: str
    command: str
    expected: ExpectedOutcome = ExpectedOutcome()


__all__ = [
    "ArtifactDecl",
    "ArtifactKind",
    "ArtifactRef",
    "CheckOutcome",
    "ExpectedOutcome",
    "RunStatus",
    "StageStatus",
    "VerificationCheck",
]
