"""Error taxonomy for stagegate.

Every error carries a stable ``code`` for programmatic handling and a
``to_dict()`` rendering used by the CLI's JSON output and the persisted
run records.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from stagegate.platforms.models import PlatformTarget

# Stable error codes
GRAPH_INVALID = "graph_invalid"
DESCRIPTOR_INVALID = "descriptor_invalid"
PLATFORM_AMBIGUITY = "platform_ambiguity"
PLATFORM_MISMATCH = "platform_mismatch"
ARTIFACT_MUTATION_CONFLICT = "artifact_mutation_conflict"
ARTIFACT_NOT_FOUND = "artifact_not_found"
VERIFICATION_FAILED = "verification_failed"
EXECUTOR_ERROR = "executor_error"
EXECUTOR_TIMEOUT = "executor_timeout"
UPSTREAM_FAILED = "upstream_failed"
RUN_NOT_FOUND = "run_not_found"


class StagegateError(Exception):
    """Base error for all stagegate failures."""

    def __init__(
        self,
        message: str,
        code: str = "stagegate_error",
        stage_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.stage_id = stage_id

    def details(self) -> dict[str, Any]:
        """Return structured details for this error."""
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.stage_id is not None:
            result["stage_id"] = self.stage_id
        details = self.details()
        if details:
            result["details"] = details
        return result


class DescriptorError(StagegateError):
    """Raised when a build descriptor or registry file cannot be loaded."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=DESCRIPTOR_INVALID)


class GraphValidationError(StagegateError):
    """Raised when the stage graph has a cycle or a dangling reference."""

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message, code=GRAPH_INVALID)
        self.problems = problems or []

    def details(self) -> dict[str, Any]:
        return {"problems": list(self.problems)} if self.problems else {}


class PlatformAmbiguity(StagegateError):
    """Raised when a stage's effective platform cannot be determined."""

    def __init__(
        self,
        stage_id: str,
        conflicts: dict[str, PlatformTarget] | None = None,
        reason: str | None = None,
    ) -> None:
        self.conflicts = dict(conflicts or {})
        if reason is None:
            listed = ", ".join(
                f"{sid}={platform}" for sid, platform in sorted(self.conflicts.items())
            )
            reason = f"conflicting upstream platforms ({listed})"
        super().__init__(
            f"Cannot resolve platform for stage '{stage_id}': {reason}",
            code=PLATFORM_AMBIGUITY,
            stage_id=stage_id,
        )
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "conflicts": {sid: str(p) for sid, p in sorted(self.conflicts.items())},
        }


class PlatformMismatch(StagegateError):
    """Raised when a transfer would copy a binary onto an incompatible platform.

    Both platforms are carried verbatim for diagnosis.
    """

    def __init__(
        self,
        source_stage_id: str,
        destination_stage_id: str,
        artifact_path: str,
        source_platform: PlatformTarget | None,
        destination_platform: PlatformTarget | None,
    ) -> None:
        self.source_stage_id = source_stage_id
        self.destination_stage_id = destination_stage_id
        self.artifact_path = artifact_path
        self.source_platform = source_platform
        self.destination_platform = destination_platform
        super().__init__(
            f"Artifact '{artifact_path}' from stage '{source_stage_id}' was "
            f"produced under {source_platform} and cannot be copied into stage "
            f"'{destination_stage_id}' targeting {destination_platform}",
            code=PLATFORM_MISMATCH,
            stage_id=destination_stage_id,
        )

    def details(self) -> dict[str, Any]:
        return {
            "source_stage_id": self.source_stage_id,
            "destination_stage_id": self.destination_stage_id,
            "artifact_path": self.artifact_path,
            "source_platform": str(self.source_platform),
            "destination_platform": str(self.destination_platform),
        }


class ArtifactMutationConflict(StagegateError):
    """Raised when a stage re-records an artifact with a different hash."""

    def __init__(
        self, stage_id: str, path: str, existing_hash: str, new_hash: str
    ) -> None:
        self.path = path
        self.existing_hash = existing_hash
        self.new_hash = new_hash
        super().__init__(
            f"Artifact '{path}' of stage '{stage_id}' already recorded with hash "
            f"{existing_hash}, refusing to overwrite with {new_hash}",
            code=ARTIFACT_MUTATION_CONFLICT,
            stage_id=stage_id,
        )

    def details(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "existing_hash": self.existing_hash,
            "new_hash": self.new_hash,
        }


class ArtifactNotFound(StagegateError):
    """Raised when the ledger has no record for a (stage, path) pair."""

    def __init__(self, stage_id: str, path: str) -> None:
        self.path = path
        super().__init__(
            f"No artifact '{path}' recorded for stage '{stage_id}'",
            code=ARTIFACT_NOT_FOUND,
            stage_id=stage_id,
        )


class VerificationFailure(StagegateError):
    """Raised when a verification check's outcome does not match expectation."""

    def __init__(
        self,
        stage_id: str,
        check_name: str,
        output: str,
        exit_code: int | None = None,
    ) -> None:
        self.check_name = check_name
        self.output = output
        self.exit_code = exit_code
        super().__init__(
            f"Verification check '{check_name}' failed for stage '{stage_id}'",
            code=VERIFICATION_FAILED,
            stage_id=stage_id,
        )

    def details(self) -> dict[str, Any]:
        return {
            "check": self.check_name,
            "exit_code": self.exit_code,
            "output": self.output,
        }


class ExecutorError(StagegateError):
    """Raised when the build executor fails. The message is kept verbatim."""

    def __init__(
        self,
        message: str,
        stage_id: str | None = None,
        exit_code: int | None = None,
        log_path: str | None = None,
        code: str = EXECUTOR_ERROR,
    ) -> None:
        super().__init__(message, code=code, stage_id=stage_id)
        self.exit_code = exit_code
        self.log_path = log_path

    def details(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        if self.log_path is not None:
            result["log_path"] = self.log_path
        return result


class UpstreamFailed(StagegateError):
    """Cause recorded on a stage blocked by a failed or blocked upstream."""

    def __init__(self, stage_id: str, upstream_stage_id: str, upstream_code: str) -> None:
        self.upstream_stage_id = upstream_stage_id
        self.upstream_code = upstream_code
        super().__init__(
            f"Stage '{stage_id}' blocked: upstream stage '{upstream_stage_id}' "
            f"did not succeed ({upstream_code})",
            code=UPSTREAM_FAILED,
            stage_id=stage_id,
        )

    def details(self) -> dict[str, Any]:
        return {
            "upstream_stage_id": self.upstream_stage_id,
            "upstream_code": self.upstream_code,
        }


class RunNotFoundError(StagegateError):
    """Raised when a persisted run is not found."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}", code=RUN_NOT_FOUND)
        self.run_id = run_id


__all__ = [
    "ARTIFACT_MUTATION_CONFLICT",
    "ARTIFACT_NOT_FOUND",
    "DESCRIPTOR_INVALID",
    "EXECUTOR_ERROR",
    "EXECUTOR_TIMEOUT",
    "GRAPH_INVALID",
    "PLATFORM_AMBIGUITY",
    "PLATFORM_MISMATCH",
    "RUN_NOT_FOUND",
    "UPSTREAM_FAILED",
    "VERIFICATION_FAILED",
    "ArtifactMutationConflict",
    "ArtifactNotFound",
    "DescriptorError",
    "ExecutorError",
    "GraphValidationError",
    "PlatformAmbiguity",
    "PlatformMismatch",
    "RunNotFoundError",
    "StagegateError",
    "UpstreamFailed",
    "VerificationFailure",
]
