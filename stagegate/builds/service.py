"""Build service module.

This module provides the high-level API used by the CLI:
- load_build_plan(): descriptor + registry + override -> validated BuildPlan
- create_executor(): executor selected by settings or flag
- run_build(): orchestrate a run with cache awareness and persist it
- verify_stage(): re-run one stage's checks without building
- inspect_ledger(): render a persisted run and its ledger
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stagegate.builds.executor import DockerExecutor, LocalExecutor
from stagegate.builds.orchestrator import BuildOrchestrator, create_build_plan
from stagegate.config import get_settings
from stagegate.descriptor.io import load_descriptor, load_registry
from stagegate.errors import DescriptorError
from stagegate.ledger.store import SessionStageCache, get_run, run_to_dict, save_run
from stagegate.platforms.compat import get_predicate
from stagegate.platforms.models import PlatformTarget
from stagegate.platforms.registry import BaseImageRegistry

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from stagegate.builds.executor import BuildExecutor
    from stagegate.builds.orchestrator import BuildPlan, BuildRunResult
    from stagegate.config import Settings
    from stagegate.verification.gate import CheckResult

logger = logging.getLogger(__name__)


def parse_override(value: str | None) -> PlatformTarget | None:
    """Parse a ``--target-platform`` value.

    Raises:
        DescriptorError: If the value is not a valid platform string.
    """
    if not value:
        return None
    try:
        return PlatformTarget.parse(value)
    except ValueError as e:
        raise DescriptorError(f"Invalid target platform '{value}': {e}") from e


def load_build_plan(
    descriptor_path: Path,
    registry_path: Path | None = None,
    target_platform: str | None = None,
    settings: Settings | None = None,
    strict: bool = True,
) -> BuildPlan:
    """Load a descriptor and registry and produce a validated plan.

    The platform override comes from ``target_platform`` or, when not
    given, from ``settings.target_platform``.

    Args:
        descriptor_path: Build descriptor file.
        registry_path: Base-image registry file (None = empty registry).
        target_platform: Platform override string.
        settings: Application settings.
        strict: Raise on platform ambiguity.

    Returns:
        The BuildPlan.

    Raises:
        DescriptorError: If a file cannot be loaded or the override is invalid.
        pydantic.ValidationError: If the descriptor does not match the schema.
        GraphValidationError: If the stage graph is invalid.
        PlatformAmbiguity: In strict mode, if a platform does not resolve.
    """
    if settings is None:
        settings = get_settings()

    descriptor = load_descriptor(descriptor_path)
    registry = load_registry(registry_path) if registry_path else BaseImageRegistry()
    override = parse_override(target_platform or settings.target_platform)
    logger.info(
        "Loaded descriptor %s (%d stages, %d registered images)",
        descriptor.name,
        len(descriptor.stages),
        len(registry),
    )
    return create_build_plan(
        descriptor,
        registry,
        override=override,
        predicate=get_predicate(settings.compatibility),
        strict=strict,
    )


def create_executor(
    settings: Settings | None = None,
    kind: str | None = None,
) -> BuildExecutor:
    """Create the build executor selected by ``kind`` or settings.

    Raises:
        ValueError: If the executor kind is unknown.
    """
    if settings is None:
        settings = get_settings()
    kind = kind or settings.executor
    if kind == "docker":
        return DockerExecutor(settings.work_dir, docker_binary=settings.docker_binary)
    if kind == "local":
        return LocalExecutor(settings.work_dir)
    raise ValueError(f"Unknown executor '{kind}'. Valid values: docker, local")


def run_build(
    session: Session,
    plan: BuildPlan,
    executor: BuildExecutor,
    settings: Settings | None = None,
    no_cache: bool = False,
    descriptor_path: Path | None = None,
    run_id: str | None = None,
) -> BuildRunResult:
    """Run a build plan and persist the run.

    Args:
        session: Database session for cache lookups and persistence.
        plan: Validated build plan.
        executor: Build executor.
        settings: Application settings.
        no_cache: Disable reuse of previously succeeded stages.
        descriptor_path: Descriptor file, recorded with the run.
        run_id: Run identifier; generated if not provided.

    Returns:
        BuildRunResult of the run.
    """
    if settings is None:
        settings = get_settings()

    orchestrator = BuildOrchestrator(
        executor,
        max_workers=settings.max_workers,
        stage_timeout=settings.stage_timeout,
        check_timeout=settings.check_timeout,
        predicate=get_predicate(settings.compatibility),
        cache=None if no_cache else SessionStageCache(session),
        reports_dir=settings.reports_dir,
    )
    result = orchestrator.run(plan, run_id=run_id)
    save_run(
        session,
        result,
        descriptor_path=str(descriptor_path) if descriptor_path else None,
    )
    return result


def verify_stage(
    plan: BuildPlan,
    stage_id: str,
    executor: BuildExecutor,
    settings: Settings | None = None,
) -> list[CheckResult]:
    """Re-run one stage's verification checks.

    Raises:
        KeyError: If the stage does not exist.
        PlatformAmbiguity: If the stage's platform does not resolve.
    """
    if settings is None:
        settings = get_settings()
    orchestrator = BuildOrchestrator(
        executor,
        check_timeout=settings.check_timeout,
        reports_dir=settings.reports_dir,
    )
    return orchestrator.verify(plan, stage_id)


def inspect_ledger(session: Session, run_id: str) -> dict[str, Any]:
    """Return a persisted run with its stages, checks and ledger.

    Raises:
        RunNotFoundError: If the run is not found.
    """
    return run_to_dict(get_run(session, run_id))


__all__ = [
    "create_executor",
    "inspect_ledger",
    "load_build_plan",
    "parse_override",
    "run_build",
    "verify_stage",
]
