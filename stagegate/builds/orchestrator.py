"""Build orchestrator.

Drives the per-stage state machine over a validated stage graph:

    pending -> running -> succeeded | failed
    pending -> blocked (platform unresolved, or an upstream did not succeed)
    pending -> failed  (an inbound transfer was rejected before running)

This module handles:
- Creating a build plan (graph validation, platform resolution, preflight)
- Scheduling ready stages concurrently on a thread pool
- Planning transfers, computing cache keys and reusing cached stages
- Recording artifacts in the run's ledger and running verification gates
- Blocking every dependent of a stage that did not succeed
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from stagegate.builds.executor import StageRequest
from stagegate.errors import (
    ArtifactNotFound,
    ExecutorError,
    PlatformAmbiguity,
    PlatformMismatch,
    StagegateError,
    UpstreamFailed,
)
from stagegate.ledger.cache_key import compute_stage_cache_key
from stagegate.ledger.ledger import ArtifactLedger
from stagegate.platforms.compat import (
    CompatibilityPredicate,
    minimum_version_compatible,
)
from stagegate.platforms.resolver import resolve_all
from stagegate.stages.graph import StageGraph
from stagegate.transfer.planner import TransferPlanner, preflight_transfers
from stagegate.types import StageStatus
from stagegate.verification.gate import VerificationGate, raise_for_results

if TYPE_CHECKING:
    from stagegate.builds.executor import BuildExecutor
    from stagegate.descriptor.schema import BuildDescriptorSchema
    from stagegate.platforms.models import PlatformTarget
    from stagegate.platforms.registry import BaseImageRegistry
    from stagegate.stages.graph import BuildStage
    from stagegate.transfer.planner import TransferOperation
    from stagegate.verification.gate import CheckResult

logger = logging.getLogger(__name__)


@dataclass
class BuildPlan:
    """A validated stage graph with resolved platforms.

    Attributes:
        graph: Validated stage graph.
        platforms: Effective platform per stage id.
        ambiguities: Platform resolution failures per stage id.
        mismatches: Preflight transfer mismatches per destination stage id.
        terminal_stage_id: Stage whose success defines build success.
        order: Deterministic topological order of stage ids.
        override: Run-wide platform override, if any.
    """

    graph: StageGraph
    platforms: dict[str, PlatformTarget]
    ambiguities: dict[str, PlatformAmbiguity] = field(default_factory=dict)
    mismatches: dict[str, PlatformMismatch] = field(default_factory=dict)
    terminal_stage_id: str = ""
    order: list[str] = field(default_factory=list)
    override: PlatformTarget | None = None

    @property
    def ok(self) -> bool:
        """Whether every platform resolved and every transfer passed preflight."""
        return not self.ambiguities and not self.mismatches

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.graph.name,
            "terminal_stage_id": self.terminal_stage_id,
            "override": str(self.override) if self.override is not None else None,
            "order": list(self.order),
            "stages": [
                {
                    "id": sid,
                    "upstream": self.graph.upstream_ids(sid),
                    "platform": (
                        str(self.platforms[sid]) if sid in self.platforms else None
                    ),
                    "checks": [c.name for c in self.graph.stage(sid).checks],
                }
                for sid in self.order
            ],
            "ambiguities": {sid: e.to_dict() for sid, e in self.ambiguities.items()},
            "mismatches": {sid: e.to_dict() for sid, e in self.mismatches.items()},
        }


def create_build_plan(
    descriptor: BuildDescriptorSchema,
    registry: BaseImageRegistry,
    override: PlatformTarget | None = None,
    predicate: CompatibilityPredicate | None = None,
    strict: bool = True,
) -> BuildPlan:
    """Validate a descriptor and resolve everything needed to run it.

    Args:
        descriptor: Parsed build descriptor.
        registry: Base-image platform registry.
        override: Run-wide platform override.
        predicate: Compatibility predicate used for preflight.
        strict: Raise on the first platform ambiguity instead of recording it.

    Returns:
        The BuildPlan.

    Raises:
        GraphValidationError: If the graph has a cycle, a dangling reference
            or no determinable terminal stage.
        PlatformAmbiguity: In strict mode, if any platform does not resolve.
    """
    graph = StageGraph.from_descriptor(descriptor)
    order = graph.topological_order()
    resolution = resolve_all(graph, registry, override)
    if strict and resolution.ambiguities:
        first = next(sid for sid in order if sid in resolution.ambiguities)
        raise resolution.ambiguities[first]

    mismatches = preflight_transfers(graph, resolution.platforms, predicate)
    return BuildPlan(
        graph=graph,
        platforms=resolution.platforms,
        ambiguities=resolution.ambiguities,
        mismatches=mismatches,
        terminal_stage_id=graph.terminal_stage_id(),
        order=order,
        override=override,
    )


@dataclass(frozen=True)
class CachedStage:
    """A previously succeeded stage whose outputs can be reused.

    Attributes:
        cache_key: Cache key the stage was built under.
        run_id: Run that built it.
        artifacts: Content hash per exported path.
    """

    cache_key: str
    run_id: str
    artifacts: dict[str, str]


class StageCache(Protocol):
    """Lookup of previously succeeded stages by cache key."""

    def lookup(self, cache_key: str) -> CachedStage | None:
        ...


@dataclass
class StageOutcome:
    """Outcome of one stage within a run.

    Attributes:
        stage_id: Stage identifier.
        status: Current or final status.
        platform: Effective platform (None if unresolved).
        base_image: Base image reference.
        cache_key: Stage cache key, once its inputs were known.
        input_snapshot: Cache key inputs.
        is_cache_hit: Whether outputs were reused from an earlier run.
        transfers: Inbound copies that were planned and performed.
        check_results: Results of the checks that ran.
        error: Cause of failure or blocking.
        log_path: Executor log path.
        started_at: Start time.
        finished_at: Finish time.
    """

    stage_id: str
    status: StageStatus = StageStatus.PENDING
    platform: PlatformTarget | None = None
    base_image: str = ""
    cache_key: str | None = None
    input_snapshot: dict[str, Any] | None = None
    is_cache_hit: bool = False
    transfers: list[TransferOperation] = field(default_factory=list)
    check_results: list[CheckResult] = field(default_factory=list)
    error: StagegateError | None = None
    log_path: Path | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "stage_id": self.stage_id,
            "status": self.status.value,
            "platform": str(self.platform) if self.platform is not None else None,
            "base_image": self.base_image,
            "cache_key": self.cache_key,
            "is_cache_hit": self.is_cache_hit,
            "transfers": [t.to_dict() for t in self.transfers],
            "checks": [r.to_dict() for r in self.check_results],
            "error": self.error.to_dict() if self.error is not None else None,
            "log_path": str(self.log_path) if self.log_path else None,
        }


@dataclass
class BuildRunResult:
    """Result of one orchestrated build run."""

    run_id: str
    plan: BuildPlan
    outcomes: dict[str, StageOutcome]
    ledger: ArtifactLedger
    started_at: datetime
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        """Whether the terminal stage and everything it depends on succeeded."""
        return all(
            self.outcomes[sid].status is StageStatus.SUCCEEDED
            for sid in self.plan.graph.required_stage_ids()
        )

    @property
    def exit_code(self) -> int:
        """Return 1 if the build did not succeed or any stage failed, else 0."""
        if not self.succeeded:
            return 1
        return int(
            any(o.status is StageStatus.FAILED for o in self.outcomes.values())
        )

    def first_error(self) -> StagegateError | None:
        """Return the first recorded failure cause in topological order.

        Failed stages are preferred over blocked ones, since blocking is a
        consequence of an earlier failure.
        """
        for status in (StageStatus.FAILED, StageStatus.BLOCKED):
            for sid in self.plan.order:
                outcome = self.outcomes[sid]
                if outcome.status is status and outcome.error is not None:
                    return outcome.error
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "name": self.plan.graph.name,
            "terminal_stage_id": self.plan.terminal_stage_id,
            "succeeded": self.succeeded,
            "exit_code": self.exit_code,
            "stages": [self.outcomes[sid].to_dict() for sid in self.plan.order],
            "ledger": [a.to_dict() for a in self.ledger.entries()],
        }


class BuildOrchestrator:
    """Runs a build plan through a build executor.

    Args:
        executor: Build executor.
        max_workers: Maximum stages running concurrently.
        stage_timeout: Timeout per stage in seconds (None = no timeout).
        check_timeout: Timeout per check in seconds (None = no timeout).
        predicate: Compatibility predicate for transfers.
        cache: Stage cache; None disables reuse.
        reports_dir: Directory for verification reports.
    """

    def __init__(
        self,
        executor: BuildExecutor,
        max_workers: int = 4,
        stage_timeout: int | None = None,
        check_timeout: int | None = None,
        predicate: CompatibilityPredicate | None = None,
        cache: StageCache | None = None,
        reports_dir: Path | None = None,
    ) -> None:
        self.executor = executor
        self.max_workers = max_workers
        self.stage_timeout = stage_timeout
        self.predicate = predicate or minimum_version_compatible
        self.cache = cache
        self.gate = VerificationGate(
            executor, timeout=check_timeout, reports_dir=reports_dir
        )

    def run(self, plan: BuildPlan, run_id: str | None = None) -> BuildRunResult:
        """Execute a build plan.

        Args:
            plan: Plan from ``create_build_plan``.
            run_id: Run identifier; generated if not provided.

        Returns:
            BuildRunResult with an outcome for every stage.
        """
        if run_id is None:
            run_id = uuid.uuid4().hex
        graph = plan.graph
        ledger = ArtifactLedger()
        planner = TransferPlanner(ledger, plan.platforms, self.predicate)
        result = BuildRunResult(
            run_id=run_id,
            plan=plan,
            outcomes={
                sid: StageOutcome(
                    stage_id=sid,
                    platform=plan.platforms.get(sid),
                    base_image=graph.stage(sid).base_image,
                )
                for sid in plan.order
            },
            ledger=ledger,
            started_at=datetime.now(timezone.utc),
        )
        outcomes = result.outcomes
        logger.info(
            "Starting run %s of %s (%d stages, terminal %s)",
            run_id,
            graph.name,
            len(plan.order),
            plan.terminal_stage_id,
        )

        for sid in plan.order:
            if outcomes[sid].status is not StageStatus.PENDING:
                continue
            if sid in plan.ambiguities:
                self._finish(
                    graph, outcomes, sid, StageStatus.BLOCKED, plan.ambiguities[sid]
                )
            elif sid in plan.mismatches:
                self._finish(
                    graph, outcomes, sid, StageStatus.FAILED, plan.mismatches[sid]
                )

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="stagegate"
        ) as pool:
            running: dict[Future[None], str] = {}
            while True:
                for sid in plan.order:
                    outcome = outcomes[sid]
                    if outcome.status is not StageStatus.PENDING:
                        continue
                    if not all(
                        outcomes[u].status is StageStatus.SUCCEEDED
                        for u in graph.upstream_ids(sid)
                    ):
                        continue
                    future = self._dispatch(
                        pool, run_id, graph.stage(sid), outcome, planner, ledger
                    )
                    if future is None:
                        self._finish(
                            graph, outcomes, sid, StageStatus.FAILED, outcome.error
                        )
                    else:
                        running[future] = sid

                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    sid = running.pop(future)
                    future.result()
                    outcome = outcomes[sid]
                    if outcome.error is None:
                        self._finish(graph, outcomes, sid, StageStatus.SUCCEEDED)
                    else:
                        self._finish(
                            graph, outcomes, sid, StageStatus.FAILED, outcome.error
                        )

        result.finished_at = datetime.now(timezone.utc)
        if result.exit_code == 0:
            logger.info("Run %s succeeded", run_id)
        else:
            logger.error("Run %s failed: %s", run_id, result.first_error())
        return result

    def _dispatch(
        self,
        pool: ThreadPoolExecutor,
        run_id: str,
        stage: BuildStage,
        outcome: StageOutcome,
        planner: TransferPlanner,
        ledger: ArtifactLedger,
    ) -> Future[None] | None:
        """Plan a ready stage and submit it; returns None if planning failed."""
        outcome.status = StageStatus.RUNNING
        outcome.started_at = datetime.now(timezone.utc)
        platform = outcome.platform
        if platform is None:
            outcome.error = PlatformAmbiguity(stage.id, reason="platform not resolved")
            return None

        try:
            outcome.transfers = planner.plan_stage(stage)
        except (PlatformMismatch, ArtifactNotFound) as e:
            logger.error("Stage %s: transfer rejected: %s", stage.id, e)
            outcome.error = e
            return None

        cache_key, inputs = compute_stage_cache_key(stage, platform, ledger)
        outcome.cache_key = cache_key
        outcome.input_snapshot = inputs.to_dict()
        cached = self.cache.lookup(cache_key) if self.cache is not None else None
        if cached is not None:
            logger.info(
                "Found cached build of stage %s (key %s, run %s)",
                stage.id,
                cache_key[:23],
                cached.run_id,
            )

        logger.info("Stage %s running on %s", stage.id, platform)
        return pool.submit(
            self._run_stage, run_id, stage, platform, outcome, ledger, cached
        )

    def _run_stage(
        self,
        run_id: str,
        stage: BuildStage,
        platform: PlatformTarget,
        outcome: StageOutcome,
        ledger: ArtifactLedger,
        cached: CachedStage | None,
    ) -> None:
        """Build (or reuse) and verify one stage on a worker thread.

        Unexpected exceptions are recorded as an ExecutorError on the stage.
        """
        try:
            produced: dict[str, str] | None = None
            if cached is not None and self._cached_build_intact(
                stage, outcome, cached
            ):
                outcome.is_cache_hit = True
                produced = dict(cached.artifacts)
            if produced is None:
                execution = self.executor.run_stage(
                    StageRequest(
                        run_id=run_id,
                        stage_id=stage.id,
                        base_image=stage.base_image,
                        platform=platform,
                        commands=list(stage.commands),
                        transfers=list(outcome.transfers),
                        exports=list(stage.exports),
                        timeout=self.stage_timeout,
                    )
                )
                outcome.log_path = execution.log_path
                if not execution.success:
                    raise ExecutorError(
                        execution.error_message
                        or f"Stage exited with code {execution.exit_code}",
                        stage_id=stage.id,
                        exit_code=execution.exit_code,
                        log_path=(
                            str(execution.log_path) if execution.log_path else None
                        ),
                    )
                produced = execution.artifacts

            for decl in stage.exports:
                if decl.path not in produced:
                    raise ArtifactNotFound(stage.id, decl.path)
                ledger.record_artifact(
                    stage.id, decl.path, produced[decl.path], platform, decl.kind
                )

            outcome.check_results = self.gate.run_checks(
                stage.id, stage.checks, platform, run_id
            )
            raise_for_results(outcome.check_results)
        except StagegateError as e:
            if e.stage_id is None:
                e.stage_id = stage.id
            if isinstance(e, ExecutorError) and e.log_path and outcome.log_path is None:
                outcome.log_path = Path(e.log_path)
            outcome.error = e
        except Exception as e:
            logger.exception("Stage %s: unexpected executor failure", stage.id)
            outcome.error = ExecutorError(f"Unexpected error: {e}", stage_id=stage.id)

    def _cached_build_intact(
        self, stage: BuildStage, outcome: StageOutcome, cached: CachedStage
    ) -> bool:
        """Check that the executor still holds exactly the cached build.

        Exports must hash to the cached artifacts and inbound copies to the
        ledger hashes they were planned from.
        """
        outputs = self.executor.collect_outputs(stage.id, list(stage.exports))
        inputs = self.executor.collect_inputs(stage.id, list(outcome.transfers))
        intact = outputs == cached.artifacts and all(
            inputs.get(t.destination_path) == t.source_artifact.content_hash
            for t in outcome.transfers
        )
        if not intact:
            logger.info(
                "Stage %s: outputs of cached run %s were replaced, rebuilding",
                stage.id,
                cached.run_id,
            )
        return intact

    def _finish(
        self,
        graph: StageGraph,
        outcomes: dict[str, StageOutcome],
        stage_id: str,
        status: StageStatus,
        error: StagegateError | None = None,
    ) -> None:
        """Settle a stage's status and block its pending dependents."""
        outcome = outcomes[stage_id]
        outcome.status = status
        outcome.error = error
        outcome.finished_at = datetime.now(timezone.utc)
        graph.stage(stage_id).status = status

        if status is StageStatus.SUCCEEDED:
            suffix = " (cached)" if outcome.is_cache_hit else ""
            logger.info("Stage %s succeeded%s", stage_id, suffix)
            return

        logger.error("Stage %s %s: %s", stage_id, status.value, error)
        code = error.code if error is not None else "unknown"
        for dependent in sorted(graph.descendants(stage_id)):
            blocked = outcomes[dependent]
            if blocked.status is not StageStatus.PENDING:
                continue
            blocked.status = StageStatus.BLOCKED
            blocked.error = UpstreamFailed(dependent, stage_id, code)
            blocked.finished_at = outcome.finished_at
            graph.stage(dependent).status = StageStatus.BLOCKED
            logger.warning("Stage %s blocked by %s", dependent, stage_id)

    def verify(
        self,
        plan: BuildPlan,
        stage_id: str,
        run_id: str | None = None,
    ) -> list[CheckResult]:
        """Re-run one stage's checks without building anything.

        Raises:
            KeyError: If the stage does not exist.
            PlatformAmbiguity: If the stage's platform did not resolve.
        """
        stage = plan.graph.stage(stage_id)
        if stage_id in plan.ambiguities:
            raise plan.ambiguities[stage_id]
        return self.gate.run_checks(
            stage_id, stage.checks, plan.platforms[stage_id], run_id
        )


__all__ = [
    "BuildOrchestrator",
    "BuildPlan",
    "BuildRunResult",
    "CachedStage",
    "StageCache",
    "StageOutcome",
    "create_build_plan",
]
