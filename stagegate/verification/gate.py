"""Verification gate.

Checks are declarative data attached to a stage. The gate hands each
check's command to the build executor inside the target stage, compares
the outcome with the expectation and decides whether the stage may be
promoted to succeeded.

This module handles:
- Running a stage's checks in registration order, stopping at the first failure
- Evaluating exit codes and expected output
- Writing per-stage JSON verification reports
- Listing checks of a stage graph without running them
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from stagegate.errors import ExecutorError, VerificationFailure
from stagegate.types import CheckOutcome

if TYPE_CHECKING:
    from stagegate.builds.executor import BuildExecutor, CheckExecution
    from stagegate.platforms.models import PlatformTarget
    from stagegate.stages.graph import StageGraph
    from stagegate.types import VerificationCheck

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one verification check.

    Attributes:
        name: Check name.
        stage_id: Stage the check ran in.
        outcome: pass or fail.
        exit_code: Exit code of the check command (None if it never ran).
        output: Captured output.
        duration: Wall-clock duration in seconds.
    """

    name: str
    stage_id: str
    outcome: CheckOutcome
    exit_code: int | None
    output: str
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.outcome is CheckOutcome.PASS

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "stage_id": self.stage_id,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "output": self.output,
            "duration": round(self.duration, 3),
        }


def evaluate(check: VerificationCheck, execution: CheckExecution) -> CheckOutcome:
    """Compare a check execution with the check's expected outcome."""
    expected = check.expected
    if execution.exit_code != expected.exit_code:
        return CheckOutcome.FAIL
    needle = expected.output_contains
    if needle is not None and needle not in execution.output:
        return CheckOutcome.FAIL
    return CheckOutcome.PASS


class VerificationGate:
    """Runs verification checks through a build executor.

    Args:
        executor: Build executor used to run check commands.
        timeout: Timeout per check in seconds (None = no timeout).
        reports_dir: Directory for JSON reports (None = no reports).
    """

    def __init__(
        self,
        executor: BuildExecutor,
        timeout: int | None = None,
        reports_dir: Path | None = None,
    ) -> None:
        self.executor = executor
        self.timeout = timeout
        self.reports_dir = reports_dir

    def run_check(
        self, check: VerificationCheck, platform: PlatformTarget
    ) -> CheckResult:
        """Run one check and evaluate it.

        An executor error while running a check counts as a failed check
        carrying the executor's message as output.
        """
        try:
            execution = self.executor.run_check(check, platform, self.timeout)
        except ExecutorError as e:
            logger.error(
                "Check '%s' of stage %s could not run: %s",
                check.name,
                check.target_stage_id,
                e,
            )
            return CheckResult(
                name=check.name,
                stage_id=check.target_stage_id,
                outcome=CheckOutcome.FAIL,
                exit_code=e.exit_code,
                output=e.message,
            )
        return CheckResult(
            name=check.name,
            stage_id=check.target_stage_id,
            outcome=evaluate(check, execution),
            exit_code=execution.exit_code,
            output=execution.output,
            duration=execution.duration,
        )

    def run_checks(
        self,
        stage_id: str,
        checks: list[VerificationCheck],
        platform: PlatformTarget,
        run_id: str | None = None,
    ) -> list[CheckResult]:
        """Run a stage's checks in registration order.

        The first failing check stops the remaining ones; only the checks
        that ran appear in the result.

        Args:
            stage_id: Stage being verified.
            checks: Checks in registration order.
            platform: Effective platform of the stage.
            run_id: Run identifier used to group reports.

        Returns:
            Results of the checks that ran.
        """
        results: list[CheckResult] = []
        for check in checks:
            result = self.run_check(check, platform)
            results.append(result)
            if result.passed:
                logger.info("Check passed: %s / %s", stage_id, check.name)
                continue
            logger.warning(
                "Check failed: %s / %s (exit code %s)",
                stage_id,
                check.name,
                result.exit_code,
            )
            skipped = len(checks) - len(results)
            if skipped:
                logger.info(
                    "Skipping %d remaining check(s) of stage %s", skipped, stage_id
                )
            break

        if self.reports_dir is not None and checks:
            write_report(self.reports_dir, stage_id, results, platform, run_id)
        return results


def gate_passed(results: list[CheckResult]) -> bool:
    """Return True if every result passed (an empty list passes)."""
    return all(r.passed for r in results)


def first_failure(results: list[CheckResult]) -> CheckResult | None:
    """Return the first failed result, if any."""
    for result in results:
        if not result.passed:
            return result
    return None


def raise_for_results(results: list[CheckResult]) -> None:
    """Raise for the first failed check.

    Raises:
        VerificationFailure: Carrying the failed check's captured output.
    """
    failure = first_failure(results)
    if failure is not None:
        raise VerificationFailure(
            stage_id=failure.stage_id,
            check_name=failure.name,
            output=failure.output,
            exit_code=failure.exit_code,
        )


def list_checks(
    graph: StageGraph, stage_id: str | None = None
) -> list[VerificationCheck]:
    """List declared checks, for one stage or the whole graph in topological order.

    Raises:
        KeyError: If the stage does not exist.
    """
    if stage_id is not None:
        return list(graph.stage(stage_id).checks)
    checks: list[VerificationCheck] = []
    for sid in graph.topological_order():
        checks.extend(graph.stage(sid).checks)
    return checks


def write_report(
    reports_dir: Path,
    stage_id: str,
    results: list[CheckResult],
    platform: PlatformTarget | None = None,
    run_id: str | None = None,
) -> Path:
    """Write a stage's verification report as JSON.

    Reports land in ``<reports_dir>/<run_id>/<stage_id>.json``, or in
    ``<reports_dir>/adhoc/`` when no run id is given.

    Returns:
        Path of the written report.
    """
    report_dir = reports_dir / (run_id or "adhoc")
    report_dir.mkdir(parents=True, exist_ok=True)
    report_path = report_dir / f"{stage_id}.json"
    report = {
        "stage_id": stage_id,
        "run_id": run_id,
        "platform": str(platform) if platform is not None else None,
        "passed": gate_passed(results),
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "checks": [r.to_dict() for r in results],
    }
    report_path.write_text(json.dumps(report, indent=2))
    logger.debug("Wrote verification report %s", report_path)
    return report_path


__all__ = [
    "CheckResult",
    "VerificationGate",
    "evaluate",
    "first_failure",
    "gate_passed",
    "list_checks",
    "raise_for_results",
    "write_report",
]
