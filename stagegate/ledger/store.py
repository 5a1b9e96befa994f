"""Persistence of build runs and their ledgers.

This module handles:
- Saving a finished run (stages, ledger entries, check results)
- Looking up runs for ``inspect-ledger`` and ``runs list``
- Finding previously succeeded stages by cache key for reuse
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from stagegate.builds.orchestrator import CachedStage
from stagegate.errors import RunNotFoundError
from stagegate.ledger.models import (
    CheckResultRecord,
    LedgerEntry,
    RunRecord,
    StageRecord,
)
from stagegate.types import RunStatus, StageStatus

if TYPE_CHECKING:
    from stagegate.builds.orchestrator import BuildRunResult

logger = logging.getLogger(__name__)


def _naive(value: datetime | None) -> datetime | None:
    """Strip tzinfo; SQLite DateTime columns store naive timestamps."""
    return value.replace(tzinfo=None) if value is not None else None


def save_run(
    session: Session,
    result: BuildRunResult,
    descriptor_path: str | None = None,
) -> RunRecord:
    """Persist a finished run.

    Args:
        session: Database session.
        result: Result returned by the orchestrator.
        descriptor_path: Path of the descriptor file, if any.

    Returns:
        The created RunRecord.
    """
    plan = result.plan
    run = RunRecord(
        run_id=result.run_id,
        descriptor_name=plan.graph.name,
        descriptor_path=descriptor_path,
        target_stage=plan.terminal_stage_id,
        target_platform=str(plan.override) if plan.override is not None else None,
        status=RunStatus.RUNNING.value,
        started_at=_naive(result.started_at),
    )
    session.add(run)
    session.flush()

    cache_keys: dict[str, str | None] = {}
    for stage_id in plan.order:
        outcome = result.outcomes[stage_id]
        cache_keys[stage_id] = outcome.cache_key
        error = outcome.error
        platform = str(outcome.platform) if outcome.platform is not None else None
        session.add(
            StageRecord(
                run=run,
                stage_id=stage_id,
                status=outcome.status.value,
                platform=platform,
                base_image=outcome.base_image,
                cache_key=outcome.cache_key,
                input_snapshot=outcome.input_snapshot,
                is_cache_hit=outcome.is_cache_hit,
                log_path=str(outcome.log_path) if outcome.log_path else None,
                started_at=_naive(outcome.started_at),
                finished_at=_naive(outcome.finished_at),
                error_type=error.code if error is not None else None,
                error_message=error.message if error is not None else None,
                error_details=error.details() or None if error is not None else None,
            )
        )
        for position, check in enumerate(outcome.check_results):
            session.add(
                CheckResultRecord(
                    run=run,
                    stage_id=stage_id,
                    name=check.name,
                    outcome=check.outcome.value,
                    exit_code=check.exit_code,
                    output=check.output,
                    position=position,
                )
            )

    for position, artifact in enumerate(result.ledger.entries()):
        platform = artifact.produced_under_platform
        session.add(
            LedgerEntry(
                run=run,
                stage_id=artifact.stage_id,
                path=artifact.path,
                content_hash=artifact.content_hash,
                kind=artifact.kind.value,
                platform=str(platform) if platform is not None else None,
                cache_key=cache_keys.get(artifact.stage_id),
                position=position,
            )
        )

    if result.exit_code == 0:
        run.mark_succeeded()
    else:
        error = result.first_error()
        run.mark_failed(
            error_type=error.code if error is not None else None,
            message=error.message if error is not None else None,
        )
    session.flush()
    logger.info("Saved run %s (%s)", run.run_id, run.status)
    return run


def get_run(session: Session, run_id: str) -> RunRecord:
    """Get a run by its public id.

    Raises:
        RunNotFoundError: If the run is not found.
    """
    run = get_run_or_none(session, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def get_run_or_none(session: Session, run_id: str) -> RunRecord | None:
    """Get a run by its public id, or None if not found."""
    stmt = select(RunRecord).where(RunRecord.run_id == run_id)
    return session.execute(stmt).scalar_one_or_none()


def list_runs(
    session: Session,
    status: RunStatus | None = None,
    limit: int = 100,
) -> list[RunRecord]:
    """List runs, newest first.

    Args:
        session: Database session.
        status: Filter by status.
        limit: Maximum results to return.
    """
    stmt = select(RunRecord)
    if status is not None:
        stmt = stmt.where(RunRecord.status == status.value)
    stmt = stmt.order_by(RunRecord.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


def run_ledger(session: Session, run_id: str) -> list[LedgerEntry]:
    """Return a run's ledger entries in recording order.

    Raises:
        RunNotFoundError: If the run is not found.
    """
    run = get_run(session, run_id)
    return sorted(run.ledger_entries, key=lambda e: e.position)


def find_cached_stage(session: Session, cache_key: str) -> CachedStage | None:
    """Find the latest succeeded stage built under a cache key.

    Args:
        session: Database session.
        cache_key: Stage cache key.

    Returns:
        CachedStage with the stage's recorded artifact hashes, or None.
    """
    stmt = (
        select(StageRecord)
        .where(
            StageRecord.cache_key == cache_key,
            StageRecord.status == StageStatus.SUCCEEDED.value,
        )
        .order_by(StageRecord.id.desc())
        .limit(1)
    )
    record = session.execute(stmt).scalar_one_or_none()
    if record is None:
        return None

    entries = session.execute(
        select(LedgerEntry).where(
            LedgerEntry.run_pk == record.run_pk,
            LedgerEntry.stage_id == record.stage_id,
        )
    ).scalars()
    return CachedStage(
        cache_key=cache_key,
        run_id=record.run.run_id,
        artifacts={e.path: e.content_hash for e in entries},
    )


class SessionStageCache:
    """Stage cache backed by the persisted run store."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def lookup(self, cache_key: str) -> CachedStage | None:
        return find_cached_stage(self.session, cache_key)


def run_to_dict(run: RunRecord) -> dict[str, Any]:
    """Render a persisted run, its stages, checks and ledger for output."""
    checks_by_stage: dict[str, list[CheckResultRecord]] = {}
    for check in sorted(run.check_results, key=lambda c: c.position):
        checks_by_stage.setdefault(check.stage_id, []).append(check)

    return {
        "run_id": run.run_id,
        "descriptor": run.descriptor_name,
        "descriptor_path": run.descriptor_path,
        "target_stage": run.target_stage,
        "target_platform": run.target_platform,
        "status": run.status,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "error_type": run.error_type,
        "error_message": run.error_message,
        "stages": [
            {
                "stage_id": s.stage_id,
                "status": s.status,
                "platform": s.platform,
                "base_image": s.base_image,
                "cache_key": s.cache_key,
                "is_cache_hit": s.is_cache_hit,
                "log_path": s.log_path,
                "error_type": s.error_type,
                "error_message": s.error_message,
                "error_details": s.error_details,
                "checks": [
                    {
                        "name": c.name,
                        "outcome": c.outcome,
                        "exit_code": c.exit_code,
                        "output": c.output,
                    }
                    for c in checks_by_stage.get(s.stage_id, [])
                ],
            }
            for s in sorted(run.stages, key=lambda s: s.id)
        ],
        "ledger": [
            {
                "stage_id": e.stage_id,
                "path": e.path,
                "content_hash": e.content_hash,
                "kind": e.kind,
                "platform": e.platform,
                "cache_key": e.cache_key,
            }
            for e in sorted(run.ledger_entries, key=lambda e: e.position)
        ],
    }


__all__ = [
    "SessionStageCache",
    "find_cached_stage",
    "get_run",
    "get_run_or_none",
    "list_runs",
    "run_ledger",
    "run_to_dict",
    "save_run",
]
