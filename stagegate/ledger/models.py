"""Persisted run ORM models.

This module defines the records stored for completed build runs: the run
itself, per-stage outcomes, ledger entries and verification check
results. Persisted ledgers back audit (``inspect-ledger``) and stage
cache reuse.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stagegate.db import Base
from stagegate.types import RunStatus, StageStatus


class RunRecord(Base):
    """ORM model for a build run.

    Attributes:
        id: Primary key.
        run_id: Public run identifier (UUID hex).
        descriptor_name: Name of the build descriptor.
        descriptor_path: Path of the descriptor file, if loaded from disk.
        target_stage: Terminal stage of the run.
        target_platform: Platform override in effect, if any.
        status: Overall run status.
        started_at: Timestamp when the run started.
        finished_at: Timestamp when the run finished.
        error_type: Code of the first failing stage's error.
        error_message: Message of the first failing stage's error.
    """

    __tablename__ = "runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    descriptor_name: Mapped[str] = mapped_column(String(255), nullable=False)
    descriptor_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    target_stage: Mapped[str] = mapped_column(String(255), nullable=False)
    target_platform: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunStatus.RUNNING.value, index=True
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    stages: Mapped[list["StageRecord"]] = relationship(
        "StageRecord", back_populates="run", cascade="all, delete-orphan"
    )
    ledger_entries: Mapped[list["LedgerEntry"]] = relationship(
        "LedgerEntry", back_populates="run", cascade="all, delete-orphan"
    )
    check_results: Mapped[list["CheckResultRecord"]] = relationship(
        "CheckResultRecord", back_populates="run", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        """Return string representation of RunRecord."""
        return (
            f"<RunRecord(run_id='{self.run_id}', "
            f"descriptor='{self.descriptor_name}', status='{self.status}')>"
        )

    def mark_succeeded(self) -> None:
        """Mark this run as succeeded."""
        self.status = RunStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this run as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = RunStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this run succeeded."""
        return self.status == RunStatus.SUCCEEDED.value


class StageRecord(Base):
    """ORM model for the outcome of one stage within a run.

    Attributes:
        id: Primary key.
        run_pk: Foreign key to RunRecord.
        stage_id: Stage identifier.
        status: Final stage status.
        platform: Effective platform (canonical string).
        base_image: Base image reference.
        cache_key: Stage cache key (set once inputs were known).
        input_snapshot: JSON representation of the cache key inputs.
        is_cache_hit: Whether outputs were reused from an earlier run.
        log_path: Path to the executor log.
        error_type: Error code if the stage failed or was blocked.
        error_message: Error message if the stage failed or was blocked.
        error_details: Structured error details.
    """

    __tablename__ = "stage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_pk: Mapped[int] = mapped_column(
        Integer, ForeignKey("runs.id"), nullable=False, index=True
    )
    stage_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StageStatus.PENDING.value
    )
    platform: Mapped[str | None] = mapped_column(String(255), nullable=True)
    base_image: Mapped[str] = mapped_column(String(500), nullable=False)
    cache_key: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    input_snapshot: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )
    is_cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )

    run: Mapped["RunRecord"] = relationship("RunRecord", back_populates="stages")

    __table_args__ = (
        UniqueConstraint("run_pk", "stage_id", name="uq_stage_records_run_stage"),
        Index("ix_stage_records_cache_status", "cache_key", "status"),
    )

    def __repr__(self) -> str:
        """Return string representation of StageRecord."""
        return f"<StageRecord(stage_id='{self.stage_id}', status='{self.status}')>"

    def is_succeeded(self) -> bool:
        """Check if this stage succeeded."""
        return self.status == StageStatus.SUCCEEDED.value


class LedgerEntry(Base):
    """ORM model for a persisted artifact ledger entry.

    Attributes:
        id: Primary key.
        run_pk: Foreign key to RunRecord.
        stage_id: Producing stage.
        path: Artifact path inside the producing stage.
        content_hash: Content hash of the artifact.
        kind: Artifact kind.
        platform: Producing platform (canonical string).
        cache_key: Cache key of the producing stage.
        position: Recording order within the run.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_pk: Mapped[int] = mapped_column(
        Integer, ForeignKey("runs.id"), nullable=False, index=True
    )
    stage_id: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str] = mapped_column(String(1000), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    platform: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cache_key: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    run: Mapped["RunRecord"] = relationship(
        "RunRecord", back_populates="ledger_entries"
    )

    __table_args__ = (
        UniqueConstraint("run_pk", "stage_id", "path", name="uq_ledger_run_stage_path"),
    )

    def __repr__(self) -> str:
        """Return string representation of LedgerEntry."""
        return (
            f"<LedgerEntry(stage_id='{self.stage_id}', path='{self.path}', "
            f"hash='{self.content_hash[:23]}...')>"
        )


class CheckResultRecord(Base):
    """ORM model for a verification check result.

    Attributes:
        id: Primary key.
        run_pk: Foreign key to RunRecord.
        stage_id: Stage the check ran in.
        name: Check name.
        outcome: pass or fail.
        exit_code: Exit code of the check command.
        output: Captured output.
        position: Registration order within the stage.
    """

    __tablename__ = "check_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_pk: Mapped[int] = mapped_column(
        Integer, ForeignKey("runs.id"), nullable=False, index=True
    )
    stage_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    outcome: Mapped[str] = mapped_column(String(10), nullable=False)
    exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    run: Mapped["RunRecord"] = relationship("RunRecord", back_populates="check_results")

    def __repr__(self) -> str:
        """Return string representation of CheckResultRecord."""
        return (
            f"<CheckResultRecord(stage_id='{self.stage_id}', name='{self.name}', "
            f"outcome='{self.outcome}')>"
        )


__all__ = ["CheckResultRecord", "LedgerEntry", "RunRecord", "StageRecord"]
