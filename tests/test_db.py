"""Tests for database engine and session helpers."""

from pathlib import Path

import pytest
from sqlalchemy import inspect

from stagegate.db import (
    create_all_tables,
    drop_all_tables,
    get_engine,
    get_session,
    get_session_factory,
)
from stagegate.ledger.models import RunRecord


@pytest.fixture
def engine(tmp_path: Path):
    """Create a file-backed engine in a not-yet-existing directory."""
    return get_engine(f"sqlite:///{tmp_path / 'nested' / 'ledger.sqlite'}")


class TestEngine:
    """Test engine creation."""

    def test_creates_parent_directory(self, tmp_path: Path, engine) -> None:
        assert (tmp_path / "nested").is_dir()

    def test_create_and_drop_tables(self, engine) -> None:
        create_all_tables(engine)
        assert "runs" in inspect(engine).get_table_names()
        drop_all_tables(engine)
        assert "runs" not in inspect(engine).get_table_names()


class TestGetSession:
    """Test the transactional session scope."""

    def test_commits_on_success(self, engine) -> None:
        create_all_tables(engine)
        factory = get_session_factory(engine)
        with get_session(factory) as session:
            session.add(RunRecord(run_id="r1", descriptor_name="d", target_stage="t"))

        with factory() as session:
            assert session.get(RunRecord, 1) is not None

    def test_rolls_back_on_error(self, engine) -> None:
        create_all_tables(engine)
        factory = get_session_factory(engine)
        with pytest.raises(RuntimeError):
            with get_session(factory) as session:
                session.add(
                    RunRecord(run_id="r1", descriptor_name="d", target_stage="t")
                )
                session.flush()
                raise RuntimeError("boom")

        with factory() as session:
            assert session.query(RunRecord).count() == 0
