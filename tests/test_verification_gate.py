"""Tests for verification/gate.py module.

The build executor is replaced with a scripted fake so checks can pass,
fail or error without running anything.
"""

import json
from pathlib import Path

import pytest

from stagegate.builds.executor import CheckExecution
from stagegate.errors import ExecutorError, VerificationFailure
from stagegate.platforms.models import PlatformTarget
from stagegate.stages.graph import BuildStage, StageGraph
from stagegate.types import CheckOutcome, ExpectedOutcome, VerificationCheck
from stagegate.verification.gate import (
    CheckResult,
    VerificationGate,
    evaluate,
    first_failure,
    gate_passed,
    list_checks,
    raise_for_results,
    write_report,
)

PLATFORM = PlatformTarget.parse("linux/amd64/musl/libstdc++-13")


class ScriptedExecutor:
    """Executor returning canned check results by check name."""

    def __init__(self, results: dict[str, CheckExecution | Exception]) -> None:
        self.results = results
        self.calls: list[str] = []

    def run_stage(self, request):
        raise AssertionError("gate must not build stages")

    def run_check(self, check, platform, timeout=None):
        self.calls.append(check.name)
        result = self.results[check.name]
        if isinstance(result, Exception):
            raise result
        return result


def check(name: str, **expected) -> VerificationCheck:
    return VerificationCheck(
        name=name,
        target_stage_id="runtime",
        command=f"run {name}",
        expected=ExpectedOutcome(**expected),
    )


class TestEvaluate:
    """Tests for comparing executions with expectations."""

    def test_exit_code_match(self) -> None:
        assert evaluate(check("a"), CheckExecution(0, "")) is CheckOutcome.PASS

    def test_exit_code_mismatch(self) -> None:
        assert evaluate(check("a"), CheckExecution(1, "")) is CheckOutcome.FAIL

    def test_expected_nonzero_exit(self) -> None:
        c = check("a", exit_code=2)
        assert evaluate(c, CheckExecution(2, "usage")) is CheckOutcome.PASS

    def test_output_contains(self) -> None:
        c = check("a", output_contains="hello")
        assert evaluate(c, CheckExecution(0, "say hello\n")) is CheckOutcome.PASS
        assert evaluate(c, CheckExecution(0, "goodbye\n")) is CheckOutcome.FAIL


class TestVerificationGate:
    """Tests for running a stage's checks."""

    def test_all_pass(self) -> None:
        executor = ScriptedExecutor(
            {"a": CheckExecution(0, "ok"), "b": CheckExecution(0, "ok")}
        )
        results = VerificationGate(executor).run_checks(
            "runtime", [check("a"), check("b")], PLATFORM
        )
        assert [r.outcome for r in results] == [CheckOutcome.PASS, CheckOutcome.PASS]
        assert gate_passed(results)

    def test_stops_at_first_failure(self) -> None:
        """Checks after the first failure never run."""
        executor = ScriptedExecutor(
            {
                "a": CheckExecution(0, "ok"),
                "b": CheckExecution(127, "not found"),
                "c": CheckExecution(0, "ok"),
            }
        )
        results = VerificationGate(executor).run_checks(
            "runtime", [check("a"), check("b"), check("c")], PLATFORM
        )
        assert executor.calls == ["a", "b"]
        assert [r.name for r in results] == ["a", "b"]
        assert results[1].exit_code == 127
        assert results[1].output == "not found"
        assert not gate_passed(results)

    def test_executor_error_is_failed_check(self) -> None:
        executor = ScriptedExecutor(
            {"a": ExecutorError("docker not found", stage_id="runtime")}
        )
        gate = VerificationGate(executor)
        results = gate.run_checks("runtime", [check("a")], PLATFORM)
        assert results[0].outcome is CheckOutcome.FAIL
        assert results[0].output == "docker not found"
        assert results[0].exit_code is None

    def test_no_checks_passes(self) -> None:
        results = VerificationGate(ScriptedExecutor({})).run_checks(
            "runtime", [], PLATFORM
        )
        assert results == []
        assert gate_passed(results)

    def test_writes_report(self, tmp_path: Path) -> None:
        executor = ScriptedExecutor({"a": CheckExecution(1, "boom")})
        gate = VerificationGate(executor, reports_dir=tmp_path)
        gate.run_checks("runtime", [check("a")], PLATFORM, run_id="run1")

        report = json.loads((tmp_path / "run1" / "runtime.json").read_text())
        assert report["passed"] is False
        assert report["platform"] == str(PLATFORM)
        assert report["checks"][0]["name"] == "a"
        assert report["checks"][0]["outcome"] == "fail"

    def test_no_report_without_checks(self, tmp_path: Path) -> None:
        gate = VerificationGate(ScriptedExecutor({}), reports_dir=tmp_path)
        gate.run_checks("runtime", [], PLATFORM, run_id="run1")
        assert not (tmp_path / "run1").exists()


class TestResultHelpers:
    """Tests for result helpers."""

    def _result(self, name: str, outcome: CheckOutcome) -> CheckResult:
        return CheckResult(
            name=name,
            stage_id="runtime",
            outcome=outcome,
            exit_code=0 if outcome is CheckOutcome.PASS else 1,
            output="out",
        )

    def test_first_failure(self) -> None:
        results = [
            self._result("a", CheckOutcome.PASS),
            self._result("b", CheckOutcome.FAIL),
        ]
        assert first_failure(results).name == "b"
        assert first_failure(results[:1]) is None

    def test_raise_for_results(self) -> None:
        results = [self._result("b", CheckOutcome.FAIL)]
        with pytest.raises(VerificationFailure) as exc_info:
            raise_for_results(results)
        assert exc_info.value.check_name == "b"
        assert exc_info.value.output == "out"
        assert exc_info.value.code == "verification_failed"

    def test_raise_for_results_passes(self) -> None:
        raise_for_results([self._result("a", CheckOutcome.PASS)])

    def test_to_dict(self) -> None:
        data = self._result("a", CheckOutcome.PASS).to_dict()
        assert data["outcome"] == "pass"
        assert data["stage_id"] == "runtime"

    def test_write_report_adhoc(self, tmp_path: Path) -> None:
        path = write_report(tmp_path, "runtime", [])
        assert path == tmp_path / "adhoc" / "runtime.json"
        assert json.loads(path.read_text())["passed"] is True


class TestListChecks:
    """Tests for listing declared checks."""

    def test_lists_in_topological_order(self) -> None:
        graph = StageGraph(name="checks", target="b")
        graph.add_stage(
            BuildStage(
                id="b",
                base_image="alpine:3.19",
                checks=[check("second")],
            )
        )
        graph.add_stage(
            BuildStage(
                id="a",
                base_image="alpine:3.19",
                checks=[check("first")],
            )
        )
        graph.validate()
        assert [c.name for c in list_checks(graph)] == ["first", "second"]
        assert [c.name for c in list_checks(graph, "b")] == ["second"]

    def test_unknown_stage(self) -> None:
        graph = StageGraph(name="checks")
        graph.add_stage(BuildStage(id="a", base_image="alpine:3.19"))
        graph.validate()
        with pytest.raises(KeyError):
            list_checks(graph, "ghost")
