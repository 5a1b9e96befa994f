"""Tests for builds/orchestrator.py module.

A fake executor stands in for docker: stages "produce" every declared
export with a deterministic hash, and checks answer from a script keyed
by command.
"""

import hashlib
import threading

import pytest

from stagegate.builds.executor import CheckExecution, StageExecution
from stagegate.builds.orchestrator import (
    BuildOrchestrator,
    CachedStage,
    create_build_plan,
)
from stagegate.descriptor.io import parse_descriptor_data
from stagegate.errors import (
    ArtifactNotFound,
    ExecutorError,
    GraphValidationError,
    PlatformAmbiguity,
    PlatformMismatch,
    UpstreamFailed,
    VerificationFailure,
)
from stagegate.platforms.models import PlatformTarget
from stagegate.platforms.registry import BaseImageRegistry
from stagegate.types import CheckOutcome, StageStatus

AMD64_GLIBC = "linux/amd64/glibc-2.36/libstdc++-12"
AMD64_MUSL_13 = "linux/amd64/musl-1.2.4/libstdc++-13"
AMD64_MUSL_10 = "linux/amd64/musl-1.2.4/libstdc++-10"
ARM64_MUSL = "linux/arm64/musl-1.2.4/libstdc++-13"


def fake_hash(stage_id: str, path: str) -> str:
    digest = hashlib.sha256(f"{stage_id}:{path}".encode()).hexdigest()
    return f"sha256:{digest}"


class FakeExecutor:
    """Records calls and simulates stage builds and checks."""

    def __init__(
        self,
        checks: dict[str, CheckExecution] | None = None,
        failing_stages: set[str] | None = None,
        missing_exports: set[str] | None = None,
        replaced_stages: set[str] | None = None,
        raising_stages: set[str] | None = None,
    ) -> None:
        self.checks = checks or {}
        self.failing_stages = failing_stages or set()
        self.missing_exports = missing_exports or set()
        self.replaced_stages = replaced_stages or set()
        self.raising_stages = raising_stages or set()
        self.stage_calls: list[str] = []
        self.check_calls: list[str] = []
        self.requests = {}
        self._lock = threading.Lock()

    def run_stage(self, request):
        with self._lock:
            self.stage_calls.append(request.stage_id)
            self.requests[request.stage_id] = request
        if request.stage_id in self.raising_stages:
            raise FileNotFoundError(f"{request.stage_id}: no such file")
        if request.stage_id in self.failing_stages:
            return StageExecution(
                success=False, exit_code=2, error_message="make: *** Error 2"
            )
        return StageExecution(
            success=True,
            exit_code=0,
            artifacts={
                decl.path: fake_hash(request.stage_id, decl.path)
                for decl in request.exports
                if decl.path not in self.missing_exports
            },
        )

    def run_check(self, check, platform, timeout=None):
        with self._lock:
            self.check_calls.append(check.name)
        return self.checks.get(check.command, CheckExecution(0, "ok"))

    def collect_outputs(self, stage_id, exports):
        if stage_id in self.replaced_stages:
            return {decl.path: "sha256:replaced" for decl in exports}
        return {decl.path: fake_hash(stage_id, decl.path) for decl in exports}

    def collect_inputs(self, stage_id, transfers):
        return {t.destination_path: t.source_artifact.content_hash for t in transfers}


class MemoryCache:
    """Stage cache filled from finished runs."""

    def __init__(self) -> None:
        self.entries: dict[str, CachedStage] = {}

    def remember(self, result) -> None:
        for sid, outcome in result.outcomes.items():
            if outcome.status is StageStatus.SUCCEEDED and outcome.cache_key:
                self.entries[outcome.cache_key] = CachedStage(
                    cache_key=outcome.cache_key,
                    run_id=result.run_id,
                    artifacts={
                        a.path: a.content_hash
                        for a in result.ledger.artifacts_for_stage(sid)
                    },
                )

    def lookup(self, cache_key):
        return self.entries.get(cache_key)


@pytest.fixture
def registry() -> BaseImageRegistry:
    return BaseImageRegistry.from_dict(
        {
            "images": {
                "debian:bookworm": AMD64_GLIBC,
                "alpine:3.19": AMD64_MUSL_13,
                "alpine-arm64:3.19": ARM64_MUSL,
            }
        }
    )


def two_stage_descriptor(
    builder_platform: str | None = None,
    runtime_platform: str | None = None,
    runtime_checks: list[dict] | None = None,
):
    builder = {
        "id": "builder",
        "base_image": "debian:bookworm",
        "commands": ["make"],
        "artifacts": [
            {"path": "/out/native.bin", "kind": "compiled_binary"},
            {"path": "/out/share", "kind": "source"},
        ],
    }
    if builder_platform:
        builder["platform"] = builder_platform
    runtime = {
        "id": "runtime",
        "base_image": "alpine:3.19",
        "consumes": [
            {
                "stage": "builder",
                "path": "/out/native.bin",
                "dest": "/app/native.bin",
            },
            {"stage": "builder", "path": "/out/share", "dest": "/app/share"},
        ],
        "checks": runtime_checks
        if runtime_checks is not None
        else [{"name": "native.bin loads", "command": "/app/native.bin --version"}],
    }
    if runtime_platform:
        runtime["platform"] = runtime_platform
    return parse_descriptor_data({"name": "native-app", "stages": [builder, runtime]})


class TestCreateBuildPlan:
    """Tests for planning before execution."""

    def test_compatible_plan(self, registry: BaseImageRegistry) -> None:
        plan = create_build_plan(
            two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
        )
        assert plan.ok
        assert plan.terminal_stage_id == "runtime"
        assert plan.order == ["builder", "runtime"]
        assert str(plan.platforms["runtime"]) == AMD64_MUSL_13

    def test_cycle_rejected_before_execution(self, registry: BaseImageRegistry) -> None:
        descriptor = parse_descriptor_data(
            {
                "name": "loop",
                "stages": [
                    {
                        "id": "a",
                        "base_image": "alpine:3.19",
                        "artifacts": [{"path": "/a"}],
                        "consumes": [{"stage": "b", "path": "/b"}],
                    },
                    {
                        "id": "b",
                        "base_image": "alpine:3.19",
                        "artifacts": [{"path": "/b"}],
                        "consumes": [{"stage": "a", "path": "/a"}],
                    },
                ],
            }
        )
        executor = FakeExecutor()
        with pytest.raises(GraphValidationError, match="cycle"):
            plan = create_build_plan(descriptor, registry)
            BuildOrchestrator(executor).run(plan)
        assert executor.stage_calls == []
        assert executor.check_calls == []

    def test_strict_raises_ambiguity(self) -> None:
        with pytest.raises(PlatformAmbiguity) as exc_info:
            create_build_plan(two_stage_descriptor(), BaseImageRegistry())
        assert exc_info.value.stage_id == "builder"

    def test_non_strict_records_ambiguity(self) -> None:
        plan = create_build_plan(
            two_stage_descriptor(), BaseImageRegistry(), strict=False
        )
        assert not plan.ok
        assert set(plan.ambiguities) == {"builder", "runtime"}

    def test_override_applies_everywhere(self) -> None:
        override = PlatformTarget.parse(ARM64_MUSL)
        plan = create_build_plan(
            two_stage_descriptor(), BaseImageRegistry(), override=override
        )
        assert plan.ok
        assert set(plan.platforms.values()) == {override}
        assert plan.to_dict()["override"] == ARM64_MUSL

    def test_preflight_mismatch_recorded(self, registry: BaseImageRegistry) -> None:
        plan = create_build_plan(
            two_stage_descriptor(runtime_platform=ARM64_MUSL), registry
        )
        assert not plan.ok
        assert set(plan.mismatches) == {"runtime"}
        assert plan.to_dict()["mismatches"]["runtime"]["code"] == "platform_mismatch"


class TestBuildRun:
    """End-to-end orchestration scenarios."""

    def test_compatible_runtime_succeeds(self, registry: BaseImageRegistry) -> None:
        plan = create_build_plan(
            two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
        )
        executor = FakeExecutor()

        result = BuildOrchestrator(executor).run(plan, run_id="run1")

        assert result.succeeded
        assert result.exit_code == 0
        runtime = result.outcomes["runtime"]
        assert runtime.status is StageStatus.SUCCEEDED
        assert [r.name for r in runtime.check_results] == ["native.bin loads"]
        assert runtime.check_results[0].outcome is CheckOutcome.PASS
        assert [t.destination_path for t in runtime.transfers] == [
            "/app/native.bin",
            "/app/share",
        ]
        assert executor.stage_calls == ["builder", "runtime"]
        assert len(result.ledger) == 2

    def test_incompatible_runtime_fails_without_transfer(
        self, registry: BaseImageRegistry
    ) -> None:
        """amd64/glibc binaries are never copied into an arm64/musl stage."""
        plan = create_build_plan(
            two_stage_descriptor(runtime_platform=ARM64_MUSL), registry
        )
        executor = FakeExecutor()

        result = BuildOrchestrator(executor).run(plan)

        assert not result.succeeded
        assert result.exit_code == 1
        runtime = result.outcomes["runtime"]
        assert runtime.status is StageStatus.FAILED
        assert runtime.transfers == []
        assert isinstance(runtime.error, PlatformMismatch)
        assert runtime.error.source_stage_id == "builder"
        assert runtime.error.destination_stage_id == "runtime"
        assert str(runtime.error.source_platform) == AMD64_GLIBC
        assert str(runtime.error.destination_platform) == ARM64_MUSL
        assert "runtime" not in executor.stage_calls
        assert result.outcomes["builder"].status is StageStatus.SUCCEEDED
        assert result.first_error() is runtime.error

    def test_failing_check_stops_later_checks(
        self, registry: BaseImageRegistry
    ) -> None:
        checks = [
            {"name": "exists", "command": "test -f /app/native.bin"},
            {"name": "native.bin loads", "command": "/app/native.bin"},
            {"name": "prints version", "command": "/app/native.bin --version"},
        ]
        plan = create_build_plan(
            two_stage_descriptor(
                builder_platform=AMD64_MUSL_10, runtime_checks=checks
            ),
            registry,
        )
        executor = FakeExecutor(
            checks={
                "/app/native.bin": CheckExecution(
                    127, "Error loading shared library libstdc++.so.6"
                )
            }
        )

        result = BuildOrchestrator(executor).run(plan)

        runtime = result.outcomes["runtime"]
        assert runtime.status is StageStatus.FAILED
        assert executor.check_calls == ["exists", "native.bin loads"]
        assert [(r.name, r.outcome) for r in runtime.check_results] == [
            ("exists", CheckOutcome.PASS),
            ("native.bin loads", CheckOutcome.FAIL),
        ]
        assert isinstance(runtime.error, VerificationFailure)
        assert runtime.error.check_name == "native.bin loads"
        assert "libstdc++.so.6" in runtime.error.output

    def test_executor_failure_blocks_dependents(
        self, registry: BaseImageRegistry
    ) -> None:
        plan = create_build_plan(
            two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
        )
        executor = FakeExecutor(failing_stages={"builder"})

        result = BuildOrchestrator(executor).run(plan)

        builder = result.outcomes["builder"]
        assert builder.status is StageStatus.FAILED
        assert isinstance(builder.error, ExecutorError)
        assert builder.error.exit_code == 2
        assert "Error 2" in builder.error.message
        runtime = result.outcomes["runtime"]
        assert runtime.status is StageStatus.BLOCKED
        assert isinstance(runtime.error, UpstreamFailed)
        assert runtime.error.upstream_stage_id == "builder"
        assert executor.stage_calls == ["builder"]
        assert result.first_error() is builder.error

    def test_missing_export_fails_stage(self, registry: BaseImageRegistry) -> None:
        plan = create_build_plan(
            two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
        )
        executor = FakeExecutor(missing_exports={"/out/share"})

        result = BuildOrchestrator(executor).run(plan)

        builder = result.outcomes["builder"]
        assert builder.status is StageStatus.FAILED
        assert isinstance(builder.error, ArtifactNotFound)
        assert builder.error.path == "/out/share"
        assert result.outcomes["runtime"].status is StageStatus.BLOCKED

    def test_ambiguous_stage_blocks_dependents(self) -> None:
        registry = BaseImageRegistry.from_dict(
            {"images": {"alpine:3.19": AMD64_MUSL_13}}
        )
        plan = create_build_plan(two_stage_descriptor(), registry, strict=False)
        executor = FakeExecutor()

        result = BuildOrchestrator(executor).run(plan)

        builder = result.outcomes["builder"]
        assert builder.status is StageStatus.BLOCKED
        assert isinstance(builder.error, PlatformAmbiguity)
        assert result.outcomes["runtime"].status is StageStatus.BLOCKED
        assert executor.stage_calls == []
        assert not result.succeeded

    def test_independent_stages_all_run(self, registry: BaseImageRegistry) -> None:
        descriptor = parse_descriptor_data(
            {
                "name": "fan-in",
                "stages": [
                    {
                        "id": name,
                        "base_image": "alpine:3.19",
                        "artifacts": [{"path": f"/out/{name}"}],
                    }
                    for name in ("a", "b", "c")
                ]
                + [
                    {
                        "id": "final",
                        "base_image": "alpine:3.19",
                        "consumes": [
                            {"stage": name, "path": f"/out/{name}"}
                            for name in ("a", "b", "c")
                        ],
                    }
                ],
            }
        )
        plan = create_build_plan(descriptor, registry)
        executor = FakeExecutor()

        result = BuildOrchestrator(executor, max_workers=3).run(plan)

        assert result.succeeded
        assert sorted(executor.stage_calls[:3]) == ["a", "b", "c"]
        assert executor.stage_calls[3] == "final"
        assert len(executor.requests["final"].transfers) == 3

    def test_failure_does_not_stop_unrelated_stages(
        self, registry: BaseImageRegistry
    ) -> None:
        descriptor = parse_descriptor_data(
            {
                "name": "partial",
                "target": "final",
                "stages": [
                    {
                        "id": "a",
                        "base_image": "alpine:3.19",
                        "artifacts": [{"path": "/a"}],
                    },
                    {"id": "b", "base_image": "alpine:3.19"},
                    {
                        "id": "final",
                        "base_image": "alpine:3.19",
                        "consumes": [{"stage": "a", "path": "/a"}],
                    },
                ],
            }
        )
        plan = create_build_plan(descriptor, registry)
        executor = FakeExecutor(failing_stages={"a"})

        result = BuildOrchestrator(executor).run(plan)

        assert result.outcomes["b"].status is StageStatus.SUCCEEDED
        assert result.outcomes["final"].status is StageStatus.BLOCKED
        assert not result.succeeded

    def test_failed_side_stage_sets_exit_code(
        self, registry: BaseImageRegistry
    ) -> None:
        """A failed stage outside the terminal's ancestry still fails the run."""
        descriptor = parse_descriptor_data(
            {
                "name": "side",
                "target": "runtime",
                "stages": [
                    {"id": "runtime", "base_image": "alpine:3.19"},
                    {"id": "side", "base_image": "alpine:3.19"},
                ],
            }
        )
        executor = FakeExecutor(failing_stages={"side"})

        plan = create_build_plan(descriptor, registry)

        result = BuildOrchestrator(executor).run(plan)

        assert result.outcomes["runtime"].status is StageStatus.SUCCEEDED
        assert result.outcomes["side"].status is StageStatus.FAILED
        assert result.succeeded
        assert result.exit_code == 1
        assert result.to_dict()["exit_code"] == 1

    def test_unexpected_exception_fails_stage(
        self, registry: BaseImageRegistry
    ) -> None:
        plan = create_build_plan(
            two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
        )
        executor = FakeExecutor(raising_stages={"builder"})

        result = BuildOrchestrator(executor).run(plan)

        builder = result.outcomes["builder"]
        assert builder.status is StageStatus.FAILED
        assert isinstance(builder.error, ExecutorError)
        assert builder.error.stage_id == "builder"
        assert "no such file" in builder.error.message
        assert result.outcomes["runtime"].status is StageStatus.BLOCKED
        assert result.exit_code == 1

    def test_result_to_dict(self, registry: BaseImageRegistry) -> None:
        plan = create_build_plan(
            two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
        )
        data = BuildOrchestrator(FakeExecutor()).run(plan, run_id="run1").to_dict()
        assert data["run_id"] == "run1"
        assert data["succeeded"] is True
        assert [s["stage_id"] for s in data["stages"]] == ["builder", "runtime"]
        assert data["stages"][1]["checks"][0]["name"] == "native.bin loads"
        assert {e["path"] for e in data["ledger"]} == {"/out/native.bin", "/out/share"}


class TestStageCache:
    """Tests for cache reuse across runs."""

    def test_cached_rerun_reuses_artifacts(self, registry: BaseImageRegistry) -> None:
        plan = create_build_plan(
            two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
        )
        cache = MemoryCache()
        first_executor = FakeExecutor()
        first = BuildOrchestrator(first_executor, cache=cache).run(plan)
        cache.remember(first)

        second_plan = create_build_plan(
            two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
        )
        second_executor = FakeExecutor()
        second = BuildOrchestrator(second_executor, cache=cache).run(second_plan)

        assert second.succeeded
        assert second.ledger.hashes() == first.ledger.hashes()
        assert all(o.is_cache_hit for o in second.outcomes.values())
        assert second_executor.stage_calls == []
        # Checks still gate cached stages
        assert second_executor.check_calls == ["native.bin loads"]
        assert {o.cache_key for o in second.outcomes.values()} == {
            o.cache_key for o in first.outcomes.values()
        }

    def test_platform_change_misses_cache(self, registry: BaseImageRegistry) -> None:
        cache = MemoryCache()
        first = BuildOrchestrator(FakeExecutor(), cache=cache).run(
            create_build_plan(
                two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
            )
        )
        cache.remember(first)

        executor = FakeExecutor()
        second = BuildOrchestrator(executor, cache=cache).run(
            create_build_plan(
                two_stage_descriptor(builder_platform=AMD64_MUSL_13), registry
            )
        )
        assert executor.stage_calls[0] == "builder"
        assert not second.outcomes["builder"].is_cache_hit
        old_key = first.outcomes["builder"].cache_key
        assert second.outcomes["builder"].cache_key != old_key

    def test_replaced_outputs_are_rebuilt(self, registry: BaseImageRegistry) -> None:
        """A cache entry is only reused if the executor still holds its outputs."""
        cache = MemoryCache()
        first = BuildOrchestrator(FakeExecutor(), cache=cache).run(
            create_build_plan(
                two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
            )
        )
        cache.remember(first)

        executor = FakeExecutor(replaced_stages={"builder"})
        second = BuildOrchestrator(executor, cache=cache).run(
            create_build_plan(
                two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
            )
        )

        assert executor.stage_calls == ["builder"]
        assert not second.outcomes["builder"].is_cache_hit
        assert second.outcomes["runtime"].is_cache_hit
        assert second.ledger.hashes() == first.ledger.hashes()


class TestVerify:
    """Tests for re-running checks without building."""

    def test_verify_runs_only_checks(self, registry: BaseImageRegistry) -> None:
        plan = create_build_plan(
            two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
        )
        executor = FakeExecutor()
        results = BuildOrchestrator(executor).verify(plan, "runtime")
        assert [r.name for r in results] == ["native.bin loads"]
        assert executor.stage_calls == []

    def test_verify_unknown_stage(self, registry: BaseImageRegistry) -> None:
        plan = create_build_plan(
            two_stage_descriptor(builder_platform=AMD64_MUSL_10), registry
        )
        with pytest.raises(KeyError):
            BuildOrchestrator(FakeExecutor()).verify(plan, "ghost")

    def test_verify_ambiguous_stage(self) -> None:
        plan = create_build_plan(
            two_stage_descriptor(), BaseImageRegistry(), strict=False
        )
        with pytest.raises(PlatformAmbiguity):
            BuildOrchestrator(FakeExecutor()).verify(plan, "runtime")
