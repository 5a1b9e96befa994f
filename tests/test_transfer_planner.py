"""Tests for transfer/planner.py module."""

import pytest

from stagegate.errors import ArtifactNotFound, PlatformMismatch
from stagegate.ledger.ledger import ArtifactLedger
from stagegate.platforms.compat import exact_compatible
from stagegate.platforms.models import PlatformTarget
from stagegate.stages.graph import BuildStage, StageGraph
from stagegate.transfer.planner import TransferPlanner, preflight_transfers
from stagegate.types import ArtifactDecl, ArtifactKind, ArtifactRef

AMD64_GLIBC = PlatformTarget.parse("linux/amd64/glibc-2.36/libstdc++-12")
ARM64_MUSL_10 = PlatformTarget.parse("linux/arm64/musl/libstdc++-10")
AMD64_MUSL_10 = PlatformTarget.parse("linux/amd64/musl/libstdc++-10")
AMD64_MUSL_13 = PlatformTarget.parse("linux/amd64/musl/libstdc++-13")
HASH = "sha256:" + "c" * 64

BINARY_REF = ArtifactRef("builder", "/out/native.bin", "/app/native.bin")
SOURCE_REF = ArtifactRef("builder", "/src", "/app/src")


def make_ledger(platform: PlatformTarget) -> ArtifactLedger:
    ledger = ArtifactLedger()
    ledger.record_artifact(
        "builder", "/out/native.bin", HASH, platform, ArtifactKind.COMPILED_BINARY
    )
    ledger.record_artifact("builder", "/src", HASH, None, ArtifactKind.SOURCE)
    return ledger


class TestPlanTransfer:
    """Tests for single transfer decisions."""

    def test_source_transfers_across_architectures(self) -> None:
        planner = TransferPlanner(
            make_ledger(AMD64_GLIBC), {"runtime": ARM64_MUSL_10}
        )
        op = planner.plan_transfer(SOURCE_REF, "runtime")
        assert op.destination_path == "/app/src"
        assert op.source_artifact.kind is ArtifactKind.SOURCE

    def test_compatible_binary(self) -> None:
        planner = TransferPlanner(
            make_ledger(AMD64_MUSL_10), {"runtime": AMD64_MUSL_13}
        )
        op = planner.plan_transfer(BINARY_REF, "runtime")
        assert op.destination_stage_id == "runtime"
        assert op.source_artifact.content_hash == HASH

    def test_arm64_binary_into_amd64_rejected(self) -> None:
        planner = TransferPlanner(
            make_ledger(ARM64_MUSL_10), {"runtime": AMD64_MUSL_13}
        )
        with pytest.raises(PlatformMismatch) as exc_info:
            planner.plan_transfer(BINARY_REF, "runtime")
        error = exc_info.value
        assert error.source_platform == ARM64_MUSL_10
        assert error.destination_platform == AMD64_MUSL_13

    def test_newer_runtime_binary_into_older_rejected(self) -> None:
        planner = TransferPlanner(
            make_ledger(AMD64_MUSL_13), {"runtime": AMD64_MUSL_10}
        )
        with pytest.raises(PlatformMismatch):
            planner.plan_transfer(BINARY_REF, "runtime")

    def test_glibc_binary_into_musl_names_both_stages(self) -> None:
        planner = TransferPlanner(
            make_ledger(AMD64_GLIBC), {"runtime": ARM64_MUSL_10}
        )
        with pytest.raises(PlatformMismatch) as exc_info:
            planner.plan_transfer(BINARY_REF, "runtime")
        details = exc_info.value.details()
        assert details["source_stage_id"] == "builder"
        assert details["destination_stage_id"] == "runtime"
        assert details["source_platform"] == str(AMD64_GLIBC)
        assert details["destination_platform"] == str(ARM64_MUSL_10)

    def test_custom_predicate(self) -> None:
        planner = TransferPlanner(
            make_ledger(AMD64_MUSL_10), {"runtime": AMD64_MUSL_13}, exact_compatible
        )
        with pytest.raises(PlatformMismatch):
            planner.plan_transfer(BINARY_REF, "runtime")

    def test_unrecorded_artifact(self) -> None:
        planner = TransferPlanner(ArtifactLedger(), {"runtime": AMD64_MUSL_13})
        with pytest.raises(ArtifactNotFound):
            planner.plan_transfer(BINARY_REF, "runtime")

    def test_default_destination_path(self) -> None:
        planner = TransferPlanner(make_ledger(AMD64_GLIBC), {"runtime": AMD64_GLIBC})
        op = planner.plan_transfer(ArtifactRef("builder", "/src"), "runtime")
        assert op.destination_path == "/src"


class TestPlanStage:
    """Tests for all-or-nothing stage planning."""

    def test_rejects_whole_stage(self) -> None:
        stage = BuildStage(
            id="runtime",
            base_image="alpine:3.19",
            upstream_artifact_refs=[SOURCE_REF, BINARY_REF],
        )
        planner = TransferPlanner(
            make_ledger(AMD64_GLIBC), {"runtime": ARM64_MUSL_10}
        )
        with pytest.raises(PlatformMismatch):
            planner.plan_stage(stage)

    def test_plans_every_ref(self) -> None:
        stage = BuildStage(
            id="runtime",
            base_image="alpine:3.19",
            upstream_artifact_refs=[SOURCE_REF, BINARY_REF],
        )
        planner = TransferPlanner(
            make_ledger(AMD64_MUSL_10), {"runtime": AMD64_MUSL_13}
        )
        ops = planner.plan_stage(stage)
        assert [op.destination_path for op in ops] == ["/app/src", "/app/native.bin"]


class TestPreflightTransfers:
    """Tests for checks made before any stage executes."""

    @pytest.fixture
    def graph(self) -> StageGraph:
        graph = StageGraph(name="preflight")
        graph.add_stage(
            BuildStage(
                id="builder",
                base_image="debian:bookworm",
                exports=[
                    ArtifactDecl("/out/native.bin", ArtifactKind.COMPILED_BINARY),
                    ArtifactDecl("/src", ArtifactKind.SOURCE),
                ],
            )
        )
        graph.add_stage(
            BuildStage(
                id="runtime",
                base_image="alpine:3.19",
                upstream_artifact_refs=[SOURCE_REF, BINARY_REF],
            )
        )
        graph.validate()
        return graph

    def test_predicts_mismatch(self, graph: StageGraph) -> None:
        mismatches = preflight_transfers(
            graph, {"builder": AMD64_GLIBC, "runtime": ARM64_MUSL_10}
        )
        assert set(mismatches) == {"runtime"}
        assert mismatches["runtime"].artifact_path == "/out/native.bin"

    def test_compatible_graph(self, graph: StageGraph) -> None:
        assert (
            preflight_transfers(
                graph, {"builder": AMD64_MUSL_10, "runtime": AMD64_MUSL_13}
            )
            == {}
        )

    def test_skips_unresolved_stages(self, graph: StageGraph) -> None:
        assert preflight_transfers(graph, {"runtime": ARM64_MUSL_10}) == {}
