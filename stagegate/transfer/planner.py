"""Transfer planner for inter-stage artifact copies.

Every copy of an artifact from one stage into another is planned here
before it happens. Source artifacts are platform-agnostic and always
transferable. Compiled binaries (and mixed artifacts) are only
transferable when the platform they were produced under is compatible
with the destination stage's effective platform.

Two entry points exist:
- ``TransferPlanner`` plans against the live ledger while a run executes.
- ``preflight_transfers`` checks every edge against declared exports and
  resolved platforms before anything executes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from stagegate.errors import PlatformMismatch
from stagegate.platforms.compat import CompatibilityPredicate, minimum_version_compatible

if TYPE_CHECKING:
    from stagegate.ledger.ledger import Artifact, ArtifactLedger
    from stagegate.platforms.models import PlatformTarget
    from stagegate.stages.graph import BuildStage, StageGraph
    from stagegate.types import ArtifactRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferOperation:
    """One validated inter-stage copy.

    Attributes:
        source_artifact: Ledger record of the artifact being copied.
        destination_stage_id: Stage receiving the copy.
        destination_path: Path inside the destination stage.
    """

    source_artifact: Artifact
    destination_stage_id: str
    destination_path: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "source": self.source_artifact.to_dict(),
            "destination_stage_id": self.destination_stage_id,
            "destination_path": self.destination_path,
        }


class TransferPlanner:
    """Plans transfers against the artifact ledger of one run.

    Args:
        ledger: Artifact ledger of the run.
        platforms: Effective platform per stage id.
        predicate: Compatibility predicate for platform-bound artifacts.
    """

    def __init__(
        self,
        ledger: ArtifactLedger,
        platforms: dict[str, PlatformTarget],
        predicate: CompatibilityPredicate | None = None,
    ) -> None:
        self.ledger = ledger
        self.platforms = platforms
        self.predicate = predicate or minimum_version_compatible

    def plan_transfer(
        self,
        artifact_ref: ArtifactRef,
        destination_stage_id: str,
    ) -> TransferOperation:
        """Plan a single copy into a destination stage.

        Args:
            artifact_ref: Upstream artifact to copy.
            destination_stage_id: Stage receiving the artifact.

        Returns:
            The validated TransferOperation.

        Raises:
            ArtifactNotFound: If the artifact is not in the ledger.
            KeyError: If the destination has no resolved platform.
            PlatformMismatch: If the artifact is platform-bound and its
                producing platform is incompatible with the destination.
        """
        artifact = self.ledger.lookup_artifact(artifact_ref.stage_id, artifact_ref.path)
        destination_path = artifact_ref.effective_destination

        if artifact.kind.is_platform_bound:
            destination_platform = self.platforms[destination_stage_id]
            produced = artifact.produced_under_platform
            if produced is None or not self.predicate(produced, destination_platform):
                raise PlatformMismatch(
                    source_stage_id=artifact.stage_id,
                    destination_stage_id=destination_stage_id,
                    artifact_path=artifact.path,
                    source_platform=produced,
                    destination_platform=destination_platform,
                )

        logger.debug(
            "Planned transfer %s:%s -> %s:%s",
            artifact.stage_id,
            artifact.path,
            destination_stage_id,
            destination_path,
        )
        return TransferOperation(
            source_artifact=artifact,
            destination_stage_id=destination_stage_id,
            destination_path=destination_path,
        )

    def plan_stage(self, stage: BuildStage) -> list[TransferOperation]:
        """Plan every inbound copy for a stage.

        All-or-nothing: the first rejected transfer raises and no partial
        plan is returned.
        """
        return [self.plan_transfer(ref, stage.id) for ref in stage.upstream_artifact_refs]


def preflight_transfers(
    graph: StageGraph,
    platforms: dict[str, PlatformTarget],
    predicate: CompatibilityPredicate | None = None,
) -> dict[str, PlatformMismatch]:
    """Check every consume edge before any stage executes.

    Uses each producer's declared export kind and resolved platform to
    predict the runtime transfer decision. Edges touching a stage whose
    platform did not resolve are skipped; those stages are blocked anyway.

    Returns:
        First predicted mismatch per destination stage id.
    """
    if predicate is None:
        predicate = minimum_version_compatible

    mismatches: dict[str, PlatformMismatch] = {}
    for stage_id in graph.topological_order():
        stage = graph.stage(stage_id)
        destination_platform = platforms.get(stage_id)
        if destination_platform is None:
            continue
        for ref in stage.upstream_artifact_refs:
            decl = graph.stage(ref.stage_id).export(ref.path)
            if decl is None or not decl.kind.is_platform_bound:
                continue
            produced = platforms.get(ref.stage_id)
            if produced is None:
                continue
            if not predicate(produced, destination_platform):
                mismatches[stage_id] = PlatformMismatch(
                    source_stage_id=ref.stage_id,
                    destination_stage_id=stage_id,
                    artifact_path=ref.path,
                    source_platform=produced,
                    destination_platform=destination_platform,
                )
                logger.warning("Preflight: %s", mismatches[stage_id])
                break
    return mismatches


__all__ = ["TransferOperation", "TransferPlanner", "preflight_transfers"]
