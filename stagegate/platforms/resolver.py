"""Platform resolver.

Determines the effective platform each stage targets. Precedence:

1. An explicit run-wide override.
2. The stage's own declared platform.
3. The platform registered for the stage's base image.

A stage declaring nothing whose upstream stages declare conflicting
platforms is ambiguous and is reported, not guessed. Resolution is pure:
identical graph, registry and override always give identical results.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from stagegate.errors import PlatformAmbiguity

if TYPE_CHECKING:
    from stagegate.platforms.models import PlatformTarget
    from stagegate.platforms.registry import BaseImageRegistry
    from stagegate.stages.graph import BuildStage, StageGraph

logger = logging.getLogger(__name__)


@dataclass
class PlatformResolution:
    """Effective platforms for every stage of a graph.

    Attributes:
        platforms: Resolved platform per stage id.
        ambiguities: Resolution failure per stage id.
    """

    platforms: dict[str, PlatformTarget] = field(default_factory=dict)
    ambiguities: dict[str, PlatformAmbiguity] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether every stage resolved."""
        return not self.ambiguities


def resolve_effective_platform(
    stage: BuildStage,
    graph: StageGraph,
    registry: BaseImageRegistry,
    override: PlatformTarget | None = None,
) -> PlatformTarget:
    """Resolve the effective platform for one stage.

    Args:
        stage: Stage to resolve.
        graph: Graph the stage belongs to.
        registry: Base-image platform registry.
        override: Run-wide platform override.

    Returns:
        The effective PlatformTarget.

    Raises:
        PlatformAmbiguity: If upstream declarations conflict or the base
            image has no registered platform.
    """
    if override is not None:
        return override
    if stage.declared_platform is not None:
        return stage.declared_platform

    upstream_declared: dict[str, PlatformTarget] = {}
    for upstream_id in stage.upstream_stage_ids:
        upstream = graph.stage(upstream_id)
        if upstream.declared_platform is not None:
            upstream_declared[upstream_id] = upstream.declared_platform
    if len(set(upstream_declared.values())) > 1:
        raise PlatformAmbiguity(stage.id, conflicts=upstream_declared)

    inherited = registry.lookup(stage.base_image)
    if inherited is None:
        raise PlatformAmbiguity(
            stage.id,
            reason=(
                f"no declared platform and base image '{stage.base_image}' "
                "is not in the registry"
            ),
        )
    return inherited


def resolve_all(
    graph: StageGraph,
    registry: BaseImageRegistry,
    override: PlatformTarget | None = None,
) -> PlatformResolution:
    """Resolve effective platforms for every stage of a graph.

    Failures are collected rather than raised so callers can decide
    whether ambiguity is fatal for the whole run or only for the affected
    stages and their dependents.
    """
    resolution = PlatformResolution()
    for stage_id in graph.topological_order():
        stage = graph.stage(stage_id)
        try:
            platform = resolve_effective_platform(stage, graph, registry, override)
        except PlatformAmbiguity as e:
            logger.warning("%s", e)
            resolution.ambiguities[stage_id] = e
            continue
        resolution.platforms[stage_id] = platform
        logger.debug("Stage %s targets %s", stage_id, platform)
    return resolution


__all__ = ["PlatformResolution", "resolve_all", "resolve_effective_platform"]
