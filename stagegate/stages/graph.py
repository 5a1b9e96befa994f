"""Stage graph for multi-stage builds.

Stages form a directed acyclic graph keyed by stage id. Edges run from
an upstream (producing) stage to the stage consuming its artifacts.
The graph is backed by a networkx DiGraph for cycle detection,
deterministic ordering and ancestor/descendant queries.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import networkx as nx

from stagegate.errors import GraphValidationError
from stagegate.types import (
    ArtifactDecl,
    ArtifactRef,
    ExpectedOutcome,
    StageStatus,
    VerificationCheck,
)

if TYPE_CHECKING:
    from stagegate.descriptor.schema import BuildDescriptorSchema, StageSchema
    from stagegate.platforms.models import PlatformTarget

logger = logging.getLogger(__name__)


@dataclass
class BuildStage:
    """One step of a multi-stage build.

    Attributes:
        id: Unique stage id.
        base_image: Base image reference.
        declared_platform: Explicit platform, or None to inherit.
        upstream_artifact_refs: Artifacts copied in from upstream stages.
        commands: Opaque build-executor instructions.
        exports: Artifacts this stage declares it produces.
        checks: Verification checks gating promotion.
        status: Current status within a run.
    """

    id: str
    base_image: str
    declared_platform: PlatformTarget | None = None
    upstream_artifact_refs: list[ArtifactRef] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    exports: list[ArtifactDecl] = field(default_factory=list)
    checks: list[VerificationCheck] = field(default_factory=list)
    status: StageStatus = StageStatus.PENDING

    @property
    def upstream_stage_ids(self) -> list[str]:
        """Return upstream stage ids in declaration order, without duplicates."""
        return list(dict.fromkeys(ref.stage_id for ref in self.upstream_artifact_refs))

    def export(self, path: str) -> ArtifactDecl | None:
        """Return the export declaration for a path, if any."""
        for decl in self.exports:
            if decl.path == path:
                return decl
        return None

    @classmethod
    def from_schema(cls, schema: StageSchema) -> BuildStage:
        """Create a stage from its descriptor schema."""
        return cls(
            id=schema.id,
            base_image=schema.base_image,
            declared_platform=schema.declared_platform(),
            upstream_artifact_refs=[
                ArtifactRef(stage_id=c.stage, path=c.path, destination_path=c.dest)
                for c in schema.consumes
            ],
            commands=list(schema.commands),
            exports=[ArtifactDecl(path=a.path, kind=a.kind) for a in schema.artifacts],
            checks=[
                VerificationCheck(
                    name=c.name,
                    target_stage_id=schema.id,
                    command=c.command,
                    expected=ExpectedOutcome(
                        exit_code=c.expect.exit_code,
                        output_contains=c.expect.output_contains,
                    ),
                )
                for c in schema.checks
            ],
        )


class StageGraph:
    """Directed acyclic graph of build stages."""

    def __init__(self, name: str = "build", target: str | None = None) -> None:
        self.name = name
        self.target = target
        self._graph: nx.DiGraph = nx.DiGraph()
        self._stages: dict[str, BuildStage] = {}

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._stages

    def __iter__(self) -> Iterator[BuildStage]:
        return iter(self._stages.values())

    def __len__(self) -> int:
        return len(self._stages)

    def add_stage(self, stage: BuildStage) -> None:
        """Add a stage node. Edges are added by ``validate()``.

        Raises:
            GraphValidationError: If a stage with the same id exists.
        """
        if stage.id in self._stages:
            raise GraphValidationError(
                f"Duplicate stage id: {stage.id}", problems=[f"duplicate:{stage.id}"]
            )
        self._stages[stage.id] = stage
        self._graph.add_node(stage.id)

    def stage(self, stage_id: str) -> BuildStage:
        """Return a stage by id.

        Raises:
            KeyError: If the stage does not exist.
        """
        try:
            return self._stages[stage_id]
        except KeyError:
            raise KeyError(f"Unknown stage: {stage_id}") from None

    def validate(self) -> None:
        """Wire edges and validate the graph.

        Checks that every consumed stage exists and exports the consumed
        path, that the graph has no cycles, and that a terminal stage can
        be determined.

        Raises:
            GraphValidationError: Listing every problem found.
        """
        problems: list[str] = []
        edges: list[tuple[str, str]] = []
        for stage in self._stages.values():
            for ref in stage.upstream_artifact_refs:
                upstream = self._stages.get(ref.stage_id)
                if upstream is None:
                    problems.append(
                        f"stage '{stage.id}' consumes from unknown stage '{ref.stage_id}'"
                    )
                    continue
                if upstream.export(ref.path) is None:
                    problems.append(
                        f"stage '{stage.id}' consumes '{ref.path}' which stage "
                        f"'{ref.stage_id}' does not export"
                    )
                edges.append((ref.stage_id, stage.id))

        if problems:
            raise GraphValidationError(
                f"Stage graph '{self.name}' has dangling references", problems=problems
            )

        self._graph.add_edges_from(edges)
        try:
            cycle = nx.find_cycle(self._graph)
        except nx.NetworkXNoCycle:
            cycle = None
        if cycle:
            path = " -> ".join([edge[0] for edge in cycle] + [cycle[0][0]])
            raise GraphValidationError(
                f"Stage graph '{self.name}' contains a cycle: {path}",
                problems=[f"cycle: {path}"],
            )

        self.terminal_stage_id()
        logger.debug(
            "Validated stage graph %s (%d stages, %d edges)",
            self.name,
            len(self._stages),
            self._graph.number_of_edges(),
        )

    def topological_order(self) -> list[str]:
        """Return stage ids in a deterministic topological order."""
        return list(nx.lexicographical_topological_sort(self._graph))

    def upstream_ids(self, stage_id: str) -> list[str]:
        """Return direct upstream stage ids, sorted."""
        return sorted(self._graph.predecessors(stage_id))

    def downstream_ids(self, stage_id: str) -> list[str]:
        """Return direct downstream stage ids, sorted."""
        return sorted(self._graph.successors(stage_id))

    def ancestors(self, stage_id: str) -> set[str]:
        """Return every stage the given stage transitively depends on."""
        return set(nx.ancestors(self._graph, stage_id))

    def descendants(self, stage_id: str) -> set[str]:
        """Return every stage transitively depending on the given stage."""
        return set(nx.descendants(self._graph, stage_id))

    def sinks(self) -> list[str]:
        """Return stages nothing depends on, sorted."""
        return sorted(n for n in self._graph.nodes if self._graph.out_degree(n) == 0)

    def terminal_stage_id(self) -> str:
        """Return the terminal ("runtime") stage id.

        The explicit target wins; otherwise the graph must have exactly one
        sink.

        Raises:
            GraphValidationError: If the target is unknown or ambiguous.
        """
        if self.target is not None:
            if self.target not in self._stages:
                raise GraphValidationError(
                    f"Target stage '{self.target}' does not exist",
                    problems=[f"unknown target: {self.target}"],
                )
            return self.target
        sinks = self.sinks()
        if len(sinks) != 1:
            raise GraphValidationError(
                f"Cannot determine terminal stage; sinks are {sinks}. "
                "Set 'target' in the descriptor.",
                problems=[f"ambiguous target: {sinks}"],
            )
        return sinks[0]

    def required_stage_ids(self) -> set[str]:
        """Return the terminal stage and everything it depends on."""
        terminal = self.terminal_stage_id()
        return self.ancestors(terminal) | {terminal}

    @classmethod
    def from_descriptor(cls, descriptor: BuildDescriptorSchema) -> StageGraph:
        """Build and validate a graph from a descriptor.

        Raises:
            GraphValidationError: If the graph is invalid.
        """
        graph = cls(name=descriptor.name, target=descriptor.target)
        for stage_schema in descriptor.stages:
            graph.add_stage(BuildStage.from_schema(stage_schema))
        graph.validate()
        return graph


__all__ = ["BuildStage", "StageGraph"]
