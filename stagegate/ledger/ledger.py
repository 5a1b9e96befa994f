"""Artifact ledger for one build run.

The ledger records which artifacts each stage produced, under which
platform, with which content hash. It is append-only: re-recording an
artifact with the same hash is a no-op, with a different hash it is an
ArtifactMutationConflict. The ledger knows nothing about the stage graph.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from stagegate.errors import ArtifactMutationConflict, ArtifactNotFound
from stagegate.types import ArtifactKind

if TYPE_CHECKING:
    from stagegate.platforms.models import PlatformTarget

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Artifact:
    """A recorded stage output.

    Attributes:
        stage_id: Producing stage.
        path: Artifact path inside the producing stage.
        content_hash: Content hash (``sha256:<hex>``).
        produced_under_platform: Platform the producing stage targeted.
        kind: Artifact kind.
    """

    stage_id: str
    path: str
    content_hash: str
    produced_under_platform: PlatformTarget | None
    kind: ArtifactKind = ArtifactKind.SOURCE

    @property
    def key(self) -> tuple[str, str]:
        """Return the (stage_id, path) ledger key."""
        return (self.stage_id, self.path)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "stage_id": self.stage_id,
            "path": self.path,
            "content_hash": self.content_hash,
            "kind": self.kind.value,
            "produced_under_platform": (
                str(self.produced_under_platform)
                if self.produced_under_platform is not None
                else None
            ),
        }


class ArtifactLedger:
    """Append-only artifact ledger shared by the stages of one run.

    Writes are serialized with a lock. Readers see an immutable snapshot,
    so lookups never observe a partially written entry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], Artifact] = {}
        self._view = MappingProxyType(dict(self._entries))

    def record_artifact(
        self,
        stage_id: str,
        path: str,
        content_hash: str,
        platform: PlatformTarget | None,
        kind: ArtifactKind = ArtifactKind.SOURCE,
    ) -> Artifact:
        """Record an artifact produced by a stage.

        Args:
            stage_id: Producing stage.
            path: Artifact path.
            content_hash: Content hash of the artifact.
            platform: Platform the stage targeted.
            kind: Artifact kind.

        Returns:
            The recorded (or identical, previously recorded) Artifact.

        Raises:
            ValueError: If a platform-bound artifact has no platform.
            ArtifactMutationConflict: If the key exists with another hash.
        """
        kind = ArtifactKind(kind)
        if kind.is_platform_bound and platform is None:
            raise ValueError(
                f"{kind.value} artifact '{path}' of stage '{stage_id}' "
                "requires a producing platform"
            )

        with self._lock:
            existing = self._entries.get((stage_id, path))
            if existing is not None:
                if existing.content_hash != content_hash:
                    raise ArtifactMutationConflict(
                        stage_id, path, existing.content_hash, content_hash
                    )
                return existing

            artifact = Artifact(
                stage_id=stage_id,
                path=path,
                content_hash=content_hash,
                produced_under_platform=platform,
                kind=kind,
            )
            self._entries[artifact.key] = artifact
            self._view = MappingProxyType(dict(self._entries))

        logger.debug(
            "Recorded artifact %s:%s (%s, %s)",
            stage_id,
            path,
            kind.value,
            content_hash[:23],
        )
        return artifact

    def lookup_artifact(self, stage_id: str, path: str) -> Artifact:
        """Return the artifact recorded for (stage_id, path).

        Raises:
            ArtifactNotFound: If nothing is recorded for the key.
        """
        artifact = self._view.get((stage_id, path))
        if artifact is None:
            raise ArtifactNotFound(stage_id, path)
        return artifact

    def artifacts_for_stage(self, stage_id: str) -> list[Artifact]:
        """Return artifacts recorded for a stage, in recording order."""
        return [a for a in self._view.values() if a.stage_id == stage_id]

    def entries(self) -> list[Artifact]:
        """Return every artifact in recording order."""
        return list(self._view.values())

    def hashes(self) -> dict[tuple[str, str], str]:
        """Return content hashes keyed by (stage_id, path)."""
        return {key: a.content_hash for key, a in self._view.items()}

    def __contains__(self, key: object) -> bool:
        return key in self._view

    def __iter__(self) -> Iterator[Artifact]:
        return iter(self.entries())

    def __len__(self) -> int:
        return len(self._view)


__all__ = ["Artifact", "ArtifactLedger"]
