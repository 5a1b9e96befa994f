"""Cache key computation for stages.

This module handles:
- Canonical input snapshot creation from a stage and its consumed artifacts
- Deterministic hash computation over normalized inputs

A cached stage result is only valid when inputs, base image and platform
all match exactly, so all three are part of the key.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from stagegate.ledger.ledger import ArtifactLedger
    from stagegate.platforms.models import PlatformTarget
    from stagegate.stages.graph import BuildStage

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "1"


@dataclass
class StageInputs:
    """Canonical representation of everything that affects a stage's output.

    Attributes:
        schema_version: Version of cache key schema.
        stage_id: Stage identifier.
        base_image: Base image reference.
        platform: Canonical effective platform string.
        commands: Stage commands, in order.
        exports: Sorted (path, kind) export declarations.
        consumed: Consumed artifacts with their content hashes.
    """

    schema_version: str = CACHE_KEY_SCHEMA_VERSION
    stage_id: str = ""
    base_image: str = ""
    platform: str = ""
    commands: list[str] = field(default_factory=list)
    exports: list[tuple[str, str]] = field(default_factory=list)
    consumed: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["exports"] = [list(e) for e in data["exports"]]
        return data


def create_stage_inputs(
    stage: BuildStage,
    platform: PlatformTarget,
    ledger: ArtifactLedger,
) -> StageInputs:
    """Create canonical inputs for a stage.

    Consumed artifacts must already be recorded in the ledger.

    Raises:
        ArtifactNotFound: If a consumed artifact is not recorded.
    """
    consumed = [
        {
            "stage": ref.stage_id,
            "path": ref.path,
            "dest": ref.effective_destination,
            "content_hash": ledger.lookup_artifact(ref.stage_id, ref.path).content_hash,
        }
        for ref in stage.upstream_artifact_refs
    ]
    consumed.sort(key=lambda c: (c["dest"], c["stage"], c["path"]))
    return StageInputs(
        schema_version=CACHE_KEY_SCHEMA_VERSION,
        stage_id=stage.id,
        base_image=stage.base_image,
        platform=str(platform),
        commands=list(stage.commands),
        exports=sorted((e.path, e.kind.value) for e in stage.exports),
        consumed=consumed,
    )


def compute_cache_key(inputs: StageInputs) -> str:
    """Compute a cache key hash from stage inputs.

    Args:
        inputs: StageInputs instance.

    Returns:
        Cache key as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    hash_bytes = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{hash_bytes}"


def compute_stage_cache_key(
    stage: BuildStage,
    platform: PlatformTarget,
    ledger: ArtifactLedger,
) -> tuple[str, StageInputs]:
    """Convenience function to compute a stage's cache key.

    Returns:
        Tuple of (cache_key, StageInputs).
    """
    inputs = create_stage_inputs(stage, platform, ledger)
    return compute_cache_key(inputs), inputs


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "StageInputs",
    "compute_cache_key",
    "compute_stage_cache_key",
    "create_stage_inputs",
]
