"""Artifact ledger module.

This module handles:
- The in-memory, append-only ledger of one run
- Stage cache key computation
- ORM models for persisted runs
"""

from stagegate.ledger.ledger import Artifact, ArtifactLedger
from stagegate.ledger.models import (
    CheckResultRecord,
    LedgerEntry,
    RunRecord,
    StageRecord,
)

__all__ = [
    "Artifact",
    "ArtifactLedger",
    "CheckResultRecord",
    "LedgerEntry",
    "RunRecord",
    "StageRecord",
]

# Lazy imports for submodules to avoid circular imports
# Access via stagegate.ledger.store
