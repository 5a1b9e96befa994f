"""Build orchestration module.

This module handles:
- Build executors (docker, local)
- Build planning and the per-stage state machine
- Service entry points used by the CLI
"""

from stagegate.builds.orchestrator import (
    BuildOrchestrator,
    BuildPlan,
    BuildRunResult,
    StageOutcome,
    create_build_plan,
)

__all__ = [
    "BuildOrchestrator",
    "BuildPlan",
    "BuildRunResult",
    "StageOutcome",
    "create_build_plan",
]

# Lazy imports for submodules to avoid circular imports
# Access via stagegate.builds.service, etc.
