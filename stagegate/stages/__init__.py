"""Stage graph module."""

from stagegate.stages.graph import BuildStage, StageGraph

__all__ = ["BuildStage", "StageGraph"]
