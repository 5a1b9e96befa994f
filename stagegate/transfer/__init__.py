"""Inter-stage transfer planning."""

from stagegate.transfer.planner import (
    TransferOperation,
    TransferPlanner,
    preflight_transfers,
)

__all__ = ["TransferOperation", "TransferPlanner", "preflight_transfers"]
