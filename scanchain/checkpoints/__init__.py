from scanchain.checkpoints.manager import CheckpointManager
from scanchain.checkpoints.types import (
    CheckpointError,
    CheckpointMetadata,
    CheckpointState,
    CheckpointStats,
    IndexDeltaCounts,
    checkpoint_state_from_dict,
    checkpoint_state_to_dict,
)

__all__ = [
    "CheckpointManager",
    "CheckpointError",
    "CheckpointMetadata",
    "CheckpointState",
    "CheckpointStats",
    "IndexDeltaCounts",
    "checkpoint_state_to_dict",
    "checkpoint_state_from_dict",
]
