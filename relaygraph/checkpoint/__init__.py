from relaygraph.checkpoint.base import (
    BaseCheckpointStore,
    Checkpoint,
    CheckpointMetadata,
    create_checkpoint,
)
from relaygraph.checkpoint.memory import InMemoryCheckpointStore

__all__ = (
    "BaseCheckpointStore",
    "Checkpoint",
    "CheckpointMetadata",
    "InMemoryCheckpointStore",
    "create_checkpoint",
)
