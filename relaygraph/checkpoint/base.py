from __future__ import annotations

import builtins
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from typing_extensions import TypedDict

from relaygraph.serde.base import SerializerProtocol
from relaygraph.serde.jsonplus import JsonPlusSerializer

__all__ = (
    "CheckpointMetadata",
    "Checkpoint",
    "create_checkpoint",
    "BaseCheckpointStore",
)


# Marked as total=False to allow for future expansion.
class CheckpointMetadata(TypedDict, total=False):
    source: Literal["input", "loop", "interrupt", "update", "fork"]
    """The source of the checkpoint.
    - "input": The checkpoint was created from an input to invoke/stream.
    - "loop": The checkpoint was created at a super-step boundary.
    - "interrupt": The checkpoint was created right before surfacing an interrupt.
    - "update": The checkpoint was created from a manual state update.
    - "fork": The checkpoint was copied from another thread.
    """
    step: int
    """The step number of the checkpoint.
    0 for the first "input" checkpoint.
    n for the checkpoint written after the nth super-step.
    """
    node_name: str
    """The node that interrupted, for "interrupt" checkpoints."""
    interrupt: Any
    """The value surfaced to the caller, for "interrupt" checkpoints."""
    breakpoint: Literal["before", "after"]
    """Set when the interrupt came from a breakpoint rather than a node."""
    run_id: str
    """The run that wrote the checkpoint."""


@dataclass
class Checkpoint:
    """State snapshot at a super-step boundary."""

    id: str
    """The ID of the checkpoint. Globally unique."""
    thread_id: str
    """The thread the checkpoint belongs to."""
    parent_id: str | None
    """The checkpoint this one was derived from, if any."""
    step: int
    """The index of the super-step that `pending_nodes` will run at."""
    channel_values: dict[str, Any] = field(default_factory=dict)
    """The values of the channels at the time of the checkpoint.

    Mapping from channel name to channel snapshot value.
    """
    pending_nodes: list[str] = field(default_factory=list)
    """The frontier of the next super-step. Empty once the run completed."""
    metadata: CheckpointMetadata = field(default_factory=CheckpointMetadata)  # type: ignore[arg-type]
    created_at: str = ""
    """The timestamp of the checkpoint in ISO 8601 format."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "parent_id": self.parent_id,
            "step": self.step,
            "channel_values": self.channel_values,
            "pending_nodes": list(self.pending_nodes),
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            id=data["id"],
            thread_id=data["thread_id"],
            parent_id=data.get("parent_id"),
            step=data["step"],
            channel_values=data.get("channel_values") or {},
            pending_nodes=list(data.get("pending_nodes") or []),
            metadata=CheckpointMetadata(**(data.get("metadata") or {})),  # type: ignore[typeddict-item]
            created_at=data.get("created_at", ""),
        )


def create_checkpoint(
    thread_id: str,
    *,
    parent_id: str | None,
    step: int,
    channel_values: dict[str, Any],
    pending_nodes: builtins.list[str],
    metadata: CheckpointMetadata,
) -> Checkpoint:
    return Checkpoint(
        id=str(uuid4()),
        thread_id=thread_id,
        parent_id=parent_id,
        step=step,
        channel_values=channel_values,
        pending_nodes=sorted(pending_nodes),
        metadata=metadata,
        created_at=datetime.now(timezone.utc).isoformat(),
    )


class BaseCheckpointStore:
    """Base class for checkpoint stores.

    Implementations must be safe for concurrent use. Ids are globally unique;
    `put` is idempotent on id, and the most recently written checkpoint of a
    thread is its latest one.
    """

    serde: SerializerProtocol = JsonPlusSerializer()

    def __init__(
        self,
        *,
        serde: SerializerProtocol | None = None,
    ) -> None:
        self.serde = serde or self.serde

    def dumps(self, checkpoint: Checkpoint) -> bytes:
        return self.serde.dumps(checkpoint.to_dict())

    def loads(self, data: bytes) -> Checkpoint:
        return Checkpoint.from_dict(self.serde.loads(data))

    # sync methods

    def put(self, checkpoint: Checkpoint) -> None:
        raise NotImplementedError

    def get(self, thread_id: str, checkpoint_id: str) -> Checkpoint | None:
        raise NotImplementedError

    def get_latest(self, thread_id: str) -> Checkpoint | None:
        raise NotImplementedError

    def list(self, thread_id: str) -> builtins.list[Checkpoint]:
        raise NotImplementedError

    def delete_thread(self, thread_id: str) -> None:
        raise NotImplementedError

    # async methods

    async def aput(self, checkpoint: Checkpoint) -> None:
        raise NotImplementedError

    async def aget(self, thread_id: str, checkpoint_id: str) -> Checkpoint | None:
        raise NotImplementedError

    async def aget_latest(self, thread_id: str) -> Checkpoint | None:
        raise NotImplementedError

    async def alist(self, thread_id: str) -> builtins.list[Checkpoint]:
        raise NotImplementedError

    async def adelete_thread(self, thread_id: str) -> None:
        raise NotImplementedError
