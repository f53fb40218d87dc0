from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any, Generic, TypeVar

from typing_extensions import Self

from relaygraph._internal._typing import MISSING
from relaygraph.errors import EmptyChannelError

Value = TypeVar("Value")
Update = TypeVar("Update")
Checkpoint = TypeVar("Checkpoint")

__all__ = (
    "BaseChannel",
    "create_channels",
    "copy_channels",
    "read_channels",
    "checkpoint_channels",
    "consume_channels",
)


class BaseChannel(Generic[Value, Update, Checkpoint], ABC):
    """A named slot of graph state with its own merge rule.

    Compiled graphs hold one instance per channel as a template. Every run
    works on fresh copies made with `from_checkpoint`, so templates are
    never mutated.
    """

    __slots__ = ("key", "typ")

    def __init__(self, typ: Any, key: str = "") -> None:
        self.typ = typ
        self.key = key

    @property
    def ValueType(self) -> Any:
        return self.typ

    @property
    def UpdateType(self) -> Any:
        return self.typ

    @property
    def checkpointed(self) -> bool:
        """False for channels whose value is dropped from checkpoints."""
        return True

    def checkpoint(self) -> Checkpoint | Any:
        """The serializable value to persist, or `MISSING` when empty."""
        try:
            return self.get()
        except EmptyChannelError:
            return MISSING

    @abstractmethod
    def from_checkpoint(self, checkpoint: Checkpoint | Any) -> Self:
        """A new channel of the same kind, holding `checkpoint` unless it is
        `MISSING`."""

    def copy(self) -> Self:
        """A detached copy holding the same value."""
        return self.from_checkpoint(self.checkpoint())

    @abstractmethod
    def get(self) -> Value:
        """Current value. Raises `EmptyChannelError` when there is none."""

    def is_available(self) -> bool:
        try:
            self.get()
        except EmptyChannelError:
            return False
        return True

    @abstractmethod
    def update(self, values: Sequence[Update]) -> bool:
        """Apply the writes of one step, given in node-name order.

        Called once for every channel at the end of each step, with an empty
        sequence when nothing wrote to it. Raises `InvalidUpdateError` for
        writes the channel can't merge. Returns whether the value changed.
        """

    def consume(self) -> bool:
        """Notify the channel that the next step's nodes have been resolved
        from its value. No-op by default.

        Returns True if the channel was updated, False otherwise.
        """
        return False


def create_channels(
    specs: Mapping[str, BaseChannel],
    values: Mapping[str, Any] | None = None,
) -> dict[str, BaseChannel]:
    """Create a run-local working copy of every channel, restoring
    from checkpointed values where present."""
    values = values or {}
    return {
        k: spec.from_checkpoint(values.get(k, MISSING)) for k, spec in specs.items()
    }


def read_channels(channels: Mapping[str, BaseChannel]) -> dict[str, Any]:
    """Read the current value of every available channel."""
    return {k: chan.get() for k, chan in channels.items() if chan.is_available()}


def checkpoint_channels(channels: Mapping[str, BaseChannel]) -> dict[str, Any]:
    """Serializable values of every non-empty, checkpointed channel."""
    values: dict[str, Any] = {}
    for k, chan in channels.items():
        if chan.checkpointed and (v := chan.checkpoint()) is not MISSING:
            values[k] = v
    return values


def copy_channels(channels: Mapping[str, BaseChannel]) -> dict[str, BaseChannel]:
    return {k: chan.copy() for k, chan in channels.items()}


def consume_channels(channels: Mapping[str, BaseChannel]) -> set[str]:
    """Call `consume` on every channel, returning the ones that changed."""
    return {k for k, chan in channels.items() if chan.consume()}
