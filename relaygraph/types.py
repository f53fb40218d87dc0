from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NamedTuple, Union

from langchain_core.runnables import RunnableConfig
from typing_extensions import TypeAlias
from xxhash import xxh3_128_hexdigest

if TYPE_CHECKING:
    from relaygraph.checkpoint.base import CheckpointMetadata

__all__ = (
    "Send",
    "Command",
    "Interrupt",
    "Patch",
    "Dispatch",
    "NodeOutput",
    "Complete",
    "Interrupted",
    "GraphOutput",
    "StateSnapshot",
)

_DC_KWARGS = {"slots": True, "frozen": True}

_DEFAULT_INTERRUPT_ID = "placeholder-id"


class Send:
    """A request to run a specific node with a private input overlay.

    Sends are dispatched within the current super-step, after the sending
    node's own patch has been committed. The target node receives the
    current state overlaid with `arg`.

    Attributes:
        node (str): Name of the node to run.
        arg (Any): Keys overlaid on the state for that one execution.

    Example:
        ```python
        def plan(state):
            return {
                "status": "dispatched",
                "__send__": [{"node": "worker", "input": {"task": t}} for t in state["tasks"]],
            }

        # or, typed
        def plan(state):
            return [Send("worker", {"task": t}) for t in state["tasks"]]
        ```
    """

    __slots__ = ("node", "arg")

    node: str
    arg: Any

    def __init__(self, /, node: str, arg: Any = None) -> None:
        self.node = node
        self.arg = arg if arg is not None else {}

    def __hash__(self) -> int:
        return hash((self.node, repr(self.arg)))

    def __repr__(self) -> str:
        return f"Send(node={self.node!r}, arg={self.arg!r})"

    def __eq__(self, value: object) -> bool:
        return (
            isinstance(value, Send)
            and self.node == value.node
            and self.arg == value.arg
        )


@dataclass(**_DC_KWARGS)
class Command:
    """Update the graph's state and override the next frontier.

    Args:
        update: Patch to apply to the graph's state.
        goto: Name of the node to navigate to next, or a sequence of names.
            `END` terminates the branch.
    """

    update: dict[str, Any] | None = None
    goto: str | Sequence[str] = ()

    def goto_nodes(self) -> tuple[str, ...]:
        if isinstance(self.goto, str):
            return (self.goto,)
        return tuple(self.goto)


class Interrupt:
    """Suspend the run and surface `value` to the caller."""

    __slots__ = ("value", "id")

    value: Any
    id: str
    """Stable across re-runs of the same interrupt, see `from_ns`."""

    def __init__(self, value: Any = None, id: str = _DEFAULT_INTERRUPT_ID) -> None:
        self.value = value
        self.id = id

    @classmethod
    def from_ns(cls, value: Any, ns: str) -> Interrupt:
        return cls(value=value, id=xxh3_128_hexdigest(ns.encode()))

    def __repr__(self) -> str:
        return f"Interrupt(value={self.value!r}, id={self.id!r})"

    def __eq__(self, value: object) -> bool:
        return (
            isinstance(value, Interrupt)
            and self.value == value.value
            and self.id == value.id
        )

    def __hash__(self) -> int:
        return hash(self.id)


@dataclass(**_DC_KWARGS)
class Patch:
    """A plain state patch, `{channel_name: partial_value}`."""

    values: dict[str, Any] = field(default_factory=dict)


@dataclass(**_DC_KWARGS)
class Dispatch:
    """Fan-out to other nodes, plus the patch written alongside the sends."""

    sends: tuple[Send, ...] = ()
    update: dict[str, Any] = field(default_factory=dict)


NodeOutput: TypeAlias = Union[Patch, Interrupt, Command, Dispatch]
"""Normalized result of a node execution."""


@dataclass(**_DC_KWARGS)
class Complete:
    """The run reached a terminal condition."""

    state: dict[str, Any]


@dataclass(**_DC_KWARGS)
class Interrupted:
    """The run was suspended; resume it with the same `thread_id`,
    optionally passing `checkpoint_id` and `resume_value`."""

    checkpoint_id: str
    interrupt_value: Any
    state: dict[str, Any]
    thread_id: str | None = None
    node: str | None = None


GraphOutput: TypeAlias = Union[Complete, Interrupted]


class StateSnapshot(NamedTuple):
    """A checkpoint as seen from the outside: the state before a step and the
    nodes that step will run."""

    values: dict[str, Any]
    next: tuple[str, ...]
    """Pending nodes. Empty once the run has completed."""
    config: RunnableConfig
    """Config addressing this checkpoint, with `thread_id` and `checkpoint_id`."""
    metadata: CheckpointMetadata | None
    created_at: str | None
    parent_config: RunnableConfig | None
    """Config addressing the checkpoint this one was written after."""
    interrupts: tuple[Interrupt, ...] = ()
    """The pending interrupt, for interrupt checkpoints."""
