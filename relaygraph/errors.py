from __future__ import annotations

from enum import Enum
from typing import Any

__all__ = (
    "ErrorCode",
    "create_error_message",
    "GraphBuildError",
    "GraphRecursionError",
    "NodeExecutionError",
    "InvalidUpdateError",
    "ChannelError",
    "InvalidDirectiveError",
    "EmptyChannelError",
    "EmptyInputError",
    "CheckpointError",
    "CheckpointNotFoundError",
    "ThreadNotFoundError",
    "GraphCancelledError",
)


class ErrorCode(Enum):
    GRAPH_RECURSION_LIMIT = "GRAPH_RECURSION_LIMIT"
    INVALID_GRAPH_NODE_RETURN_VALUE = "INVALID_GRAPH_NODE_RETURN_VALUE"
    INVALID_DIRECTIVE = "INVALID_DIRECTIVE"
    INVALID_GRAPH = "INVALID_GRAPH"
    CHECKPOINT_FAILED = "CHECKPOINT_FAILED"


def create_error_message(*, message: str, error_code: ErrorCode) -> str:
    return f"{message}\n[error code: {error_code.value}]"


class GraphBuildError(ValueError):
    """Raised when a graph's topology is invalid at compile time.

    Examples: edges pointing at unknown nodes, missing entry point,
    nodes that can't be reached from `START`, or no path to `END`.
    """

    pass


class GraphRecursionError(RecursionError):
    """Raised when the graph has exhausted the maximum number of steps.

    This prevents infinite loops. To increase the maximum number of steps,
    run your graph with a config specifying a higher `recursion_limit`.

    Examples:

        graph = builder.compile()
        await graph.ainvoke(
            {"x": 0},
            # The config is the second positional argument
            {"recursion_limit": 1000},
        )
    """

    def __init__(self, limit: int, message: str | None = None) -> None:
        self.limit = limit
        super().__init__(
            message
            or create_error_message(
                message=f"Recursion limit of {limit} reached without hitting a stop condition. "
                "You can increase the limit by setting the `recursion_limit` config key.",
                error_code=ErrorCode.GRAPH_RECURSION_LIMIT,
            )
        )


class NodeExecutionError(Exception):
    """Raised when a node body fails. The original error is kept as `cause`."""

    def __init__(self, node: str, cause: BaseException) -> None:
        self.node = node
        self.cause = cause
        super().__init__(f"Node '{node}' failed: {cause!r}")


class InvalidUpdateError(Exception):
    """Raised when attempting to update a channel with an invalid set of updates,
    or when a node writes to a channel that was never declared."""

    pass


ChannelError = InvalidUpdateError


class InvalidDirectiveError(InvalidUpdateError):
    """Raised when a node returns a malformed directive envelope."""

    pass


class EmptyChannelError(Exception):
    """Raised when attempting to get the value of a channel that hasn't been updated
    for the first time yet."""

    pass


class EmptyInputError(Exception):
    """Raised when graph receives an empty input and there is nothing to resume."""

    pass


class CheckpointError(Exception):
    """Raised when persisting or loading a checkpoint fails."""

    pass


class CheckpointNotFoundError(CheckpointError):
    """Raised when an explicit `checkpoint_id` doesn't exist on the thread."""

    def __init__(self, thread_id: str, checkpoint_id: str) -> None:
        self.thread_id = thread_id
        self.checkpoint_id = checkpoint_id
        super().__init__(
            f"Checkpoint '{checkpoint_id}' not found for thread '{thread_id}'"
        )


class ThreadNotFoundError(Exception):
    """Raised when resuming a thread that has no checkpoints."""

    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        super().__init__(f"Thread '{thread_id}' not found")


class GraphCancelledError(Exception):
    """Raised when the caller cancelled the run. Outputs of the step
    in flight at the time are discarded."""

    def __init__(self, step: int, *args: Any) -> None:
        self.step = step
        super().__init__(f"Run cancelled at step {step}", *args)
