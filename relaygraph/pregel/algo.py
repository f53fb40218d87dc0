from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Literal, Optional, Union

from langchain_core.runnables import RunnableConfig

from relaygraph._internal._typing import EMPTY_SEQ
from relaygraph.channels.base import BaseChannel
from relaygraph.constants import END, START
from relaygraph.errors import ErrorCode, InvalidUpdateError, create_error_message
from relaygraph.pregel.directives import parse_output
from relaygraph.types import Command, Dispatch, NodeOutput, Patch

if TYPE_CHECKING:
    from relaygraph.graph.branch import Branch

__all__ = (
    "All",
    "apply_input",
    "apply_writes",
    "breakpoint_condition_met",
    "finish_step",
    "next_frontier",
    "node_patch",
    "prepare_input",
    "aresolve_edges",
    "resolve_edges",
    "should_interrupt",
    "validate_goto",
)

logger = logging.getLogger(__name__)

All = Literal["*"]
"""Special value to indicate that a breakpoint applies to all nodes."""


def prepare_input(state: Mapping[str, Any], overlay: Any = None) -> Any:
    """Build the input of one node execution: a private copy of the state,
    overlaid with a send's arg or the resume value. Non-mapping overlays
    replace the state entirely."""
    if overlay is None:
        return dict(state)
    if isinstance(overlay, Mapping):
        return {**state, **overlay}
    return overlay


def apply_input(channels: Mapping[str, BaseChannel], input: Any) -> set[str]:
    """Write the run input to the channels. Keys that aren't declared
    channels are ignored."""
    patch = parse_output(START, input)
    if not isinstance(patch, Patch):
        raise InvalidUpdateError(
            create_error_message(
                message=f"Graph input must be a state patch, got {input!r}",
                error_code=ErrorCode.INVALID_GRAPH_NODE_RETURN_VALUE,
            )
        )
    values = {}
    for key, value in patch.values.items():
        if key in channels:
            values[key] = value
        else:
            logger.warning("Ignoring input key '%s', not a declared channel", key)
    return apply_writes(channels, [(START, values)])


def node_patch(output: NodeOutput) -> dict[str, Any]:
    """The part of a node's output that is written to the channels."""
    if isinstance(output, Patch):
        return output.values
    if isinstance(output, Command):
        return output.update or {}
    if isinstance(output, Dispatch):
        return output.update
    return {}


def apply_writes(
    channels: Mapping[str, BaseChannel],
    writes: Iterable[tuple[str, Mapping[str, Any]]],
) -> set[str]:
    """Apply writes from a set of node executions to the channels.

    Args:
        channels: The channels to update.
        writes: `(node, patch)` pairs, already in the deterministic order in
            which they must be applied (node-name order, then send order).

    Returns:
        The set of channels that were updated.
    """
    # Group writes by channel
    pending_writes_by_channel: dict[str, list[Any]] = defaultdict(list)
    for node, patch in writes:
        for chan, val in patch.items():
            if chan not in channels:
                raise InvalidUpdateError(
                    create_error_message(
                        message=f"Node '{node}' wrote to unknown channel '{chan}'",
                        error_code=ErrorCode.INVALID_GRAPH_NODE_RETURN_VALUE,
                    )
                )
            pending_writes_by_channel[chan].append(val)

    # Apply writes to channels
    updated_channels: set[str] = set()
    for chan, vals in pending_writes_by_channel.items():
        # a channel that received writes counts as updated even if unchanged
        channels[chan].update(vals)
        updated_channels.add(chan)
    return updated_channels


def finish_step(channels: Mapping[str, BaseChannel], updated: set[str]) -> None:
    """Channels that weren't updated in this step are notified of a new step."""
    for chan, channel in channels.items():
        if chan not in updated:
            channel.update(EMPTY_SEQ)


def validate_goto(node: str, goto: Sequence[str], nodes: Mapping[str, Any]) -> None:
    for target in goto:
        if target != END and target not in nodes:
            raise InvalidUpdateError(
                create_error_message(
                    message=f"Node '{node}' tried to go to unknown node '{target}'",
                    error_code=ErrorCode.INVALID_DIRECTIVE,
                )
            )


async def aresolve_edges(
    node: str,
    state: Mapping[str, Any],
    config: RunnableConfig,
    *,
    edges: Mapping[str, Sequence[str]],
    branches: Mapping[str, Mapping[str, Branch]],
) -> list[str]:
    """Successors of `node` given the post-step state, including `END`."""
    targets = list(edges.get(node, EMPTY_SEQ))
    for branch in branches.get(node, {}).values():
        targets.extend(await branch.aresolve(state, config))
    return targets


def resolve_edges(
    node: str,
    state: Mapping[str, Any],
    config: RunnableConfig,
    *,
    edges: Mapping[str, Sequence[str]],
    branches: Mapping[str, Mapping[str, Branch]],
) -> list[str]:
    targets = list(edges.get(node, EMPTY_SEQ))
    for branch in branches.get(node, {}).values():
        targets.extend(branch.resolve(state, config))
    return targets


def should_interrupt(
    nodes: Iterable[str],
    interrupt_nodes: Union[All, Sequence[str]],
) -> list[str]:
    """Nodes among `nodes` that have a breakpoint set, in name order."""
    if not interrupt_nodes:
        return []
    return sorted(
        {n for n in nodes if interrupt_nodes == "*" or n in interrupt_nodes}
    )


def next_frontier(targets: Iterable[str]) -> list[str]:
    return sorted({t for t in targets if t != END})


def breakpoint_condition_met(
    condition: Optional[Any], state: Mapping[str, Any]
) -> bool:
    return condition is None or bool(condition(state))
