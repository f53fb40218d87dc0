from __future__ import annotations

import dataclasses
import logging
from collections import defaultdict, deque
from collections.abc import Awaitable, Hashable, Sequence
from inspect import isclass, signature
from typing import (
    Any,
    Callable,
    NamedTuple,
    Optional,
    Union,
    get_type_hints,
)

from langchain_core.runnables import Runnable
from pydantic import BaseModel
from typing_extensions import Self

from relaygraph._internal._runnable import coerce_to_runnable
from relaygraph._internal._typing import MISSING
from relaygraph.channels.base import BaseChannel
from relaygraph.channels.binop import BinaryOperatorAggregate
from relaygraph.channels.last_value import LastValue
from relaygraph.checkpoint.base import BaseCheckpointStore
from relaygraph.constants import END, RESERVED, START
from relaygraph.errors import ErrorCode, GraphBuildError, create_error_message
from relaygraph.graph.branch import Branch
from relaygraph.graph.subgraph import subgraph_node
from relaygraph.pregel import Pregel
from relaygraph.pregel.algo import All

__all__ = ("StateGraph", "CompiledStateGraph")

logger = logging.getLogger(__name__)


class StateNodeSpec(NamedTuple):
    runnable: Runnable
    metadata: Optional[dict[str, Any]]
    ends: Optional[tuple[str, ...]] = None


StateNode = Union[
    Callable[..., Any],
    Callable[..., Awaitable[Any]],
    Runnable[Any, Any],
]


def _get_node_name(node: StateNode) -> str:
    try:
        return getattr(node, "__name__", node.__class__.__name__)
    except AttributeError:
        raise TypeError(f"Unsupported node type: {type(node)}")


class StateGraph:
    """Builder for graphs whose nodes share one state dict, split into channels.

    Each state key is backed by a channel. By default a key holds the last
    value written to it; annotate it with a reducer (`Annotated[list, operator.add]`)
    to fold the writes of every step into the current value, or with a channel
    instance to pick the channel yourself.

    Nodes receive the whole state as a dict and return a partial update, or
    one of the directives `Command`, `Interrupt`, `Send`.

    Args:
        state_schema: The schema class that defines the state. A `TypedDict`,
            dataclass or pydantic model. Channels can also be declared one by
            one with `add_channel`.

    Example:
        >>> import operator
        >>> from typing import Annotated
        >>> from typing_extensions import TypedDict
        >>> from relaygraph.graph import StateGraph
        >>>
        >>> class State(TypedDict):
        ...     x: Annotated[int, operator.add]
        >>>
        >>> builder = StateGraph(State)
        >>> builder.add_node("a", lambda state: {"x": 1})
        >>> builder.add_node("b", lambda state: {"x": 1})
        >>> builder.set_entry_point("a")
        >>> builder.add_edge("a", "b")
        >>> builder.set_finish_point("b")
        >>> graph = builder.compile()
        >>> graph.invoke({"x": 0})
        Complete(state={'x': 2})
    """

    edges: set[tuple[str, str]]
    nodes: dict[str, StateNodeSpec]
    branches: defaultdict[str, dict[str, Branch]]
    channels: dict[str, BaseChannel]

    def __init__(self, state_schema: Optional[type[Any]] = None) -> None:
        self.nodes = {}
        self.edges = set()
        self.branches = defaultdict(dict)
        self.channels = {}
        self.compiled = False
        self.state_schema = state_schema
        if state_schema is not None:
            self._add_schema(state_schema)

    def _warn_if_compiled(self, what: str) -> None:
        if self.compiled:
            logger.warning(
                "Adding %s to a graph that was already compiled, compiled graphs "
                "won't see it",
                what,
            )

    def _add_schema(self, schema: type[Any]) -> None:
        for key, channel in _get_channels(schema).items():
            if key in self.channels:
                if self.channels[key] != channel and not isinstance(
                    channel, LastValue
                ):
                    raise GraphBuildError(
                        f"Channel '{key}' already exists with a different type"
                    )
            else:
                self.channels[key] = channel

    def add_channel(self, name: str, channel: BaseChannel) -> Self:
        """Declare a state key backed by the given channel."""
        if name in RESERVED:
            raise GraphBuildError(f"'{name}' is a reserved name")
        if name in self.channels:
            raise GraphBuildError(f"Channel '{name}' already exists")
        channel.key = name
        self.channels[name] = channel
        return self

    def add_node(
        self,
        node: Union[str, StateNode],
        action: Optional[StateNode] = None,
        *,
        metadata: Optional[dict[str, Any]] = None,
        destinations: Optional[Sequence[str]] = None,
    ) -> Self:
        """Add a node.

        Args:
            node: The node name, or the action itself, in which case the name
                is taken from the function or runnable.
            action: A sync or async function of the state (optionally also of
                `config`), a `Runnable`, or a compiled graph, which runs as a
                nested graph.
            metadata: Free-form metadata kept with the node.
            destinations: Nodes this one may route to with `Command` or
                `Send`. Validation counts them as edges.
        """
        if not isinstance(node, str):
            action = node
            node = _get_node_name(action)
        if action is None:
            raise RuntimeError(f"Expected an action for node '{node}'")
        self._warn_if_compiled("a node")
        if node in self.nodes:
            raise GraphBuildError(f"Node `{node}` already present.")
        if node in RESERVED:
            raise GraphBuildError(f"Node `{node}` is reserved.")
        if not node:
            raise GraphBuildError("Node names must be non-empty")

        if isinstance(action, Pregel):
            runnable: Runnable = subgraph_node(
                action, name=node, output_keys=self.channels
            )
        else:
            runnable = coerce_to_runnable(action, name=node, trace=True)
        self.nodes[node] = StateNodeSpec(
            runnable,
            metadata,
            ends=tuple(destinations) if destinations is not None else None,
        )
        return self

    def add_edge(self, start_key: str, end_key: str) -> Self:
        """Run `end_key` in the step after `start_key`."""
        self._warn_if_compiled("an edge")
        if start_key == END:
            raise GraphBuildError("END cannot be a start node")
        if end_key == START:
            raise GraphBuildError("START cannot be an end node")
        self.edges.add((start_key, end_key))
        return self

    def add_conditional_edges(
        self,
        source: str,
        path: Union[
            Callable[..., Union[Hashable, list[Hashable]]],
            Callable[..., Awaitable[Union[Hashable, list[Hashable]]]],
            Runnable[Any, Union[Hashable, list[Hashable]]],
        ],
        path_map: Optional[Union[dict[Hashable, str], list[str]]] = None,
    ) -> Self:
        """Route from `source` with a function of the state.

        `path` returns a node name, a list of names, or `END`. With a
        `path_map` it returns labels instead, translated through the map (a
        list maps every name to itself). A returned name that is not a node
        fails the step with `InvalidUpdateError`.

        Validation assumes a router without a path map or a `Literal` return
        annotation may reach any node.
        """
        self._warn_if_compiled("an edge")
        path = coerce_to_runnable(path, name=None, trace=True)
        name = path.name or "condition"
        if name in self.branches[source]:
            raise GraphBuildError(
                f"Branch with name `{path.name}` already exists for node `{source}`"
            )
        self.branches[source][name] = Branch.from_path(path, path_map)
        return self

    def add_sequence(
        self,
        nodes: Sequence[Union[StateNode, tuple[str, StateNode]]],
    ) -> Self:
        """Add `nodes` chained one after another by edges. Items are actions, or
        `(name, action)` tuples."""
        if len(nodes) < 1:
            raise GraphBuildError("Sequence requires at least one node.")

        previous_name: Optional[str] = None
        for node in nodes:
            if isinstance(node, tuple) and len(node) == 2:
                name, node = node
            else:
                name = _get_node_name(node)

            self.add_node(name, node)
            if previous_name is not None:
                self.add_edge(previous_name, name)

            previous_name = name

        return self

    def set_entry_point(self, key: str) -> Self:
        """Same as `add_edge(START, key)`."""
        return self.add_edge(START, key)

    def set_conditional_entry_point(
        self,
        path: Union[
            Callable[..., Union[Hashable, list[Hashable]]],
            Callable[..., Awaitable[Union[Hashable, list[Hashable]]]],
            Runnable[Any, Union[Hashable, list[Hashable]]],
        ],
        path_map: Optional[Union[dict[Hashable, str], list[str]]] = None,
    ) -> Self:
        """Same as `add_conditional_edges(START, path, path_map)`."""
        return self.add_conditional_edges(START, path, path_map)

    def set_finish_point(self, key: str) -> Self:
        """Same as `add_edge(key, END)`."""
        return self.add_edge(key, END)

    def _successors(self) -> dict[str, set[str]]:
        """Every node each source may route to, `END` included. Routers
        without a path map may route to any node."""
        successors: dict[str, set[str]] = defaultdict(set)
        for start, end in self.edges:
            successors[start].add(end)
        for start, branches in self.branches.items():
            for branch in branches.values():
                if (ends := branch.destinations()) is not None:
                    successors[start].update(ends)
                else:
                    successors[start].update(self.nodes)
                    successors[start].add(END)
        for name, spec in self.nodes.items():
            if spec.ends:
                successors[name].update(spec.ends)
        return successors

    def validate(self, interrupt: Optional[Sequence[str]] = None) -> Self:
        # assemble sources
        all_sources = {src for src, _ in self.edges}
        for start, branches in self.branches.items():
            if branches:
                all_sources.add(start)
        # validate sources
        for source in all_sources:
            if source not in self.nodes and source != START:
                raise _invalid(f"Found edge starting at unknown node '{source}'")

        if START not in all_sources:
            raise _invalid(
                "Graph must have an entrypoint: add at least one edge from START to another node"
            )

        # validate targets
        for start, branches in self.branches.items():
            for cond, branch in branches.items():
                for end in branch.destinations() or ():
                    if end not in self.nodes and end != END:
                        raise _invalid(
                            f"At '{start}' node, '{cond}' branch found unknown target '{end}'"
                        )
        successors = self._successors()
        for start, targets in successors.items():
            for target in targets:
                if target not in self.nodes and target != END:
                    raise _invalid(f"Found edge ending at unknown node `{target}`")

        # every node is reachable from START, and END from some node
        seen = {START}
        queue = deque([START])
        while queue:
            for target in successors.get(queue.popleft(), ()):
                if target not in seen:
                    seen.add(target)
                    queue.append(target)
        if unreachable := sorted(n for n in self.nodes if n not in seen):
            raise _invalid(f"Nodes {unreachable} are not reachable from START")
        if END not in seen:
            raise _invalid("END is not reachable from START")

        # validate interrupts
        if interrupt:
            for node in interrupt:
                if node not in self.nodes:
                    raise _invalid(f"Interrupt node `{node}` not found")

        self.compiled = True
        return self

    def compile(
        self,
        checkpointer: Optional[BaseCheckpointStore] = None,
        *,
        interrupt_before: Optional[Union[All, list[str]]] = None,
        interrupt_after: Optional[Union[All, list[str]]] = None,
        breakpoint_condition: Optional[Callable[[dict[str, Any]], bool]] = None,
        stream_buffer_size: int = 1024,
        max_concurrency: Optional[int] = None,
        name: Optional[str] = None,
    ) -> CompiledStateGraph:
        """Validate the graph and freeze it into a runnable `CompiledStateGraph`.

        Args:
            checkpointer: A checkpoint store. If provided, every super-step is
                persisted, allowing the graph to be paused, resumed, and replayed
                from any point.
            interrupt_before: An optional list of node names to interrupt before.
            interrupt_after: An optional list of node names to interrupt after.
            breakpoint_condition: An optional predicate on the state; breakpoints
                only fire when it returns True.
            stream_buffer_size: Capacity of the event buffer used when streaming.
            max_concurrency: Maximum number of nodes running at the same time.
            name: The name to use for the compiled graph.

        Returns:
            CompiledStateGraph: The compiled state graph.
        """
        interrupt_before = interrupt_before or []
        interrupt_after = interrupt_after or []

        self.validate(
            interrupt=(
                (interrupt_before if interrupt_before != "*" else [])
                + (interrupt_after if interrupt_after != "*" else [])
            )
        )

        edges: dict[str, list[str]] = defaultdict(list)
        for start, end in sorted(self.edges):
            edges[start].append(end)

        return CompiledStateGraph(
            builder=self,
            nodes={key: spec.runnable for key, spec in self.nodes.items()},
            channels=dict(self.channels),
            edges=edges,
            branches={k: dict(v) for k, v in self.branches.items() if v},
            checkpointer=checkpointer,
            interrupt_before=interrupt_before,
            interrupt_after=interrupt_after,
            breakpoint_condition=breakpoint_condition,
            stream_buffer_size=stream_buffer_size,
            max_concurrency=max_concurrency,
            name=name or "RelayGraph",
        )


class CompiledStateGraph(Pregel):
    builder: StateGraph

    def __init__(self, *, builder: StateGraph, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.builder = builder


def _invalid(message: str) -> GraphBuildError:
    return GraphBuildError(
        create_error_message(message=message, error_code=ErrorCode.INVALID_GRAPH)
    )


def _get_channels(schema: type[Any]) -> dict[str, BaseChannel]:
    if not hasattr(schema, "__annotations__"):
        raise GraphBuildError(
            f"Invalid state schema {schema!r}, expected a TypedDict, dataclass or pydantic model"
        )
    defaults = _get_defaults(schema)
    type_hints = get_type_hints(schema, include_extras=True)
    return {
        name: _get_channel(name, typ, defaults.get(name, MISSING))
        for name, typ in type_hints.items()
        if name != "__slots__" and not name.startswith("_")
    }


def _get_defaults(schema: type[Any]) -> dict[str, Any]:
    if dataclasses.is_dataclass(schema):
        return {
            f.name: f.default
            if f.default is not dataclasses.MISSING
            else f.default_factory()  # type: ignore[misc]
            for f in dataclasses.fields(schema)
            if f.default is not dataclasses.MISSING
            or f.default_factory is not dataclasses.MISSING
        }
    if isclass(schema) and issubclass(schema, BaseModel):
        return {
            name: field.get_default(call_default_factory=True)
            for name, field in schema.model_fields.items()
            if not field.is_required()
        }
    return {}


def _get_channel(name: str, annotation: Any, default: Any = MISSING) -> BaseChannel:
    """Channel for one state field.

    `Annotated[T, channel]` uses the channel (an instance, or a class
    instantiated with `T`), `Annotated[T, reducer]` folds writes with the
    reducer, anything else keeps the last value.
    """
    channel: BaseChannel = LastValue(annotation, name, default)
    if metadata := getattr(annotation, "__metadata__", ()):
        marker = metadata[-1]
        if isinstance(marker, BaseChannel):
            channel = marker
        elif isclass(marker) and issubclass(marker, BaseChannel):
            channel = marker(annotation.__origin__)
        elif callable(marker):
            _check_reducer(marker)
            channel = BinaryOperatorAggregate(annotation, marker)
    channel.key = name
    return channel


def _check_reducer(reducer: Callable[..., Any]) -> None:
    sig = signature(reducer)
    positional = [
        p
        for p in sig.parameters.values()
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    ]
    if len(positional) != 2:
        raise GraphBuildError(
            f"Invalid reducer signature. Expected (a, b) -> c. Got {sig}"
        )
