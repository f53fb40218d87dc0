from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Callable, Optional, Union, cast
from uuid import uuid4

from langchain_core.runnables import Runnable, RunnableConfig
from typing_extensions import Self

from relaygraph._internal._config import (
    ensure_config,
    get_checkpoint_id,
    get_thread_id,
    merge_configs,
)
from relaygraph.channels.base import (
    BaseChannel,
    checkpoint_channels,
    create_channels,
    read_channels,
)
from relaygraph.checkpoint.base import (
    BaseCheckpointStore,
    Checkpoint,
    CheckpointMetadata,
    create_checkpoint,
)
from relaygraph.constants import (
    CONF,
    CONFIG_KEY_CHECKPOINT_ID,
    CONFIG_KEY_THREAD_ID,
    START,
)
from relaygraph.errors import (
    CheckpointNotFoundError,
    GraphCancelledError,
    InvalidUpdateError,
    ThreadNotFoundError,
)
from relaygraph.pregel.algo import (
    All,
    apply_writes,
    aresolve_edges,
    next_frontier,
    node_patch,
    resolve_edges,
    validate_goto,
)
from relaygraph.pregel.directives import parse_output
from relaygraph.pregel.loop import AsyncPregelLoop
from relaygraph.pregel.stream import EventsDropped, StreamBuffer, StreamEvent
from relaygraph.types import GraphOutput, Interrupt, StateSnapshot

if TYPE_CHECKING:
    from relaygraph.graph.branch import Branch

__all__ = ("Pregel",)

logger = logging.getLogger(__name__)


class Pregel(Runnable[Any, GraphOutput]):
    """A compiled graph, ready to run.

    Instances are immutable after compilation and can be shared by any number
    of concurrent runs; each run owns its own working copy of the channels.

    Runs are driven in super-steps: all nodes of the current frontier run
    concurrently against the same snapshot of the state, their outputs are
    applied to the channels in node-name order, and the next frontier is
    resolved from the edges of the nodes that ran.

    Attributes:
        nodes: Mapping from node name to the runnable that implements it.
        channels: Mapping from channel name to the channel spec. Every run
            starts from fresh copies of these.
        edges: Static adjacency, `START` included.
        branches: Conditional edges, by source node then branch name.
        checkpointer: Store that checkpoints are written to. Runs without
            a checkpointer can't be resumed.
        interrupt_before: Nodes to stop before, or `"*"` for all nodes.
        interrupt_after: Nodes to stop after, or `"*"` for all nodes.
        breakpoint_condition: Optional predicate on the state gating both
            kinds of breakpoints.
        stream_buffer_size: Capacity of the event buffer used by `astream`.
        max_concurrency: Optional cap on nodes running at the same time.
    """

    def __init__(
        self,
        *,
        nodes: Mapping[str, Runnable],
        channels: Mapping[str, BaseChannel],
        edges: Mapping[str, Sequence[str]],
        branches: Mapping[str, Mapping[str, Branch]],
        checkpointer: Optional[BaseCheckpointStore] = None,
        interrupt_before: Union[All, Sequence[str]] = (),
        interrupt_after: Union[All, Sequence[str]] = (),
        breakpoint_condition: Optional[Callable[[dict[str, Any]], bool]] = None,
        stream_buffer_size: int = 1024,
        max_concurrency: Optional[int] = None,
        config: Optional[RunnableConfig] = None,
        name: str = "RelayGraph",
    ) -> None:
        self.nodes = dict(nodes)
        self.channels = dict(channels)
        self.edges = {k: tuple(v) for k, v in edges.items()}
        self.branches = {k: dict(v) for k, v in branches.items()}
        self.checkpointer = checkpointer
        self.interrupt_before = interrupt_before
        self.interrupt_after = interrupt_after
        self.breakpoint_condition = breakpoint_condition
        self.stream_buffer_size = stream_buffer_size
        self.max_concurrency = max_concurrency
        self.config = config
        self.name = name

    def copy(self, update: Optional[dict[str, Any]] = None) -> Self:
        attrs = {k: v for k, v in self.__dict__.items() if k != "__orig_class__"}
        attrs.update(update or {})
        return self.__class__(**attrs)

    def with_config(self, config: Optional[RunnableConfig] = None, **kwargs: Any) -> Self:
        """Create a copy of the graph with an updated config."""
        return self.copy(
            {"config": merge_configs(self.config, config, cast(RunnableConfig, kwargs))}
        )

    # running

    async def ainvoke(
        self,
        input: Any,
        config: Optional[RunnableConfig] = None,
        *,
        interrupt_before: Optional[Union[All, Sequence[str]]] = None,
        interrupt_after: Optional[Union[All, Sequence[str]]] = None,
        cancel: Optional[asyncio.Event] = None,
        **kwargs: Any,
    ) -> GraphOutput:
        """Run the graph until it completes or is interrupted.

        Args:
            input: The input to the graph, a mapping of channel names to
                values. Pass `None` to resume the thread named in `config`.
            config: The configuration for the run. `configurable` may hold
                `thread_id`, `checkpoint_id` and `resume_value`.
            interrupt_before: Nodes to stop before, overriding the graph's.
            interrupt_after: Nodes to stop after, overriding the graph's.
            cancel: Event the caller sets to cancel the run. It is observed
                before each node is launched and after each super-step.

        Returns:
            `Complete` with the final state, or `Interrupted` with the id of
            the checkpoint to resume from.
        """
        return await self._arun(
            input,
            config,
            emit=None,
            cancel=cancel,
            interrupt_before=interrupt_before,
            interrupt_after=interrupt_after,
        )

    def invoke(
        self,
        input: Any,
        config: Optional[RunnableConfig] = None,
        *,
        interrupt_before: Optional[Union[All, Sequence[str]]] = None,
        interrupt_after: Optional[Union[All, Sequence[str]]] = None,
        **kwargs: Any,
    ) -> GraphOutput:
        """Synchronous version of `ainvoke`, for callers outside an event loop."""
        return asyncio.run(
            self.ainvoke(
                input,
                config,
                interrupt_before=interrupt_before,
                interrupt_after=interrupt_after,
            )
        )

    async def astream(
        self,
        input: Any,
        config: Optional[RunnableConfig] = None,
        *,
        interrupt_before: Optional[Union[All, Sequence[str]]] = None,
        interrupt_after: Optional[Union[All, Sequence[str]]] = None,
        cancel: Optional[asyncio.Event] = None,
        **kwargs: Any,
    ) -> AsyncIterator[StreamEvent]:
        """Run the graph, yielding events as they happen.

        The run proceeds in a background task and never waits for the
        consumer: events pass through a bounded buffer that drops the oldest
        events when full, and an `EventsDropped` event tells the consumer how
        many it missed. Closing the iterator early cancels the run.

        Errors are yielded as an `ErrorEvent` first, then raised.
        """
        buffer = StreamBuffer(self.stream_buffer_size)
        cancel = cancel or asyncio.Event()
        done = object()
        task = asyncio.create_task(
            self._arun(
                input,
                config,
                emit=buffer.put_nowait,
                cancel=cancel,
                interrupt_before=interrupt_before,
                interrupt_after=interrupt_after,
            )
        )
        task.add_done_callback(lambda _: buffer.put_nowait(done))
        try:
            while True:
                item = await buffer.get()
                if dropped := buffer.take_dropped():
                    yield EventsDropped(dropped)
                if item is done:
                    break
                yield item
            # raise the run's error, if any
            await task
        finally:
            if not task.done():
                cancel.set()
                await asyncio.wait({task})
                if not task.cancelled() and (exc := task.exception()) is not None:
                    if not isinstance(exc, GraphCancelledError):
                        logger.warning(
                            "Run failed after its stream was closed", exc_info=exc
                        )

    async def _arun(
        self,
        input: Any,
        config: Optional[RunnableConfig],
        *,
        emit: Optional[Callable[[StreamEvent], None]],
        cancel: Optional[asyncio.Event],
        interrupt_before: Optional[Union[All, Sequence[str]]],
        interrupt_after: Optional[Union[All, Sequence[str]]],
    ) -> GraphOutput:
        config = ensure_config(self.config, config)
        if config["recursion_limit"] < 0:
            raise ValueError("recursion_limit must be at least 0")
        async with AsyncPregelLoop(
            self,
            input,
            config=config,
            checkpointer=self.checkpointer,
            emit=emit,
            cancel=cancel,
            interrupt_before=self.interrupt_before
            if interrupt_before is None
            else interrupt_before,
            interrupt_after=self.interrupt_after
            if interrupt_after is None
            else interrupt_after,
        ) as loop:
            while await loop.tick():
                await loop.execute_step()
        assert loop.output is not None
        return loop.output

    # state

    def _require_checkpointer(self) -> BaseCheckpointStore:
        if self.checkpointer is None:
            raise ValueError("No checkpointer set")
        return self.checkpointer

    def _require_thread_id(self, config: RunnableConfig) -> str:
        thread_id = get_thread_id(config)
        if thread_id is None:
            raise ValueError(
                f"Checkpointer requires the '{CONFIG_KEY_THREAD_ID}' configurable key"
            )
        return thread_id

    def _prepare_state_snapshot(
        self, config: RunnableConfig, saved: Optional[Checkpoint]
    ) -> StateSnapshot:
        if saved is None:
            return StateSnapshot(
                values={},
                next=(),
                config=config,
                metadata=None,
                created_at=None,
                parent_config=None,
            )
        channels = create_channels(self.channels, saved.channel_values)
        metadata = saved.metadata
        interrupts: tuple[Interrupt, ...] = ()
        if metadata.get("source") == "interrupt" and "interrupt" in metadata:
            interrupts = (
                Interrupt.from_ns(
                    metadata["interrupt"], f"{saved.thread_id}:{saved.id}"
                ),
            )
        return StateSnapshot(
            values=read_channels(channels),
            next=tuple(saved.pending_nodes),
            config=_checkpoint_config(saved.thread_id, saved.id),
            metadata=metadata,
            created_at=saved.created_at,
            parent_config=_checkpoint_config(saved.thread_id, saved.parent_id)
            if saved.parent_id
            else None,
            interrupts=interrupts,
        )

    def get_state(self, config: RunnableConfig) -> StateSnapshot:
        """Get the current state of the graph, or the state at the
        `checkpoint_id` given in the config."""
        checkpointer = self._require_checkpointer()
        thread_id = self._require_thread_id(config)
        if checkpoint_id := get_checkpoint_id(config):
            saved = checkpointer.get(thread_id, checkpoint_id)
        else:
            saved = checkpointer.get_latest(thread_id)
        return self._prepare_state_snapshot(config, saved)

    async def aget_state(self, config: RunnableConfig) -> StateSnapshot:
        """Get the current state of the graph, or the state at the
        `checkpoint_id` given in the config."""
        checkpointer = self._require_checkpointer()
        thread_id = self._require_thread_id(config)
        if checkpoint_id := get_checkpoint_id(config):
            saved = await checkpointer.aget(thread_id, checkpoint_id)
        else:
            saved = await checkpointer.aget_latest(thread_id)
        return self._prepare_state_snapshot(config, saved)

    def get_state_history(
        self, config: RunnableConfig, *, limit: Optional[int] = None
    ) -> Iterator[StateSnapshot]:
        """Get the history of the state of the graph, newest first."""
        checkpointer = self._require_checkpointer()
        thread_id = self._require_thread_id(config)
        history = list(reversed(checkpointer.list(thread_id)))
        for saved in history[:limit]:
            yield self._prepare_state_snapshot(config, saved)

    async def aget_state_history(
        self, config: RunnableConfig, *, limit: Optional[int] = None
    ) -> AsyncIterator[StateSnapshot]:
        """Get the history of the state of the graph, newest first."""
        checkpointer = self._require_checkpointer()
        thread_id = self._require_thread_id(config)
        history = list(reversed(await checkpointer.alist(thread_id)))
        for saved in history[:limit]:
            yield self._prepare_state_snapshot(config, saved)

    def _apply_update(
        self, saved: Optional[Checkpoint], values: Any, as_node: Optional[str]
    ) -> dict[str, BaseChannel]:
        if as_node is not None and as_node not in self.nodes:
            raise InvalidUpdateError(f"Node {as_node} does not exist")
        channels = create_channels(
            self.channels, saved.channel_values if saved else None
        )
        apply_writes(
            channels,
            [(as_node or START, node_patch(parse_output(as_node or START, values)))],
        )
        return channels

    def _update_checkpoint(
        self,
        thread_id: str,
        saved: Optional[Checkpoint],
        channels: dict[str, BaseChannel],
        pending: list[str],
        as_node: Optional[str],
    ) -> Checkpoint:
        metadata: CheckpointMetadata = {"source": "update"}
        if as_node is not None:
            metadata["node_name"] = as_node
        step = saved.step if saved else 0
        return create_checkpoint(
            thread_id,
            parent_id=saved.id if saved else None,
            step=step,
            channel_values=checkpoint_channels(channels),
            pending_nodes=pending,
            metadata={**metadata, "step": step},
        )

    def update_state(
        self,
        config: RunnableConfig,
        values: Optional[Union[dict[str, Any], Any]],
        as_node: Optional[str] = None,
    ) -> RunnableConfig:
        """Update the state of the graph with the given values, as if they came
        from node `as_node`. If `as_node` is given, the next nodes are resolved
        from its edges, otherwise the pending nodes are kept.

        Returns the config of the new checkpoint."""
        checkpointer = self._require_checkpointer()
        thread_id = self._require_thread_id(config)
        if checkpoint_id := get_checkpoint_id(config):
            saved = checkpointer.get(thread_id, checkpoint_id)
            if saved is None:
                raise CheckpointNotFoundError(thread_id, checkpoint_id)
        else:
            saved = checkpointer.get_latest(thread_id)
        channels = self._apply_update(saved, values, as_node)
        if as_node is None and saved is not None:
            pending = list(saved.pending_nodes)
        else:
            # the update acts as the output of `as_node`, or as the input
            source = as_node or START
            targets = resolve_edges(
                source,
                read_channels(channels),
                ensure_config(self.config, config),
                edges=self.edges,
                branches=self.branches,
            )
            validate_goto(source, targets, self.nodes)
            pending = next_frontier(targets)
        checkpoint = self._update_checkpoint(
            thread_id, saved, channels, pending, as_node
        )
        checkpointer.put(checkpoint)
        return _checkpoint_config(thread_id, checkpoint.id)

    async def aupdate_state(
        self,
        config: RunnableConfig,
        values: Optional[Union[dict[str, Any], Any]],
        as_node: Optional[str] = None,
    ) -> RunnableConfig:
        checkpointer = self._require_checkpointer()
        thread_id = self._require_thread_id(config)
        if checkpoint_id := get_checkpoint_id(config):
            saved = await checkpointer.aget(thread_id, checkpoint_id)
            if saved is None:
                raise CheckpointNotFoundError(thread_id, checkpoint_id)
        else:
            saved = await checkpointer.aget_latest(thread_id)
        channels = self._apply_update(saved, values, as_node)
        if as_node is None and saved is not None:
            pending = list(saved.pending_nodes)
        else:
            source = as_node or START
            targets = await aresolve_edges(
                source,
                read_channels(channels),
                ensure_config(self.config, config),
                edges=self.edges,
                branches=self.branches,
            )
            validate_goto(source, targets, self.nodes)
            pending = next_frontier(targets)
        checkpoint = self._update_checkpoint(
            thread_id, saved, channels, pending, as_node
        )
        await checkpointer.aput(checkpoint)
        return _checkpoint_config(thread_id, checkpoint.id)

    # time travel

    def _prepare_fork(
        self,
        thread_id: str,
        checkpoint_id: Optional[str],
        saved: Optional[Checkpoint],
        new_thread_id: Optional[str],
    ) -> Checkpoint:
        if saved is None:
            if checkpoint_id is not None:
                raise CheckpointNotFoundError(thread_id, checkpoint_id)
            raise ThreadNotFoundError(thread_id)
        metadata: CheckpointMetadata = {"source": "fork", "step": 0}
        if node_name := saved.metadata.get("node_name"):
            metadata["node_name"] = node_name
        return create_checkpoint(
            new_thread_id or str(uuid4()),
            parent_id=saved.id,
            step=0,
            channel_values=dict(saved.channel_values),
            pending_nodes=list(saved.pending_nodes),
            metadata=metadata,
        )

    def fork(
        self, config: RunnableConfig, new_thread_id: Optional[str] = None
    ) -> RunnableConfig:
        """Copy a checkpoint (the latest one, or the one named in the config)
        onto a new thread, so it can be continued independently.

        Returns the config of the forked checkpoint."""
        checkpointer = self._require_checkpointer()
        thread_id = self._require_thread_id(config)
        checkpoint_id = get_checkpoint_id(config)
        saved = (
            checkpointer.get(thread_id, checkpoint_id)
            if checkpoint_id
            else checkpointer.get_latest(thread_id)
        )
        forked = self._prepare_fork(thread_id, checkpoint_id, saved, new_thread_id)
        checkpointer.put(forked)
        return _checkpoint_config(forked.thread_id, forked.id)

    async def afork(
        self, config: RunnableConfig, new_thread_id: Optional[str] = None
    ) -> RunnableConfig:
        checkpointer = self._require_checkpointer()
        thread_id = self._require_thread_id(config)
        checkpoint_id = get_checkpoint_id(config)
        saved = (
            await checkpointer.aget(thread_id, checkpoint_id)
            if checkpoint_id
            else await checkpointer.aget_latest(thread_id)
        )
        forked = self._prepare_fork(thread_id, checkpoint_id, saved, new_thread_id)
        await checkpointer.aput(forked)
        return _checkpoint_config(forked.thread_id, forked.id)

    def replay_to_step(self, thread_id: str, step: int) -> Optional[Checkpoint]:
        """The most recently written checkpoint of the thread at `step`.

        Pass its id as `checkpoint_id` to resume from it; later checkpoints
        are kept, and new ones branch off through `parent_id`."""
        checkpointer = self._require_checkpointer()
        return _last_at_step(checkpointer.list(thread_id), step)

    async def areplay_to_step(self, thread_id: str, step: int) -> Optional[Checkpoint]:
        checkpointer = self._require_checkpointer()
        return _last_at_step(await checkpointer.alist(thread_id), step)


def _checkpoint_config(thread_id: str, checkpoint_id: Optional[str]) -> RunnableConfig:
    return {
        CONF: {
            CONFIG_KEY_THREAD_ID: thread_id,
            CONFIG_KEY_CHECKPOINT_ID: checkpoint_id,
        }
    }


def _last_at_step(checkpoints: Sequence[Checkpoint], step: int) -> Optional[Checkpoint]:
    # listed by step, then write order
    matching = [c for c in checkpoints if c.step == step]
    return matching[-1] if matching else None
