from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from contextlib import AbstractAsyncContextManager
from types import TracebackType
from typing import TYPE_CHECKING, Any, Callable, Literal, Optional, Union
from uuid import UUID, uuid4

from langchain_core.callbacks import AsyncCallbackManagerForChainRun
from langchain_core.runnables import RunnableConfig

from relaygraph._internal._config import (
    get_async_callback_manager_for_config,
    get_checkpoint_id,
    get_resume_value,
    get_thread_id,
    has_resume_value,
    merge_configs,
    patch_config,
    strip_configurable,
)
from relaygraph.channels.base import (
    BaseChannel,
    checkpoint_channels,
    consume_channels,
    copy_channels,
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
    CONFIG_KEY_CHECKPOINT_ID,
    CONFIG_KEY_RESUME_VALUE,
    CONFIG_KEY_STEP,
    CONFIG_KEY_THREAD_ID,
    RESUME,
    START,
)
from relaygraph.errors import (
    CheckpointError,
    CheckpointNotFoundError,
    EmptyInputError,
    ErrorCode,
    GraphCancelledError,
    GraphRecursionError,
    InvalidUpdateError,
    NodeExecutionError,
    ThreadNotFoundError,
    create_error_message,
)
from relaygraph.pregel.algo import (
    All,
    apply_input,
    apply_writes,
    aresolve_edges,
    breakpoint_condition_met,
    finish_step,
    next_frontier,
    node_patch,
    prepare_input,
    should_interrupt,
    validate_goto,
)
from relaygraph.pregel.directives import parse_output
from relaygraph.pregel.stream import (
    ErrorEvent,
    GraphComplete,
    InterruptedEvent,
    NodeEnd,
    NodeStart,
    StreamEvent,
)
from relaygraph.types import (
    Command,
    Complete,
    Dispatch,
    GraphOutput,
    Interrupt,
    Interrupted,
    NodeOutput,
    Send,
)

if TYPE_CHECKING:
    from relaygraph.pregel import Pregel

__all__ = ("AsyncPregelLoop",)

logger = logging.getLogger(__name__)

LoopStatus = Literal[
    "input",
    "pending",
    "done",
    "interrupted",
    "interrupt_before",
    "interrupt_after",
    "out_of_steps",
    "cancelled",
]


class AsyncPregelLoop(AbstractAsyncContextManager):
    """Drives one run of a compiled graph.

    The loop owns the run-local working copy of the channels, the frontier
    and the step counter. It loads or seeds the state, persists a checkpoint
    at every super-step boundary, and surfaces interrupts and breakpoints.

    Usage:

        async with AsyncPregelLoop(graph, input, config=config) as loop:
            while await loop.tick():
                await loop.execute_step()
        output = loop.output
    """

    graph: Pregel
    config: RunnableConfig
    checkpointer: Optional[BaseCheckpointStore]
    channels: dict[str, BaseChannel]
    status: LoopStatus
    output: Optional[GraphOutput]
    step: int
    frontier: list[str]

    def __init__(
        self,
        graph: Pregel,
        input: Any,
        *,
        config: RunnableConfig,
        checkpointer: Optional[BaseCheckpointStore],
        emit: Optional[Callable[[StreamEvent], None]] = None,
        cancel: Optional[asyncio.Event] = None,
        interrupt_before: Union[All, Sequence[str]] = (),
        interrupt_after: Union[All, Sequence[str]] = (),
    ) -> None:
        self.graph = graph
        self.input = input
        self.config = config
        self.checkpointer = checkpointer
        self.emit = emit
        self.cancel = cancel or asyncio.Event()
        self.interrupt_before = interrupt_before
        self.interrupt_after = interrupt_after
        self.thread_id = get_thread_id(config) or str(uuid4())
        self.run_id: UUID = config.get("run_id") or uuid4()
        self.recursion_limit: int = config["recursion_limit"]
        self.semaphore = (
            asyncio.Semaphore(graph.max_concurrency) if graph.max_concurrency else None
        )
        # nested runs without persistence pass resume_value to every node
        self.node_config_base = strip_configurable(
            config,
            (CONFIG_KEY_CHECKPOINT_ID, CONFIG_KEY_RESUME_VALUE)
            if checkpointer is not None
            else (CONFIG_KEY_CHECKPOINT_ID,),
        )
        # state
        self.status = "input"
        self.output = None
        self.channels = {}
        self.step = 0
        self.steps_run = 0
        self.dispatched = 0
        self.frontier = []
        self.checkpoint_id: Optional[str] = None
        self.resume_node: Optional[str] = None
        self.resume_value: Any = None
        self.skip_before = False
        self.run_manager: Optional[AsyncCallbackManagerForChainRun] = None

    async def __aenter__(self) -> AsyncPregelLoop:
        callback_manager = get_async_callback_manager_for_config(self.config)
        self.run_manager = await callback_manager.on_chain_start(
            None,
            self.input,
            name=self.config.get("run_name", self.graph.get_name()),
            run_id=self.run_id,
        )
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        assert self.run_manager is not None
        if exc_value is not None:
            self._emit(ErrorEvent(str(exc_value) or exc_type.__name__))  # type: ignore[union-attr]
            await self.run_manager.on_chain_error(exc_value)
            return None
        if isinstance(self.output, Interrupted):
            self._emit(
                InterruptedEvent(self.output.checkpoint_id, self.output.interrupt_value)
            )
            await self.run_manager.on_chain_end(
                {"interrupt": self.output.interrupt_value}
            )
        elif isinstance(self.output, Complete):
            self._emit(GraphComplete(self.output.state))
            await self.run_manager.on_chain_end(self.output.state)
        return None

    # public methods

    async def tick(self) -> bool:
        """Decide whether another super-step should run.

        Returns False once the run completed or was interrupted by a
        breakpoint; `output` then holds the result."""
        if self.output is not None:
            # interrupted during the previous step
            return False
        if self.status == "input":
            await self._first()
            self.status = "pending"
        self._check_cancelled()

        if not self.frontier:
            self.status = "done"
            self.output = Complete(read_channels(self.channels))
            logger.debug("Run %s completed at step %d", self.run_id, self.step)
            return False

        if self.steps_run >= self.recursion_limit:
            self.status = "out_of_steps"
            raise GraphRecursionError(self.recursion_limit)

        if self.skip_before:
            # resuming from this very breakpoint
            self.skip_before = False
        elif (
            nodes := should_interrupt(self.frontier, self.interrupt_before)
        ) and breakpoint_condition_met(
            self.graph.breakpoint_condition, read_channels(self.channels)
        ):
            await self._breakpoint("before", nodes[0])
            return False

        return True

    async def execute_step(self) -> None:
        """Run the frontier, apply its outputs and advance to the next step."""
        step = self.step
        frontier = list(self.frontier)
        state = read_channels(self.channels)
        pre_values = (
            checkpoint_channels(self.channels) if self.checkpointer is not None else {}
        )
        logger.debug("Starting step %d with nodes %s", step, frontier)

        try:
            outputs = await self._run_tasks(
                [(name, self._node_input(name, state, None)) for name in frontier]
            )
            if self._interrupted(outputs):
                await self._put_interrupt(outputs, frontier, pre_values, state)
                return
            self._validate_commands(outputs)
            writes = [(name, node_patch(out)) for name, out in outputs]
            executed = list(outputs)

            # dispatched executions, in waves
            sends = _sends(outputs)
            while sends:
                self.dispatched += len(sends)
                if self.dispatched > self.recursion_limit:
                    raise GraphRecursionError(self.recursion_limit)
                for send in sends:
                    if send.node not in self.graph.nodes:
                        raise InvalidUpdateError(
                            create_error_message(
                                message=f"Send to unknown node '{send.node}'",
                                error_code=ErrorCode.INVALID_DIRECTIVE,
                            )
                        )
                logger.debug("Dispatching %d sends at step %d", len(sends), step)
                # senders see the writes of this step, the channels stay untouched
                staged = copy_channels(self.channels)
                apply_writes(staged, writes)
                current = read_channels(staged)
                wave = await self._run_tasks(
                    [
                        (send.node, self._node_input(send.node, current, send.arg))
                        for send in sends
                    ]
                )
                if self._interrupted(wave):
                    await self._put_interrupt(wave, frontier, pre_values, state)
                    return
                self._validate_commands(wave)
                writes.extend((name, node_patch(out)) for name, out in wave)
                executed.extend(wave)
                sends = _sends(wave)

            updated = apply_writes(self.channels, writes)
            finish_step(self.channels, updated)
            routing_state = read_channels(self.channels)

            # resolve the next frontier
            targets: list[str] = []
            for name, out in executed:
                if isinstance(out, Command):
                    targets.extend(out.goto_nodes())
                else:
                    targets.extend(await self._successors(name, routing_state))
            consume_channels(self.channels)
            post_state = read_channels(self.channels)
        except (GraphCancelledError, CheckpointError):
            raise
        except Exception:
            # nothing from this step is kept, resume restarts it
            await self._put_checkpoint(
                step=step,
                pending=frontier,
                values=pre_values,
                metadata={"source": "loop"},
            )
            raise

        self.step += 1
        self.steps_run += 1
        self.frontier = next_frontier(targets)
        self.resume_node = None
        await self._put_checkpoint(
            step=self.step, pending=self.frontier, metadata={"source": "loop"}
        )
        for name, _ in executed:
            self._emit(NodeEnd(name, step, post_state))
        logger.debug("Finished step %d, next nodes %s", step, self.frontier)

        if (
            nodes := should_interrupt([n for n, _ in executed], self.interrupt_after)
        ) and breakpoint_condition_met(self.graph.breakpoint_condition, post_state):
            await self._breakpoint("after", nodes[0])
            return

        self._check_cancelled()

    # private methods

    async def _first(self) -> None:
        checkpoint_id = get_checkpoint_id(self.config)
        if self.checkpointer is None:
            if self.input is None:
                raise EmptyInputError(
                    "Received no input and there is no checkpointer to resume from"
                )
            self.channels = create_channels(self.graph.channels)
            apply_input(self.channels, self.input)
            self.frontier = await self._entry_frontier()
            return

        if checkpoint_id is not None:
            checkpoint = await self._aget(checkpoint_id)
            if checkpoint is None:
                if await self._aget_latest() is None:
                    raise ThreadNotFoundError(self.thread_id)
                raise CheckpointNotFoundError(self.thread_id, checkpoint_id)
            if self.input is not None:
                logger.warning(
                    "Ignoring input, resuming thread '%s' from checkpoint '%s'",
                    self.thread_id,
                    checkpoint_id,
                )
            self._restore(checkpoint)
        elif self.input is None:
            checkpoint = await self._aget_latest()
            if checkpoint is None:
                raise ThreadNotFoundError(self.thread_id)
            self._restore(checkpoint)
        else:
            latest = await self._aget_latest()
            self.channels = create_channels(
                self.graph.channels, latest.channel_values if latest else None
            )
            self.step = latest.step if latest else 0
            self.checkpoint_id = latest.id if latest else None
            apply_input(self.channels, self.input)
            self.frontier = await self._entry_frontier()
            await self._put_checkpoint(
                step=self.step, pending=self.frontier, metadata={"source": "input"}
            )

    def _restore(self, checkpoint: Checkpoint) -> None:
        self.channels = create_channels(self.graph.channels, checkpoint.channel_values)
        self.step = checkpoint.step
        self.frontier = list(checkpoint.pending_nodes)
        self.checkpoint_id = checkpoint.id
        metadata = checkpoint.metadata
        if metadata.get("source") != "interrupt":
            return
        if metadata.get("breakpoint") == "before":
            self.skip_before = True
        elif "breakpoint" not in metadata and has_resume_value(self.config):
            self.resume_node = metadata.get("node_name")
            self.resume_value = get_resume_value(self.config)
        logger.debug(
            "Resuming thread '%s' from interrupt checkpoint '%s'",
            self.thread_id,
            checkpoint.id,
        )

    async def _entry_frontier(self) -> list[str]:
        return next_frontier(
            await self._successors(START, read_channels(self.channels))
        )

    async def _successors(self, name: str, state: dict[str, Any]) -> list[str]:
        targets = await aresolve_edges(
            name,
            state,
            self._node_config(name),
            edges=self.graph.edges,
            branches=self.graph.branches,
        )
        validate_goto(name, targets, self.graph.nodes)
        return targets

    def _node_config(self, name: str) -> RunnableConfig:
        configurable: dict[str, Any] = {
            CONFIG_KEY_THREAD_ID: self.thread_id,
            CONFIG_KEY_STEP: self.step,
        }
        if self.resume_node is not None and name == self.resume_node:
            configurable[CONFIG_KEY_RESUME_VALUE] = self.resume_value
        assert self.run_manager is not None
        return patch_config(
            merge_configs(
                self.node_config_base,
                {"metadata": {"relaygraph_step": self.step, "relaygraph_node": name}},
            ),
            callbacks=self.run_manager.get_child(f"graph:step:{self.step}"),
            run_name=name,
            configurable=configurable,
        )

    def _node_input(self, name: str, state: Mapping[str, Any], overlay: Any) -> Any:
        if self.resume_node is not None and name == self.resume_node:
            if overlay is None:
                overlay = {RESUME: self.resume_value}
            elif isinstance(overlay, Mapping):
                overlay = {**overlay, RESUME: self.resume_value}
        return prepare_input(state, overlay)

    async def _run_tasks(
        self, tasks: Sequence[tuple[str, Any]]
    ) -> list[tuple[str, NodeOutput]]:
        """Run node executions concurrently, returning their parsed outputs
        in the order they were given."""
        futures: dict[asyncio.Task, int] = {}
        for idx, (name, input) in enumerate(tasks):
            if self.cancel.is_set():
                break
            self._emit(NodeStart(name, self.step))
            futures[asyncio.create_task(self._arun_node(name, input))] = idx
        if len(futures) < len(tasks):
            # outputs of the nodes already running are discarded
            if futures:
                await asyncio.gather(*futures, return_exceptions=True)
            self.status = "cancelled"
            raise GraphCancelledError(self.step)
        if not futures:
            return []

        done, pending = await asyncio.wait(
            futures, return_when=asyncio.FIRST_EXCEPTION
        )
        if pending:
            # a node failed, stop the rest of the step
            for fut in pending:
                fut.cancel()
            await asyncio.wait(pending)
        failed = sorted(
            (tasks[futures[fut]][0], futures[fut])
            for fut in done
            if not fut.cancelled() and fut.exception() is not None
        )
        if failed:
            name, idx = failed[0]
            fut = next(f for f, i in futures.items() if i == idx)
            exc = fut.exception()
            assert exc is not None
            raise NodeExecutionError(name, exc) from exc

        results: list[tuple[str, NodeOutput]] = []
        for fut, idx in sorted(futures.items(), key=lambda item: item[1]):
            name = tasks[idx][0]
            results.append((name, parse_output(name, fut.result())))
        return results

    async def _arun_node(self, name: str, input: Any) -> Any:
        node = self.graph.nodes[name]
        config = self._node_config(name)
        if self.semaphore is not None:
            async with self.semaphore:
                return await node.ainvoke(input, config)
        return await node.ainvoke(input, config)

    def _interrupted(self, outputs: Sequence[tuple[str, NodeOutput]]) -> bool:
        return any(isinstance(out, Interrupt) for _, out in outputs)

    def _validate_commands(self, outputs: Sequence[tuple[str, NodeOutput]]) -> None:
        for name, out in outputs:
            if isinstance(out, Command):
                validate_goto(name, out.goto_nodes(), self.graph.nodes)

    async def _put_interrupt(
        self,
        outputs: Sequence[tuple[str, NodeOutput]],
        frontier: list[str],
        pre_values: dict[str, Any],
        state: dict[str, Any],
    ) -> None:
        # first interrupt in node-name order wins, the rest of the step is dropped
        name, interrupt = min(
            ((n, out) for n, out in outputs if isinstance(out, Interrupt)),
            key=lambda item: item[0],
        )
        assert isinstance(interrupt, Interrupt)
        checkpoint_id = await self._put_checkpoint(
            step=self.step,
            pending=frontier,
            values=pre_values,
            metadata={
                "source": "interrupt",
                "node_name": name,
                "interrupt": interrupt.value,
            },
        )
        self.status = "interrupted"
        self.output = Interrupted(
            checkpoint_id=checkpoint_id,
            interrupt_value=interrupt.value,
            state=state,
            thread_id=self.thread_id,
            node=name,
        )
        logger.debug("Node '%s' interrupted at step %d", name, self.step)

    async def _breakpoint(self, kind: Literal["before", "after"], node: str) -> None:
        value = {"breakpoint": kind, "node": node}
        checkpoint_id = await self._put_checkpoint(
            step=self.step,
            pending=self.frontier,
            metadata={
                "source": "interrupt",
                "breakpoint": kind,
                "node_name": node,
                "interrupt": value,
            },
        )
        self.status = "interrupt_before" if kind == "before" else "interrupt_after"
        self.output = Interrupted(
            checkpoint_id=checkpoint_id,
            interrupt_value=value,
            state=read_channels(self.channels),
            thread_id=self.thread_id,
            node=node,
        )

    async def _put_checkpoint(
        self,
        *,
        step: int,
        pending: list[str],
        metadata: CheckpointMetadata,
        values: Optional[dict[str, Any]] = None,
    ) -> str:
        if self.checkpointer is None:
            return str(uuid4())
        checkpoint = create_checkpoint(
            self.thread_id,
            parent_id=self.checkpoint_id,
            step=step,
            channel_values=values
            if values is not None
            else checkpoint_channels(self.channels),
            pending_nodes=pending,
            metadata={**metadata, "step": step, "run_id": str(self.run_id)},
        )
        try:
            await self.checkpointer.aput(checkpoint)
        except CheckpointError:
            raise
        except Exception as exc:
            raise CheckpointError(
                create_error_message(
                    message=f"Failed to write checkpoint at step {step} for thread '{self.thread_id}'",
                    error_code=ErrorCode.CHECKPOINT_FAILED,
                )
            ) from exc
        logger.debug(
            "Wrote %s checkpoint '%s' at step %d",
            metadata.get("source"),
            checkpoint.id,
            step,
        )
        self.checkpoint_id = checkpoint.id
        return checkpoint.id

    async def _aget(self, checkpoint_id: str) -> Optional[Checkpoint]:
        assert self.checkpointer is not None
        try:
            return await self.checkpointer.aget(self.thread_id, checkpoint_id)
        except CheckpointError:
            raise
        except Exception as exc:
            raise CheckpointError(
                f"Failed to load checkpoint '{checkpoint_id}' for thread '{self.thread_id}'"
            ) from exc

    async def _aget_latest(self) -> Optional[Checkpoint]:
        assert self.checkpointer is not None
        try:
            return await self.checkpointer.aget_latest(self.thread_id)
        except CheckpointError:
            raise
        except Exception as exc:
            raise CheckpointError(
                f"Failed to load latest checkpoint for thread '{self.thread_id}'"
            ) from exc

    def _check_cancelled(self) -> None:
        if self.cancel.is_set():
            self.status = "cancelled"
            raise GraphCancelledError(self.step)

    def _emit(self, event: StreamEvent) -> None:
        if self.emit is None:
            return
        try:
            self.emit(event)
        except Exception:
            logger.warning("Stream observer failed on %s", event.type, exc_info=True)


def _sends(outputs: Sequence[tuple[str, NodeOutput]]) -> list[Send]:
    return [
        send
        for _, out in outputs
        if isinstance(out, Dispatch)
        for send in out.sends
    ]
