from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Protocol, runtime_checkable
from uuid import UUID

from langchain_core.callbacks import BaseCallbackHandler

__all__ = ("Run", "RunStatus", "TraceSink", "TraceSinkHandler")

logger = logging.getLogger(__name__)

RunStatus = Literal["running", "success", "error"]


@dataclass
class Run:
    """One traced execution: a graph run or one of its node executions."""

    run_id: UUID
    name: str
    trace_id: UUID
    parent_run_id: Optional[UUID] = None
    run_type: str = "chain"
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    status: RunStatus = "running"
    inputs: Any = None
    outputs: Any = None
    error: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def latency_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)


@runtime_checkable
class TraceSink(Protocol):
    """Receives finished runs, e.g. to write them to a trace store."""

    def submit_run(self, run: Run) -> None: ...


class TraceSinkHandler(BaseCallbackHandler):
    """A callback handler that collects chain runs and submits each one to a
    `TraceSink` when it ends.

    Pass it in `config["callbacks"]` to trace a graph run and its nodes.
    """

    run_inline = True
    """Run in the caller's thread so runs are collected in order."""

    def __init__(self, sink: TraceSink) -> None:
        self.sink = sink
        self.runs: dict[UUID, Run] = {}

    def on_chain_start(
        self,
        serialized: Optional[dict[str, Any]],
        inputs: Any,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        parent = self.runs.get(parent_run_id) if parent_run_id else None
        self.runs[run_id] = Run(
            run_id=run_id,
            name=kwargs.get("name") or (serialized or {}).get("name") or "chain",
            trace_id=parent.trace_id if parent else run_id,
            parent_run_id=parent_run_id,
            inputs=inputs,
            tags=list(tags or []),
            metadata=dict(metadata or {}),
        )

    def on_chain_end(
        self,
        outputs: Any,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        **kwargs: Any,
    ) -> None:
        if (run := self.runs.pop(run_id, None)) is None:
            return
        run.outputs = outputs
        self._finish(run, "success")

    def on_chain_error(
        self,
        error: BaseException,
        *,
        run_id: UUID,
        parent_run_id: Optional[UUID] = None,
        **kwargs: Any,
    ) -> None:
        if (run := self.runs.pop(run_id, None)) is None:
            return
        run.error = repr(error)
        self._finish(run, "error")

    def _finish(self, run: Run, status: RunStatus) -> None:
        run.status = status
        run.end_time = datetime.now(timezone.utc)
        try:
            self.sink.submit_run(run)
        except Exception:
            # tracing never affects the run
            logger.exception("Failed to submit run %s", run.run_id)
