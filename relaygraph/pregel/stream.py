from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, fields
from typing import Any, ClassVar, Union

from typing_extensions import TypeAlias

__all__ = (
    "NodeStart",
    "NodeEnd",
    "GraphComplete",
    "InterruptedEvent",
    "ErrorEvent",
    "EventsDropped",
    "StreamEvent",
    "StreamBuffer",
)

logger = logging.getLogger(__name__)

_DC_KWARGS = {"slots": True, "frozen": True}


class _Event:
    __slots__ = ()

    type: ClassVar[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            **{f.name: getattr(self, f.name) for f in fields(self)},  # type: ignore[arg-type]
        }


@dataclass(**_DC_KWARGS)
class NodeStart(_Event):
    node_name: str
    step: int

    type: ClassVar[str] = "node_start"


@dataclass(**_DC_KWARGS)
class NodeEnd(_Event):
    node_name: str
    step: int
    state: dict[str, Any]
    """State after the step was applied."""

    type: ClassVar[str] = "node_end"


@dataclass(**_DC_KWARGS)
class GraphComplete(_Event):
    output: dict[str, Any]

    type: ClassVar[str] = "graph_complete"


@dataclass(**_DC_KWARGS)
class InterruptedEvent(_Event):
    checkpoint_id: str
    interrupt_value: Any

    type: ClassVar[str] = "interrupted"


@dataclass(**_DC_KWARGS)
class ErrorEvent(_Event):
    message: str

    type: ClassVar[str] = "error"


@dataclass(**_DC_KWARGS)
class EventsDropped(_Event):
    """The observer fell behind and `count` events were discarded."""

    count: int

    type: ClassVar[str] = "events_dropped"


StreamEvent: TypeAlias = Union[
    NodeStart, NodeEnd, GraphComplete, InterruptedEvent, ErrorEvent, EventsDropped
]


class StreamBuffer(asyncio.Queue):
    """Bounded event buffer between a run and its observer.

    `put_nowait` never blocks and never raises `QueueFull`: when the buffer is
    full the oldest event is discarded and counted in `dropped`, so a slow
    observer can't stall the scheduler.
    """

    def __init__(self, maxsize: int = 1024) -> None:
        if maxsize < 1:
            raise ValueError("Stream buffer size must be at least 1")
        super().__init__(maxsize)
        self.dropped = 0

    def put_nowait(self, item: Any) -> None:
        if self.full():
            self.get_nowait()
            self.dropped += 1
            if self.dropped == 1:
                logger.warning(
                    "Stream observer is falling behind, dropping oldest events"
                )
        super().put_nowait(item)

    def take_dropped(self) -> int:
        dropped, self.dropped = self.dropped, 0
        return dropped
