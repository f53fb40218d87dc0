import asyncio
import json
import operator
from collections.abc import AsyncIterator
from typing import Annotated

import pytest
from typing_extensions import TypedDict

from relaygraph.constants import END, START
from relaygraph.errors import (
    EmptyInputError,
    GraphBuildError,
    GraphRecursionError,
    NodeExecutionError,
    ThreadNotFoundError,
)
from relaygraph.graph import StateGraph
from relaygraph.interfaces.llm import (
    ApiRequestError,
    AuthError,
    MissingCredentialError,
    RateLimitedError,
)
from relaygraph.interfaces.tools import InvalidToolInputError
from relaygraph.pregel.stream import ErrorEvent, NodeStart
from relaygraph.sse import (
    DONE_FRAME,
    KEEPALIVE_FRAME,
    error_body,
    format_sse,
    sse_stream,
    status_for_error,
)

pytestmark = pytest.mark.anyio


def _parse(frame: str) -> dict:
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    return json.loads(frame[len("data: ") : -2])


def test_format_sse() -> None:
    frame = format_sse(NodeStart(node_name="A", step=0))
    assert frame == 'data: {"node_name": "A", "step": 0, "type": "node_start"}\n\n'
    assert _parse(format_sse({"type": "custom", "value": [1, 2]})) == {
        "type": "custom",
        "value": [1, 2],
    }


class _Source:
    """Async iterator yielding `items`, sleeping `delay` before each one."""

    def __init__(self, items: list, delay: float = 0) -> None:
        self.items = list(items)
        self.delay = delay
        self.closed = False

    def __aiter__(self) -> "_Source":
        return self

    async def __anext__(self):
        if not self.items:
            raise StopAsyncIteration
        await asyncio.sleep(self.delay)
        return self.items.pop(0)

    async def aclose(self) -> None:
        self.closed = True


async def test_sse_stream() -> None:
    source = _Source([NodeStart("A", 0), ErrorEvent("boom")])
    frames = [frame async for frame in sse_stream(source, keepalive=None)]
    assert [_parse(f)["type"] for f in frames[:-1]] == ["node_start", "error"]
    assert frames[-1] == DONE_FRAME
    assert source.closed


async def test_sse_stream_keepalive() -> None:
    source = _Source([NodeStart("A", 0)], delay=0.2)
    frames = [frame async for frame in sse_stream(source, keepalive=0.05)]
    assert KEEPALIVE_FRAME in frames
    assert frames[0] == KEEPALIVE_FRAME
    data = [f for f in frames if f.startswith("data: ")]
    # no event is lost to a keepalive timeout
    assert data == [format_sse(NodeStart("A", 0)), DONE_FRAME]


async def test_sse_stream_closed_early() -> None:
    source = _Source([NodeStart("A", 0)], delay=10)
    stream = sse_stream(source, keepalive=0.01)
    assert await stream.__anext__() == KEEPALIVE_FRAME
    await stream.aclose()
    assert source.closed


async def test_sse_stream_of_graph_run() -> None:
    class State(TypedDict):
        x: Annotated[int, operator.add]

    builder = StateGraph(State)
    builder.add_node("A", lambda state: {"x": 1})
    builder.add_edge(START, "A")
    builder.add_edge("A", END)
    graph = builder.compile()

    async def events() -> AsyncIterator:
        async for event in graph.astream({"x": 1}):
            yield event

    frames = [frame async for frame in sse_stream(events())]
    assert frames[-1] == DONE_FRAME
    parsed = [_parse(f) for f in frames[:-1]]
    assert [p["type"] for p in parsed] == ["node_start", "node_end", "graph_complete"]
    assert parsed[-1]["output"] == {"x": 2}


def test_error_body() -> None:
    assert error_body(RateLimitedError(3.0)) == {"error": "Rate limited"}
    assert error_body(GraphRecursionError(3)) == {
        "error": "Recursion limit (3) exceeded"
    }
    assert error_body(ThreadNotFoundError("t1")) == {"error": "Thread 't1' not found"}
    assert error_body(NodeExecutionError("A", RateLimitedError())) == {
        "error": "Rate limited"
    }
    assert error_body(ValueError()) == {"error": "ValueError"}


@pytest.mark.parametrize(
    "exc,status",
    [
        (AuthError("bad key"), 401),
        (RateLimitedError(), 429),
        (GraphRecursionError(25), 400),
        (GraphBuildError("no entrypoint"), 400),
        (EmptyInputError("nothing to run"), 400),
        (InvalidToolInputError("missing arg"), 400),
        (MissingCredentialError("openai"), 400),
        (NodeExecutionError("agent", AuthError("bad key")), 401),
        (NodeExecutionError("agent", ApiRequestError("502")), 500),
        (ThreadNotFoundError("t1"), 500),
        (RuntimeError("unexpected"), 500),
    ],
)
def test_status_for_error(exc: Exception, status: int) -> None:
    assert status_for_error(exc) == status
