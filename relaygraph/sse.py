"""Helpers to serve a graph's event stream over Server-Sent Events.

Each event is sent as one `data:` frame holding its JSON encoding, the stream
ends with a `[DONE]` frame, and comment frames are interleaved while the run
is quiet so that proxies don't time out long nodes.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any, Optional, Union

from relaygraph.errors import (
    EmptyInputError,
    GraphBuildError,
    GraphRecursionError,
    NodeExecutionError,
)
from relaygraph.interfaces.llm import AuthError, MissingCredentialError, RateLimitedError
from relaygraph.interfaces.tools import InvalidToolInputError
from relaygraph.pregel.stream import StreamEvent
from relaygraph.serde.jsonplus import JsonPlusSerializer

__all__ = (
    "DONE_FRAME",
    "KEEPALIVE_FRAME",
    "format_sse",
    "sse_stream",
    "error_body",
    "status_for_error",
)

DONE_FRAME = "data: [DONE]\n\n"
KEEPALIVE_FRAME = ": keepalive\n\n"
DEFAULT_KEEPALIVE = 5.0

_serde = JsonPlusSerializer()

BAD_REQUEST_ERRORS: tuple[type[Exception], ...] = (
    GraphRecursionError,
    GraphBuildError,
    EmptyInputError,
    InvalidToolInputError,
    MissingCredentialError,
)


def format_sse(event: Union[StreamEvent, dict[str, Any]]) -> str:
    """Render one event as an SSE `data:` frame."""
    data = event if isinstance(event, dict) else event.to_dict()
    return f"data: {_serde.dumps(data).decode()}\n\n"


async def sse_stream(
    events: AsyncIterator[Any],
    keepalive: Optional[float] = DEFAULT_KEEPALIVE,
) -> AsyncIterator[str]:
    """Turn an event stream into SSE frames, ending with `DONE_FRAME`.

    A `KEEPALIVE_FRAME` is yielded every `keepalive` seconds without an event.
    Waiting for the next event survives the keepalive timeouts, so no event
    is lost. Closing this iterator closes `events`.
    """
    iterator = events.__aiter__()
    pending: Optional[asyncio.Task] = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=keepalive)
            if not done:
                yield KEEPALIVE_FRAME
                continue
            task, pending = pending, None
            try:
                event = task.result()
            except StopAsyncIteration:
                break
            yield format_sse(event)
        yield DONE_FRAME
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.wait({pending})
        if hasattr(iterator, "aclose"):
            await iterator.aclose()


def error_body(exc: BaseException) -> dict[str, str]:
    exc = _unwrap(exc)
    if isinstance(exc, RateLimitedError):
        return {"error": "Rate limited"}
    if isinstance(exc, GraphRecursionError):
        return {"error": f"Recursion limit ({exc.limit}) exceeded"}
    return {"error": str(exc) or type(exc).__name__}


def status_for_error(exc: BaseException) -> int:
    """HTTP status code for an error surfaced by a run. Node failures are
    classified by their cause."""
    exc = _unwrap(exc)
    if isinstance(exc, AuthError):
        return 401
    if isinstance(exc, RateLimitedError):
        return 429
    if isinstance(exc, BAD_REQUEST_ERRORS):
        return 400
    return 500


def _unwrap(exc: BaseException) -> BaseException:
    while isinstance(exc, NodeExecutionError):
        exc = exc.cause
    return exc
