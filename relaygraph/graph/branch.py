from __future__ import annotations

from collections.abc import Hashable, Mapping, Sequence
from inspect import ismethod
from typing import (
    Any,
    Callable,
    Literal,
    NamedTuple,
    Optional,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

from langchain_core.runnables import Runnable, RunnableConfig

from relaygraph._internal._runnable import RunnableCallable
from relaygraph.constants import START
from relaygraph.errors import ErrorCode, InvalidUpdateError, create_error_message
from relaygraph.types import Send

__all__ = ("Branch",)


class Branch(NamedTuple):
    """A conditional edge: a router called with the post-step state, whose
    result is translated to node names through `ends` when one is given."""

    path: Runnable[Any, Union[Hashable, list[Hashable]]]
    ends: Optional[dict[Hashable, str]]

    @classmethod
    def from_path(
        cls,
        path: Runnable[Any, Union[Hashable, list[Hashable]]],
        path_map: Optional[Union[dict[Hashable, str], list[str]]],
    ) -> Branch:
        # coerce path_map to a dictionary
        path_map_: Optional[dict[Hashable, str]] = None
        if isinstance(path_map, dict):
            path_map_ = path_map.copy()
        elif isinstance(path_map, list):
            path_map_ = {name: name for name in path_map}
        elif isinstance(path, RunnableCallable):
            # infer the destinations from a Literal return annotation
            func: Optional[Callable] = path.func or path.afunc
            if (cal := getattr(func, "__call__", None)) and ismethod(cal):
                func = cal
            try:
                rtn_type = get_type_hints(func).get("return") if func else None
            except (NameError, TypeError):
                rtn_type = None
            if rtn_type is not None and get_origin(rtn_type) is Literal:
                path_map_ = {name: name for name in get_args(rtn_type)}
        return cls(path=path, ends=path_map_)

    def resolve(self, state: Mapping[str, Any], config: RunnableConfig) -> list[str]:
        return self._finish(self.path.invoke(dict(state), config))

    async def aresolve(
        self, state: Mapping[str, Any], config: RunnableConfig
    ) -> list[str]:
        return self._finish(await self.path.ainvoke(dict(state), config))

    def _finish(self, result: Any) -> list[str]:
        if not isinstance(result, (list, tuple)):
            result = [result]
        if any(isinstance(r, Send) for r in result):
            raise InvalidUpdateError(
                create_error_message(
                    message="Routers can't return Send, return it from a node instead",
                    error_code=ErrorCode.INVALID_DIRECTIVE,
                )
            )
        if self.ends:
            missing = [r for r in result if r not in self.ends]
            if missing:
                raise InvalidUpdateError(
                    create_error_message(
                        message=f"Router returned {missing!r}, expected one of {list(self.ends)!r}",
                        error_code=ErrorCode.INVALID_DIRECTIVE,
                    )
                )
            destinations: Sequence[str] = [self.ends[r] for r in result]
        else:
            destinations = result
        if any(not isinstance(d, str) or d == START for d in destinations):
            raise InvalidUpdateError(
                create_error_message(
                    message=f"Router did not return a valid destination: {result!r}",
                    error_code=ErrorCode.INVALID_DIRECTIVE,
                )
            )
        return list(destinations)

    def destinations(self) -> Optional[list[str]]:
        """Every node this branch can route to, or None if unknown."""
        if self.ends is None:
            return None
        return list(self.ends.values())
