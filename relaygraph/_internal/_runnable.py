from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable
from functools import partial, wraps
from typing import Any, Callable, Optional

from langchain_core.runnables.base import Runnable, RunnableConfig
from langchain_core.runnables.config import run_in_executor
from langchain_core.runnables.utils import accepts_config

from relaygraph._internal._config import merge_configs


class RunnableCallable(Runnable):
    """A much simpler version of RunnableLambda wrapping a node or router function.

    Sync functions run in the default executor; the async entry point is the
    one the scheduler uses.
    """

    name: Optional[str] = None

    def __init__(
        self,
        func: Optional[Callable[..., Any]],
        afunc: Optional[Callable[..., Awaitable[Any]]] = None,
        *,
        name: Optional[str] = None,
        tags: Optional[list[str]] = None,
        trace: bool = True,
        **kwargs: Any,
    ) -> None:
        if name is not None:
            self.name = name
        elif func:
            try:
                if func.__name__ != "<lambda>":
                    self.name = func.__name__
            except AttributeError:
                pass
        elif afunc:
            try:
                self.name = afunc.__name__
            except AttributeError:
                pass
        self.func = func
        self.afunc = afunc
        self.config: Optional[RunnableConfig] = {"tags": tags} if tags else None
        self.kwargs = kwargs
        self.trace = trace

    def __repr__(self) -> str:
        return f"{self.get_name()}()"

    def invoke(
        self, input: Any, config: Optional[RunnableConfig] = None, **kwargs: Any
    ) -> Any:
        if self.func is None:
            raise TypeError(
                f"No synchronous function provided for node '{self.get_name()}'; use ainvoke."
            )
        config = merge_configs(self.config, config)
        if self.trace:
            return self._call_with_config(self.func, input, config, **self.kwargs)
        call_kwargs = (
            {**self.kwargs, "config": config}
            if accepts_config(self.func)
            else self.kwargs
        )
        return self.func(input, **call_kwargs)

    async def ainvoke(
        self, input: Any, config: Optional[RunnableConfig] = None, **kwargs: Any
    ) -> Any:
        if not self.afunc:
            return self.invoke(input, config)
        config = merge_configs(self.config, config)
        if self.trace:
            return await self._acall_with_config(
                self.afunc, input, config, **self.kwargs
            )
        call_kwargs = (
            {**self.kwargs, "config": config}
            if accepts_config(self.afunc)
            else self.kwargs
        )
        return await self.afunc(input, **call_kwargs)


def _iscoroutinefunction(thing: Any) -> bool:
    return (
        asyncio.iscoroutinefunction(thing)
        or hasattr(thing, "__call__")
        and asyncio.iscoroutinefunction(thing.__call__)
    )


def coerce_to_runnable(thing: Any, *, name: Optional[str], trace: bool) -> Runnable:
    """Coerce a node-like object into a Runnable.

    Args:
        thing: A Runnable, or a sync or async callable.

    Returns:
        A Runnable.
    """
    if isinstance(thing, Runnable):
        return thing
    elif inspect.isasyncgenfunction(thing) or inspect.isgeneratorfunction(thing):
        raise TypeError(
            f"Generator functions are not supported as nodes, got {thing!r}"
        )
    elif callable(thing):
        if _iscoroutinefunction(thing):
            return RunnableCallable(None, thing, name=name, trace=trace)
        else:
            return RunnableCallable(
                thing,
                wraps(thing)(partial(run_in_executor, None, thing)),
                name=name,
                trace=trace,
            )
    else:
        raise TypeError(
            f"Expected a Runnable, callable or dict. Instead got an unsupported type: {type(thing)}"
        )
