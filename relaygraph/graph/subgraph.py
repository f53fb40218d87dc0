from __future__ import annotations

from collections.abc import Container, Mapping
from typing import Any, Optional

from langchain_core.runnables import Runnable, RunnableConfig

from relaygraph._internal._config import patch_config
from relaygraph._internal._runnable import RunnableCallable
from relaygraph.pregel import Pregel
from relaygraph.types import Complete, Interrupted

__all__ = ("subgraph_node",)


def subgraph_node(
    graph: Pregel,
    input_mapping: Optional[Mapping[str, str]] = None,
    output_mapping: Optional[Mapping[str, str]] = None,
    *,
    name: Optional[str] = None,
    output_keys: Optional[Container[str]] = None,
) -> Runnable:
    """Wrap a compiled graph so it can run as a node of another graph.

    The nested graph runs without a checkpointer, one level deeper in the
    recursion budget. When it is interrupted the interrupt is raised from
    the wrapping node, so the outer run suspends; on resume the nested graph
    runs again from its input, and its nodes find the resume value under
    `config["configurable"]["resume_value"]`.

    Args:
        graph: The compiled graph to run.
        input_mapping: Outer state key to inner state key. By default every
            outer key that the inner graph declares is passed through.
        output_mapping: Inner state key to outer state key. By default the
            whole inner state is returned, restricted to `output_keys`
            when given.
        name: Name of the node, used for tracing.
        output_keys: Keys the outer graph declares.
    """
    inner = graph.copy({"checkpointer": None})

    def _input(state: Mapping[str, Any]) -> dict[str, Any]:
        if input_mapping:
            return {
                sub: state[outer]
                for outer, sub in input_mapping.items()
                if outer in state
            }
        return {k: v for k, v in state.items() if k in inner.channels}

    def _output(values: Mapping[str, Any]) -> dict[str, Any]:
        if output_mapping:
            return {
                outer: values[sub]
                for sub, outer in output_mapping.items()
                if sub in values
            }
        if output_keys is not None:
            return {k: v for k, v in values.items() if k in output_keys}
        return dict(values)

    async def _arun(state: Mapping[str, Any], config: RunnableConfig) -> Any:
        result = await inner.ainvoke(
            _input(state),
            patch_config(config, recursion_limit=config["recursion_limit"] - 1),
        )
        if isinstance(result, Interrupted):
            # the outer node surfaces the interrupt
            return result
        assert isinstance(result, Complete)
        return _output(result.state)

    return RunnableCallable(None, _arun, name=name or graph.get_name(), trace=True)
