from __future__ import annotations

from typing import Annotated, Any, Callable, Optional

from langchain_core.runnables import RunnableConfig
from langchain_core.runnables.base import coerce_to_runnable
from typing_extensions import TypedDict

from relaygraph.channels.topic import AppendChannel
from relaygraph.constants import END, START
from relaygraph.graph.state import CompiledStateGraph, StateGraph
from relaygraph.types import Send

__all__ = ("MapReduceState", "create_map_reduce_graph")


class MapReduceState(TypedDict):
    items: list[Any]
    results: Annotated[list[Any], AppendChannel(Any)]
    output: Any


def create_map_reduce_graph(
    map_fn: Callable[[Any], Any],
    reduce_fn: Callable[[list[Any]], Any],
    *,
    max_concurrency: Optional[int] = None,
    name: Optional[str] = None,
) -> CompiledStateGraph:
    """Creates a graph that maps every input item concurrently, then reduces
    the results to one output.

    The `scatter` node sends each item of `items` to the `map` node, and the
    dispatched `map` runs append to `results` within the same step. `reduce`
    runs in the next step with every result, in item order.

    Each item counts as one dispatched execution against the recursion
    limit, so raise `recursion_limit` for long item lists.

    Args:
        map_fn: Function of one item, sync or async.
        reduce_fn: Function of the list of mapped results, sync or async.
        max_concurrency: Maximum number of `map` runs in flight.
        name: Name of the compiled graph.

    Example:
        ```python
        graph = create_map_reduce_graph(lambda n: n * 2, sum)
        result = await graph.ainvoke({"items": [1, 2, 3]})
        result.state["output"]  # 12
        ```
    """
    mapper = coerce_to_runnable(map_fn)
    reducer = coerce_to_runnable(reduce_fn)

    def scatter(state: MapReduceState) -> list[Send]:
        return [Send("map", {"item": item}) for item in state.get("items") or []]

    async def map_item(state: dict[str, Any], config: RunnableConfig) -> dict[str, Any]:
        return {"results": [await mapper.ainvoke(state["item"], config)]}

    async def reduce(state: MapReduceState, config: RunnableConfig) -> dict[str, Any]:
        return {"output": await reducer.ainvoke(list(state["results"]), config)}

    builder = StateGraph(MapReduceState)
    builder.add_node("scatter", scatter, destinations=("map",))
    builder.add_node("map", map_item)
    builder.add_node("reduce", reduce)
    builder.add_edge(START, "scatter")
    builder.add_edge("scatter", "reduce")
    builder.add_edge("reduce", END)
    return builder.compile(max_concurrency=max_concurrency, name=name or "map_reduce")
