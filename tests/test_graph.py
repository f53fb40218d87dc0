import operator
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal

import pytest
from langchain_core.messages import AIMessage, HumanMessage, RemoveMessage
from langchain_core.runnables import RunnableConfig
from pydantic import BaseModel
from typing_extensions import TypedDict

from relaygraph.channels.binop import BinaryOperatorAggregate
from relaygraph.channels.last_value import LastValue
from relaygraph.channels.topic import AppendChannel
from relaygraph.checkpoint.base import BaseCheckpointStore
from relaygraph.constants import END, START
from relaygraph.errors import GraphBuildError
from relaygraph.graph import MessagesState, StateGraph, add_messages, subgraph_node
from relaygraph.types import Complete, Interrupted

pytestmark = pytest.mark.anyio


class State(TypedDict):
    x: int


def _noop(state: Any) -> dict:
    return {}


def test_channels_from_typed_dict() -> None:
    class Schema(TypedDict):
        total: Annotated[int, operator.add]
        log: Annotated[list[str], AppendChannel(str)]
        name: str
        _private: str

    builder = StateGraph(Schema)
    assert set(builder.channels) == {"total", "log", "name"}
    assert isinstance(builder.channels["total"], BinaryOperatorAggregate)
    assert isinstance(builder.channels["log"], AppendChannel)
    assert isinstance(builder.channels["name"], LastValue)
    assert builder.channels["total"].key == "total"


def test_channels_defaults_from_dataclass_and_pydantic() -> None:
    @dataclass
    class DataState:
        label: str = "none"
        items: list[str] = field(default_factory=list)
        required: int = 0

    class ModelState(BaseModel):
        label: str = "none"
        count: int

    data = StateGraph(DataState)
    assert data.channels["label"].get() == "none"
    assert data.channels["items"].get() == []

    model = StateGraph(ModelState)
    assert model.channels["label"].get() == "none"
    assert not model.channels["count"].is_available()


async def test_defaults_seed_initial_state() -> None:
    @dataclass
    class DataState:
        x: int
        label: str = "none"

    builder = StateGraph(DataState)
    builder.add_node("A", lambda state: {"x": state["x"] + 1})
    builder.add_edge(START, "A")
    builder.add_edge("A", END)
    graph = builder.compile()
    assert await graph.ainvoke({"x": 1}) == Complete({"x": 2, "label": "none"})


def test_invalid_reducer_signature() -> None:
    class Schema(TypedDict):
        x: Annotated[int, lambda a, b, c: a]

    with pytest.raises(GraphBuildError):
        StateGraph(Schema)


def test_add_channel() -> None:
    builder = StateGraph()
    builder.add_channel("results", AppendChannel(str))
    assert builder.channels["results"].key == "results"
    with pytest.raises(GraphBuildError):
        builder.add_channel("results", LastValue(str))
    with pytest.raises(GraphBuildError):
        builder.add_channel(START, LastValue(str))


def test_add_node_errors() -> None:
    builder = StateGraph(State)
    builder.add_node("A", _noop)
    with pytest.raises(GraphBuildError):
        builder.add_node("A", _noop)
    with pytest.raises(GraphBuildError):
        builder.add_node(END, _noop)
    with pytest.raises(GraphBuildError):
        builder.add_node("__send__", _noop)
    with pytest.raises(TypeError):
        builder.add_node("gen", lambda state: (yield state))
    # name inferred from the function
    builder.add_node(_noop)
    assert "_noop" in builder.nodes


def test_add_edge_errors() -> None:
    builder = StateGraph(State)
    with pytest.raises(GraphBuildError):
        builder.add_edge(END, "A")
    with pytest.raises(GraphBuildError):
        builder.add_edge("A", START)


def test_validate_missing_entry_point() -> None:
    builder = StateGraph(State)
    builder.add_node("A", _noop)
    builder.add_edge("A", END)
    with pytest.raises(GraphBuildError, match="entrypoint"):
        builder.compile()


def test_validate_unknown_nodes() -> None:
    builder = StateGraph(State)
    builder.add_node("A", _noop)
    builder.add_edge(START, "A")
    builder.add_edge("A", "missing")
    with pytest.raises(GraphBuildError, match="missing"):
        builder.compile()

    builder = StateGraph(State)
    builder.add_node("A", _noop)
    builder.add_edge(START, "A")
    builder.add_edge("ghost", "A")
    builder.add_edge("A", END)
    with pytest.raises(GraphBuildError, match="ghost"):
        builder.compile()

    builder = StateGraph(State)
    builder.add_node("A", _noop)
    builder.add_edge(START, "A")
    builder.add_conditional_edges("A", lambda state: "B", ["B", END])
    with pytest.raises(GraphBuildError):
        builder.compile()


def test_validate_unreachable_node() -> None:
    builder = StateGraph(State)
    builder.add_node("A", _noop)
    builder.add_node("orphan", _noop)
    builder.add_edge(START, "A")
    builder.add_edge("A", END)
    builder.add_edge("orphan", END)
    with pytest.raises(GraphBuildError, match="orphan"):
        builder.compile()


def test_validate_end_unreachable() -> None:
    builder = StateGraph(State)
    builder.add_node("A", _noop)
    builder.add_edge(START, "A")
    builder.add_edge("A", "A")
    with pytest.raises(GraphBuildError, match="END"):
        builder.compile()


def test_validate_destinations_and_routers() -> None:
    # a router without a path map may go anywhere
    builder = StateGraph(State)
    builder.add_node("A", _noop)
    builder.add_node("B", _noop)
    builder.add_edge(START, "A")
    builder.add_conditional_edges("A", lambda state: "B")
    builder.compile()

    # nodes routing with Command declare their destinations
    builder = StateGraph(State)
    builder.add_node("A", _noop, destinations=("B",))
    builder.add_node("B", _noop)
    builder.add_edge(START, "A")
    builder.add_edge("B", END)
    builder.compile()

    builder = StateGraph(State)
    builder.add_node("A", _noop, destinations=("nope",))
    builder.add_edge(START, "A")
    builder.add_edge("A", END)
    with pytest.raises(GraphBuildError):
        builder.compile()


def test_validate_interrupt_nodes() -> None:
    builder = StateGraph(State)
    builder.add_node("A", _noop)
    builder.add_edge(START, "A")
    builder.add_edge("A", END)
    with pytest.raises(GraphBuildError):
        builder.compile(interrupt_before=["nope"])
    builder.compile(interrupt_after="*")


def test_literal_router_infers_destinations() -> None:
    def route(state: State) -> Literal["B", "__end__"]:
        return "B"

    builder = StateGraph(State)
    builder.add_node("A", _noop)
    builder.add_node("B", _noop)
    builder.add_edge(START, "A")
    builder.add_conditional_edges("A", route)
    builder.add_edge("B", END)
    branch = builder.branches["A"]["route"]
    assert sorted(branch.destinations()) == ["B", "__end__"]
    with pytest.raises(GraphBuildError):
        builder.add_conditional_edges("A", route)


async def test_add_sequence() -> None:
    class Counter(TypedDict):
        x: Annotated[int, operator.add]

    def one(state: Counter) -> dict:
        return {"x": 1}

    def two(state: Counter) -> dict:
        return {"x": 2}

    builder = StateGraph(Counter)
    builder.add_sequence([one, ("again", one), two])
    builder.set_entry_point("one")
    builder.set_finish_point("two")
    graph = builder.compile(name="seq")
    assert graph.get_name() == "seq"
    assert await graph.ainvoke({"x": 0}) == Complete({"x": 4})

    with pytest.raises(GraphBuildError):
        StateGraph(Counter).add_sequence([])


async def test_conditional_entry_point() -> None:
    builder = StateGraph(State)
    builder.add_node("small", lambda state: {"x": 0})
    builder.add_node("big", lambda state: {"x": 100})
    builder.set_conditional_entry_point(
        lambda state: "big" if state["x"] > 10 else "small", ["small", "big"]
    )
    builder.set_finish_point("small")
    builder.set_finish_point("big")
    graph = builder.compile()
    assert await graph.ainvoke({"x": 50}) == Complete({"x": 100})
    assert await graph.ainvoke({"x": 5}) == Complete({"x": 0})


async def test_async_router() -> None:
    async def route(state: State) -> Literal["B", "__end__"]:
        return "B" if state["x"] < 3 else END

    builder = StateGraph(State)
    builder.add_node("B", lambda state: {"x": state["x"] + 1})
    builder.add_edge(START, "B")
    builder.add_conditional_edges("B", route)
    graph = builder.compile()
    assert await graph.ainvoke({"x": 0}) == Complete({"x": 3})


def _inner_graph():
    def add_ten(state: State) -> dict:
        return {"x": state["x"] + 10}

    builder = StateGraph(State)
    builder.add_node("add_ten", add_ten)
    builder.add_edge(START, "add_ten")
    builder.add_edge("add_ten", END)
    return builder.compile(name="inner")


async def test_subgraph_node() -> None:
    class Outer(TypedDict):
        x: int
        y: int

    builder = StateGraph(Outer)
    builder.add_node("sub", _inner_graph())
    builder.add_node("after", lambda state: {"y": state["x"] * 2})
    builder.add_edge(START, "sub")
    builder.add_edge("sub", "after")
    builder.add_edge("after", END)
    graph = builder.compile()

    assert await graph.ainvoke({"x": 1}) == Complete({"x": 11, "y": 22})


async def test_subgraph_node_mapping() -> None:
    class Outer(TypedDict):
        question: int
        answer: int

    builder = StateGraph(Outer)
    builder.add_node(
        "sub",
        subgraph_node(
            _inner_graph(),
            input_mapping={"question": "x"},
            output_mapping={"x": "answer"},
        ),
    )
    builder.add_edge(START, "sub")
    builder.add_edge("sub", END)
    graph = builder.compile()

    assert await graph.ainvoke({"question": 5}) == Complete(
        {"question": 5, "answer": 15}
    )


async def test_subgraph_interrupt_and_resume(
    checkpointer: BaseCheckpointStore,
) -> None:
    def approve(state: State, config: RunnableConfig) -> dict:
        if (value := config["configurable"].get("resume_value")) is None:
            return {"__interrupt__": {"value": "approve?"}}
        return {"x": value}

    inner = StateGraph(State)
    inner.add_node("approve", approve)
    inner.add_edge(START, "approve")
    inner.add_edge("approve", END)

    outer = StateGraph(State)
    outer.add_node("sub", inner.compile())
    outer.add_edge(START, "sub")
    outer.add_edge("sub", END)
    graph = outer.compile(checkpointer=checkpointer)

    config = {"configurable": {"thread_id": "t1"}}
    result = await graph.ainvoke({"x": 0}, config)
    assert isinstance(result, Interrupted)
    assert result.node == "sub"
    assert result.interrupt_value == "approve?"

    resumed = await graph.ainvoke(
        None, {"configurable": {"thread_id": "t1", "resume_value": 42}}
    )
    assert resumed == Complete({"x": 42})


async def test_subgraph_recursion_budget() -> None:
    seen: list[int] = []

    def record(state: State, config: RunnableConfig) -> dict:
        seen.append(config["recursion_limit"])
        return {}

    inner = StateGraph(State)
    inner.add_node("record", record)
    inner.add_edge(START, "record")
    inner.add_edge("record", END)

    outer = StateGraph(State)
    outer.add_node("sub", inner.compile())
    outer.add_edge(START, "sub")
    outer.add_edge("sub", END)

    await outer.compile().ainvoke({"x": 0}, {"recursion_limit": 10})
    assert seen == [9]


def test_add_messages() -> None:
    left = [HumanMessage(content="hi", id="1")]
    merged = add_messages(left, AIMessage(content="hello", id="2"))
    assert merged == [
        HumanMessage(content="hi", id="1"),
        AIMessage(content="hello", id="2"),
    ]

    replaced = add_messages(merged, [AIMessage(content="hey", id="2")])
    assert [m.content for m in replaced] == ["hi", "hey"]

    removed = add_messages(replaced, [RemoveMessage(id="1")])
    assert [m.id for m in removed] == ["2"]

    with pytest.raises(ValueError):
        add_messages(removed, [RemoveMessage(id="missing")])


def test_add_messages_assigns_ids() -> None:
    merged = add_messages([], [("user", "hi"), {"role": "ai", "content": "yo"}])
    assert [m.type for m in merged] == ["human", "ai"]
    assert all(m.id for m in merged)


async def test_messages_state() -> None:
    builder = StateGraph(MessagesState)
    builder.add_node("echo", lambda state: {"messages": [("ai", "echo")]})
    builder.add_edge(START, "echo")
    builder.add_edge("echo", END)
    graph = builder.compile()

    result = await graph.ainvoke({"messages": [HumanMessage(content="hi")]})
    assert isinstance(result, Complete)
    assert [m.content for m in result.state["messages"]] == ["hi", "echo"]
