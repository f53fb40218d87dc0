import math
import operator
from typing import Annotated, Any

import pytest
from langchain_core.documents import Document
from typing_extensions import TypedDict

from relaygraph.constants import END, START
from relaygraph.errors import NodeExecutionError
from relaygraph.graph import StateGraph
from relaygraph.interfaces import (
    ChatModel,
    ExpressionError,
    InMemoryVectorStore,
    MissingCredentialError,
    RateLimitedError,
    Run,
    Tool,
    ToolDefinition,
    ToolNotFoundError,
    TraceSinkHandler,
    VectorStore,
    cosine_similarity,
    expression_router,
)
from relaygraph.types import Complete

pytestmark = pytest.mark.anyio


def test_cosine_similarity() -> None:
    a = [1.0, 2.0, 3.0]
    b = [-2.0, 0.5, 4.0]
    assert math.isclose(cosine_similarity(a, a), 1.0)
    assert math.isclose(cosine_similarity(a, b), cosine_similarity(b, a))
    assert math.isclose(cosine_similarity([1.0, 0.0], [0.0, 1.0]), 0.0)
    assert math.isclose(cosine_similarity([1.0, 0.0], [-1.0, 0.0]), -1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1.0], [1.0, 2.0])


async def test_in_memory_vector_store() -> None:
    store = InMemoryVectorStore()
    assert isinstance(store, VectorStore)
    ids = await store.add_documents(
        [
            (Document(page_content="cats", metadata={"kind": "pet"}), [1.0, 0.0]),
            (Document(page_content="dogs", metadata={"kind": "pet"}), [0.8, 0.6]),
            (Document(page_content="cars", metadata={"kind": "vehicle"}, id="car"), [0.0, 1.0]),
        ]
    )
    assert len(ids) == 3
    assert ids[2] == "car"

    results = await store.similarity_search([1.0, 0.0], k=2)
    assert [r.document.page_content for r in results] == ["cats", "dogs"]
    assert results[0].document.id == ids[0]
    assert math.isclose(results[0].score, 1.0)

    filtered = await store.similarity_search([1.0, 0.0], filter={"kind": "vehicle"})
    assert [r.document.id for r in filtered] == ["car"]

    above = await store.similarity_search([1.0, 0.0], score_threshold=0.5)
    assert [r.document.page_content for r in above] == ["cats", "dogs"]

    await store.delete(["car", "unknown"])
    assert len(await store.similarity_search([0.0, 1.0], k=10)) == 2


class _Evaluator:
    """Evaluates `key op number` expressions."""

    ops = {">": operator.gt, "<": operator.lt, "==": operator.eq}

    def evaluate(self, expression: str, state: Any) -> Any:
        key, op, value = expression.split()
        if key == "bad":
            return "yes"
        return self.ops[op](state[key], float(value))


def test_expression_router() -> None:
    router = expression_router(
        _Evaluator(),
        [("score > 50", "pass"), ("score == 50", "review")],
        default="fail",
    )
    assert router({"score": 80}) == "pass"
    assert router({"score": 50}) == "review"
    assert router({"score": 10}) == "fail"

    with_default = expression_router(
        _Evaluator(), [("score > 50", "pass"), ("default", "other")], default="fail"
    )
    assert with_default({"score": 10}) == "other"

    broken = expression_router(_Evaluator(), [("bad == 1", "x")], default="fail")
    with pytest.raises(ExpressionError):
        broken({})


async def test_expression_router_in_graph() -> None:
    class State(TypedDict):
        score: int
        out: str

    builder = StateGraph(State)
    builder.add_node("grade", lambda state: {})
    builder.add_node("pass", lambda state: {"out": "passed"})
    builder.add_node("fail", lambda state: {"out": "failed"})
    builder.add_edge(START, "grade")
    builder.add_conditional_edges(
        "grade",
        expression_router(_Evaluator(), [("score > 50", "pass")], default="fail"),
        ["pass", "fail"],
    )
    builder.add_edge("pass", END)
    builder.add_edge("fail", END)
    graph = builder.compile()

    assert await graph.ainvoke({"score": 70}) == Complete({"score": 70, "out": "passed"})
    assert await graph.ainvoke({"score": 7}) == Complete({"score": 7, "out": "failed"})


class _ListSink:
    def __init__(self) -> None:
        self.runs: list[Run] = []

    def submit_run(self, run: Run) -> None:
        self.runs.append(run)


class _BrokenSink:
    def submit_run(self, run: Run) -> None:
        raise RuntimeError("sink down")


class _Counter(TypedDict):
    x: Annotated[int, operator.add]


def _traced_graph():
    builder = StateGraph(_Counter)
    builder.add_node("A", lambda state: {"x": 1})
    builder.add_node("B", lambda state: {"x": 1})
    builder.add_edge(START, "A")
    builder.add_edge("A", "B")
    builder.add_edge("B", END)
    return builder.compile(name="traced")


async def test_trace_sink_handler() -> None:
    sink = _ListSink()
    handler = TraceSinkHandler(sink)
    result = await _traced_graph().ainvoke({"x": 0}, {"callbacks": [handler]})
    assert result == Complete({"x": 2})

    by_name = {run.name: run for run in sink.runs}
    assert {"traced", "A", "B"} <= set(by_name)
    root = by_name["traced"]
    assert root.parent_run_id is None
    assert root.trace_id == root.run_id
    assert sink.runs[-1] is root
    for name in ("A", "B"):
        assert by_name[name].trace_id == root.run_id
        assert by_name[name].status == "success"
        assert by_name[name].latency_ms is not None
    assert handler.runs == {}


async def test_trace_sink_failure_does_not_fail_run() -> None:
    handler = TraceSinkHandler(_BrokenSink())
    result = await _traced_graph().ainvoke({"x": 0}, {"callbacks": [handler]})
    assert result == Complete({"x": 2})


async def test_trace_records_node_errors() -> None:
    def fail(state: _Counter) -> dict:
        raise ValueError("boom")

    builder = StateGraph(_Counter)
    builder.add_node("A", fail)
    builder.add_edge(START, "A")
    builder.add_edge("A", END)
    sink = _ListSink()

    with pytest.raises(NodeExecutionError):
        await builder.compile().ainvoke(
            {"x": 0}, {"callbacks": [TraceSinkHandler(sink)]}
        )
    statuses = {run.name: run.status for run in sink.runs}
    assert statuses["A"] == "error"
    assert statuses["RelayGraph"] == "error"


def test_protocols() -> None:
    class EchoTool:
        def definition(self) -> ToolDefinition:
            return ToolDefinition("echo", "Echo the input", {"type": "object"})

        async def call(self, input: dict) -> str:
            return str(input)

    class Model:
        model_name = "fake"

        async def generate(self, messages, options):
            raise NotImplementedError

    assert isinstance(EchoTool(), Tool)
    assert isinstance(Model(), ChatModel)
    assert EchoTool().definition().to_dict() == {
        "name": "echo",
        "description": "Echo the input",
        "parameters": {"type": "object"},
    }


def test_error_messages() -> None:
    assert str(MissingCredentialError("openai")) == "Missing API key for openai"
    assert str(ToolNotFoundError("search")) == "Tool not found: search"
    assert RateLimitedError(2.5).retry_after == 2.5
    assert str(RateLimitedError()) == "Rate limited"
