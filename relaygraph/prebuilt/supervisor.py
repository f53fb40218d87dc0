from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Optional

from langchain_core.messages import AnyMessage, SystemMessage
from langchain_core.runnables import RunnableConfig

from relaygraph.checkpoint.base import BaseCheckpointStore
from relaygraph.constants import END
from relaygraph.graph.message import MessagesState
from relaygraph.graph.state import CompiledStateGraph, StateGraph
from relaygraph.graph.subgraph import subgraph_node
from relaygraph.interfaces.llm import CallOptions, ChatModel
from relaygraph.pregel import Pregel
from relaygraph.types import Send

__all__ = ("FINISH", "SupervisorState", "Worker", "create_supervisor_agent")

logger = logging.getLogger(__name__)

FINISH = "FINISH"

ROUTER_PROMPT = """You are a supervisor managing these workers:
{workers}

Given the conversation so far, which worker(s) should act next?
Respond with a JSON object: {{"next": ["worker_name"]}} or {{"next": ["FINISH"]}}
You can select multiple workers to run in parallel: {{"next": ["worker_a", "worker_b"]}}"""


class SupervisorState(MessagesState):
    next: list[str]


@dataclass(frozen=True)
class Worker:
    """A worker the supervisor can hand the conversation to.

    Attributes:
        name: Routing key the router answers with.
        description: What the worker is good at, shown to the router.
        agent: Compiled graph over a `messages` state, e.g. a
            `create_react_agent` graph.
    """

    name: str
    description: str
    agent: Pregel


def parse_next(content: str) -> list[str]:
    """Read the router's `{"next": [...]}` answer, also when it is wrapped in
    prose or a code fence. Anything unreadable means `FINISH`."""
    text = content.strip()
    candidates = [text]
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if not isinstance(parsed, dict) or "next" not in parsed:
            continue
        nxt = parsed["next"]
        if isinstance(nxt, str):
            return [nxt]
        if isinstance(nxt, list):
            return [n for n in nxt if isinstance(n, str)]
        return [FINISH]
    return [FINISH]


def _worker_node(name: str) -> str:
    return f"worker_{name}"


def create_supervisor_agent(
    model: ChatModel,
    workers: Sequence[Worker],
    *,
    prompt: Optional[str] = None,
    checkpointer: Optional[BaseCheckpointStore] = None,
    name: Optional[str] = None,
) -> CompiledStateGraph:
    """Creates a supervisor that routes the conversation between worker agents.

    The `router` node asks the model which workers should act next. Unless
    it answers `FINISH`, the `dispatch` node sends the conversation to every
    selected worker; they run concurrently as nested graphs and their new
    messages are merged back. Control then returns to the router.

    ```
    router --FINISH--> END
       |
       +--> dispatch --Send--> worker_<name> ...
               |
               +--> router
    ```

    Names the router returns that aren't workers are ignored. The loop is
    bounded by the recursion limit.

    Args:
        model: The chat model that routes.
        workers: The workers to route between.
        prompt: Optional text placed before the routing instructions in the
            router's system message.
        checkpointer: Optional checkpoint store.
        name: Name of the compiled graph.
    """
    by_name = {w.name: w for w in workers}
    system_prompt = ROUTER_PROMPT.format(
        workers="\n".join(f"- {w.name}: {w.description}" for w in workers)
    )
    if prompt:
        system_prompt = f"{prompt}\n\n{system_prompt}"

    async def router(state: SupervisorState, config: RunnableConfig) -> dict[str, Any]:
        messages: list[AnyMessage] = list(state["messages"])
        if not any(isinstance(m, SystemMessage) for m in messages):
            messages.insert(0, SystemMessage(content=system_prompt))
        result = await model.generate(messages, CallOptions())
        content = result.message.content
        nxt = parse_next(content if isinstance(content, str) else "")
        logger.debug("Supervisor routed to %s", nxt)
        return {"messages": [result.message], "next": nxt}

    def route(state: SupervisorState) -> str:
        nxt = state.get("next") or []
        if not nxt or FINISH in nxt:
            return END
        return "dispatch"

    def dispatch(state: SupervisorState) -> list[Send]:
        selected = [n for n in state.get("next") or [] if n in by_name]
        if ignored := [n for n in state.get("next") or [] if n not in by_name]:
            logger.warning("Supervisor ignoring unknown workers %s", ignored)
        return [Send(_worker_node(n), {}) for n in dict.fromkeys(selected)]

    builder = StateGraph(SupervisorState)
    builder.add_node("router", router)
    builder.add_node(
        "dispatch", dispatch, destinations=[_worker_node(w.name) for w in workers]
    )
    for worker in workers:
        node = _worker_node(worker.name)
        # the worker returns its full message list, merged back by message id
        builder.add_node(
            node,
            subgraph_node(worker.agent, name=node, output_keys=("messages",)),
        )
    builder.set_entry_point("router")
    builder.add_conditional_edges("router", route, ["dispatch", END])
    builder.add_edge("dispatch", "router")

    return builder.compile(checkpointer=checkpointer, name=name or "supervisor")
