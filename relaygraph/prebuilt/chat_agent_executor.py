from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Optional, Union

from langchain_core.messages import AnyMessage, SystemMessage
from langchain_core.runnables import RunnableConfig

from relaygraph.checkpoint.base import BaseCheckpointStore
from relaygraph.graph.message import MessagesState
from relaygraph.graph.state import CompiledStateGraph, StateGraph
from relaygraph.interfaces.llm import CallOptions, ChatModel
from relaygraph.interfaces.tools import Tool
from relaygraph.prebuilt.tool_node import ToolNode, tools_condition

__all__ = ("create_react_agent",)


def create_react_agent(
    model: ChatModel,
    tools: Union[Sequence[Tool], ToolNode],
    *,
    prompt: Optional[str] = None,
    checkpointer: Optional[BaseCheckpointStore] = None,
    interrupt_before: Optional[list[str]] = None,
    interrupt_after: Optional[list[str]] = None,
    name: Optional[str] = None,
) -> CompiledStateGraph:
    """Creates an agent graph that calls tools in a loop until a stopping condition is met.

    The `agent` node calls the model with the message history and the tool
    definitions. While the model answers with tool calls, the `tools` node
    runs them and hands the results back to the model; the first answer
    without tool calls ends the run.

    Args:
        model: The chat model for the agent.
        tools: The tools the model can call, or a ready `ToolNode`.
        prompt: Optional system prompt, prepended to the messages on every
            model call. It is not stored in the state.
        checkpointer: Optional checkpoint store, to persist the conversation
            per `thread_id`.
        interrupt_before: Nodes to stop before, `"agent"` or `"tools"`.
            Useful to confirm tool calls before they run.
        interrupt_after: Nodes to stop after.
        name: Name of the compiled graph.

    Returns:
        A compiled graph over `MessagesState`.

    Example:
        ```python
        from langchain_core.messages import HumanMessage

        graph = create_react_agent(model, [search_tool])
        result = await graph.ainvoke({"messages": [HumanMessage("hi!")]})
        result.state["messages"][-1].content
        ```
    """
    tool_node = tools if isinstance(tools, ToolNode) else ToolNode(tools)
    options = CallOptions(tools=tool_node.definitions)

    async def call_model(state: dict[str, Any], config: RunnableConfig) -> dict[str, Any]:
        messages: list[AnyMessage] = list(state["messages"])
        if prompt is not None:
            messages = [SystemMessage(content=prompt), *messages]
        result = await model.generate(messages, options)
        return {"messages": [result.message]}

    workflow = StateGraph(MessagesState)
    workflow.add_node("agent", call_model)
    workflow.add_node("tools", tool_node)
    workflow.set_entry_point("agent")
    workflow.add_conditional_edges("agent", tools_condition)
    workflow.add_edge("tools", "agent")

    return workflow.compile(
        checkpointer=checkpointer,
        interrupt_before=interrupt_before,
        interrupt_after=interrupt_after,
        name=name or "agent",
    )

