from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Callable, Literal, Union

from langchain_core.messages import AIMessage, AnyMessage, ToolCall, ToolMessage
from langchain_core.runnables import RunnableConfig

from relaygraph._internal._runnable import RunnableCallable
from relaygraph.constants import END
from relaygraph.interfaces.tools import Tool, ToolDefinition, ToolNotFoundError

__all__ = ("ToolNode", "tools_condition")

logger = logging.getLogger(__name__)

INVALID_TOOL_NAME_ERROR_TEMPLATE = (
    "Error: {requested_tool} is not a valid tool, try one of [{available_tools}]."
)
TOOL_CALL_ERROR_TEMPLATE = "Error: {error}\n Please fix your mistakes."


def _default_handle_tool_errors(e: Exception) -> str:
    return TOOL_CALL_ERROR_TEMPLATE.format(error=repr(e))


class ToolNode(RunnableCallable):
    """A node that runs the tool calls of the last AI message.

    All the tool calls of the message run concurrently. The result is one
    `ToolMessage` per call, in the order of the calls, appended to the
    `messages` state key.

    A call to an unknown tool, or a tool that raises, produces a tool message
    with the error text instead of failing the run, so the model can correct
    itself on the next turn. Pass `handle_tool_errors=False` to propagate tool
    errors instead.

    Args:
        tools: The tools the node can call.
        name: Node name, used for tracing.
        handle_tool_errors: `True` for the default error message, a string to
            use as the message, a callable to build it from the exception,
            or `False` to raise.
        messages_key: State key containing messages.
    """

    def __init__(
        self,
        tools: Sequence[Tool],
        *,
        name: str = "tools",
        handle_tool_errors: Union[bool, str, Callable[[Exception], str]] = True,
        messages_key: str = "messages",
    ) -> None:
        super().__init__(None, self._afunc, name=name, trace=False)
        self.tools_by_name: dict[str, Tool] = {}
        for tool in tools:
            self.tools_by_name[tool.definition().name] = tool
        self.handle_tool_errors = handle_tool_errors
        self.messages_key = messages_key

    @property
    def definitions(self) -> list[ToolDefinition]:
        return [tool.definition() for tool in self.tools_by_name.values()]

    async def _afunc(
        self, input: Union[list[AnyMessage], dict[str, Any]], config: RunnableConfig
    ) -> Any:
        tool_calls, input_type = self._parse_input(input)
        outputs = await asyncio.gather(*(self._arun_one(call) for call in tool_calls))
        return list(outputs) if input_type == "list" else {self.messages_key: list(outputs)}

    async def _arun_one(self, call: ToolCall) -> ToolMessage:
        tool = self.tools_by_name.get(call["name"])
        try:
            if tool is None:
                raise ToolNotFoundError(call["name"])
            content = await tool.call(call["args"])
        except Exception as e:
            if self.handle_tool_errors is False:
                raise
            logger.debug("Tool call %s failed", call["name"], exc_info=e)
            return ToolMessage(
                content=self._error_content(e),
                name=call["name"],
                tool_call_id=call["id"],
                status="error",
            )
        return ToolMessage(content=content, name=call["name"], tool_call_id=call["id"])

    def _error_content(self, e: Exception) -> str:
        if isinstance(e, ToolNotFoundError):
            return INVALID_TOOL_NAME_ERROR_TEMPLATE.format(
                requested_tool=e.name,
                available_tools=", ".join(self.tools_by_name),
            )
        if isinstance(self.handle_tool_errors, str):
            return self.handle_tool_errors
        if callable(self.handle_tool_errors):
            return self.handle_tool_errors(e)
        return _default_handle_tool_errors(e)

    def _parse_input(
        self, input: Union[list[AnyMessage], dict[str, Any]]
    ) -> tuple[list[ToolCall], Literal["list", "dict"]]:
        input_type: Literal["list", "dict"] = "list" if isinstance(input, list) else "dict"
        messages = input if input_type == "list" else input.get(self.messages_key, [])
        for message in reversed(messages):
            if isinstance(message, AIMessage):
                return list(message.tool_calls), input_type
        raise ValueError("No AIMessage found in input")


def tools_condition(
    state: Union[list[AnyMessage], dict[str, Any]],
    messages_key: str = "messages",
) -> Literal["tools", "__end__"]:
    """Router for agent loops: `"tools"` while the last message asks for tool
    calls, `END` once it doesn't.

    ```python
    builder.add_conditional_edges("agent", tools_condition)
    ```
    """
    messages = state if isinstance(state, list) else state.get(messages_key, [])
    if not messages:
        raise ValueError(f"No messages found in state: {state}")
    return "tools" if getattr(messages[-1], "tool_calls", None) else END
