"""Prebuilt agent graphs and nodes."""

from relaygraph.prebuilt.chat_agent_executor import create_react_agent
from relaygraph.prebuilt.map_reduce import create_map_reduce_graph
from relaygraph.prebuilt.supervisor import Worker, create_supervisor_agent
from relaygraph.prebuilt.tool_node import ToolNode, tools_condition

__all__ = [
    "create_react_agent",
    "create_map_reduce_graph",
    "create_supervisor_agent",
    "Worker",
    "ToolNode",
    "tools_condition",
]
