from relaygraph.constants import END, START
from relaygraph.graph.message import MessagesState, add_messages
from relaygraph.graph.state import CompiledStateGraph, StateGraph
from relaygraph.graph.subgraph import subgraph_node

__all__ = (
    "END",
    "START",
    "StateGraph",
    "CompiledStateGraph",
    "add_messages",
    "MessagesState",
    "subgraph_node",
)
