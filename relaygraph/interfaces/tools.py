from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

__all__ = (
    "ToolDefinition",
    "Tool",
    "ToolError",
    "ToolNotFoundError",
    "InvalidToolInputError",
    "ToolExecutionError",
)


@dataclass
class ToolDefinition:
    """Metadata a chat model needs to call a tool."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)
    """JSON Schema of the tool's arguments."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


@runtime_checkable
class Tool(Protocol):
    """A callable tool. Takes JSON arguments, returns text."""

    def definition(self) -> ToolDefinition: ...

    async def call(self, input: dict[str, Any]) -> str: ...


class ToolError(Exception):
    """Base class for tool failures."""

    pass


class ToolNotFoundError(ToolError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool not found: {name}")


class InvalidToolInputError(ToolError):
    """The arguments don't match what the tool accepts."""

    pass


class ToolExecutionError(ToolError):
    """The tool ran and failed."""

    pass
