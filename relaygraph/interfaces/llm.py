from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from langchain_core.messages import AIMessage, AnyMessage
from langchain_core.messages.ai import UsageMetadata

from relaygraph.interfaces.tools import ToolDefinition

__all__ = (
    "CallOptions",
    "ChatResult",
    "ChatModel",
    "LLMError",
    "ApiRequestError",
    "InvalidResponseError",
    "AuthError",
    "RateLimitedError",
    "MissingCredentialError",
)


@dataclass
class CallOptions:
    """Per-call generation options."""

    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    tools: list[ToolDefinition] = field(default_factory=list)
    stop: list[str] = field(default_factory=list)


@dataclass
class ChatResult:
    message: AIMessage
    usage: Optional[UsageMetadata] = None


@runtime_checkable
class ChatModel(Protocol):
    """A chat model provider.

    Implementations translate `langchain_core` messages to the provider's
    wire format and back, and raise the errors below for failed calls.
    """

    model_name: str

    async def generate(
        self, messages: Sequence[AnyMessage], options: CallOptions
    ) -> ChatResult: ...


class LLMError(Exception):
    """Base class for chat model failures."""

    pass


class ApiRequestError(LLMError):
    """The provider API request failed."""

    pass


class InvalidResponseError(LLMError):
    """The provider answered with something that couldn't be parsed."""

    pass


class AuthError(LLMError):
    """The provider rejected the credentials."""

    pass


class RateLimitedError(LLMError):
    """The provider is rate limiting requests."""

    def __init__(self, retry_after: Optional[float] = None, *args: Any) -> None:
        self.retry_after = retry_after
        super().__init__(
            f"Rate limited: retry after {retry_after}s"
            if retry_after is not None
            else "Rate limited",
            *args,
        )


class MissingCredentialError(LLMError):
    """No credential is configured for a referenced provider."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Missing API key for {provider}")
