"""Protocols for the services nodes talk to: chat models, tools, retrieval,
tracing and routing expressions. Providers implement them outside the engine."""

from relaygraph.interfaces.expressions import (
    ExpressionError,
    ExpressionEvaluator,
    expression_router,
)
from relaygraph.interfaces.llm import (
    ApiRequestError,
    AuthError,
    CallOptions,
    ChatModel,
    ChatResult,
    InvalidResponseError,
    LLMError,
    MissingCredentialError,
    RateLimitedError,
)
from relaygraph.interfaces.retrieval import (
    Embeddings,
    InMemoryVectorStore,
    SearchResult,
    VectorStore,
    cosine_similarity,
)
from relaygraph.interfaces.tools import (
    InvalidToolInputError,
    Tool,
    ToolDefinition,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
)
from relaygraph.interfaces.tracing import Run, TraceSink, TraceSinkHandler

__all__ = (
    # llm
    "ChatModel",
    "CallOptions",
    "ChatResult",
    "LLMError",
    "ApiRequestError",
    "InvalidResponseError",
    "AuthError",
    "RateLimitedError",
    "MissingCredentialError",
    # tools
    "Tool",
    "ToolDefinition",
    "ToolError",
    "ToolNotFoundError",
    "InvalidToolInputError",
    "ToolExecutionError",
    # retrieval
    "Embeddings",
    "VectorStore",
    "SearchResult",
    "InMemoryVectorStore",
    "cosine_similarity",
    # tracing
    "Run",
    "TraceSink",
    "TraceSinkHandler",
    # expressions
    "ExpressionEvaluator",
    "ExpressionError",
    "expression_router",
)
