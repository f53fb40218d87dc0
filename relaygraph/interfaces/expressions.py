from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Callable, Protocol, runtime_checkable

__all__ = ("ExpressionEvaluator", "ExpressionError", "expression_router")

DEFAULT_EXPRESSION = "default"


@runtime_checkable
class ExpressionEvaluator(Protocol):
    """Evaluates a boolean expression against the graph state.

    The state is exposed to the expression as `state`, e.g.
    `state.score > 50`. Implementations run expressions in a sandbox and
    raise `ExpressionError` for expressions that fail or don't produce a
    bool.
    """

    def evaluate(self, expression: str, state: Mapping[str, Any]) -> bool: ...


class ExpressionError(Exception):
    def __init__(self, expression: str, detail: str) -> None:
        self.expression = expression
        self.detail = detail
        super().__init__(f"Failed to evaluate '{expression}': {detail}")


def expression_router(
    evaluator: ExpressionEvaluator,
    cases: Sequence[tuple[str, str]],
    default: str,
) -> Callable[[Mapping[str, Any]], str]:
    """Build a router that returns the target of the first matching case.

    Args:
        evaluator: Evaluates the case expressions.
        cases: `(expression, target)` pairs, tried in order. The expression
            `"default"` always matches.
        default: Target returned when no case matches.

    Example:
        >>> router = expression_router(
        ...     evaluator, [("state.score > 50", "pass")], default="fail"
        ... )
        >>> builder.add_conditional_edges("grade", router, ["pass", "fail"])
    """

    def route(state: Mapping[str, Any]) -> str:
        for expression, target in cases:
            if expression == DEFAULT_EXPRESSION:
                return target
            result = evaluator.evaluate(expression, state)
            if not isinstance(result, bool):
                raise ExpressionError(
                    expression, f"expected a bool, got {type(result).__name__}"
                )
            if result:
                return target
        return default

    route.__name__ = "expression_router"
    return route
