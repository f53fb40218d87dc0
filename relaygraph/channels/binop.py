from __future__ import annotations

import collections.abc
from collections.abc import Callable, Sequence
from typing import Any, Generic

from typing_extensions import NotRequired, Required, Self

from relaygraph._internal._typing import MISSING
from relaygraph.channels.base import BaseChannel, Value
from relaygraph.errors import EmptyChannelError, InvalidUpdateError

__all__ = ("BinaryOperatorAggregate",)

# abstract collection types map to the concrete type used for the empty value
_CONCRETE = {
    collections.abc.Sequence: list,
    collections.abc.MutableSequence: list,
    collections.abc.Set: set,
    collections.abc.MutableSet: set,
    collections.abc.Mapping: dict,
    collections.abc.MutableMapping: dict,
}


def _empty_value(typ: Any) -> Any:
    """`typ()` for the bare type behind `typ`, or `MISSING` if that fails."""
    while (origin := getattr(typ, "__origin__", None)) is not None:
        typ = typ.__args__[0] if origin in (Required, NotRequired) else origin
    typ = _CONCRETE.get(typ, typ)
    try:
        return typ()
    except Exception:
        return MISSING


class BinaryOperatorAggregate(Generic[Value], BaseChannel[Value, Value, Value]):
    """Folds every write into the current value with a reducer.

    ```python
    import operator

    total = BinaryOperatorAggregate(int, operator.add)
    ```

    The channel starts from `default`, or from the empty value of `typ`
    (`0` for `int`, `[]` for a list). Writes of one step are folded in
    node-name order. A reducer that raises `TypeError` or `ValueError`
    fails the step with `InvalidUpdateError`.
    """

    __slots__ = ("value", "operator", "default")

    def __init__(
        self,
        typ: type[Value],
        operator: Callable[[Value, Value], Value],
        *,
        default: Any = MISSING,
    ):
        super().__init__(typ)
        self.operator = operator
        self.default = default
        self.value = default if default is not MISSING else _empty_value(typ)

    def __eq__(self, value: object) -> bool:
        if not isinstance(value, BinaryOperatorAggregate):
            return False
        # a lambda reducer matches any reducer
        if "<lambda>" in (
            getattr(value.operator, "__name__", None),
            getattr(self.operator, "__name__", None),
        ):
            return True
        return value.operator is self.operator

    def from_checkpoint(self, checkpoint: Value | Any) -> Self:
        restored = self.__class__(self.typ, self.operator, default=self.default)
        restored.key = self.key
        if checkpoint is not MISSING:
            restored.value = checkpoint
        return restored

    def update(self, values: Sequence[Value]) -> bool:
        if not values:
            return False
        for value in values:
            if self.value is MISSING:
                self.value = value
                continue
            try:
                self.value = self.operator(self.value, value)
            except (TypeError, ValueError) as exc:
                raise InvalidUpdateError(
                    f"At key '{self.key}': reducer rejected update {value!r}: {exc}"
                ) from exc
        return True

    def get(self) -> Value:
        if self.value is MISSING:
            raise EmptyChannelError(self.key)
        return self.value
