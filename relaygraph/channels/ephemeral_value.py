from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from relaygraph._internal._typing import MISSING
from relaygraph.channels.base import Value
from relaygraph.channels.last_value import LastValue

__all__ = ("EphemeralValue",)


class EphemeralValue(LastValue[Value]):
    """Holds a value for the rest of the step it was written in.

    Nodes of that step's successors are resolved with the value visible,
    then it is cleared. It is never checkpointed.
    """

    __slots__ = ()

    def __init__(self, typ: Any = Any, key: str = "") -> None:
        super().__init__(typ, key)

    def __eq__(self, value: object) -> bool:
        return isinstance(value, EphemeralValue)

    @property
    def checkpointed(self) -> bool:
        return False

    def from_checkpoint(self, checkpoint: Value | Any) -> EphemeralValue[Value]:
        return self.__class__(self.typ, self.key)

    def copy(self) -> EphemeralValue[Value]:
        copied = self.__class__(self.typ, self.key)
        copied.value = self.value
        return copied

    def update(self, values: Sequence[Value]) -> bool:
        if not values:
            return False
        self.value = values[-1]
        return True

    def consume(self) -> bool:
        if self.value is MISSING:
            return False
        self.value = MISSING
        return True

    def checkpoint(self) -> Any:
        return MISSING
