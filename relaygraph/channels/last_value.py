from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Generic

from typing_extensions import Self

from relaygraph._internal._typing import MISSING
from relaygraph.channels.base import BaseChannel, Value
from relaygraph.errors import EmptyChannelError

__all__ = ("LastValue",)


class LastValue(Generic[Value], BaseChannel[Value, Value, Value]):
    """Holds the most recent write. The default channel of a state field.

    When several nodes write in the same step, the one last in node-name
    order wins.

    Args:
        typ: The type of the value.
        default: Value held until the first write.
    """

    __slots__ = ("value", "default")

    value: Value | Any

    def __init__(self, typ: Any = Any, key: str = "", default: Any = MISSING) -> None:
        super().__init__(typ, key)
        self.default = default
        self.value = default

    def __eq__(self, value: object) -> bool:
        return isinstance(value, LastValue)

    def from_checkpoint(self, checkpoint: Value | Any) -> Self:
        restored = self.__class__(self.typ, self.key, self.default)
        if checkpoint is not MISSING:
            restored.value = checkpoint
        return restored

    def update(self, values: Sequence[Value]) -> bool:
        if not values:
            return False
        self.value = values[-1]
        return True

    def get(self) -> Value:
        if self.value is MISSING:
            raise EmptyChannelError(self.key)
        return self.value
