from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Any, Generic, Union

from typing_extensions import Self

from relaygraph._internal._typing import MISSING
from relaygraph.channels.base import BaseChannel, Value
from relaygraph.errors import EmptyChannelError

__all__ = ("Topic", "AppendChannel")


def _flatten(writes: Sequence[Value | list[Value]]) -> Iterator[Value]:
    for write in writes:
        if isinstance(write, list):
            yield from write
        else:
            yield write


class Topic(
    Generic[Value],
    BaseChannel[Sequence[Value], Union[Value, list[Value]], list[Value]],
):
    """Collects the items written to it as a list.

    A write may be one item or a list of items, lists are flattened. Items
    from one step keep node-name order.

    Args:
        typ: The type of the items.
        accumulate: Keep items across steps. When False the list only holds
            the items of the previous step, and the channel is empty after a
            step without writes.
    """

    __slots__ = ("values", "accumulate")

    def __init__(self, typ: type[Value] = Any, accumulate: bool = False) -> None:  # type: ignore[assignment]
        super().__init__(typ)
        self.accumulate = accumulate
        self.values: list[Value] = []

    def __eq__(self, value: object) -> bool:
        return isinstance(value, Topic) and value.accumulate == self.accumulate

    @property
    def ValueType(self) -> Any:
        return Sequence[self.typ]  # type: ignore[name-defined]

    @property
    def UpdateType(self) -> Any:
        return Union[self.typ, list[self.typ]]  # type: ignore[name-defined]

    def checkpoint(self) -> list[Value]:
        return list(self.values)

    def from_checkpoint(self, checkpoint: list[Value] | Any) -> Self:
        restored = self.__class__(self.typ, self.accumulate)
        restored.key = self.key
        if checkpoint is not MISSING:
            restored.values = list(checkpoint)
        return restored

    def update(self, values: Sequence[Value | list[Value]]) -> bool:
        changed = False
        if not self.accumulate and self.values:
            self.values = []
            changed = True
        items = list(_flatten(values))
        self.values.extend(items)
        return changed or bool(items)

    def get(self) -> Sequence[Value]:
        if not self.is_available():
            raise EmptyChannelError(self.key)
        return list(self.values)

    def is_available(self) -> bool:
        return self.accumulate or bool(self.values)


class AppendChannel(Topic[Value]):
    """Append-only list that keeps every item ever written. Starts out as an
    empty list rather than empty."""

    __slots__ = ()

    def __init__(self, typ: type[Value] = Any, accumulate: bool = True) -> None:  # type: ignore[assignment]
        super().__init__(typ, accumulate=True)
