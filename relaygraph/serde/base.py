from __future__ import annotations

from typing import Any, Protocol


class SerializerProtocol(Protocol):
    """Encodes channel values and checkpoint metadata for a store.

    `loads(dumps(value))` must give back an equal value for everything a
    channel can hold: JSON values, langchain-core messages and the directive
    types.
    """

    def dumps(self, obj: Any) -> bytes: ...

    def loads(self, data: bytes) -> Any: ...
