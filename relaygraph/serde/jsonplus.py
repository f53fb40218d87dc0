from __future__ import annotations

import dataclasses
import importlib
import json
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from langchain_core.load.load import Reviver
from langchain_core.load.serializable import Serializable

from relaygraph.constants import COMMAND, INTERRUPT, SEND
from relaygraph.serde.base import SerializerProtocol
from relaygraph.types import Command, Interrupt, Send

__all__ = ("JsonPlusSerializer",)

LC_REVIVER = Reviver()


def _constructor(
    cls: type[Any],
    *args: Any,
    method: Optional[str] = None,
    kwargs: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """lc-2 envelope that revives as `cls(*args, **kwargs)`, or
    `cls.method(...)` when a method is given."""
    return {
        "lc": 2,
        "type": "constructor",
        "id": [*cls.__module__.split("."), cls.__name__],
        "method": method,
        "args": list(args),
        "kwargs": kwargs or {},
    }


def _tag_tuples(obj: Any) -> Any:
    """Wrap plain tuples in constructor envelopes, json would write them as
    arrays. Named tuples are left as arrays."""
    if isinstance(obj, tuple) and not hasattr(obj, "_fields"):
        return _constructor(tuple, [_tag_tuples(v) for v in obj])
    if isinstance(obj, list):
        return [_tag_tuples(v) for v in obj]
    if isinstance(obj, dict):
        return {k: _tag_tuples(v) for k, v in obj.items()}
    return obj


class JsonPlusSerializer(SerializerProtocol):
    """JSON serializer for channel values and checkpoint metadata.

    Besides plain JSON it round-trips langchain-core messages and other
    `Serializable` objects, pydantic models, dataclasses, enums, UUIDs,
    sets, tuples and date/time values. Directives are written in their
    reserved-key wire form (`__send__`, `__command__`, `__interrupt__`) so
    stored checkpoints stay readable by other clients of the wire format.
    """

    def _default(self, obj: Any) -> Any:
        return _tag_tuples(self._encode(obj))

    def _encode(self, obj: Any) -> Any:
        if isinstance(obj, Serializable):
            return obj.to_json()
        if isinstance(obj, Send):
            return {SEND: [{"node": obj.node, "input": obj.arg}]}
        if isinstance(obj, Command):
            return {COMMAND: {"update": obj.update, "goto": list(obj.goto_nodes())}}
        if isinstance(obj, Interrupt):
            return {INTERRUPT: {"value": obj.value, "id": obj.id}}
        if callable(getattr(obj, "model_dump", None)):
            return _constructor(type(obj), kwargs=obj.model_dump())
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return _constructor(
                type(obj),
                kwargs={f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)},
            )
        if isinstance(obj, UUID):
            return _constructor(UUID, obj.hex)
        if isinstance(obj, (set, frozenset)):
            return _constructor(type(obj), list(obj))
        if isinstance(obj, (datetime, date)):
            return _constructor(type(obj), obj.isoformat(), method="fromisoformat")
        if isinstance(obj, timedelta):
            return _constructor(timedelta, obj.days, obj.seconds, obj.microseconds)
        if isinstance(obj, timezone):
            return _constructor(timezone, *obj.__getinitargs__())  # type: ignore[attr-defined]
        if isinstance(obj, Enum):
            return _constructor(type(obj), obj.value)
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")

    def _revive_directive(self, value: dict[str, Any]) -> Any:
        if isinstance(packets := value.get(SEND), list) and len(packets) == 1:
            packet = packets[0]
            if isinstance(packet, dict) and set(packet) == {"node", "input"}:
                return Send(packet["node"], packet["input"])
        if isinstance(command := value.get(COMMAND), dict):
            return Command(
                update=command.get("update"), goto=tuple(command.get("goto", ()))
            )
        if isinstance(interrupt := value.get(INTERRUPT), dict) and "id" in interrupt:
            return Interrupt(value=interrupt.get("value"), id=interrupt["id"])
        return None

    def _reviver(self, value: dict[str, Any]) -> Any:
        if len(value) == 1 and (
            directive := self._revive_directive(value)
        ) is not None:
            return directive
        if (
            value.get("lc") == 2
            and value.get("type") == "constructor"
            and value.get("id") is not None
        ):
            *module, name = value["id"]
            cls = getattr(importlib.import_module(".".join(module)), name)
            factory = getattr(cls, value["method"]) if value.get("method") else cls
            return factory(*value.get("args", ()), **value.get("kwargs", {}))
        return LC_REVIVER(value)

    def dumps(self, obj: Any) -> bytes:
        return json.dumps(
            _tag_tuples(obj), default=self._default, sort_keys=True
        ).encode()

    def loads(self, data: bytes) -> Any:
        return json.loads(data, object_hook=self._reviver)
