"""Normalization of node return values into the typed directive union.

Nodes may return typed objects (`Command`, `Interrupt`, `Send`) or the raw
reserved-key envelopes used on the wire:

    {"__interrupt__": {"value": ...}}
    {"__command__": {"update": {...}, "goto": "node" | ["node", ...]}}
    {"__send__": [{"node": ..., "input": {...}}, ...], **patch}
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

from relaygraph.constants import COMMAND, DIRECTIVE_KEYS, INTERRUPT, SEND
from relaygraph.errors import (
    ErrorCode,
    InvalidDirectiveError,
    InvalidUpdateError,
    create_error_message,
)
from relaygraph.types import (
    Command,
    Complete,
    Dispatch,
    Interrupt,
    Interrupted,
    NodeOutput,
    Patch,
    Send,
)

__all__ = ("parse_output", "to_wire", "from_wire")


def parse_output(node: str, output: Any) -> NodeOutput:
    """Convert whatever a node returned into a `NodeOutput`."""
    if output is None:
        return Patch({})
    if isinstance(output, (Patch, Interrupt, Command, Dispatch)):
        return output
    if isinstance(output, Send):
        return Dispatch(sends=(output,))
    if isinstance(output, Complete):
        # nested graph finished
        return Patch(dict(output.state))
    if isinstance(output, Interrupted):
        # nested graph suspended, surface its interrupt from this node
        return Interrupt(output.interrupt_value)
    if isinstance(output, (list, tuple)):
        if all(isinstance(s, Send) for s in output):
            return Dispatch(sends=tuple(output))
        raise InvalidUpdateError(
            create_error_message(
                message=f"Node '{node}' returned a sequence that isn't a list of Send: {output!r}",
                error_code=ErrorCode.INVALID_GRAPH_NODE_RETURN_VALUE,
            )
        )
    if isinstance(output, BaseModel):
        return Patch(
            {k: getattr(output, k) for k in output.model_fields_set}
            if output.model_fields_set
            else output.model_dump()
        )
    if dataclasses.is_dataclass(output) and not isinstance(output, type):
        return Patch(
            {f.name: getattr(output, f.name) for f in dataclasses.fields(output)}
        )
    if isinstance(output, Mapping):
        return _parse_mapping(node, output)
    raise InvalidUpdateError(
        create_error_message(
            message=f"Expected dict, got {output!r} from node '{node}'",
            error_code=ErrorCode.INVALID_GRAPH_NODE_RETURN_VALUE,
        )
    )


def _parse_mapping(node: str, output: Mapping[str, Any]) -> NodeOutput:
    reserved = [k for k in output if k in DIRECTIVE_KEYS]
    if not reserved:
        return Patch(dict(output))
    if len(reserved) > 1:
        raise _invalid(node, f"more than one directive key {sorted(reserved)}")
    key = reserved[0]
    rest = {k: v for k, v in output.items() if k != key}
    if key == SEND:
        return Dispatch(sends=_parse_sends(node, output[SEND]), update=rest)
    if rest:
        raise _invalid(
            node, f"'{key}' must be the only key, also got {sorted(rest)}"
        )
    if key == INTERRUPT:
        payload = output[INTERRUPT]
        if isinstance(payload, Mapping) and "value" in payload:
            return Interrupt(payload["value"])
        return Interrupt(payload)
    return _parse_command(node, output[COMMAND])


def _parse_command(node: str, payload: Any) -> Command:
    if isinstance(payload, Command):
        return payload
    if not isinstance(payload, Mapping):
        raise _invalid(node, f"'{COMMAND}' payload must be a mapping, got {payload!r}")
    if "goto" not in payload:
        raise _invalid(node, f"'{COMMAND}' payload is missing 'goto'")
    goto = payload["goto"]
    if isinstance(goto, str):
        goto_nodes: tuple[str, ...] = (goto,)
    elif isinstance(goto, Sequence) and all(isinstance(g, str) for g in goto):
        goto_nodes = tuple(goto)
    else:
        raise _invalid(node, f"'goto' must be a node name or list of names, got {goto!r}")
    update = payload.get("update")
    if update is not None and not isinstance(update, Mapping):
        raise _invalid(node, f"'update' must be a mapping, got {update!r}")
    return Command(update=dict(update) if update else None, goto=goto_nodes)


def _parse_sends(node: str, payload: Any) -> tuple[Send, ...]:
    if isinstance(payload, Send):
        return (payload,)
    if not isinstance(payload, (list, tuple)):
        raise _invalid(node, f"'{SEND}' payload must be a list, got {payload!r}")
    sends: list[Send] = []
    for item in payload:
        if isinstance(item, Send):
            sends.append(item)
        elif isinstance(item, Mapping) and isinstance(item.get("node"), str):
            sends.append(Send(item["node"], item.get("input", {})))
        else:
            raise _invalid(node, f"invalid send entry {item!r}")
    return tuple(sends)


def _invalid(node: str, message: str) -> InvalidDirectiveError:
    return InvalidDirectiveError(
        create_error_message(
            message=f"Invalid directive from node '{node}': {message}",
            error_code=ErrorCode.INVALID_DIRECTIVE,
        )
    )


def to_wire(output: NodeOutput) -> dict[str, Any]:
    """Render a `NodeOutput` in the reserved-key wire format."""
    if isinstance(output, Patch):
        return dict(output.values)
    if isinstance(output, Interrupt):
        return {INTERRUPT: {"value": output.value}}
    if isinstance(output, Command):
        goto = output.goto_nodes()
        return {
            COMMAND: {
                "update": dict(output.update or {}),
                "goto": goto[0] if len(goto) == 1 else list(goto),
            }
        }
    return {
        **output.update,
        SEND: [{"node": s.node, "input": s.arg} for s in output.sends],
    }


def from_wire(data: Mapping[str, Any]) -> NodeOutput:
    """Parse a reserved-key wire envelope back into a `NodeOutput`."""
    return _parse_mapping("<wire>", data)
