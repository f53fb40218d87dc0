from typing import Annotated, Union
from uuid import uuid4

from langchain_core.messages import (
    AnyMessage,
    BaseMessage,
    BaseMessageChunk,
    MessageLikeRepresentation,
    RemoveMessage,
    convert_to_messages,
    message_chunk_to_message,
)
from typing_extensions import TypedDict

__all__ = ("Messages", "add_messages", "MessagesState")

Messages = Union[list[MessageLikeRepresentation], MessageLikeRepresentation]


def _coerce(messages: Messages) -> list[BaseMessage]:
    if not isinstance(messages, list):
        messages = [messages]
    coerced = []
    for message in convert_to_messages(messages):
        if isinstance(message, BaseMessageChunk):
            message = message_chunk_to_message(message)
        if message.id is None:
            message.id = str(uuid4())
        coerced.append(message)
    return coerced


def add_messages(left: Messages, right: Messages) -> Messages:
    """Reducer for message lists: appends new messages and replaces existing
    ones that share an id.

    Both sides accept anything `convert_to_messages` does (messages, role and
    content tuples, dicts) as a list or a single item. Messages without an id
    get a fresh one. A `RemoveMessage` deletes the message with its id, and
    raises `ValueError` when no such message exists.

    Example:
        ```pycon
        >>> from langchain_core.messages import AIMessage, HumanMessage
        >>> add_messages([HumanMessage("Hello", id="1")], AIMessage("Hi!", id="2"))
        [HumanMessage(content='Hello', id='1'), AIMessage(content='Hi!', id='2')]
        >>> add_messages([HumanMessage("Hello", id="1")], HumanMessage("Hey", id="1"))
        [HumanMessage(content='Hey', id='1')]
        ```
    """
    merged = _coerce(left)
    position = {m.id: i for i, m in enumerate(merged)}
    removed: set[str] = set()
    for message in _coerce(right):
        index = position.get(message.id)
        if isinstance(message, RemoveMessage):
            if index is None:
                raise ValueError(
                    f"Attempting to delete a message with an ID that doesn't exist ('{message.id}')"
                )
            removed.add(message.id)  # type: ignore[arg-type]
        elif index is None:
            position[message.id] = len(merged)
            merged.append(message)
        else:
            removed.discard(message.id)  # type: ignore[arg-type]
            merged[index] = message
    return [m for m in merged if m.id not in removed]


class MessagesState(TypedDict):
    messages: Annotated[list[AnyMessage], add_messages]
