from relaygraph.channels.base import BaseChannel
from relaygraph.channels.binop import BinaryOperatorAggregate
from relaygraph.channels.ephemeral_value import EphemeralValue
from relaygraph.channels.last_value import LastValue
from relaygraph.channels.topic import AppendChannel, Topic

__all__ = (
    # base
    "BaseChannel",
    # value types
    "LastValue",
    "Topic",
    "AppendChannel",
    "BinaryOperatorAggregate",
    "EphemeralValue",
)
