import operator
from collections.abc import Sequence

import pytest

from relaygraph._internal._typing import MISSING
from relaygraph.channels.base import (
    BaseChannel,
    checkpoint_channels,
    consume_channels,
    copy_channels,
    create_channels,
    read_channels,
)
from relaygraph.channels.binop import BinaryOperatorAggregate
from relaygraph.channels.ephemeral_value import EphemeralValue
from relaygraph.channels.last_value import LastValue
from relaygraph.channels.topic import AppendChannel, Topic
from relaygraph.errors import EmptyChannelError, InvalidUpdateError
from relaygraph.serde.jsonplus import JsonPlusSerializer

pytestmark = pytest.mark.anyio


def test_last_value() -> None:
    channel = LastValue(int).from_checkpoint(MISSING)
    assert channel.ValueType is int
    assert channel.UpdateType is int

    with pytest.raises(EmptyChannelError):
        channel.get()
    assert not channel.is_available()
    assert channel.checkpoint() is MISSING

    # several writes in one step, last one wins
    assert channel.update([5, 6])
    assert channel.get() == 6
    assert not channel.update([])
    assert channel.get() == 6
    checkpoint = channel.checkpoint()
    channel = LastValue(int).from_checkpoint(checkpoint)
    assert channel.get() == 6


def test_last_value_default() -> None:
    channel = LastValue(str, "name", default="anon")
    assert channel.get() == "anon"
    restored = channel.from_checkpoint(MISSING)
    assert restored.get() == "anon"
    restored.update(["bob"])
    assert restored.get() == "bob"
    assert channel.get() == "anon"


def test_topic() -> None:
    channel = Topic(str).from_checkpoint(MISSING)
    assert channel.ValueType == Sequence[str]

    assert channel.update(["a", "b"])
    assert channel.get() == ["a", "b"]
    assert channel.update([["c", "d"], "d"])
    assert channel.get() == ["c", "d", "d"]
    # not accumulating, emptied by a step without writes
    assert channel.update([])
    with pytest.raises(EmptyChannelError):
        channel.get()
    assert not channel.update([])
    assert channel.update(["e"])
    assert channel.get() == ["e"]
    checkpoint = channel.checkpoint()
    channel = Topic(str).from_checkpoint(checkpoint)
    assert channel.get() == ["e"]


def test_append_channel() -> None:
    channel = AppendChannel(str).from_checkpoint(MISSING)
    # always available, starts empty
    assert channel.get() == []
    assert channel.update(["t1", ["t2", "t3"]])
    assert not channel.update([])
    assert channel.get() == ["t1", "t2", "t3"]
    channel.update(["t4"])
    assert channel.get() == ["t1", "t2", "t3", "t4"]

    restored = AppendChannel(str).from_checkpoint(channel.checkpoint())
    assert restored.get() == ["t1", "t2", "t3", "t4"]
    # the copy doesn't share the list
    restored.update(["t5"])
    assert channel.get() == ["t1", "t2", "t3", "t4"]


def test_binop() -> None:
    channel = BinaryOperatorAggregate(int, operator.add).from_checkpoint(MISSING)
    assert channel.ValueType is int
    assert channel.get() == 0

    assert channel.update([1, 2, 3])
    assert channel.get() == 6
    assert not channel.update([])
    assert channel.get() == 6
    channel = BinaryOperatorAggregate(int, operator.add).from_checkpoint(
        channel.checkpoint()
    )
    assert channel.get() == 6


def test_binop_list_type_and_default() -> None:
    channel = BinaryOperatorAggregate(Sequence[str], operator.add)
    assert channel.get() == []
    channel.update([["a"], ["b"]])
    assert channel.get() == ["a", "b"]

    with_default = BinaryOperatorAggregate(int, max, default=10)
    with_default.update([3, 12, 5])
    assert with_default.get() == 12


def test_binop_reducer_error() -> None:
    channel = BinaryOperatorAggregate(int, operator.add)
    channel.update([1])
    with pytest.raises(InvalidUpdateError):
        channel.update(["not a number"])


def test_ephemeral_value() -> None:
    channel = EphemeralValue(str)
    assert not channel.checkpointed
    with pytest.raises(EmptyChannelError):
        channel.get()

    # last write in node-name order wins
    assert channel.update(["a", "b"])
    assert channel.get() == "b"
    assert channel.checkpoint() is MISSING
    assert not channel.update([])
    assert channel.get() == "b"
    # cleared once the next step's nodes are resolved
    assert channel.consume()
    assert not channel.is_available()
    assert not channel.consume()

    channel.update(["c"])
    assert channel.copy().get() == "c"
    assert not channel.from_checkpoint("c").is_available()


def test_copy_channels_is_detached() -> None:
    specs = {
        "x": BinaryOperatorAggregate(int, operator.add),
        "items": Topic(str),
        "scratch": EphemeralValue(str),
    }
    channels = create_channels(specs, {"x": 1, "items": ["a"]})
    channels["scratch"].update(["tmp"])

    staged = copy_channels(channels)
    staged["x"].update([2])
    staged["items"].update(["b"])
    assert read_channels(staged) == {"x": 3, "items": ["b"], "scratch": "tmp"}
    assert read_channels(channels) == {"x": 1, "items": ["a"], "scratch": "tmp"}

    assert consume_channels(channels) == {"scratch"}
    assert read_channels(channels) == {"x": 1, "items": ["a"]}


@pytest.mark.parametrize(
    ("spec", "writes", "later"),
    [
        pytest.param(LastValue(str), [["a", "b"]], ["c"], id="last_value"),
        pytest.param(
            LastValue(tuple, default=()),
            [[("a", 1)]],
            [("b", 2)],
            id="last_value_tuple",
        ),
        pytest.param(
            BinaryOperatorAggregate(int, operator.add), [[1, 2], [3]], [4], id="binop"
        ),
        pytest.param(
            BinaryOperatorAggregate(list, operator.add),
            [[["x"]], [["y", "z"]]],
            [["w"]],
            id="binop_list",
        ),
        pytest.param(Topic(str), [["a", ["b", "c"]]], ["d"], id="topic"),
        pytest.param(
            Topic(str, accumulate=True), [["a"], ["b"]], ["c"], id="topic_accumulate"
        ),
        pytest.param(AppendChannel(dict), [[{"k": 1}], []], [{"k": 2}], id="append"),
        pytest.param(EphemeralValue(str), [["tmp"]], ["next"], id="ephemeral"),
    ],
)
def test_channel_checkpoint_roundtrip(
    spec: BaseChannel, writes: list[list], later: list
) -> None:
    serde = JsonPlusSerializer()
    channels = create_channels({"c": spec})
    for step_writes in writes:
        channels["c"].update(step_writes)
        consume_channels(channels)

    restored = create_channels(
        {"c": spec}, serde.loads(serde.dumps(checkpoint_channels(channels)))
    )
    assert read_channels(restored) == read_channels(channels)

    # both behave the same from here on
    channels["c"].update(later)
    restored["c"].update(later)
    assert read_channels(restored) == read_channels(channels)
    channels["c"].update([])
    restored["c"].update([])
    assert read_channels(restored) == read_channels(channels)


def test_create_read_and_checkpoint_channels() -> None:
    specs = {
        "x": BinaryOperatorAggregate(int, operator.add),
        "label": LastValue(str),
        "scratch": EphemeralValue(str),
    }
    channels = create_channels(specs, {"x": 4})
    assert read_channels(channels) == {"x": 4}

    channels["label"].update(["left"])
    channels["scratch"].update(["tmp"])
    assert read_channels(channels) == {"x": 4, "label": "left", "scratch": "tmp"}
    # ephemeral and empty channels are left out
    assert checkpoint_channels(channels) == {"x": 4, "label": "left"}
    # specs are untouched
    assert read_channels(specs) == {"x": 0}
