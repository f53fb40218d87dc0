"""Private sentinels shared across relaygraph."""

MISSING = object()
"""Marks a channel without a value, in checkpoints and reads."""

EMPTY_SEQ: tuple[str, ...] = ()
"""Update passed to channels that received no writes in a step."""
