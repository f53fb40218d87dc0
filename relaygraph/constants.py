from __future__ import annotations

from typing import Final

__all__ = (
    "START",
    "END",
    "INTERRUPT",
    "COMMAND",
    "SEND",
    "RESERVED",
    "RESUME",
    "DEFAULT_RECURSION_LIMIT",
)

# --- Graph sentinels ---
START: Final = "__start__"
"""The first (maybe virtual) node in graph-style Pregel."""
END: Final = "__end__"
"""The last (maybe virtual) node in graph-style Pregel."""

# --- Reserved directive keys (part of the persisted wire format) ---
INTERRUPT: Final = "__interrupt__"
# for suspending a run and surfacing a value to the caller
COMMAND: Final = "__command__"
# for patching state and overriding the next frontier
SEND: Final = "__send__"
# for dispatching extra executions of nodes within the current step
DIRECTIVE_KEYS: Final = frozenset((INTERRUPT, COMMAND, SEND))

# --- Reserved configurable keys ---
CONFIG_KEY_THREAD_ID: Final = "thread_id"
CONFIG_KEY_CHECKPOINT_ID: Final = "checkpoint_id"
CONFIG_KEY_RESUME_VALUE: Final = "resume_value"
CONF: Final = "configurable"
CONFIG_KEY_STEP: Final = "__relaygraph_step__"
# holds the current super-step index

RESUME: Final = "resume_value"
# state key through which a resumed node receives the resume value

DEFAULT_RECURSION_LIMIT: Final = 25

RESERVED: Final = frozenset(
    (
        START,
        END,
        INTERRUPT,
        COMMAND,
        SEND,
    )
)
