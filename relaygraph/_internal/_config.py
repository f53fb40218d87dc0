from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Optional

from langchain_core.runnables import RunnableConfig
from langchain_core.runnables.config import (
    get_async_callback_manager_for_config,
    var_child_runnable_config,
)

from relaygraph.constants import (
    CONF,
    CONFIG_KEY_CHECKPOINT_ID,
    CONFIG_KEY_RESUME_VALUE,
    CONFIG_KEY_THREAD_ID,
    DEFAULT_RECURSION_LIMIT,
)

__all__ = (
    "ensure_config",
    "merge_configs",
    "patch_config",
    "strip_configurable",
    "get_async_callback_manager_for_config",
    "get_thread_id",
    "get_checkpoint_id",
    "get_resume_value",
    "has_resume_value",
)

# top-level RunnableConfig keys a run understands, anything else is
# treated as a configurable value
RUN_KEYS = frozenset(
    (
        "tags",
        "metadata",
        "callbacks",
        "run_name",
        "run_id",
        "max_concurrency",
        "recursion_limit",
        CONF,
    )
)

# picked up from the calling node when a graph runs inside another graph,
# thread and resume settings stay with the outer run
INHERITED_KEYS = ("tags", "metadata", "callbacks", "recursion_limit")


def _has_value(value: Any) -> bool:
    if isinstance(value, (list, tuple, dict)):
        return bool(value)
    return value is not None


def _copied(value: Any) -> Any:
    return value.copy() if isinstance(value, (list, dict)) else value


def ensure_config(*configs: Optional[RunnableConfig]) -> RunnableConfig:
    """Normalize the configs of a run into one config with every key present.

    Later configs win. Unknown top-level keys are moved into `configurable`,
    and primitive `configurable` values other than the resume value are
    mirrored into `metadata` so that tracing handlers see the thread id.
    """
    config = RunnableConfig(
        tags=[],
        metadata={},
        callbacks=None,
        recursion_limit=DEFAULT_RECURSION_LIMIT,
        configurable={},
    )
    if parent := var_child_runnable_config.get():
        for key in INHERITED_KEYS:
            if _has_value(value := parent.get(key)):
                config[key] = _copied(value)  # type: ignore[literal-required]
    for overrides in configs:
        if not overrides:
            continue
        for key, value in overrides.items():
            if not _has_value(value):
                continue
            if key == CONF:
                config[CONF].update(value)
            elif key in RUN_KEYS:
                config[key] = _copied(value)  # type: ignore[literal-required]
            else:
                config[CONF][key] = value
    metadata = config["metadata"]
    for key, value in config[CONF].items():
        if (
            key != CONFIG_KEY_RESUME_VALUE
            and not key.startswith("__")
            and isinstance(value, (str, int, float, bool))
        ):
            metadata.setdefault(key, value)
    return config


def merge_configs(*configs: Optional[RunnableConfig]) -> RunnableConfig:
    """Merge configs left to right. Tags are concatenated, while metadata and
    configurable are merged key by key."""
    merged: RunnableConfig = {CONF: {}}
    for config in configs:
        if not config:
            continue
        for key, value in config.items():
            if not _has_value(value):
                continue
            if key == "tags":
                merged["tags"] = [*merged.get("tags", []), *value]
            elif key in ("metadata", CONF):
                merged[key] = {**merged.get(key, {}), **value}  # type: ignore[literal-required]
            else:
                merged[key] = value  # type: ignore[literal-required]
    return merged


def patch_config(
    config: Optional[RunnableConfig],
    *,
    callbacks: Any = None,
    recursion_limit: Optional[int] = None,
    run_name: Optional[str] = None,
    configurable: Optional[dict[str, Any]] = None,
) -> RunnableConfig:
    """Return a copy of `config` with the given values replaced.

    New callbacks belong to a new run, so they drop the `run_name` and
    `run_id` of the original one unless a `run_name` is given.
    """
    patched: RunnableConfig = {**config} if config else {}
    if callbacks is not None:
        patched["callbacks"] = callbacks
        patched.pop("run_name", None)
        patched.pop("run_id", None)
    if recursion_limit is not None:
        patched["recursion_limit"] = recursion_limit
    if run_name is not None:
        patched["run_name"] = run_name
    if configurable is not None:
        patched[CONF] = {**patched.get(CONF, {}), **configurable}
    return patched


def strip_configurable(config: RunnableConfig, keys: Sequence[str]) -> RunnableConfig:
    """Return a copy of `config` without the given configurable keys."""
    if CONF not in config:
        return config
    return {
        **config,
        CONF: {k: v for k, v in config[CONF].items() if k not in keys},
    }


def get_thread_id(config: RunnableConfig) -> Optional[str]:
    value = config.get(CONF, {}).get(CONFIG_KEY_THREAD_ID)
    return str(value) if value is not None else None


def get_checkpoint_id(config: RunnableConfig) -> Optional[str]:
    return config.get(CONF, {}).get(CONFIG_KEY_CHECKPOINT_ID)


def has_resume_value(config: RunnableConfig) -> bool:
    return CONFIG_KEY_RESUME_VALUE in config.get(CONF, {})


def get_resume_value(config: RunnableConfig) -> Any:
    return config.get(CONF, {}).get(CONFIG_KEY_RESUME_VALUE)
