from __future__ import annotations

import asyncio
import builtins
import itertools
import threading
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager

from relaygraph.checkpoint.base import BaseCheckpointStore, Checkpoint
from relaygraph.serde.base import SerializerProtocol


class _ReadWriteLock:
    """Read-write lock that prefers readers: a writer waits until no reader
    holds the lock, and readers only wait while a writer is active."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers > 0:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class InMemoryCheckpointStore(BaseCheckpointStore):
    """An in-memory checkpoint store.

    Checkpoints are kept serialized, so every read returns a fresh copy.
    `get`, `get_latest` and `list` take a shared lock; `put` and
    `delete_thread` take an exclusive one.

    Note:
        Since checkpoints are saved in memory, they will be lost when the program exits.
        Only use this store for debugging or testing purposes.

    Args:
        serde (Optional[SerializerProtocol]): The serializer to use for serializing and deserializing checkpoints. Defaults to None.

    Examples:

            import asyncio

            from relaygraph.checkpoint.memory import InMemoryCheckpointStore
            from relaygraph.graph import StateGraph

            builder = StateGraph(State)
            builder.add_node("add_one", lambda state: {"x": state["x"] + 1})
            builder.set_entry_point("add_one")
            builder.set_finish_point("add_one")

            memory = InMemoryCheckpointStore()
            graph = builder.compile(checkpointer=memory)
            coro = graph.ainvoke({"x": 1}, {"configurable": {"thread_id": "thread-1"}})
            asyncio.run(coro)  # Output: Complete(state={'x': 2})
    """

    # thread_id -> checkpoint_id -> (write sequence, step, serialized checkpoint)
    storage: defaultdict[str, dict[str, tuple[int, int, bytes]]]

    def __init__(
        self,
        *,
        serde: SerializerProtocol | None = None,
    ) -> None:
        super().__init__(serde=serde)
        self.storage = defaultdict(dict)
        self.lock = _ReadWriteLock()
        self._seq = itertools.count()

    def put(self, checkpoint: Checkpoint) -> None:
        """Save a checkpoint. Writing an existing id replaces it and makes it
        the thread's latest checkpoint."""
        data = self.dumps(checkpoint)
        with self.lock.write():
            self.storage[checkpoint.thread_id][checkpoint.id] = (
                next(self._seq),
                checkpoint.step,
                data,
            )

    def get(self, thread_id: str, checkpoint_id: str) -> Checkpoint | None:
        with self.lock.read():
            saved = self.storage.get(thread_id, {}).get(checkpoint_id)
        if saved is None:
            return None
        return self.loads(saved[2])

    def get_latest(self, thread_id: str) -> Checkpoint | None:
        with self.lock.read():
            saved = self.storage.get(thread_id)
            if not saved:
                return None
            _, _, data = max(saved.values(), key=lambda v: v[0])
        return self.loads(data)

    def list(self, thread_id: str) -> builtins.list[Checkpoint]:
        """List the thread's checkpoints, ascending by step, then by write order."""
        with self.lock.read():
            saved = sorted(
                self.storage.get(thread_id, {}).values(), key=lambda v: (v[1], v[0])
            )
        return [self.loads(data) for _, _, data in saved]

    def delete_thread(self, thread_id: str) -> None:
        with self.lock.write():
            self.storage.pop(thread_id, None)

    async def aput(self, checkpoint: Checkpoint) -> None:
        return await asyncio.get_running_loop().run_in_executor(
            None, self.put, checkpoint
        )

    async def aget(self, thread_id: str, checkpoint_id: str) -> Checkpoint | None:
        return await asyncio.get_running_loop().run_in_executor(
            None, self.get, thread_id, checkpoint_id
        )

    async def aget_latest(self, thread_id: str) -> Checkpoint | None:
        return await asyncio.get_running_loop().run_in_executor(
            None, self.get_latest, thread_id
        )

    async def alist(self, thread_id: str) -> builtins.list[Checkpoint]:
        return await asyncio.get_running_loop().run_in_executor(
            None, self.list, thread_id
        )

    async def adelete_thread(self, thread_id: str) -> None:
        return await asyncio.get_running_loop().run_in_executor(
            None, self.delete_thread, thread_id
        )
