from __future__ import annotations

import asyncio
import builtins
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosqlite

from relaygraph.checkpoint.base import BaseCheckpointStore, Checkpoint
from relaygraph.errors import CheckpointError
from relaygraph.serde.base import SerializerProtocol


class AsyncSqliteCheckpointStore(BaseCheckpointStore):
    """An asynchronous checkpoint store backed by a SQLite database.

    Every write runs in its own transaction; isolation between concurrent
    writers is left to SQLite.

    Attributes:
        conn (aiosqlite.Connection): The asynchronous SQLite database connection.
        serde (SerializerProtocol): The serializer used for encoding/decoding checkpoints.

    Tip:
        Remember to **close the database connection** after executing your code.
        The easiest way is to use the `async with` statement:

        ```python
        async with AsyncSqliteCheckpointStore.from_conn_string("checkpoints.sqlite") as store:
            graph = builder.compile(checkpointer=store)
            config = {"configurable": {"thread_id": "thread-1"}}
            await graph.ainvoke({"x": 0}, config)
        ```
    """

    lock: asyncio.Lock
    is_setup: bool

    def __init__(
        self,
        conn: aiosqlite.Connection,
        *,
        serde: SerializerProtocol | None = None,
    ):
        super().__init__(serde=serde)
        self.conn = conn
        self.lock = asyncio.Lock()
        self.is_setup = False

    @classmethod
    @asynccontextmanager
    async def from_conn_string(
        cls, conn_string: str
    ) -> AsyncIterator[AsyncSqliteCheckpointStore]:
        """Create a new AsyncSqliteCheckpointStore instance from a connection string.

        Args:
            conn_string (str): The SQLite connection string.

        Yields:
            AsyncSqliteCheckpointStore: A new store instance.
        """
        async with aiosqlite.connect(conn_string) as conn:
            yield cls(conn)

    async def setup(self) -> None:
        """Create the checkpoints table if it doesn't exist yet.

        Called automatically when needed.
        """
        async with self.lock:
            if self.is_setup:
                return
            async with self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS checkpoints (
                    thread_id TEXT NOT NULL,
                    checkpoint_id TEXT NOT NULL,
                    parent_checkpoint_id TEXT,
                    step INTEGER NOT NULL,
                    seq INTEGER NOT NULL,
                    checkpoint BLOB,
                    PRIMARY KEY (thread_id, checkpoint_id)
                );
                CREATE INDEX IF NOT EXISTS checkpoints_thread_seq
                    ON checkpoints (thread_id, seq);
                """
            ):
                await self.conn.commit()

            self.is_setup = True

    async def aput(self, checkpoint: Checkpoint) -> None:
        """Save a checkpoint. Writing an existing id replaces it and makes it
        the thread's latest checkpoint."""
        await self.setup()
        data = self.dumps(checkpoint)
        async with self.lock:
            try:
                await self.conn.execute(
                    """INSERT OR REPLACE INTO checkpoints
                    (thread_id, checkpoint_id, parent_checkpoint_id, step, seq, checkpoint)
                    VALUES (?, ?, ?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM checkpoints), ?)""",
                    (
                        checkpoint.thread_id,
                        checkpoint.id,
                        checkpoint.parent_id,
                        checkpoint.step,
                        data,
                    ),
                )
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                raise CheckpointError(
                    f"Failed to write checkpoint '{checkpoint.id}'"
                ) from exc

    async def aget(self, thread_id: str, checkpoint_id: str) -> Checkpoint | None:
        await self.setup()
        async with self.lock, self.conn.execute(
            "SELECT checkpoint FROM checkpoints WHERE thread_id = ? AND checkpoint_id = ?",
            (thread_id, checkpoint_id),
        ) as cur:
            if value := await cur.fetchone():
                return self.loads(value[0])
        return None

    async def aget_latest(self, thread_id: str) -> Checkpoint | None:
        await self.setup()
        async with self.lock, self.conn.execute(
            "SELECT checkpoint FROM checkpoints WHERE thread_id = ? ORDER BY seq DESC LIMIT 1",
            (thread_id,),
        ) as cur:
            if value := await cur.fetchone():
                return self.loads(value[0])
        return None

    async def alist(self, thread_id: str) -> builtins.list[Checkpoint]:
        """List the thread's checkpoints, ascending by step, then by write order."""
        await self.setup()
        async with self.lock, self.conn.execute(
            "SELECT checkpoint FROM checkpoints WHERE thread_id = ? ORDER BY step ASC, seq ASC",
            (thread_id,),
        ) as cur:
            return [self.loads(checkpoint) async for (checkpoint,) in cur]

    async def adelete_thread(self, thread_id: str) -> None:
        await self.setup()
        async with self.lock:
            try:
                await self.conn.execute(
                    "DELETE FROM checkpoints WHERE thread_id = ?", (thread_id,)
                )
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                raise CheckpointError(
                    f"Failed to delete thread '{thread_id}'"
                ) from exc
