from collections.abc import AsyncIterator
from uuid import UUID

import pytest
from pytest_mock import MockerFixture

from relaygraph.checkpoint.base import BaseCheckpointStore
from relaygraph.checkpoint.memory import InMemoryCheckpointStore
from relaygraph.checkpoint.sqlite import AsyncSqliteCheckpointStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def deterministic_uuids(mocker: MockerFixture) -> MockerFixture:
    side_effect = (
        UUID(f"00000000-0000-4000-8000-{i:012}", version=4) for i in range(10000)
    )
    return mocker.patch("relaygraph.checkpoint.base.uuid4", side_effect=side_effect)


@pytest.fixture(params=["memory", "sqlite"])
async def checkpointer(
    request: pytest.FixtureRequest,
) -> AsyncIterator[BaseCheckpointStore]:
    if request.param == "memory":
        yield InMemoryCheckpointStore()
    else:
        async with AsyncSqliteCheckpointStore.from_conn_string(":memory:") as store:
            yield store
