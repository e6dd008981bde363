import asyncio
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import pytest

from shard_ingestor.config import DatabaseSettings
from shard_ingestor.errors import FetchError
from shard_ingestor.pool import ConnectionPoolManager
from shard_ingestor.warehouse import ShardWarehouse


class FakeSource:
    """Scripted source: each fetch pops the next batch or raises the next error."""

    name = "fake"

    def __init__(
        self,
        batches: Optional[List[Any]] = None,
        interval: Any = 60,
        table_prefix: str = "events",
        schema: str = "(id INT)",
    ):
        self.batches = list(batches or [])
        self.interval = interval
        self._table_prefix = table_prefix
        self._schema = schema
        self.fetch_calls = 0
        self.config: Dict[str, Any] = {}
        self.opened = False
        self.closed = False

    def configure(self, config: Mapping[str, Any]) -> None:
        self.config = dict(config)

    async def open(self) -> None:
        self.opened = True

    async def aclose(self) -> None:
        self.closed = True

    async def fetch_batch(self) -> Sequence[Any]:
        self.fetch_calls += 1
        if not self.batches:
            return []
        item = self.batches.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def field_names(self) -> List[str]:
        return ["id"]

    def extract_values(self, record: Any) -> Sequence[Any]:
        return [record]

    def schema(self) -> str:
        return self._schema

    def table_prefix(self) -> str:
        return self._table_prefix

    def poll_interval_seconds(self) -> int:
        if isinstance(self.interval, Exception):
            raise self.interval
        return self.interval


async def eventually(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Yield to the loop until ``predicate`` holds or fail after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def fetch_error() -> FetchError:
    return FetchError("upstream unavailable")


@pytest.fixture
def database_settings(tmp_path) -> DatabaseSettings:
    return DatabaseSettings(driver="sqlite", sqlite_path=str(tmp_path / "warehouse.db"))


@pytest.fixture
async def pool(database_settings):
    manager = await ConnectionPoolManager.create(database_settings)
    yield manager
    await manager.dispose()


@pytest.fixture
def warehouse(pool) -> ShardWarehouse:
    return ShardWarehouse(pool)
