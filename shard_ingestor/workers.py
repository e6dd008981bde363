import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from .channels import TableChannel
from .errors import StoreError
from .models import Batch, Record, ShardTopology, WorkerStats
from .pool import ConnectionPoolManager
from .sources import SourceAdapter
from .warehouse import ShardWarehouse

logger = logging.getLogger(__name__)


class TableWorker:
    """Writes every batch from one channel into one shard table.

    Each record is inserted in its own transaction and committed
    immediately, so a failing record is rolled back and skipped without
    touching its siblings. The worker keeps a single pooled connection
    until its channel is closed and drained.
    """

    def __init__(
        self,
        shard: str,
        table: str,
        channel: TableChannel,
        pool: ConnectionPoolManager,
        warehouse: ShardWarehouse,
        source: SourceAdapter,
        acquire_retry_seconds: float = 5.0,
        on_done: Optional[Callable[["TableWorker"], None]] = None,
    ):
        self.shard = shard
        self.table = table
        self.channel = channel
        self.stats = WorkerStats(shard=shard, table=table)
        self._pool = pool
        self._warehouse = warehouse
        self._source = source
        self._acquire_retry_seconds = acquire_retry_seconds
        self._on_done = on_done
        self._fields = source.field_names()
        self._statement = warehouse.insert_statement(shard, table, self._fields)

    @property
    def key(self) -> str:
        return f"{self.shard}.{self.table}"

    async def run(self) -> None:
        try:
            await self._run()
        finally:
            self.stats.connected = False
            self.stats.finished = True
            self.stats.batches_dropped = self.channel.dropped
            if self._on_done is not None:
                self._on_done(self)

    async def _run(self) -> None:
        while True:
            try:
                async with self._pool.acquire() as conn:
                    self.stats.connected = True
                    async for batch in self.channel:
                        await self.write_batch(conn, batch)
                    return
            except StoreError as exc:
                logger.warning("Worker %s failed to get connection from pool: %s", self.key, exc)
            if self.channel.closed:
                logger.error(
                    "Worker %s stopping without a connection, %d batches not written",
                    self.key,
                    len(self.channel),
                )
                return
            await asyncio.sleep(self._acquire_retry_seconds)

    async def write_batch(self, conn: AsyncConnection, batch: Batch) -> int:
        """Insert the batch record by record; return how many were committed."""
        self.stats.batches += 1
        written = 0
        for record in batch:
            if await self._write_record(conn, record):
                written += 1
        self.stats.records_written += written
        self.stats.records_failed += len(batch) - written
        return written

    async def _write_record(self, conn: AsyncConnection, record: Record) -> bool:
        try:
            values = self._source.extract_values(record)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to extract values for %s: %s", self.key, exc)
            return False
        if len(values) != len(self._fields):
            logger.warning(
                "Record for %s has %d values, expected %d",
                self.key,
                len(values),
                len(self._fields),
            )
            return False
        try:
            async with conn.begin():
                await conn.execute(self._statement, self._warehouse.bind_values(values))
        except SQLAlchemyError as exc:
            logger.warning("Failed to insert record into %s: %s", self.key, exc)
            return False
        return True


class WorkerPool:
    """One channel and one worker task per (shard, table) pair."""

    def __init__(
        self,
        topology: ShardTopology,
        pool: ConnectionPoolManager,
        warehouse: ShardWarehouse,
        source: SourceAdapter,
        channel_buffer: int = 32,
        acquire_retry_seconds: float = 5.0,
    ):
        self._pool = pool
        self.channels: Dict[str, TableChannel] = {}
        self.workers: List[TableWorker] = []
        self.completed = 0
        self._tasks: List["asyncio.Task[None]"] = []
        for shard, table in topology.pairs():
            channel = TableChannel(f"{shard}.{table}", channel_buffer)
            self.channels[channel.key] = channel
            self.workers.append(
                TableWorker(
                    shard,
                    table,
                    channel,
                    pool,
                    warehouse,
                    source,
                    acquire_retry_seconds=acquire_retry_seconds,
                    on_done=self._worker_done,
                )
            )

    def _worker_done(self, worker: TableWorker) -> None:
        self.completed += 1
        logger.debug("Worker %s finished (%d/%d)", worker.key, self.completed, len(self.workers))

    def start(self) -> None:
        if self._tasks:
            return
        if len(self.workers) > self._pool.max_open:
            logger.warning(
                "%d table workers but only %d pooled connections; some workers will wait",
                len(self.workers),
                self._pool.max_open,
            )
        for worker in self.workers:
            self._tasks.append(asyncio.create_task(worker.run(), name=f"worker:{worker.key}"))
        logger.info("Started %d table workers", len(self.workers))

    def close_channels(self) -> int:
        """Close every channel still open; return how many were closed."""
        closed = 0
        for channel in self.channels.values():
            if not channel.closed:
                channel.close()
                closed += 1
        return closed

    async def wait(self) -> int:
        """Wait for every worker to finish; return the completion count."""
        results: List[Any] = await asyncio.gather(*self._tasks, return_exceptions=True)
        for worker, result in zip(self.workers, results):
            if isinstance(result, BaseException):
                logger.error("Worker %s crashed: %r", worker.key, result)
        return self.completed
