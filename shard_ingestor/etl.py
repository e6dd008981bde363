import asyncio
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from .channels import TableChannel
from .config import Settings
from .errors import ChannelClosedError, FetchError, IntervalError, SourceError
from .models import Batch, PipelineStatus, ShardTopology
from .pool import ConnectionPoolManager
from .sources import SourceAdapter, SourceRegistry, default_registry
from .topology import build_topology
from .warehouse import ShardWarehouse
from .workers import WorkerPool

logger = logging.getLogger(__name__)


class FanOutDispatcher:
    """Fetches one batch and hands the same batch to every table channel."""

    def __init__(self, source: SourceAdapter, channels: Iterable[TableChannel]):
        self._source = source
        self._channels: List[TableChannel] = list(channels)
        self._closed = False
        self.batches_fetched = 0
        self.last_batch_size = 0
        self.last_fetch_at: Optional[datetime] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def fetch_and_distribute(self) -> int:
        """Deliver one fetched batch to all channels; return its record count.

        A failed fetch raises FetchError before any channel sees data.
        """
        if self._closed:
            raise ChannelClosedError("dispatcher is closed")
        try:
            fetched = await self._source.fetch_batch()
            batch: Batch = tuple(fetched)
        except FetchError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise FetchError(f"{self._source.name}: {exc}") from exc

        for channel in self._channels:
            channel.send(batch)
        self.batches_fetched += 1
        self.last_batch_size = len(batch)
        self.last_fetch_at = datetime.utcnow()
        logger.debug("Distributed %d records to %d channels", len(batch), len(self._channels))
        return len(batch)

    def close(self) -> None:
        """Close every channel; later calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        for channel in self._channels:
            channel.close()


class PollingLoop:
    """Drives the dispatcher at the source's interval until stopped."""

    def __init__(
        self,
        dispatcher: FanOutDispatcher,
        source: SourceAdapter,
        error_backoff_seconds: float = 5.0,
    ):
        self._dispatcher = dispatcher
        self._source = source
        self._error_backoff = error_backoff_seconds
        self.fetch_failures = 0

    def _interval(self) -> float:
        try:
            interval = self._source.poll_interval_seconds()
        except Exception as exc:  # noqa: BLE001
            raise IntervalError(f"{self._source.name}: {exc}") from exc
        if isinstance(interval, bool) or not isinstance(interval, int) or interval < 0:
            raise IntervalError(f"{self._source.name}: invalid interval {interval!r}")
        return float(interval)

    async def run_once(self) -> float:
        """Run one fetch cycle and return how long to wait before the next."""
        try:
            await self._dispatcher.fetch_and_distribute()
        except FetchError as exc:
            self.fetch_failures += 1
            logger.warning("Error fetching data: %s", exc)
            return self._error_backoff
        try:
            return self._interval()
        except SourceError as exc:
            logger.warning("Error getting interval: %s", exc)
            return self._error_backoff

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until ``stop`` is set, then close every channel exactly once."""
        try:
            while not stop.is_set():
                delay = await self.run_once()
                try:
                    await asyncio.wait_for(stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._dispatcher.close()
            logger.info("Polling stopped, channels closed")


class IngestPipeline:
    """Start/stop lifecycle around source, pool, topology, workers and polling."""

    def __init__(self, settings: Settings, registry: Optional[SourceRegistry] = None):
        self.settings = settings
        self.registry = registry or default_registry()
        self.source: Optional[SourceAdapter] = None
        self.pool: Optional[ConnectionPoolManager] = None
        self.warehouse: Optional[ShardWarehouse] = None
        self.topology: Optional[ShardTopology] = None
        self.workers: Optional[WorkerPool] = None
        self.dispatcher: Optional[FanOutDispatcher] = None
        self.polling: Optional[PollingLoop] = None
        self.started_at: Optional[datetime] = None
        self._stop = asyncio.Event()
        self._poll_task: Optional["asyncio.Task[None]"] = None
        self._health_task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self) -> None:
        """Build topology, start workers, then start polling and health checks.

        Unknown sources, bad source config and an unreachable store raise.
        Anything opened before a failure is released again.
        """
        if self._poll_task is not None:
            return
        settings = self.settings
        source = self.registry.create(settings.source)
        await source.open()
        self.source = source
        try:
            self.pool = await ConnectionPoolManager.create(settings.database)
        except Exception:
            await source.aclose()
            raise
        try:
            await self._assemble(source)
        except Exception:
            logger.error("Ingest pipeline failed to start, releasing resources")
            await self._release()
            raise

        self._stop.clear()
        self.started_at = datetime.utcnow()
        self._poll_task = asyncio.create_task(self.polling.run(self._stop), name="polling")
        self._health_task = asyncio.create_task(
            self.pool.run_health_checks(self._stop, settings.polling.health_check_seconds),
            name="pool-health",
        )
        logger.info("Ingest pipeline started with source %s", source.name)

    async def _assemble(self, source: SourceAdapter) -> None:
        settings = self.settings
        self.warehouse = ShardWarehouse(self.pool)
        self.topology = await build_topology(settings.databases, self.warehouse, source)

        self.workers = WorkerPool(
            self.topology,
            self.pool,
            self.warehouse,
            source,
            channel_buffer=settings.databases.channel_buffer,
            acquire_retry_seconds=settings.polling.acquire_retry_seconds,
        )
        self.workers.start()

        self.dispatcher = FanOutDispatcher(source, self.workers.channels.values())
        self.polling = PollingLoop(
            self.dispatcher,
            source,
            error_backoff_seconds=settings.polling.error_backoff_seconds,
        )

    async def _release(self) -> int:
        completed = 0
        if self.workers is not None:
            # polling normally closed them already
            self.workers.close_channels()
            completed = await self.workers.wait()
        if self.source is not None:
            await self.source.aclose()
        if self.pool is not None:
            await self.pool.dispose()
        return completed

    async def stop(self) -> None:
        """Signal stop, let workers drain, then release the source and the pool."""
        if self._poll_task is None:
            return
        self._stop.set()
        try:
            await self._poll_task
        except Exception:
            logger.exception("Polling loop crashed")
        if self._health_task is not None:
            await self._health_task
        completed = await self._release()
        logger.info("Ingest pipeline stopped, %d workers finished", completed)

    def status(self) -> PipelineStatus:
        status = PipelineStatus(
            source=self.settings.source.name,
            started_at=self.started_at,
            running=self.running,
        )
        if self.dispatcher is not None:
            status.batches_fetched = self.dispatcher.batches_fetched
            status.last_batch_size = self.dispatcher.last_batch_size
            status.last_fetch_at = self.dispatcher.last_fetch_at
        if self.polling is not None:
            status.fetch_failures = self.polling.fetch_failures
        if self.workers is not None:
            status.completed_workers = self.workers.completed
            for worker in self.workers.workers:
                worker.stats.batches_dropped = worker.channel.dropped
                status.workers.append(worker.stats.model_copy())
        return status
