import asyncio
import logging
from collections import deque
from typing import AsyncIterator, Deque, Optional

from .errors import ChannelClosedError
from .models import Batch

logger = logging.getLogger(__name__)


class TableChannel:
    """Single-consumer FIFO of batches bound for one (shard, table) worker.

    ``send`` never waits. With ``maxsize`` batches already pending the
    oldest pending batch is dropped to make room; ``maxsize=0`` means
    unbounded. After ``close`` the consumer drains what is left and then
    receives ``None``.
    """

    def __init__(self, key: str, maxsize: int = 0):
        self.key = key
        self.maxsize = maxsize
        self.dropped = 0
        self._pending: Deque[Batch] = deque()
        self._ready = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._pending)

    def send(self, batch: Batch) -> None:
        if self._closed:
            raise ChannelClosedError(f"send on closed channel {self.key}")
        if self.maxsize and len(self._pending) >= self.maxsize:
            lost = self._pending.popleft()
            self.dropped += 1
            logger.warning(
                "Channel %s is full (%d pending), dropped oldest batch of %d records",
                self.key,
                self.maxsize,
                len(lost),
            )
        self._pending.append(batch)
        self._ready.set()

    def close(self) -> None:
        if self._closed:
            raise ChannelClosedError(f"channel {self.key} closed twice")
        self._closed = True
        self._ready.set()

    async def receive(self) -> Optional[Batch]:
        while not self._pending:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._pending.popleft()

    def __aiter__(self) -> AsyncIterator[Batch]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Batch]:
        while True:
            batch = await self.receive()
            if batch is None:
                return
            yield batch
