from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

Record = Any
Batch = Tuple[Record, ...]


class ShardTopology(BaseModel):
    """Ordered mapping of shard name to the tables it owns."""

    model_config = ConfigDict(frozen=True)

    shards: Dict[str, List[str]] = Field(default_factory=dict)

    @property
    def shard_names(self) -> List[str]:
        return list(self.shards)

    def tables(self, shard: str) -> List[str]:
        return list(self.shards[shard])

    def pairs(self) -> List[Tuple[str, str]]:
        return [(shard, table) for shard, tables in self.shards.items() for table in tables]

    @property
    def worker_count(self) -> int:
        return sum(len(tables) for tables in self.shards.values())


class SimulatedRecord(BaseModel):
    """Row produced by the simulated upstream source."""

    id: str
    source: str
    title: str
    category: str
    extracted_at: datetime = Field(default_factory=datetime.utcnow)


class OpenSkyResponse(BaseModel):
    time: int
    states: Optional[List[List[Any]]] = None


class WorkerStats(BaseModel):
    shard: str
    table: str
    batches: int = 0
    records_written: int = 0
    records_failed: int = 0
    batches_dropped: int = 0
    connected: bool = False
    finished: bool = False


class PipelineStatus(BaseModel):
    source: str
    started_at: Optional[datetime] = None
    running: bool = False
    batches_fetched: int = 0
    fetch_failures: int = 0
    last_batch_size: int = 0
    last_fetch_at: Optional[datetime] = None
    completed_workers: int = 0
    workers: List[WorkerStats] = Field(default_factory=list)
