import random
import string
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Sequence

from pydantic import BaseModel, Field

from .errors import SourceError
from .models import SimulatedRecord

_FIELDS = ["id", "source", "title", "category", "extracted_at"]
_SCHEMA = (
    "(id VARCHAR(36) NOT NULL, source VARCHAR(32) NOT NULL, title VARCHAR(64), "
    "category VARCHAR(16), extracted_at VARCHAR(32))"
)


def _random_word(length: int = 6) -> str:
    return "".join(random.choices(string.ascii_lowercase, k=length))


class SimulatedConfig(BaseModel):
    origin: str = "crm"
    records_per_batch: int = Field(default=5, ge=0)
    interval: int = Field(default=10, ge=0)
    table_prefix: str = "records"


class SimulatedSource:
    """In-process stand-in for an upstream database."""

    name = "simulated"

    def __init__(self) -> None:
        self.config = SimulatedConfig()
        self._pending: List[SimulatedRecord] = []

    def configure(self, config: Mapping[str, Any]) -> None:
        self.config = SimulatedConfig(**config)

    async def open(self) -> None:
        return None

    async def aclose(self) -> None:
        return None

    def add(self, payload: Dict[str, str]) -> SimulatedRecord:
        """Queue a caller-supplied row for the next batch."""
        record = SimulatedRecord(
            id=str(uuid.uuid4()),
            source=self.config.origin,
            title=payload.get("title", ""),
            category=payload.get("category", ""),
        )
        self._pending.append(record)
        return record

    def _random_record(self) -> SimulatedRecord:
        now = datetime.utcnow()
        return SimulatedRecord(
            id=str(uuid.uuid4()),
            source=self.config.origin,
            title=_random_word(),
            category=random.choice(["alpha", "beta", "gamma"]),
            extracted_at=now - timedelta(seconds=random.randint(0, 300)),
        )

    async def fetch_batch(self) -> Sequence[SimulatedRecord]:
        batch = self._pending
        self._pending = []
        batch.extend(self._random_record() for _ in range(self.config.records_per_batch))
        return batch

    def field_names(self) -> List[str]:
        return list(_FIELDS)

    def extract_values(self, record: Any) -> Sequence[Any]:
        if not isinstance(record, SimulatedRecord):
            raise SourceError(f"Unexpected record type {type(record).__name__}")
        return [
            record.id,
            record.source,
            record.title,
            record.category,
            record.extracted_at.isoformat(),
        ]

    def schema(self) -> str:
        return _SCHEMA

    def table_prefix(self) -> str:
        return self.config.table_prefix

    def poll_interval_seconds(self) -> int:
        return self.config.interval
