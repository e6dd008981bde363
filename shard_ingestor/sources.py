from typing import Any, Callable, Dict, List, Mapping, Protocol, Sequence

from .config import SourceSpec
from .errors import SourceError, UnknownSourceError
from .models import Record
from .opensky import OpenSkySource
from .simulated_sources import SimulatedSource


class SourceAdapter(Protocol):
    """Capability surface the distribution engine consumes from a source."""

    name: str

    def configure(self, config: Mapping[str, Any]) -> None:
        ...

    async def open(self) -> None:
        ...

    async def aclose(self) -> None:
        ...

    async def fetch_batch(self) -> Sequence[Record]:
        ...

    def field_names(self) -> List[str]:
        ...

    def extract_values(self, record: Record) -> Sequence[Any]:
        ...

    def schema(self) -> str:
        ...

    def table_prefix(self) -> str:
        ...

    def poll_interval_seconds(self) -> int:
        ...


SourceFactory = Callable[[], SourceAdapter]


class SourceRegistry:
    """Named source adapter factories, selected by configuration."""

    def __init__(self) -> None:
        self._factories: Dict[str, SourceFactory] = {}

    def register(self, name: str, factory: SourceFactory) -> None:
        self._factories[name] = factory

    def names(self) -> List[str]:
        return sorted(self._factories)

    def create(self, spec: SourceSpec) -> SourceAdapter:
        if spec.name not in self._factories:
            raise UnknownSourceError(
                f"Unsupported source '{spec.name}', known: {', '.join(self.names()) or 'none'}"
            )
        adapter = self._factories[spec.name]()
        try:
            adapter.configure(spec.config)
        except (TypeError, ValueError) as exc:
            raise SourceError(f"Invalid config for source '{spec.name}': {exc}") from exc
        return adapter


def default_registry() -> SourceRegistry:
    registry = SourceRegistry()
    registry.register(SimulatedSource.name, SimulatedSource)
    registry.register(OpenSkySource.name, OpenSkySource)
    return registry
