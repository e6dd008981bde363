import json
import logging
from typing import Any, List, Mapping, Optional, Sequence

import httpx
from pydantic import BaseModel, Field, ValidationError

from .errors import FetchError, SourceError
from .models import OpenSkyResponse

logger = logging.getLogger(__name__)

STATES_URL = "https://opensky-network.org/api/states/all"

# Column order matches the state vector layout, prefixed by the response time.
_COLUMNS = [
    ("time", "INT"),
    ("icao24", "VARCHAR(10)"),
    ("callsign", "VARCHAR(10)"),
    ("origin_country", "VARCHAR(50)"),
    ("time_position", "INT"),
    ("last_contact", "INT"),
    ("longitude", "FLOAT"),
    ("latitude", "FLOAT"),
    ("baro_altitude", "FLOAT"),
    ("on_ground", "BOOLEAN"),
    ("velocity", "FLOAT"),
    ("true_track", "FLOAT"),
    ("vertical_rate", "FLOAT"),
    ("sensors", "JSON"),
    ("geo_altitude", "FLOAT"),
    ("squawk", "VARCHAR(10)"),
    ("spi", "BOOLEAN"),
    ("position_source", "INT"),
]
_JSON_COLUMNS = {index for index, (_, kind) in enumerate(_COLUMNS) if kind == "JSON"}


class OpenSkyAuth(BaseModel):
    user: str = Field(min_length=1)
    # "pass" is a keyword, hence the alias
    password: str = Field(alias="pass", min_length=1)


class OpenSkyConfig(BaseModel):
    auth: OpenSkyAuth
    interval: int = Field(default=10, ge=0)
    url: str = STATES_URL
    timeout: float = 30.0


class OpenSkySource:
    """Live aircraft state vectors from the OpenSky Network REST API."""

    name = "opensky"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.config: Optional[OpenSkyConfig] = None
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def configure(self, config: Mapping[str, Any]) -> None:
        try:
            self.config = OpenSkyConfig(**config)
        except ValidationError as exc:
            logger.error("Invalid opensky config: %s", exc)
            raise SourceError(f"invalid opensky config: {exc}") from exc

    def _require_config(self) -> OpenSkyConfig:
        if self.config is None:
            raise SourceError("opensky source used before configure()")
        return self.config

    async def open(self) -> None:
        """Create the HTTP client and check the credentials once."""
        config = self._require_config()
        self._client = httpx.AsyncClient(
            auth=(config.auth.user, config.auth.password),
            timeout=config.timeout,
            transport=self._transport,
        )
        try:
            response = await self._client.get(config.url)
        except httpx.HTTPError as exc:
            await self.aclose()
            raise SourceError(f"failed to validate credentials: {exc}") from exc
        if response.status_code != httpx.codes.OK:
            await self.aclose()
            raise SourceError(f"invalid credentials, status code: {response.status_code}")

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch_batch(self) -> Sequence[List[Any]]:
        config = self._require_config()
        if self._client is None:
            raise FetchError("opensky source is not open")
        try:
            response = await self._client.get(config.url)
            response.raise_for_status()
            payload = OpenSkyResponse.model_validate(response.json())
        except httpx.HTTPError as exc:
            raise FetchError(f"failed to fetch data: {exc}") from exc
        except (ValueError, ValidationError) as exc:
            raise FetchError(f"failed to decode response: {exc}") from exc
        return [[payload.time, *state] for state in payload.states or []]

    def field_names(self) -> List[str]:
        return [name for name, _ in _COLUMNS]

    def extract_values(self, record: Any) -> Sequence[Any]:
        values = list(record)
        # extended responses append a category field; fit to the schema width
        values = (values + [None] * len(_COLUMNS))[: len(_COLUMNS)]
        for index in _JSON_COLUMNS:
            if values[index] is not None:
                values[index] = json.dumps(values[index])
        return values

    def schema(self) -> str:
        return "(" + ", ".join(f"{name} {kind}" for name, kind in _COLUMNS) + ")"

    def table_prefix(self) -> str:
        return "flights"

    def poll_interval_seconds(self) -> int:
        return self._require_config().interval
