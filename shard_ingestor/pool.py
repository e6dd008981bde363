"""Process-wide connection pool over the shard backing store.

One SQLAlchemy async engine per backing store. MySQL shards are
databases on the server; with the sqlite driver every shard is its own
database file, ATTACHed under the shard name on each pooled connection
so statements address ``shard.table`` the same way on both drivers.
"""

import asyncio
import logging
import os
import ssl
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict

from sqlalchemy import event, text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from .config import DatabaseSettings, TLSSettings
from .errors import PoolExhaustedError, PoolInitError, StoreError, TLSConfigError

logger = logging.getLogger(__name__)

PROBE = "SELECT 1"


def database_url(settings: DatabaseSettings) -> URL:
    if settings.driver == "sqlite":
        return URL.create("sqlite+aiosqlite", database=settings.sqlite_path)
    return URL.create(
        "mysql+aiomysql",
        username=settings.user,
        password=settings.password or None,
        host=settings.host,
        port=settings.port,
        database=settings.dbname or None,
    )


class _ServerNameContext(ssl.SSLContext):
    """Client context that verifies a fixed server name instead of the dialled host."""

    server_name = ""

    def wrap_bio(self, incoming, outgoing, server_side=False, server_hostname=None, session=None):
        return super().wrap_bio(
            incoming, outgoing, server_side, self.server_name or server_hostname, session
        )

    def wrap_socket(
        self,
        sock,
        server_side=False,
        do_handshake_on_connect=True,
        suppress_ragged_eofs=True,
        server_hostname=None,
        session=None,
    ):
        return super().wrap_socket(
            sock,
            server_side,
            do_handshake_on_connect,
            suppress_ragged_eofs,
            self.server_name or server_hostname,
            session,
        )


def build_ssl_context(tls: TLSSettings) -> ssl.SSLContext:
    """Load CA, client certificate and protocol bounds into an SSL context."""
    try:
        context = _ServerNameContext(ssl.PROTOCOL_TLS_CLIENT)
        if tls.ca_file:
            context.load_verify_locations(cafile=tls.ca_file)
        else:
            context.load_default_certs(ssl.Purpose.SERVER_AUTH)
        if tls.cert_file and tls.key_file:
            context.load_cert_chain(tls.cert_file, tls.key_file)
        if tls.min_version:
            context.minimum_version = ssl.TLSVersion[tls.min_version]
        if tls.max_version:
            context.maximum_version = ssl.TLSVersion[tls.max_version]
        if tls.ciphers:
            context.set_ciphers(tls.ciphers)
    except KeyError as exc:
        raise TLSConfigError(f"Unknown TLS version {exc}") from exc
    except (OSError, ssl.SSLError, ValueError) as exc:
        raise TLSConfigError(f"Failed to load TLS material: {exc}") from exc
    if tls.insecure_skip_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    context.server_name = tls.server_name
    return context


class ConnectionPoolManager:
    """Owns the engine; hands out scoped connections and probes idle ones."""

    def __init__(self, engine: AsyncEngine, settings: DatabaseSettings):
        self._engine = engine
        self._settings = settings
        self._attached: Dict[str, Path] = {}
        if settings.driver == "sqlite":
            event.listen(engine.sync_engine, "connect", self._attach_shards)

    @classmethod
    async def create(cls, settings: DatabaseSettings) -> "ConnectionPoolManager":
        """Build the pool and prove the store is reachable, or raise PoolInitError."""
        connect_args: Dict[str, Any] = {}
        if settings.driver == "mysql" and settings.tls.enabled:
            connect_args["ssl"] = build_ssl_context(settings.tls)
        if settings.driver == "sqlite":
            try:
                os.makedirs(os.path.dirname(settings.sqlite_path) or ".", exist_ok=True)
            except OSError as exc:
                raise PoolInitError(f"Cannot create sqlite directory: {exc}") from exc

        bounds = settings.connection_pool
        pool_size = min(bounds.max_idle_conns, bounds.max_open_conns)
        engine = create_async_engine(
            database_url(settings),
            pool_size=pool_size,
            max_overflow=bounds.max_open_conns - pool_size,
            pool_recycle=bounds.conn_max_lifetime,
            pool_timeout=settings.pool_timeout,
            connect_args=connect_args,
        )
        manager = cls(engine, settings)
        try:
            async with engine.connect() as conn:
                await conn.execute(text(PROBE))
        except (SQLAlchemyError, OSError) as exc:
            await engine.dispose()
            raise PoolInitError(
                f"Failed to connect to {settings.driver} backing store: {exc}"
            ) from exc
        logger.info(
            "Connection pool ready (%s, max_open=%d, max_idle=%d, lifetime=%ds)",
            settings.driver,
            bounds.max_open_conns,
            pool_size,
            bounds.conn_max_lifetime,
        )
        return manager

    @property
    def driver(self) -> str:
        return self._settings.driver

    @property
    def max_open(self) -> int:
        return self._settings.connection_pool.max_open_conns

    def quote(self, identifier: str) -> str:
        return self._engine.dialect.identifier_preparer.quote_identifier(identifier)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[AsyncConnection]:
        """Check out one connection; it goes back to the pool on exit."""
        try:
            conn = await self._engine.connect()
        except PoolTimeoutError as exc:
            raise PoolExhaustedError(f"No pooled connection available: {exc}") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to get connection from pool: {exc}") from exc
        try:
            yield conn
        finally:
            try:
                await conn.close()
            except SQLAlchemyError as exc:
                logger.warning("Failed to release pooled connection: %s", exc)

    def idle_count(self) -> int:
        return self._engine.pool.checkedin()

    def in_use_count(self) -> int:
        return self._engine.pool.checkedout()

    def shard_path(self, shard: str) -> Path:
        return Path(self._settings.sqlite_path).parent / f"{shard}.db"

    async def attach_shard(self, shard: str) -> Path:
        """Register a sqlite shard file so every new connection attaches it."""
        path = self.shard_path(shard)
        if shard not in self._attached:
            self._attached[shard] = path
            # idle connections predate the attachment; reopen them lazily
            await self._engine.dispose()
        return path

    def _attach_shards(self, dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for shard, path in self._attached.items():
                cursor.execute(f"ATTACH DATABASE ? AS {self.quote(shard)}", (str(path),))
        finally:
            cursor.close()

    async def ping_idle_connections(self) -> int:
        """Probe as many connections as are idle right now; return healthy count."""
        healthy = 0
        for _ in range(self.idle_count()):
            try:
                async with self.acquire() as conn:
                    await conn.execute(text(PROBE))
            except (StoreError, SQLAlchemyError) as exc:
                logger.warning("Failed to ping database: %s", exc)
                continue
            healthy += 1
        return healthy

    async def run_health_checks(self, stop: asyncio.Event, period: float = 60.0) -> None:
        """Probe idle connections every ``period`` seconds until ``stop`` is set."""
        while True:
            try:
                await asyncio.wait_for(stop.wait(), timeout=period)
                return
            except asyncio.TimeoutError:
                pass
            healthy = await self.ping_idle_connections()
            logger.debug("Health check probed %d idle connections", healthy)

    async def dispose(self) -> None:
        await self._engine.dispose()
