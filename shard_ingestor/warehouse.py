import logging
from typing import Any, Dict, List, Sequence

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.elements import TextClause

from .errors import ShardSetupError, StoreError
from .pool import ConnectionPoolManager

logger = logging.getLogger(__name__)


class ShardWarehouse:
    """Shard and table DDL plus the per-table insert statement."""

    def __init__(self, pool: ConnectionPoolManager):
        self.pool = pool

    async def ensure_shard(self, shard: str) -> None:
        try:
            if self.pool.driver == "sqlite":
                await self.pool.attach_shard(shard)
                async with self.pool.acquire() as conn:
                    await conn.exec_driver_sql(f"PRAGMA {self.pool.quote(shard)}.schema_version")
                return
            async with self.pool.acquire() as conn:
                await conn.exec_driver_sql(
                    f"CREATE DATABASE IF NOT EXISTS {self.pool.quote(shard)}"
                )
                await conn.commit()
        except (StoreError, SQLAlchemyError) as exc:
            raise ShardSetupError(f"Failed to create database {shard}: {exc}") from exc

    async def ensure_table(self, shard: str, table: str, schema: str) -> None:
        statement = (
            f"CREATE TABLE IF NOT EXISTS {self.qualified(shard, table)} {schema}"
        )
        try:
            async with self.pool.acquire() as conn:
                await conn.exec_driver_sql(statement)
                await conn.commit()
        except (StoreError, SQLAlchemyError) as exc:
            raise ShardSetupError(
                f"Failed to create table {table} in database {shard}: {exc}"
            ) from exc

    def qualified(self, shard: str, table: str) -> str:
        return f"{self.pool.quote(shard)}.{self.pool.quote(table)}"

    def insert_statement(self, shard: str, table: str, field_names: Sequence[str]) -> TextClause:
        """INSERT with the columns in ``field_names`` order, one bound parameter each."""
        columns = ", ".join(self.pool.quote(name) for name in field_names)
        placeholders = ", ".join(f":p{index}" for index in range(len(field_names)))
        return text(
            f"INSERT INTO {self.qualified(shard, table)} ({columns}) VALUES ({placeholders})"
        )

    @staticmethod
    def bind_values(values: Sequence[Any]) -> Dict[str, Any]:
        return {f"p{index}": value for index, value in enumerate(values)}

    async def row_count(self, shard: str, table: str) -> int:
        async with self.pool.acquire() as conn:
            result = await conn.execute(text(f"SELECT COUNT(*) FROM {self.qualified(shard, table)}"))
            return int(result.scalar_one())

    async def snapshot(self, shard: str, table: str, limit: int = 50) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                text(f"SELECT * FROM {self.qualified(shard, table)} LIMIT :limit"),
                {"limit": limit},
            )
            return [dict(row) for row in result.mappings()]
