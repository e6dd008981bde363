import logging
from typing import Dict, List, Mapping, Protocol, Union

from .config import ExtraShardGroup, ShardLayoutSettings
from .errors import ShardSetupError
from .models import ShardTopology
from .sources import SourceAdapter

logger = logging.getLogger(__name__)


class ShardProvisioner(Protocol):
    async def ensure_shard(self, shard: str) -> None:
        ...

    async def ensure_table(self, shard: str, table: str, schema: str) -> None:
        ...


def plan_topology(
    prefix: str,
    copies: int,
    extra: Mapping[str, Union[ExtraShardGroup, int]],
    table_prefix: str,
) -> ShardTopology:
    """Name every shard and the tables it owns.

    Replicas ``{prefix}1..{prefix}{copies}`` own one table named
    ``table_prefix``. Each extra group ``g`` becomes shard ``{prefix}_{g}``
    owning ``{table_prefix}_1..{table_prefix}_{n}``.
    """
    shards: Dict[str, List[str]] = {}
    for i in range(1, copies + 1):
        shards[f"{prefix}{i}"] = [table_prefix]
    for group, spec in extra.items():
        count = spec.tables if isinstance(spec, ExtraShardGroup) else int(spec)
        shards[f"{prefix}_{group}"] = [f"{table_prefix}_{j}" for j in range(1, count + 1)]
    return ShardTopology(shards=shards)


async def build_topology(
    layout: ShardLayoutSettings,
    provisioner: ShardProvisioner,
    source: SourceAdapter,
) -> ShardTopology:
    """Plan the topology and create every shard and table, tolerating failures.

    A shard or table that cannot be created is logged and kept in the
    topology; its worker will fail and skip records until the store
    recovers.
    """
    topology = plan_topology(layout.prefix, layout.copies, layout.extra, source.table_prefix())
    schema = source.schema()
    for shard in topology.shard_names:
        try:
            await provisioner.ensure_shard(shard)
        except ShardSetupError as exc:
            logger.warning("%s", exc)
        for table in topology.tables(shard):
            try:
                await provisioner.ensure_table(shard, table, schema)
            except ShardSetupError as exc:
                logger.warning("%s", exc)
    logger.info(
        "Topology ready: %d shards, %d tables",
        len(topology.shard_names),
        topology.worker_count,
    )
    return topology
