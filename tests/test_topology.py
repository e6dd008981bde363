import logging

import pytest
from conftest import FakeSource

from shard_ingestor.config import ExtraShardGroup, ShardLayoutSettings
from shard_ingestor.errors import ShardSetupError
from shard_ingestor.topology import build_topology, plan_topology


class RecordingProvisioner:
    def __init__(self, failing_shards=(), failing_tables=()):
        self.calls = []
        self.failing_shards = set(failing_shards)
        self.failing_tables = set(failing_tables)

    async def ensure_shard(self, shard):
        self.calls.append(("shard", shard))
        if shard in self.failing_shards:
            raise ShardSetupError(f"Failed to create database {shard}: denied")

    async def ensure_table(self, shard, table, schema):
        self.calls.append(("table", shard, table, schema))
        if (shard, table) in self.failing_tables:
            raise ShardSetupError(f"Failed to create table {table} in database {shard}")


@pytest.mark.parametrize(
    "copies, extra",
    [
        (0, {}),
        (1, {}),
        (3, {"analytics": 2}),
        (0, {"a": 0, "b": 4}),
        (5, {"x": 1, "y": 2, "z": 3}),
    ],
)
def test_plan_counts_and_uniqueness(copies, extra):
    topology = plan_topology("db", copies, extra, "events")

    assert len(topology.shard_names) == copies + len(extra)
    assert len(set(topology.shard_names)) == len(topology.shard_names)
    for i in range(1, copies + 1):
        assert topology.tables(f"db{i}") == ["events"]
    for group, count in extra.items():
        assert len(topology.tables(f"db_{group}")) == count
    assert topology.worker_count == copies + sum(extra.values())
    assert len(set(topology.pairs())) == topology.worker_count


def test_plan_names_extra_group_tables():
    topology = plan_topology("flights_db", 1, {"analytics": ExtraShardGroup(tables=3)}, "flights")

    assert topology.shards == {
        "flights_db1": ["flights"],
        "flights_db_analytics": ["flights_1", "flights_2", "flights_3"],
    }


def test_plan_replicas_only():
    topology = plan_topology("prefix", 2, {}, "events")

    assert topology.shard_names == ["prefix1", "prefix2"]
    assert topology.pairs() == [("prefix1", "events"), ("prefix2", "events")]


@pytest.mark.asyncio
async def test_build_issues_shard_then_tables_with_source_schema():
    provisioner = RecordingProvisioner()
    layout = ShardLayoutSettings(prefix="p", copies=1, extra={"g": {"tables": 2}})

    topology = await build_topology(layout, provisioner, FakeSource(schema="(id INT)"))

    assert topology.shard_names == ["p1", "p_g"]
    assert provisioner.calls == [
        ("shard", "p1"),
        ("table", "p1", "events", "(id INT)"),
        ("shard", "p_g"),
        ("table", "p_g", "events_1", "(id INT)"),
        ("table", "p_g", "events_2", "(id INT)"),
    ]


@pytest.mark.asyncio
async def test_build_continues_past_setup_failures(caplog):
    provisioner = RecordingProvisioner(
        failing_shards={"p1"}, failing_tables={("p2", "events")}
    )
    layout = ShardLayoutSettings(prefix="p", copies=3)

    with caplog.at_level(logging.WARNING, logger="shard_ingestor.topology"):
        topology = await build_topology(layout, provisioner, FakeSource())

    assert topology.shard_names == ["p1", "p2", "p3"]
    assert ("table", "p3", "events", "(id INT)") in provisioner.calls
    messages = [record.getMessage() for record in caplog.records]
    assert any("database p1" in message for message in messages)
    assert any("table events in database p2" in message for message in messages)


@pytest.mark.asyncio
async def test_build_against_sqlite_creates_tables(warehouse):
    layout = ShardLayoutSettings(prefix="shard", copies=2, extra={"wide": {"tables": 2}})

    topology = await build_topology(layout, warehouse, FakeSource())

    for shard, table in topology.pairs():
        assert await warehouse.row_count(shard, table) == 0
