import time

import pytest
from conftest import FakeSource
from fastapi.testclient import TestClient

from shard_ingestor.config import PollingSettings, Settings, ShardLayoutSettings, SourceSpec
from shard_ingestor.main import create_app
from shard_ingestor.sources import SourceRegistry, default_registry


@pytest.fixture
def client(database_settings):
    settings = Settings(
        source=SourceSpec(name="fake"),
        databases=ShardLayoutSettings(prefix="api", copies=2),
        database=database_settings,
        polling=PollingSettings(error_backoff_seconds=0.01),
    )
    registry = SourceRegistry()
    registry.register("fake", lambda: FakeSource(batches=[[1, 2]], interval=60))
    with TestClient(create_app(settings, registry)) as test_client:
        yield test_client


def _wait_for_rows(client, expected, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        workers = client.get("/status").json()["status"]["workers"]
        if all(worker["records_written"] == expected for worker in workers):
            return workers
        time.sleep(0.02)
    raise AssertionError("workers did not write in time")


def test_health_reports_running(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_topology_lists_shards(client):
    assert client.get("/topology").json() == {
        "shards": {"api1": ["events"], "api2": ["events"]}
    }


def test_status_and_snapshot_after_first_batch(client):
    workers = _wait_for_rows(client, 2)
    assert sorted(worker["shard"] for worker in workers) == ["api1", "api2"]

    response = client.get("/shards/api1/events/snapshot")

    assert response.status_code == 200
    assert response.json()["count"] == 2
    assert [row["id"] for row in response.json()["rows"]] == [1, 2]


def test_snapshot_of_unknown_table_is_404(client):
    assert client.get("/shards/api1/nope/snapshot").status_code == 404


def test_seed_rejected_for_sources_without_rows(client):
    response = client.post("/sources/fake/seed", json={"payload": {"title": "x"}})
    assert response.status_code == 404


def test_seed_queues_row_on_simulated_source(database_settings):
    settings = Settings(
        source=SourceSpec(name="simulated", config={"records_per_batch": 0, "interval": 60}),
        databases=ShardLayoutSettings(prefix="seed", copies=1),
        database=database_settings,
    )
    with TestClient(create_app(settings, default_registry())) as test_client:
        response = test_client.post(
            "/sources/simulated/seed", json={"payload": {"title": "hello", "category": "beta"}}
        )
        unknown = test_client.post("/sources/opensky/seed", json={"payload": {}})

    assert response.status_code == 200
    inserted = response.json()["inserted"]
    assert inserted["title"] == "hello"
    assert inserted["source"] == "crm"
    assert unknown.status_code == 404
