"""Tests for the HTTP surface."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from endpoint_metrics.app import create_app
from endpoint_metrics.export import ChartExporter, ExportResult
from endpoint_metrics.persistence import MemoryStorage, PersistenceAdapter
from endpoint_metrics.store import MetricsStore


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def store(storage, tmp_path):
    return MetricsStore(PersistenceAdapter(storage), exporter=ChartExporter(tmp_path))


@pytest.fixture
def client(store):
    with TestClient(create_app(store)) as c:
        yield c


def _post(client, url, latency_ms=None, outcome="success"):
    return client.post("/events", json={"url": url, "latency_ms": latency_ms, "outcome": outcome})


def test_record_event_returns_endpoint(client):
    """Test that posting an event reports the resolved key."""
    response = _post(client, "/wms?LAYERS=roads", 95)
    assert response.status_code == 202
    assert response.json() == {"endpoint": "roads"}


def test_invalid_outcome_rejected(client, store):
    """Test request validation for unknown outcomes."""
    response = _post(client, "/wms?LAYERS=roads", 95, "exploded")
    assert response.status_code == 422
    assert store.keys() == []


def test_snapshot(client):
    """Test the per-endpoint snapshot."""
    _post(client, "/wms?LAYERS=roads", 95)
    _post(client, "/wms?LAYERS=roads", None, "timeout")
    body = client.get("/endpoints/roads/snapshot").json()
    assert body["total_calls"] == 2
    assert body["timed_out_calls"] == 1
    assert body["samples"] == 1
    assert body["mean"] == 95


def test_snapshot_unknown_endpoint(client):
    """Test 404 for endpoints never recorded."""
    assert client.get("/endpoints/nothing/snapshot").status_code == 404


def test_list_endpoints(client):
    """Test listing all snapshots."""
    _post(client, "/a", 1)
    _post(client, "/b", 2)
    body = client.get("/endpoints").json()
    assert [item["endpoint"] for item in body] == ["a", "b"]
    assert body[0]["stats"]["samples"] == 1


def test_resolve(client):
    """Test key resolution without recording."""
    body = client.get("/endpoints/resolve", params={"url": "https://host.example"}).json()
    assert body == {"endpoint": "host.example"}


def test_histogram(client):
    """Test histogram query params."""
    for v in (5, 15, 30):
        _post(client, "/tiles", v)
    body = client.get("/endpoints/tiles/histogram", params={"bin_size": 10, "max_ms": 50}).json()
    assert body["counts"] == [1, 1, 0, 1, 0, 0]
    assert body["bins"][0] == {"range_start": 0, "range_end": 9, "count": 1}
    assert body["max_value"] == 50


def test_histogram_rejects_bad_bin_size(client):
    """Test that bin_size must be positive."""
    assert client.get("/endpoints/tiles/histogram", params={"bin_size": 0}).status_code == 422


def test_clear_and_persistence(client, storage):
    """Test save, clear and load through the API."""
    _post(client, "/tiles", 5)
    assert client.post("/persistence/save").json()["ok"] is True
    client.post("/clear")
    assert client.get("/endpoints").json() == []
    body = client.post("/persistence/load").json()
    assert body["ok"] is True
    assert body["endpoints"] == 1

    client.post("/clear", params={"persist": True})
    assert storage.get_item("retry_endpoint_metrics_v1") == "{}"


def test_export_endpoints(client, tmp_path):
    """Test single and batch export."""
    _post(client, "/tiles", 5)
    _post(client, "/wms?LAYERS=roads", 7)
    body = client.post("/endpoints/tiles/export", params={"bin_size": 5}).json()
    assert body["ok"] is True
    assert body["filename"] == "tiles-hist.jpg"

    results = client.post("/export").json()
    assert [(r["endpoint"], r["ok"]) for r in results] == [("tiles", True), ("roads", True)]
    assert (tmp_path / "roads-hist.jpg").exists()


def test_shutdown_saves(store, storage):
    """Test that the lifecycle hooks load on startup and save on shutdown."""
    with TestClient(create_app(store)) as c:
        _post(c, "/tiles", 5)
    assert '"tiles"' in storage.get_item("retry_endpoint_metrics_v1")


def test_health(client):
    """Test the liveness endpoint."""
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["endpoints"] == 0


@pytest.mark.parametrize("params", [
    {"max_ms": "inf"},
    {"max_ms": -1},
    {"max_ms": 10**9},
    {"bin_size": 10**9},
    {"bin_size": 1e-9},
])
def test_histogram_rejects_unbounded_params(client, params):
    """Test that infinite, negative or oversized histogram params give 422."""
    _post(client, "/tiles", 5)
    response = client.get("/endpoints/tiles/histogram", params=params)
    assert response.status_code == 422


def test_export_bin_size_too_small(client):
    """Test that an export needing too many bins is rejected."""
    _post(client, "/tiles", 5)
    assert client.post("/endpoints/tiles/export", params={"bin_size": 1e-9}).status_code == 422


class LoopCheckingExporter:
    def __init__(self):
        self.on_loop = []

    def export(self, endpoint_key, hist, stats):
        try:
            asyncio.get_running_loop()
            self.on_loop.append(True)
        except RuntimeError:
            self.on_loop.append(False)
        return ExportResult(ok=True, filename=f"{endpoint_key}.jpg", path="", histogram=hist, stats=stats)


def test_exports_render_off_the_event_loop(storage):
    """Test that single and batch exports render in a worker thread."""
    exporter = LoopCheckingExporter()
    store = MetricsStore(PersistenceAdapter(storage), exporter=exporter)
    with TestClient(create_app(store)) as c:
        _post(c, "/a", 1)
        _post(c, "/b", 2)
        assert c.post("/endpoints/a/export").status_code == 200
        results = c.post("/export").json()
    assert [r["ok"] for r in results] == [True, True]
    assert exporter.on_loop == [False, False, False]


def test_autosave_from_events_reaches_storage(client, store, storage):
    """Test that the tenth event on an endpoint persists through the writer."""
    for _ in range(10):
        _post(client, "/tiles", 5)
    store.writer.submit(lambda: None).result()
    assert json.loads(storage.get_item("retry_endpoint_metrics_v1"))["tiles"]["totalCalls"] == 10
