"""
Shared fixtures for Speedtest Fleet Monitor tests.
"""

import builtins
import contextlib
import datetime
import json
import os
import tempfile

import pytest
from aiohttp.test_utils import TestClient, TestServer

NOW = datetime.datetime(2024, 1, 2, 12, 0, 0, tzinfo=datetime.timezone.utc)


def ts(year=2024, month=1, day=1, hour=0, minute=0, second=0) -> datetime.datetime:
    return datetime.datetime(year, month, day, hour, minute, second, tzinfo=datetime.timezone.utc)


def make_sample(node_id="node-a", timestamp=None, download=1_000_000, upload=500_000, ping=10.0,
                jitter=1.0, packet_loss=0.0, failed=False, error_message=None):
    from speedtest_monitor.models import Sample

    timestamp = timestamp or NOW
    if failed:
        return Sample(node_id=node_id, timestamp=timestamp, is_failed=True,
                      error_message=error_message or "speedtest timed out")
    return Sample(
        node_id=node_id,
        timestamp=timestamp,
        download_bandwidth=download,
        upload_bandwidth=upload,
        ping_latency=ping,
        ping_jitter=jitter,
        packet_loss=packet_loss,
        isp="Example ISP",
        server_name="Test Server",
        server_location="Amsterdam",
    )


def make_node(node_id="node-a", name=None, status="active", archived=False, favorite=False, last_alive=None):
    from speedtest_monitor.models import Node

    return Node(
        id=node_id,
        name=name or node_id.replace("-", " ").title(),
        status=status,
        archived=archived,
        favorite=favorite,
        first_seen=NOW - datetime.timedelta(days=7),
        last_seen=last_alive or NOW,
        last_alive=last_alive or NOW,
    )


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def temp_db(monkeypatch):
    """Create a temporary SQLite database with the full schema."""
    import speedtest_monitor.config as config
    import speedtest_monitor.database as database

    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    monkeypatch.setattr(config, "DATABASE_FILE", path)

    try:
        database.init_db(path)
        yield path
    finally:
        for suffix in ("", "-wal", "-shm"):
            with contextlib.suppress(builtins.BaseException):
                os.unlink(path + suffix)


@pytest.fixture
def memory_store():
    from speedtest_monitor.store import MemoryStore

    store = MemoryStore()
    store.initialize()
    return store


@pytest.fixture
def sqlite_store(temp_db):
    from speedtest_monitor.store import SqliteStore

    return SqliteStore(temp_db)


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request):
    """Each test using this fixture runs once per backend."""
    if request.param == "memory":
        return request.getfixturevalue("memory_store")
    return request.getfixturevalue("sqlite_store")


def populate(store, nodes, samples):
    """Register nodes (keeping their status and flags) and store samples."""
    for node in nodes:
        store.upsert_node(node.id, node.name, node.last_alive or NOW)
        if node.archived:
            store.set_archived(node.id, True)
        if node.favorite:
            store.set_favorite(node.id, True)
    store.add_samples(samples)
    return store


@pytest.fixture
def demo_data_file():
    """A demo-data JSON file with relative (negative seconds) timestamps."""
    data = {
        "nodes": [
            {"id": "node-a", "name": "Node A", "status": "active", "archived": False, "favorite": True,
             "first_seen": -604800, "last_seen": -60, "last_alive": -60},
            {"id": "node-b", "name": "Node B", "status": "inactive", "archived": True, "favorite": False,
             "first_seen": -604800, "last_seen": -7200, "last_alive": -7200},
        ],
        "measurements": {
            "node-a": [
                {"id": 1, "node_id": "node-a", "timestamp": -3600, "created_at": -3600, "is_failed": False,
                 "download_bandwidth": 12_500_000, "upload_bandwidth": 2_500_000,
                 "ping_latency": 12.5, "ping_jitter": 1.5, "packet_loss": 0.0},
                {"id": 2, "node_id": "node-a", "timestamp": -1800, "created_at": -1800, "is_failed": True,
                 "error_message": "no servers available"},
            ],
            "node-b": [
                {"id": 3, "node_id": "node-b", "timestamp": -90000, "created_at": -90000, "is_failed": False,
                 "download_bandwidth": 6_250_000, "upload_bandwidth": 1_250_000,
                 "ping_latency": 30.0, "ping_jitter": 4.0, "packet_loss": 1.0},
            ],
        },
    }
    fd, path = tempfile.mkstemp(suffix=".json")
    with os.fdopen(fd, "w") as f:
        json.dump(data, f)
    try:
        yield path
    finally:
        with contextlib.suppress(builtins.BaseException):
            os.unlink(path)


@pytest.fixture
async def api_client(memory_store):
    """aiohttp test client around an app backed by the in-memory store (no periodic tasks)."""
    from speedtest_monitor.server import create_app

    app = create_app(memory_store, run_tasks=False)
    client = TestClient(TestServer(app))
    await client.start_server()
    try:
        yield client
    finally:
        await client.close()
