"""
Tests for background task startup, cleanup and the periodic maintenance passes.
"""

import asyncio
import concurrent.futures
import datetime
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_node, make_sample, populate
from speedtest_monitor import tasks as tasks_mod
from speedtest_monitor.tasks import (
    cleanup_background_tasks,
    run_retention_prune,
    run_status_update,
    start_background_tasks,
)


@pytest.fixture
def executor():
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=True)


@pytest.mark.asyncio
async def test_start_and_cleanup_background_tasks(memory_store):
    app = {"store": memory_store, "run_tasks": True, "start_time": 0}

    await start_background_tasks(app)
    try:
        assert isinstance(app["db_executor"], concurrent.futures.ThreadPoolExecutor)
        assert len(app["tasks"]) == 3
        assert all(not t.done() for t in app["tasks"])
    finally:
        await cleanup_background_tasks(app)

    assert all(t.cancelled() or t.done() for t in app["tasks"])


@pytest.mark.asyncio
async def test_startup_initializes_store_without_tasks():
    store = MagicMock()
    app = {"store": store, "run_tasks": False}

    await start_background_tasks(app)
    await cleanup_background_tasks(app)

    store.initialize.assert_called_once_with()
    store.close.assert_called_once_with()
    assert app["tasks"] == []


@pytest.mark.asyncio
async def test_status_update_demotes_silent_nodes(memory_store, executor):
    now = datetime.datetime.now(datetime.timezone.utc)
    memory_store.upsert_node("fresh", "Fresh", now)
    memory_store.upsert_node("silent", "Silent", now - datetime.timedelta(hours=3))
    app = {"store": memory_store, "db_executor": executor}

    unreachable, inactive = await run_status_update(app)

    assert inactive == 1
    assert memory_store.get_node("silent").status == "inactive"
    assert memory_store.get_node("fresh").status == "active"


@pytest.mark.asyncio
async def test_retention_prune(memory_store, executor):
    now = datetime.datetime.now(datetime.timezone.utc)
    populate(memory_store, [make_node("node-a")], [
        make_sample("node-a", now - datetime.timedelta(days=500)),
        make_sample("node-a", now - datetime.timedelta(days=1)),
    ])
    app = {"store": memory_store, "db_executor": executor}

    deleted, deleted_failed = await run_retention_prune(app)

    assert (deleted, deleted_failed) == (1, 0)
    assert len(memory_store.list_samples()) == 1


@pytest.mark.asyncio
async def test_status_tracker_survives_errors(executor):
    store = MagicMock()
    store.update_node_status.side_effect = RuntimeError("database gone")
    app = {"store": store, "db_executor": executor}

    with patch.object(tasks_mod, "NODE_STATUS_CHECK_INTERVAL_SECONDS", 0):
        task = asyncio.create_task(tasks_mod.node_status_tracker_task(app))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert store.update_node_status.call_count >= 2
