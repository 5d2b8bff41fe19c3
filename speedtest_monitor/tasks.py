import asyncio
import concurrent.futures
import datetime
import logging
import time

from .config import (
    CLEANUP_INTERVAL_HOURS,
    DB_THREAD_POOL_SIZE,
    HEARTBEAT_INTERVAL_SECONDS,
    NODE_ALIVE_TIMEOUT_SECONDS,
    NODE_INACTIVE_TIMEOUT_SECONDS,
    NODE_STATUS_CHECK_INTERVAL_SECONDS,
    RETENTION_FAILED_DAYS,
    RETENTION_MEASUREMENTS_DAYS,
)

log = logging.getLogger("SpeedtestMonitor.Tasks")


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


async def run_status_update(app):
    """Demote nodes that stopped sending alive signals. Returns (unreachable, inactive)."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        app["db_executor"],
        app["store"].update_node_status,
        datetime.timedelta(seconds=NODE_ALIVE_TIMEOUT_SECONDS),
        datetime.timedelta(seconds=NODE_INACTIVE_TIMEOUT_SECONDS),
        _utcnow(),
    )


async def run_retention_prune(app):
    """Delete samples past their retention period. Returns (measurements, failed) deleted."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        app["db_executor"],
        app["store"].prune_samples,
        RETENTION_MEASUREMENTS_DAYS,
        RETENTION_FAILED_DAYS,
        _utcnow(),
    )


async def node_status_tracker_task(app):
    log.info(
        f"Node status tracker started (alive timeout {NODE_ALIVE_TIMEOUT_SECONDS}s, "
        f"inactive timeout {NODE_INACTIVE_TIMEOUT_SECONDS}s)."
    )
    while True:
        await asyncio.sleep(NODE_STATUS_CHECK_INTERVAL_SECONDS)
        try:
            await run_status_update(app)
        except Exception:
            log.error("Error in node status tracker task:", exc_info=True)


async def retention_pruner_task(app):
    log.info("Retention pruner task started.")
    while True:
        try:
            deleted, deleted_failed = await run_retention_prune(app)
            log.info(f"[PRUNER] Retention pass done: {deleted} measurements, {deleted_failed} failed removed.")
        except Exception:
            log.error("Error in retention pruner task:", exc_info=True)
        await asyncio.sleep(3600 * CLEANUP_INTERVAL_HOURS)


async def heartbeat_task(app):
    log.info("Debug heartbeat task started.")
    loop = asyncio.get_running_loop()
    while True:
        await asyncio.sleep(HEARTBEAT_INTERVAL_SECONDS)
        try:
            nodes = await loop.run_in_executor(app["db_executor"], app["store"].list_nodes)
            by_status = {}
            for node in nodes:
                by_status[node.status] = by_status.get(node.status, 0) + 1
            uptime = int(time.time() - app["start_time"])
            log.info(f"[HEARTBEAT] Uptime: {uptime}s, Nodes: {len(nodes)}, By status: {by_status}")
        except Exception:
            log.error("Error in heartbeat task:", exc_info=True)


async def start_background_tasks(app):
    log.info("Starting background tasks...")
    app["db_executor"] = concurrent.futures.ThreadPoolExecutor(max_workers=DB_THREAD_POOL_SIZE)
    log.info(f"Database thread pool initialized with {DB_THREAD_POOL_SIZE} workers")
    app["tasks"] = []

    loop = asyncio.get_running_loop()
    await loop.run_in_executor(app["db_executor"], app["store"].initialize)
    log.info(f"Store '{type(app['store']).__name__}' initialized.")

    if not app.get("run_tasks", True):
        log.info("Background maintenance tasks disabled.")
        return

    app["tasks"].append(asyncio.create_task(node_status_tracker_task(app)))
    app["tasks"].append(asyncio.create_task(retention_pruner_task(app)))
    app["tasks"].append(asyncio.create_task(heartbeat_task(app)))
    log.info(f"{len(app['tasks'])} background tasks started.")


async def cleanup_background_tasks(app):
    log.warning("Application cleanup started.")

    for task in app.get("tasks", []):
        task.cancel()
    if "tasks" in app:
        await asyncio.gather(*app["tasks"], return_exceptions=True)
    log.info("Asyncio background tasks cancelled.")

    if "db_executor" in app and app["db_executor"]:
        await asyncio.get_running_loop().run_in_executor(app["db_executor"], app["store"].close)
        app["db_executor"].shutdown(wait=True)
        log.info("db_executor shut down.")
