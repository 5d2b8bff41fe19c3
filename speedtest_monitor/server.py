import asyncio
import json
import logging
import time

from aiohttp import web

from .config import API_PREFIX, SERVER_HOST, SERVER_PORT
from .errors import InvalidPayloadError, NodeNotFoundError
from .query_filter import Pagination, QueryFilter, parse_bool
from .service import FleetMonitor
from .store import SampleStore
from .tasks import cleanup_background_tasks, start_background_tasks

log = logging.getLogger("SpeedtestMonitor.Server")


async def run_blocking(request: web.Request, func, *args):
    """Run a blocking FleetMonitor call on the database thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(request.app["db_executor"], func, *args)


async def read_json(request: web.Request):
    try:
        return await request.json()
    except json.JSONDecodeError as e:
        raise InvalidPayloadError(f"Request body is not valid JSON: {e}") from e


@web.middleware
async def error_middleware(request, handler):
    """Translate domain errors into JSON error responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except NodeNotFoundError as e:
        return web.json_response({"error": "Node not found", "details": str(e)}, status=404)
    except InvalidPayloadError as e:
        log.warning(f"Rejected request to {request.path}: {e}")
        return web.json_response({"error": "Invalid request body", "details": str(e)}, status=400)
    except Exception as e:
        log.error(f"Unhandled error while serving {request.method} {request.path}:", exc_info=True)
        return web.json_response({"error": "Internal server error", "details": str(e)}, status=500)


@web.middleware
async def cache_control_middleware(request, handler):
    """API responses are live data and must never be cached."""
    response = await handler(request)
    if request.path.startswith(API_PREFIX):
        response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return response


# --- Read handlers ---

async def handle_health(request):
    monitor: FleetMonitor = request.app["monitor"]
    payload = await run_blocking(request, monitor.health)
    return web.json_response(payload, status=200 if payload["status"] == "ok" else 503)


async def handle_dashboard(request):
    payload = await run_blocking(request, request.app["monitor"].dashboard_summary)
    return web.json_response(payload)


async def handle_list_nodes(request):
    status = request.query.get("status")
    hide_archived = parse_bool(request.query.get("hide_archived"))
    payload = await run_blocking(request, request.app["monitor"].list_nodes, status, hide_archived)
    return web.json_response(payload)


async def handle_node_details(request):
    node_id = request.match_info["node_id"]
    payload = await run_blocking(request, request.app["monitor"].node_details, node_id)
    return web.json_response(payload)


async def handle_list_measurements(request):
    query_filter = QueryFilter.from_query(request.query, end_inclusive=False)
    pagination = Pagination.from_query(request.query)
    payload = await run_blocking(request, request.app["monitor"].list_measurements, query_filter, pagination)
    return web.json_response(payload)


async def handle_node_measurements(request):
    node_id = request.match_info["node_id"]
    query_filter = QueryFilter.from_query(request.query, end_inclusive=False)
    pagination = Pagination.from_query(request.query)
    payload = await run_blocking(
        request, request.app["monitor"].node_measurements, node_id, query_filter, pagination
    )
    return web.json_response(payload)


async def handle_aggregated(request):
    query_filter = QueryFilter.from_query(request.query, end_inclusive=True)
    interval = request.query.get("interval")
    payload = await run_blocking(request, request.app["monitor"].aggregated, query_filter, interval)
    return web.json_response(payload)


# --- Node management handlers ---

async def _read_flag(request, key: str) -> bool:
    body = await read_json(request)
    if not isinstance(body, dict) or not isinstance(body.get(key), bool):
        raise InvalidPayloadError(f"Body must be an object with a boolean '{key}' field")
    return body[key]


async def handle_archive_node(request):
    node_id = request.match_info["node_id"]
    archived = await _read_flag(request, "archived")
    payload = await run_blocking(request, request.app["monitor"].set_archived, node_id, archived)
    return web.json_response(payload)


async def handle_favorite_node(request):
    node_id = request.match_info["node_id"]
    favorite = await _read_flag(request, "favorite")
    payload = await run_blocking(request, request.app["monitor"].set_favorite, node_id, favorite)
    return web.json_response(payload)


async def handle_delete_node(request):
    node_id = request.match_info["node_id"]
    payload = await run_blocking(request, request.app["monitor"].delete_node, node_id)
    return web.json_response(payload)


# --- Ingestion handlers ---

async def handle_node_alive(request):
    body = await read_json(request)
    payload = await run_blocking(request, request.app["monitor"].record_alive, body)
    return web.json_response(payload)


async def handle_submit_measurements(request):
    body = await read_json(request)
    payload = await run_blocking(request, request.app["monitor"].ingest_measurements, body)
    return web.json_response(payload)


async def handle_submit_failed(request):
    body = await read_json(request)
    payload = await run_blocking(request, request.app["monitor"].ingest_failed, body)
    return web.json_response(payload)


def create_app(store: SampleStore, run_tasks: bool = True) -> web.Application:
    """
    Build the aiohttp application around a store.

    Startup creates the database thread pool and initializes the store;
    run_tasks controls whether the periodic maintenance tasks are started.
    """
    app = web.Application(middlewares=[cache_control_middleware, error_middleware])
    app["store"] = store
    app["monitor"] = FleetMonitor(store)
    app["run_tasks"] = run_tasks
    app["start_time"] = time.time()

    app.on_startup.append(start_background_tasks)
    app.on_cleanup.append(cleanup_background_tasks)

    p = API_PREFIX
    app.router.add_get(f"{p}/health", handle_health)
    app.router.add_get(f"{p}/dashboard", handle_dashboard)
    app.router.add_get(f"{p}/nodes", handle_list_nodes)
    app.router.add_get(f"{p}/nodes/{{node_id}}", handle_node_details)
    app.router.add_put(f"{p}/nodes/{{node_id}}/archive", handle_archive_node)
    app.router.add_put(f"{p}/nodes/{{node_id}}/favorite", handle_favorite_node)
    app.router.add_delete(f"{p}/nodes/{{node_id}}", handle_delete_node)
    app.router.add_get(f"{p}/nodes/{{node_id}}/measurements", handle_node_measurements)
    app.router.add_get(f"{p}/measurements", handle_list_measurements)
    app.router.add_get(f"{p}/measurements/aggregated", handle_aggregated)
    app.router.add_post(f"{p}/node/alive", handle_node_alive)
    app.router.add_post(f"{p}/measurements", handle_submit_measurements)
    app.router.add_post(f"{p}/measurements/failed", handle_submit_failed)
    return app


def run_server(store: SampleStore, host: str = SERVER_HOST, port: int = SERVER_PORT):
    app = create_app(store)
    log.info(f"Server starting on http://{host}:{port}{API_PREFIX}")
    log.info(f"Using {type(store).__name__} as sample store.")
    web.run_app(app, host=host, port=port)
