"""
FleetMonitor: the operations behind every HTTP route.

All methods are blocking (store access plus pure engine passes) and are meant
to be called from the database thread pool.
"""

import datetime
import logging
import time
from typing import Any, Dict, List, Optional

from .aggregation import aggregate, normalize_interval
from .config import APP_VERSION, NODE_STATUSES
from .errors import InvalidPayloadError, NodeNotFoundError
from .fleet_summary import compute_fleet_summary
from .models import Node, Sample, isoformat_z, parse_timestamp
from .node_stats import compute_node_details
from .query_filter import Pagination, QueryFilter
from .store import SampleStore

log = logging.getLogger("SpeedtestMonitor.Service")


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidPayloadError(f"'{key}' is required and must be a non-empty string")
    return value.strip()


def _require_list(payload: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    value = payload.get(key)
    if not isinstance(value, list) or not value:
        raise InvalidPayloadError(f"'{key}' is required and must be a non-empty list")
    for item in value:
        if not isinstance(item, dict):
            raise InvalidPayloadError(f"Every entry of '{key}' must be an object")
    return value


def _require_timestamp(entry: Dict[str, Any], index: int) -> datetime.datetime:
    timestamp = parse_timestamp(entry.get('timestamp'))
    if timestamp is None:
        raise InvalidPayloadError(f"Entry {index} has a missing or invalid 'timestamp'")
    return timestamp


def _section(entry: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = entry.get(key)
    return value if isinstance(value, dict) else {}


def _optional_number(section: Dict[str, Any], key: str, index: int, label: str):
    value = section.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidPayloadError(f"Entry {index} has a non-numeric '{label}': {value!r}")
    return value


def sample_from_measurement(node_id: str, entry: Dict[str, Any], index: int = 0) -> Sample:
    """Convert one speedtest result ({timestamp, ping{...}, download{...}, ...}) to a Sample."""
    ping = _section(entry, 'ping')
    download = _section(entry, 'download')
    upload = _section(entry, 'upload')
    server = _section(entry, 'server')
    return Sample(
        node_id=node_id,
        timestamp=_require_timestamp(entry, index),
        download_bandwidth=_optional_number(download, 'bandwidth', index, 'download.bandwidth'),
        upload_bandwidth=_optional_number(upload, 'bandwidth', index, 'upload.bandwidth'),
        ping_latency=_optional_number(ping, 'latency', index, 'ping.latency'),
        ping_jitter=_optional_number(ping, 'jitter', index, 'ping.jitter'),
        packet_loss=_optional_number(entry, 'packet_loss', index, 'packet_loss'),
        isp=entry.get('isp'),
        server_name=server.get('name'),
        server_location=server.get('location'),
    )


def sample_from_failed_test(node_id: str, entry: Dict[str, Any], index: int = 0) -> Sample:
    return Sample(
        node_id=node_id,
        timestamp=_require_timestamp(entry, index),
        is_failed=True,
        error_message=entry.get('error_message'),
    )


class FleetMonitor:
    def __init__(self, store: SampleStore):
        self.store = store
        self.started_at = time.time()

    # --- Read side ---

    def _nodes_by_id(self) -> Dict[str, Node]:
        return {n.id: n for n in self.store.list_nodes()}

    def _get_node_or_raise(self, node_id: str) -> Node:
        node = self.store.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def dashboard_summary(self, now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        summary = compute_fleet_summary(self.store.list_nodes(), self.store.list_samples(), now)
        return summary.to_dict()

    def list_nodes(self, status: Optional[str] = None, hide_archived: bool = False) -> Dict[str, Any]:
        nodes = self.store.list_nodes()
        if status in NODE_STATUSES:
            nodes = [n for n in nodes if n.status == status]
        if hide_archived:
            nodes = [n for n in nodes if not n.archived]
        return {'nodes': [n.to_dict() for n in nodes], 'total': len(nodes)}

    def node_details(self, node_id: str, now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
        node = self._get_node_or_raise(node_id)
        samples = self.store.list_samples(node_ids=[node_id])
        return compute_node_details(node, samples, now or utcnow())

    def list_measurements(self, query_filter: QueryFilter, pagination: Pagination) -> Dict[str, Any]:
        """Raw samples matching the filter, newest first, one page at a time."""
        samples = self.store.list_samples(
            node_ids=query_filter.node_ids, start=query_filter.start, end=query_filter.end
        )
        matched = query_filter.apply(samples, self._nodes_by_id())
        matched.sort(key=lambda s: s.timestamp, reverse=True)
        page = pagination.paginate(matched)
        return {'measurements': [s.to_dict() for s in page], **pagination.to_dict(len(matched))}

    def node_measurements(self, node_id: str, query_filter: QueryFilter, pagination: Pagination) -> Dict[str, Any]:
        self._get_node_or_raise(node_id)
        scoped = QueryFilter(
            node_ids=frozenset([node_id]),
            hide_archived=False,
            status=query_filter.status,
            start=query_filter.start,
            end=query_filter.end,
            end_inclusive=query_filter.end_inclusive,
        )
        return self.list_measurements(scoped, pagination)

    def aggregated(
        self, query_filter: QueryFilter, interval: Optional[str] = None, now: Optional[datetime.datetime] = None
    ) -> Dict[str, Any]:
        """
        Chart buckets for the filter. A missing 'to' bound defaults to now, a
        missing 'from' bound leaves the window open towards the past.
        """
        end = query_filter.end or now or utcnow()
        interval_label = normalize_interval(interval)
        samples = self.store.list_samples(node_ids=query_filter.node_ids, start=query_filter.start, end=end)
        buckets = aggregate(
            samples,
            self._nodes_by_id(),
            start=query_filter.start,
            end=end,
            interval=interval,
            hide_archived=query_filter.hide_archived,
            node_ids=query_filter.node_ids,
        )
        return {
            'data': [b.to_dict() for b in buckets],
            'interval': interval_label,
            'total_samples': sum(b.sample_count for b in buckets),
        }

    def health(self) -> Dict[str, Any]:
        try:
            database_status = 'ok' if self.store.ping() else 'error'
        except Exception:
            log.error("Health check could not reach the store:", exc_info=True)
            database_status = 'error'
        return {
            'status': 'ok' if database_status == 'ok' else 'degraded',
            'database': database_status,
            'uptime_seconds': int(time.time() - self.started_at),
            'version': APP_VERSION,
        }

    # --- Node management ---

    def set_archived(self, node_id: str, archived: bool) -> Dict[str, Any]:
        if not self.store.set_archived(node_id, archived):
            raise NodeNotFoundError(node_id)
        return {'status': 'ok', 'node_id': node_id, 'archived': archived}

    def set_favorite(self, node_id: str, favorite: bool) -> Dict[str, Any]:
        if not self.store.set_favorite(node_id, favorite):
            raise NodeNotFoundError(node_id)
        return {'status': 'ok', 'node_id': node_id, 'favorite': favorite}

    def delete_node(self, node_id: str) -> Dict[str, Any]:
        if not self.store.delete_node(node_id):
            raise NodeNotFoundError(node_id)
        return {'status': 'ok', 'node_id': node_id}

    # --- Ingestion ---

    def record_alive(self, payload: Dict[str, Any], now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise InvalidPayloadError("Request body must be a JSON object")
        node_id = _require_str(payload, 'node_id')
        node_name = payload.get('node_name') or node_id
        now = now or utcnow()
        registered = self.store.get_node(node_id) is None
        self.store.upsert_node(node_id, node_name, now)
        log.debug(f"Alive signal from node '{node_id}'.")
        return {'status': 'ok', 'server_time': isoformat_z(now), 'node_registered': registered}

    def ingest_measurements(self, payload: Dict[str, Any], now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise InvalidPayloadError("Request body must be a JSON object")
        node_id = _require_str(payload, 'node_id')
        node_name = _require_str(payload, 'node_name')
        entries = _require_list(payload, 'measurements')
        samples = [sample_from_measurement(node_id, entry, i) for i, entry in enumerate(entries)]

        self.store.upsert_node(node_id, node_name, now or utcnow())
        inserted = self.store.add_samples(samples)
        log.info(f"Measurements processed for node '{node_id}': received {len(entries)}, stored {inserted}.")
        return {
            'status': 'ok',
            'received': len(entries),
            'inserted': inserted,
            'updated': 0,
            'failed': len(entries) - inserted,
        }

    def ingest_failed(self, payload: Dict[str, Any], now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise InvalidPayloadError("Request body must be a JSON object")
        node_id = _require_str(payload, 'node_id')
        node_name = _require_str(payload, 'node_name')
        entries = _require_list(payload, 'failed_tests')
        samples = [sample_from_failed_test(node_id, entry, i) for i, entry in enumerate(entries)]

        self.store.upsert_node(node_id, node_name, now or utcnow())
        self.store.add_samples(samples)
        log.info(f"Failed measurements recorded for node '{node_id}': {len(entries)}.")
        return {'status': 'ok', 'received': len(entries)}
