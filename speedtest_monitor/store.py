"""
Sample stores.

Both backends expose the same capability set (SampleStore) and hand out
snapshots: callers never share mutable state with the store.
"""

import dataclasses
import datetime
import json
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from . import database
from .config import DATABASE_FILE, DEMO_DATA_FILE
from .errors import MonitorError
from .models import Node, Sample, isoformat_z

log = logging.getLogger("SpeedtestMonitor.Store")

# Fields that demo data may give as relative offsets (negative seconds before now)
TIMESTAMP_FIELDS = frozenset({
    'timestamp', 'created_at', 'updated_at',
    'first_seen', 'last_seen', 'last_alive', 'last_used',
})


class SampleStore(Protocol):
    def initialize(self) -> None: ...

    def list_nodes(self) -> List[Node]: ...

    def get_node(self, node_id: str) -> Optional[Node]: ...

    def list_samples(
        self,
        node_ids: Optional[Iterable[str]] = None,
        start: Optional[datetime.datetime] = None,
        end: Optional[datetime.datetime] = None,
    ) -> List[Sample]: ...

    def upsert_node(self, node_id: str, node_name: str, seen_at: datetime.datetime) -> Node: ...

    def add_samples(self, samples: Iterable[Sample]) -> int: ...

    def set_archived(self, node_id: str, archived: bool) -> bool: ...

    def set_favorite(self, node_id: str, favorite: bool) -> bool: ...

    def delete_node(self, node_id: str) -> bool: ...

    def update_node_status(
        self, alive_timeout: datetime.timedelta, inactive_timeout: datetime.timedelta, now: datetime.datetime
    ) -> Tuple[int, int]: ...

    def prune_samples(self, measurements_days: int, failed_days: int, now: datetime.datetime) -> Tuple[int, int]: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


def resolve_timestamps(obj: Any, now: Optional[datetime.datetime] = None) -> Any:
    """
    Walk parsed JSON and replace numeric TIMESTAMP_FIELDS values (seconds
    relative to now) with absolute ISO-8601 strings. Anything else is left alone.
    """
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    if isinstance(obj, list):
        return [resolve_timestamps(item, now) for item in obj]
    if not isinstance(obj, dict):
        return obj
    resolved = {}
    for key, value in obj.items():
        if key in TIMESTAMP_FIELDS and isinstance(value, (int, float)) and not isinstance(value, bool):
            resolved[key] = isoformat_z(now + datetime.timedelta(seconds=value))
        else:
            resolved[key] = resolve_timestamps(value, now)
    return resolved


def load_demo_data(path: str, now: Optional[datetime.datetime] = None) -> Tuple[List[Node], List[Sample]]:
    """
    Read a demo-data JSON file: {"nodes": [...], "measurements": {node_id: [...]}}.

    A flat list of measurements (each carrying node_id) is accepted too.
    """
    with open(path, 'r', encoding='utf-8') as f:
        raw = json.load(f)
    data = resolve_timestamps(raw, now)

    nodes = [Node.from_dict(item) for item in data.get('nodes') or []]
    samples: List[Sample] = []
    measurements = data.get('measurements') or {}
    if isinstance(measurements, dict):
        for node_id, items in measurements.items():
            samples.extend(Sample.from_dict(item, node_id=node_id) for item in items)
    else:
        samples.extend(Sample.from_dict(item) for item in measurements)

    samples.sort(key=lambda s: s.timestamp)
    log.info(f"Loaded demo data from '{path}': {len(nodes)} nodes, {len(samples)} samples.")
    return nodes, samples


class MemoryStore:
    """In-memory store for demos and tests. Populated by an explicit initialize() call."""

    def __init__(self, demo_data_path: Optional[str] = None):
        self.demo_data_path = demo_data_path
        self._lock = threading.RLock()
        self._nodes: Dict[str, Node] = {}
        self._samples: Dict[str, List[Sample]] = {}
        self._next_id = 1

    def initialize(self, now: Optional[datetime.datetime] = None):
        if not self.demo_data_path:
            log.info("Memory store started empty (no demo data configured).")
            return
        nodes, samples = load_demo_data(self.demo_data_path, now)
        with self._lock:
            self._nodes = {n.id: n for n in nodes}
            self._samples = {}
            self._next_id = 1
            self._append(samples)

    def _append(self, samples: Iterable[Sample]) -> int:
        """Successful samples replace a stored one at the same node and timestamp, keeping its id."""
        count = 0
        for sample in samples:
            series = self._samples.setdefault(sample.node_id, [])
            existing = None
            if not sample.is_failed:
                existing = next(
                    (i for i, s in enumerate(series) if not s.is_failed and s.timestamp == sample.timestamp), None
                )
            if existing is not None:
                series[existing] = dataclasses.replace(sample, id=series[existing].id)
                count += 1
                continue
            if sample.id is None:
                sample = dataclasses.replace(sample, id=self._next_id)
            self._next_id = max(self._next_id, sample.id) + 1
            series.append(sample)
            count += 1
        for series in self._samples.values():
            series.sort(key=lambda s: s.timestamp)
        return count

    def list_nodes(self) -> List[Node]:
        with self._lock:
            return [dataclasses.replace(n) for n in sorted(self._nodes.values(), key=lambda n: (n.name, n.id))]

    def get_node(self, node_id: str) -> Optional[Node]:
        with self._lock:
            node = self._nodes.get(node_id)
            return dataclasses.replace(node) if node else None

    def list_samples(self, node_ids=None, start=None, end=None) -> List[Sample]:
        with self._lock:
            if node_ids is None:
                series = list(self._samples.values())
            else:
                series = [self._samples.get(node_id, []) for node_id in node_ids]
            result = [
                s for items in series for s in items
                if (start is None or s.timestamp >= start) and (end is None or s.timestamp <= end)
            ]
        result.sort(key=lambda s: s.timestamp)
        return result

    def upsert_node(self, node_id: str, node_name: str, seen_at: datetime.datetime) -> Node:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                node = Node(id=node_id, name=node_name, first_seen=seen_at)
                self._nodes[node_id] = node
                log.info(f"Registered new node '{node_id}' ({node_name}).")
            node.name = node_name or node.name
            node.status = 'active'
            node.last_seen = seen_at
            node.last_alive = seen_at
            return dataclasses.replace(node)

    def add_samples(self, samples: Iterable[Sample]) -> int:
        with self._lock:
            return self._append(samples)

    def _set_flag(self, node_id: str, flag: str, value: bool) -> bool:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                return False
            setattr(node, flag, value)
        log.info(f"Set {flag}={value} on node '{node_id}'.")
        return True

    def set_archived(self, node_id: str, archived: bool) -> bool:
        return self._set_flag(node_id, 'archived', archived)

    def set_favorite(self, node_id: str, favorite: bool) -> bool:
        return self._set_flag(node_id, 'favorite', favorite)

    def delete_node(self, node_id: str) -> bool:
        with self._lock:
            if self._nodes.pop(node_id, None) is None:
                return False
            removed = len(self._samples.pop(node_id, []))
        log.info(f"Deleted node '{node_id}' and {removed} samples.")
        return True

    def update_node_status(self, alive_timeout, inactive_timeout, now) -> Tuple[int, int]:
        unreachable = inactive = 0
        with self._lock:
            for node in self._nodes.values():
                if node.last_alive is None:
                    continue
                age = now - node.last_alive
                if node.status == 'active' and age > alive_timeout:
                    node.status = 'unreachable'
                    unreachable += 1
                if node.status in ('active', 'unreachable') and age > inactive_timeout:
                    node.status = 'inactive'
                    inactive += 1
        return unreachable, inactive

    def prune_samples(self, measurements_days: int, failed_days: int, now) -> Tuple[int, int]:
        measurements_cutoff = now - datetime.timedelta(days=measurements_days)
        failed_cutoff = now - datetime.timedelta(days=failed_days)
        deleted = deleted_failed = 0
        with self._lock:
            for node_id, series in self._samples.items():
                kept = []
                for s in series:
                    if s.is_failed and s.timestamp < failed_cutoff:
                        deleted_failed += 1
                    elif not s.is_failed and s.timestamp < measurements_cutoff:
                        deleted += 1
                    else:
                        kept.append(s)
                self._samples[node_id] = kept
        return deleted, deleted_failed

    def ping(self) -> bool:
        return True

    def close(self):
        pass


class SqliteStore:
    """SampleStore backed by the SQLite schema in database.py."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or DATABASE_FILE

    def initialize(self):
        database.init_db(self.db_path)

    def import_demo_data(self, path: str, now: Optional[datetime.datetime] = None) -> Tuple[int, int]:
        nodes, samples = load_demo_data(path, now)
        for node in nodes:
            database.blocking_import_node(self.db_path, node)
        known = {n.id for n in nodes} | {n.id for n in self.list_nodes()}
        orphans = [s for s in samples if s.node_id not in known]
        if orphans:
            log.warning(f"Skipping {len(orphans)} samples whose node is not defined in '{path}'.")
        written = self.add_samples([s for s in samples if s.node_id in known])
        return len(nodes), written

    def list_nodes(self) -> List[Node]:
        return database.blocking_get_nodes(self.db_path)

    def get_node(self, node_id: str) -> Optional[Node]:
        return database.blocking_get_node(self.db_path, node_id)

    def list_samples(self, node_ids=None, start=None, end=None) -> List[Sample]:
        return database.blocking_get_samples(self.db_path, node_ids, start, end)

    def upsert_node(self, node_id: str, node_name: str, seen_at: datetime.datetime) -> Node:
        database.blocking_upsert_node(self.db_path, node_id, node_name, seen_at)
        return database.blocking_get_node(self.db_path, node_id)

    def add_samples(self, samples: Iterable[Sample]) -> int:
        return database.blocking_insert_samples(self.db_path, samples)

    def set_archived(self, node_id: str, archived: bool) -> bool:
        return database.blocking_set_node_flag(self.db_path, node_id, 'archived', archived)

    def set_favorite(self, node_id: str, favorite: bool) -> bool:
        return database.blocking_set_node_flag(self.db_path, node_id, 'favorite', favorite)

    def delete_node(self, node_id: str) -> bool:
        return database.blocking_delete_node(self.db_path, node_id)

    def update_node_status(self, alive_timeout, inactive_timeout, now) -> Tuple[int, int]:
        return database.blocking_update_node_status(self.db_path, alive_timeout, inactive_timeout, now)

    def prune_samples(self, measurements_days: int, failed_days: int, now) -> Tuple[int, int]:
        return database.blocking_prune_samples(self.db_path, measurements_days, failed_days, now)

    def ping(self) -> bool:
        return database.blocking_ping(self.db_path)

    def close(self):
        # Connections are opened per operation; nothing is held open.
        pass


def create_store(backend: str, db_path: Optional[str] = None, demo_data_path: Optional[str] = None) -> SampleStore:
    """Build (but do not initialize) the store selected by configuration."""
    if backend == 'memory':
        return MemoryStore(demo_data_path or DEMO_DATA_FILE)
    if backend == 'sqlite':
        return SqliteStore(db_path or DATABASE_FILE)
    raise MonitorError(f"Unknown store backend: {backend!r} (expected 'sqlite' or 'memory')")
