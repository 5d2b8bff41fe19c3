import datetime
import logging
import sqlite3
from typing import Iterable, List, Optional, Tuple

from .config import (DATABASE_FILE, DB_CONNECTION_TIMEOUT, DB_MAX_RETRIES, DB_RETRY_BASE_DELAY,
                     DB_RETRY_MAX_DELAY)
from .db_utils import db_connection, retry_on_db_lock
from .models import Node, Sample, isoformat_z, parse_timestamp

log = logging.getLogger("SpeedtestMonitor.Database")

# Columns that may be toggled through blocking_set_node_flag
NODE_FLAGS = ('archived', 'favorite')


def init_db(db_path: Optional[str] = None):
    db_path = db_path or DATABASE_FILE
    log.info(f"Connecting to database '{db_path}' and checking schema...")
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        cursor = conn.cursor()

        cursor.execute('PRAGMA journal_mode;')
        mode = cursor.fetchone()
        if mode and mode[0].lower() == 'wal':
            log.info("Database journal mode is set to WAL.")
        else:
            log.warning(f"Failed to set database journal mode to WAL. Current mode: {mode[0] if mode else 'unknown'}")

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS nodes (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                first_seen TEXT,
                last_seen TEXT,
                last_alive TEXT,
                created_at TEXT,
                updated_at TEXT
            )
        ''')

        # --- Schema migration for nodes table ---
        cursor.execute("PRAGMA table_info(nodes);")
        columns = [col[1] for col in cursor.fetchall()]
        for flag in NODE_FLAGS:
            if flag not in columns:
                log.info(f"Upgrading 'nodes' table: Adding '{flag}' column.")
                cursor.execute(f"ALTER TABLE nodes ADD COLUMN {flag} INTEGER NOT NULL DEFAULT 0;")

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS measurements (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                node_id TEXT NOT NULL REFERENCES nodes (id) ON DELETE CASCADE,
                timestamp TEXT NOT NULL,
                created_at TEXT,
                ping_latency REAL,
                ping_jitter REAL,
                download_bandwidth INTEGER,
                upload_bandwidth INTEGER,
                packet_loss REAL,
                isp TEXT,
                server_name TEXT,
                server_location TEXT,
                UNIQUE (node_id, timestamp)
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS failed_measurements (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                node_id TEXT NOT NULL REFERENCES nodes (id) ON DELETE CASCADE,
                timestamp TEXT NOT NULL,
                error_message TEXT,
                retry_count INTEGER DEFAULT 0,
                created_at TEXT
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_measurements_node_time ON measurements (node_id, timestamp);')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_measurements_time ON measurements (timestamp);')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_failed_node_time ON failed_measurements (node_id, timestamp);')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_nodes_status ON nodes (status, archived);')
    log.info("Database schema is valid and ready.")


def _row_to_node(row: sqlite3.Row) -> Node:
    return Node(
        id=row['id'],
        name=row['name'],
        status=row['status'],
        archived=bool(row['archived']),
        favorite=bool(row['favorite']),
        first_seen=parse_timestamp(row['first_seen']),
        last_seen=parse_timestamp(row['last_seen']),
        last_alive=parse_timestamp(row['last_alive']),
    )


def _row_to_sample(row: sqlite3.Row) -> Sample:
    return Sample(
        id=row['id'],
        node_id=row['node_id'],
        timestamp=parse_timestamp(row['timestamp']),
        is_failed=bool(row['is_failed']),
        download_bandwidth=row['download_bandwidth'],
        upload_bandwidth=row['upload_bandwidth'],
        ping_latency=row['ping_latency'],
        ping_jitter=row['ping_jitter'],
        packet_loss=row['packet_loss'],
        error_message=row['error_message'],
        isp=row['isp'],
        server_name=row['server_name'],
        server_location=row['server_location'],
    )


# --- Nodes ---

@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_upsert_node(db_path: str, node_id: str, node_name: str, seen_at: datetime.datetime):
    """Create the node if it is new, otherwise refresh its name and liveness. Either way it becomes active."""
    seen_iso = isoformat_z(seen_at)
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        conn.execute('''
            INSERT INTO nodes (id, name, status, first_seen, last_seen, last_alive, created_at, updated_at)
            VALUES (?, ?, 'active', ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                status = 'active',
                last_seen = excluded.last_seen,
                last_alive = excluded.last_alive,
                updated_at = excluded.updated_at
        ''', (node_id, node_name, seen_iso, seen_iso, seen_iso, seen_iso, seen_iso))


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_import_node(db_path: str, node: Node):
    """Write a node exactly as given (status and timestamps included). Used by JSON imports."""
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        conn.execute('''
            INSERT INTO nodes (id, name, status, archived, favorite, first_seen, last_seen, last_alive, created_at, updated_at)
            VALUES (:id, :name, :status, :archived, :favorite, :first_seen, :last_seen, :last_alive, :first_seen, :last_seen)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name, status = excluded.status,
                archived = excluded.archived, favorite = excluded.favorite,
                first_seen = excluded.first_seen, last_seen = excluded.last_seen,
                last_alive = excluded.last_alive, updated_at = excluded.updated_at
        ''', {
            'id': node.id, 'name': node.name, 'status': node.status,
            'archived': 1 if node.archived else 0, 'favorite': 1 if node.favorite else 0,
            'first_seen': isoformat_z(node.first_seen), 'last_seen': isoformat_z(node.last_seen),
            'last_alive': isoformat_z(node.last_alive),
        })


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_get_nodes(db_path: str) -> List[Node]:
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        rows = conn.execute("SELECT * FROM nodes ORDER BY name, id").fetchall()
    return [_row_to_node(row) for row in rows]


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_get_node(db_path: str, node_id: str) -> Optional[Node]:
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        row = conn.execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()
    return _row_to_node(row) if row else None


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_set_node_flag(db_path: str, node_id: str, flag: str, value: bool) -> bool:
    """Set the archived or favorite flag. Returns False when the node does not exist."""
    if flag not in NODE_FLAGS:
        raise ValueError(f"Unknown node flag: {flag}")
    now_iso = isoformat_z(datetime.datetime.now(datetime.timezone.utc))
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        cursor = conn.execute(
            f"UPDATE nodes SET {flag} = ?, updated_at = ? WHERE id = ?",
            (1 if value else 0, now_iso, node_id),
        )
        updated = cursor.rowcount > 0
    if updated:
        log.info(f"Set {flag}={value} on node '{node_id}'.")
    return updated


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_delete_node(db_path: str, node_id: str) -> bool:
    """Delete a node and, through the foreign keys, every sample it owns."""
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        cursor = conn.execute("DELETE FROM nodes WHERE id = ?", (node_id,))
        deleted = cursor.rowcount > 0
    if deleted:
        log.info(f"Deleted node '{node_id}' and its measurements.")
    return deleted


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_update_node_status(
    db_path: str, alive_timeout: datetime.timedelta, inactive_timeout: datetime.timedelta,
    now: datetime.datetime
) -> Tuple[int, int]:
    """
    Demote nodes whose last alive signal is too old.

    active -> unreachable after alive_timeout; active/unreachable -> inactive
    after inactive_timeout.

    Returns:
        Tuple of (nodes marked unreachable, nodes marked inactive)
    """
    now_iso = isoformat_z(now)
    unreachable_before = isoformat_z(now - alive_timeout)
    inactive_before = isoformat_z(now - inactive_timeout)
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        unreachable = conn.execute(
            "UPDATE nodes SET status = 'unreachable', updated_at = ? WHERE status = 'active' AND last_alive < ?",
            (now_iso, unreachable_before),
        ).rowcount
        inactive = conn.execute(
            "UPDATE nodes SET status = 'inactive', updated_at = ? "
            "WHERE status IN ('active', 'unreachable') AND last_alive < ?",
            (now_iso, inactive_before),
        ).rowcount
    if unreachable or inactive:
        log.info(f"Node status update: {unreachable} marked unreachable, {inactive} marked inactive.")
    return unreachable, inactive


# --- Samples ---

@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_insert_samples(db_path: str, samples: Iterable[Sample]) -> int:
    """
    Store successful samples in 'measurements' and failed ones in 'failed_measurements'.

    A successful sample with the same node and timestamp as an existing one replaces it.
    """
    created_iso = isoformat_z(datetime.datetime.now(datetime.timezone.utc))
    successful, failed = [], []
    for s in samples:
        if s.is_failed:
            failed.append((s.node_id, isoformat_z(s.timestamp), s.error_message, created_iso))
        else:
            successful.append((
                s.node_id, isoformat_z(s.timestamp), created_iso, s.ping_latency, s.ping_jitter,
                s.download_bandwidth, s.upload_bandwidth, s.packet_loss, s.isp, s.server_name, s.server_location,
            ))

    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        if successful:
            conn.executemany('''
                INSERT INTO measurements
                (node_id, timestamp, created_at, ping_latency, ping_jitter, download_bandwidth, upload_bandwidth,
                 packet_loss, isp, server_name, server_location)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (node_id, timestamp) DO UPDATE SET
                    ping_latency = excluded.ping_latency, ping_jitter = excluded.ping_jitter,
                    download_bandwidth = excluded.download_bandwidth, upload_bandwidth = excluded.upload_bandwidth,
                    packet_loss = excluded.packet_loss, isp = excluded.isp,
                    server_name = excluded.server_name, server_location = excluded.server_location
            ''', successful)
        if failed:
            conn.executemany(
                "INSERT INTO failed_measurements (node_id, timestamp, error_message, created_at) VALUES (?, ?, ?, ?)",
                failed,
            )
    log.info(f"Wrote {len(successful)} measurements and {len(failed)} failed measurements to the database.")
    return len(successful) + len(failed)


def _sample_where(node_ids: Optional[Iterable[str]], start: Optional[datetime.datetime],
                  end: Optional[datetime.datetime]) -> Tuple[str, list]:
    where_clauses, params = [], []
    if node_ids is not None:
        node_ids = list(node_ids)
        if node_ids:
            placeholders = ','.join('?' for _ in node_ids)
            where_clauses.append(f"node_id IN ({placeholders})")
            params.extend(node_ids)
        else:  # empty allow-list matches nothing
            where_clauses.append("1 = 0")
    if start is not None:
        where_clauses.append("timestamp >= ?")
        params.append(isoformat_z(start))
    if end is not None:
        where_clauses.append("timestamp <= ?")
        params.append(isoformat_z(end))
    return (" WHERE " + " AND ".join(where_clauses)) if where_clauses else "", params


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_get_samples(
    db_path: str,
    node_ids: Optional[Iterable[str]] = None,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
) -> List[Sample]:
    """
    Read successful and failed samples, ordered ascending by timestamp.

    Bounds are inclusive; callers narrow further with a QueryFilter.
    """
    where, params = _sample_where(node_ids, start, end)
    query = f"""
        SELECT id, node_id, timestamp, 0 AS is_failed, download_bandwidth, upload_bandwidth,
               ping_latency, ping_jitter, packet_loss, NULL AS error_message, isp, server_name, server_location
        FROM measurements{where}
        UNION ALL
        SELECT id, node_id, timestamp, 1 AS is_failed, NULL, NULL, NULL, NULL, NULL, error_message, NULL, NULL, NULL
        FROM failed_measurements{where}
        ORDER BY timestamp ASC, is_failed ASC, id ASC
    """
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        rows = conn.execute(query, params + params).fetchall()
    log.debug(f"Read {len(rows)} samples (node_ids={node_ids}, start={start}, end={end}).")
    return [_row_to_sample(row) for row in rows]


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_prune_samples(
    db_path: str, measurements_retention_days: int, failed_retention_days: int, now: datetime.datetime
) -> Tuple[int, int]:
    """Delete samples older than their retention period. Returns (measurements, failed) deleted."""
    measurements_cutoff = isoformat_z(now - datetime.timedelta(days=measurements_retention_days))
    failed_cutoff = isoformat_z(now - datetime.timedelta(days=failed_retention_days))
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        deleted = conn.execute("DELETE FROM measurements WHERE timestamp < ?", (measurements_cutoff,)).rowcount
        deleted_failed = conn.execute(
            "DELETE FROM failed_measurements WHERE timestamp < ?", (failed_cutoff,)
        ).rowcount
    if deleted or deleted_failed:
        log.info(f"[PRUNER] Deleted {deleted} measurements and {deleted_failed} failed measurements.")
    return deleted, deleted_failed


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_ping(db_path: str) -> bool:
    with db_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        conn.execute("SELECT 1").fetchone()
    return True
