"""
Database Utilities

Provides retry logic and connection management for SQLite operations that
run concurrently from the request thread pool and background tasks.
"""

import contextlib
import functools
import logging
import os
import sqlite3
import time
from typing import Any, Callable, Iterator

log = logging.getLogger("SpeedtestMonitor.DbUtils")

RETRYABLE_ERRORS = ("locked", "busy", "unable to open")


def retry_on_db_lock(max_attempts: int = 3, base_delay: float = 0.5, max_delay: float = 5.0):
    """
    Decorator to retry database operations on lock/busy errors with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = base_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    error_msg = str(e).lower()
                    if not any(err in error_msg for err in RETRYABLE_ERRORS):
                        raise
                    if attempt == max_attempts:
                        log.error(f"{func.__name__} failed after {max_attempts} attempts: {e}")
                        raise
                    log.warning(
                        f"{func.__name__} hit a locked database (attempt {attempt}/{max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, max_delay)

        return wrapper

    return decorator


def get_optimized_connection(db_path: str, timeout: float = 30.0, read_only: bool = False) -> sqlite3.Connection:
    """
    Create an SQLite connection tuned for concurrent readers and a single writer.

    Rows come back as sqlite3.Row and foreign keys are enforced so that
    deleting a node cascades to its samples.
    """
    if read_only:
        uri = f"file:{os.path.abspath(db_path)}?mode=ro"
        conn = sqlite3.connect(uri, timeout=timeout, uri=True, check_same_thread=False)
    else:
        conn = sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    cursor = conn.cursor()
    if not read_only:
        cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute("PRAGMA temp_store=MEMORY;")
    cursor.execute(f"PRAGMA busy_timeout={int(timeout * 1000)};")

    log.debug(f"Opened SQLite connection to '{db_path}' (timeout={timeout}s, read_only={read_only})")
    return conn


@contextlib.contextmanager
def db_connection(db_path: str, timeout: float = 30.0, read_only: bool = False) -> Iterator[sqlite3.Connection]:
    """Commit on success, roll back on error, always close."""
    conn = get_optimized_connection(db_path, timeout=timeout, read_only=read_only)
    try:
        yield conn
        if not read_only:
            conn.commit()
    except Exception:
        if not read_only:
            conn.rollback()
        raise
    finally:
        conn.close()
