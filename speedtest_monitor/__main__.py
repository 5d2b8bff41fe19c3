import argparse
import logging
import os
import sys

# Allow running the package directory directly (e.g. `python speedtest_monitor`)
# by putting the project root on the path so the absolute imports below resolve.
if __package__ is None or __package__ == '':
    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    sys.path.insert(0, project_root)

from speedtest_monitor import config, server
from speedtest_monitor.store import SqliteStore, create_store

log = logging.getLogger("SpeedtestMonitor")


def import_json_file(json_path: str, db_path: str) -> int:
    """Load a demo-data JSON file into the SQLite database. Returns a process exit code."""
    if not os.path.exists(json_path):
        log.critical(f"JSON file not found: {json_path}")
        return 1

    store = SqliteStore(db_path)
    store.initialize()
    try:
        node_count, sample_count = store.import_demo_data(json_path)
    except (ValueError, KeyError) as e:
        log.critical(f"Could not import '{json_path}': {e}")
        return 1
    log.info(f"Import complete. Nodes: {node_count}. Samples: {sample_count}. Database: '{db_path}'.")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Speedtest Fleet Monitor - time-series aggregation API for speedtest nodes",
        epilog="""
Examples:
  # Serve the API from the SQLite database
  %(prog)s --db /var/lib/speedtest/stats.db

  # Serve the bundled demo data from memory
  %(prog)s --backend memory --demo-data demo-data.json

  # One-time import of a demo-data file into SQLite
  %(prog)s --db stats.db --import-json demo-data.json
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--backend', choices=('sqlite', 'memory'), default=config.STORE_BACKEND,
                        help=f"Sample store backend (default: {config.STORE_BACKEND}).")
    parser.add_argument('--db', default=config.DATABASE_FILE, metavar='PATH',
                        help=f"SQLite database file (default: {config.DATABASE_FILE}).")
    parser.add_argument('--demo-data', default=config.DEMO_DATA_FILE, metavar='PATH',
                        help="Demo data JSON file loaded by the memory backend.")
    parser.add_argument('--host', default=config.SERVER_HOST, help="Address to listen on.")
    parser.add_argument('--port', type=int, default=config.SERVER_PORT, help="Port to listen on.")
    parser.add_argument('--import-json', metavar='PATH',
                        help="IMPORT MODE: load a demo-data JSON file into the SQLite database and exit.")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    if args.import_json:
        sys.exit(import_json_file(args.import_json, args.db))

    store = create_store(args.backend, db_path=args.db, demo_data_path=args.demo_data)
    server.run_server(store, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
