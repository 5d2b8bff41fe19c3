import os

# --- Configuration ---
# The database file path.
# This is a relative path by default, so it will be created in the current
# working directory. It can be overridden with the SPEEDTEST_MONITOR_DB_PATH
# environment variable or the --db command-line flag.
DATABASE_FILE = os.getenv('SPEEDTEST_MONITOR_DB_PATH', 'speedtest_stats.db')

# Which SampleStore backs the API: 'sqlite' (persistent) or 'memory' (demo data).
STORE_BACKEND = os.getenv('SPEEDTEST_MONITOR_BACKEND', 'sqlite')
# JSON file loaded by the memory backend on startup.
DEMO_DATA_FILE = os.getenv('SPEEDTEST_MONITOR_DEMO_DATA', 'demo-data.json')

SERVER_HOST = os.getenv('SPEEDTEST_MONITOR_HOST', "0.0.0.0")
SERVER_PORT = int(os.getenv('SPEEDTEST_MONITOR_PORT', '8080'))
API_PREFIX = "/api/v1"
APP_VERSION = "1.0.0"

# --- Aggregation ---
DEFAULT_INTERVAL = "6h"  # Used when the interval parameter is missing or malformed
STATS_WINDOW_HOURS = 24  # Rolling window for success rates and dashboard averages

# --- Raw listings ---
DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 1000

# --- Database Concurrency Configuration ---
DB_THREAD_POOL_SIZE = 10
DB_CONNECTION_TIMEOUT = 30.0  # seconds
DB_MAX_RETRIES = 3  # Number of retry attempts for locked database
DB_RETRY_BASE_DELAY = 0.5  # Base delay between retries (seconds)
DB_RETRY_MAX_DELAY = 5.0  # Maximum delay between retries (seconds)

# --- Node Status Tracking ---
NODE_ALIVE_TIMEOUT_SECONDS = int(os.getenv('ALIVE_TIMEOUT', '120'))  # active -> unreachable
NODE_INACTIVE_TIMEOUT_SECONDS = int(os.getenv('INACTIVE_TIMEOUT', '3600'))  # -> inactive
NODE_STATUS_CHECK_INTERVAL_SECONDS = 30

# --- Data Retention ---
RETENTION_MEASUREMENTS_DAYS = int(os.getenv('RETENTION_MEASUREMENTS', '365'))
RETENTION_FAILED_DAYS = int(os.getenv('RETENTION_FAILED', '90'))
CLEANUP_INTERVAL_HOURS = 24
HEARTBEAT_INTERVAL_SECONDS = 300

# --- Global Constants ---
NODE_STATUSES = ('active', 'unreachable', 'inactive')
SAMPLE_STATUSES = ('all', 'successful', 'failed')
