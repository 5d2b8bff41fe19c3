"""
Tests for configuration defaults and environment overrides.
"""

import importlib


def test_defaults():
    from speedtest_monitor import config

    assert config.API_PREFIX == "/api/v1"
    assert config.DEFAULT_INTERVAL == "6h"
    assert config.STATS_WINDOW_HOURS == 24
    assert config.DEFAULT_PAGE_LIMIT == 50
    assert config.MAX_PAGE_LIMIT == 1000
    assert config.NODE_STATUSES == ("active", "unreachable", "inactive")
    assert config.SAMPLE_STATUSES == ("all", "successful", "failed")


def test_environment_overrides(monkeypatch):
    import speedtest_monitor.config as config

    monkeypatch.setenv("SPEEDTEST_MONITOR_DB_PATH", "/tmp/fleet.db")
    monkeypatch.setenv("SPEEDTEST_MONITOR_BACKEND", "memory")
    monkeypatch.setenv("SPEEDTEST_MONITOR_PORT", "9090")
    monkeypatch.setenv("ALIVE_TIMEOUT", "60")
    try:
        reloaded = importlib.reload(config)
        assert reloaded.DATABASE_FILE == "/tmp/fleet.db"
        assert reloaded.STORE_BACKEND == "memory"
        assert reloaded.SERVER_PORT == 9090
        assert reloaded.NODE_ALIVE_TIMEOUT_SECONDS == 60
    finally:
        monkeypatch.undo()
        importlib.reload(config)
