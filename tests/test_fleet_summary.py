"""
Tests for the fleet-wide dashboard summary.
"""

import datetime

import pytest

from conftest import NOW, make_node, make_sample
from speedtest_monitor.fleet_summary import compute_fleet_summary

HOUR = datetime.timedelta(hours=1)


@pytest.fixture
def fleet():
    return [
        make_node("node-a", status="active"),
        make_node("node-b", status="unreachable"),
        make_node("node-c", status="inactive"),
        make_node("node-old", status="active", archived=True),
    ]


def test_node_counts_exclude_archived(fleet):
    summary = compute_fleet_summary(fleet, [], NOW)

    assert summary.total_nodes == 3
    assert summary.active_nodes == 1
    assert summary.unreachable_nodes == 1
    assert summary.inactive_nodes == 1


def test_averages_block_absent_without_recent_samples(fleet):
    samples = [make_sample("node-a", NOW - 30 * HOUR)]

    summary = compute_fleet_summary(fleet, samples, NOW)
    payload = summary.to_dict()

    assert summary.average_stats_24h is None
    assert "average_stats_24h" not in payload
    assert payload["measurements_last_24h"] == 0
    assert payload["last_measurement"] == "2024-01-01T06:00:00.000Z"


def test_empty_fleet():
    payload = compute_fleet_summary([], [], NOW).to_dict()

    assert payload["total_nodes"] == 0
    assert payload["total_measurements"] == 0
    assert "last_measurement" not in payload
    assert "average_stats_24h" not in payload


def test_recent_averages_cover_visible_nodes_only(fleet):
    samples = [
        make_sample("node-a", NOW - 2 * HOUR, download=1_000_000, ping=10.0),
        make_sample("node-b", NOW - 1 * HOUR, download=3_000_000, ping=30.0),
        make_sample("node-old", NOW - 1 * HOUR, download=125_000_000, ping=500.0),
        make_sample("node-a", NOW - 1 * HOUR, failed=True),
    ]

    summary = compute_fleet_summary(fleet, samples, NOW)

    # Successful samples from every node count, archived ones included
    assert summary.measurements_last_24h == 3
    assert summary.average_stats_24h.download_mbps == pytest.approx(16.0)
    assert summary.average_stats_24h.ping_ms == pytest.approx(20.0)
    # Every stored sample counts, archived nodes and failures included
    assert summary.total_measurements == 4


def test_last_measurement_is_latest_successful_sample(fleet):
    samples = [
        make_sample("node-a", NOW - 3 * HOUR),
        make_sample("node-old", NOW - 2 * HOUR),
        make_sample("node-b", NOW - 1 * HOUR, failed=True),
    ]

    summary = compute_fleet_summary(fleet, samples, NOW)

    assert summary.last_measurement == NOW - 2 * HOUR
