"""
Tests for per-node statistics and node details.
"""

import datetime

import pytest

from conftest import NOW, make_node, make_sample
from speedtest_monitor.node_stats import (
    calculate_success_rate,
    compute_node_details,
    compute_node_statistics,
    mean,
    within_window,
)

HOUR = datetime.timedelta(hours=1)


def test_mean_of_empty_list_is_zero():
    assert mean([]) == 0.0
    assert mean([1.0, 2.0, 6.0]) == 3.0


def test_success_rate_edge_cases():
    assert calculate_success_rate(0, 0) == 100.0
    assert calculate_success_rate(0, 4) == 0.0
    assert calculate_success_rate(3, 1) == 75.0


def test_window_is_inclusive_at_24_hours():
    assert within_window(make_sample(timestamp=NOW - datetime.timedelta(hours=24)), NOW)
    assert not within_window(make_sample(timestamp=NOW - datetime.timedelta(hours=24, seconds=1)), NOW)


def test_window_accepts_naive_sample_timestamps():
    naive = (NOW - HOUR).replace(tzinfo=None)

    assert within_window(make_sample(timestamp=naive), NOW)


def test_no_recent_samples_means_full_success_rate():
    samples = [make_sample(timestamp=NOW - 48 * HOUR), make_sample(timestamp=NOW - 30 * HOUR, failed=True)]

    stats, latest = compute_node_statistics(samples, NOW)

    assert stats.success_rate_24h == 100.0
    assert stats.success_count_24h == 0
    assert stats.failed_count_24h == 0
    assert latest is not None


def test_empty_history():
    stats, latest = compute_node_statistics([], NOW)

    assert stats.success_rate_24h == 100.0
    assert stats.avg_download_mbps == 0.0
    assert latest is None


def test_three_successes_and_one_failure_is_75_percent():
    samples = [
        make_sample(timestamp=NOW - 4 * HOUR),
        make_sample(timestamp=NOW - 3 * HOUR),
        make_sample(timestamp=NOW - 2 * HOUR, failed=True),
        make_sample(timestamp=NOW - 1 * HOUR),
    ]

    stats, _ = compute_node_statistics(samples, NOW)

    assert stats.success_rate_24h == pytest.approx(75.0)
    assert stats.success_count_24h == 3
    assert stats.failed_count_24h == 1


def test_failed_samples_never_touch_averages():
    samples = [
        make_sample(timestamp=NOW - 50 * HOUR, download=1_000_000, ping=10.0),
        make_sample(timestamp=NOW - 2 * HOUR, failed=True),
        make_sample(timestamp=NOW - 1 * HOUR, download=3_000_000, ping=30.0),
    ]

    stats, _ = compute_node_statistics(samples, NOW)

    # Averages cover the whole history of successful samples
    assert stats.avg_download_mbps == pytest.approx(16.0)
    assert stats.avg_ping_ms == pytest.approx(20.0)
    assert stats.failed_count_24h == 1


def test_latest_measurement_skips_trailing_failures():
    samples = [
        make_sample(timestamp=NOW - 3 * HOUR, download=1_000_000),
        make_sample(timestamp=NOW - 2 * HOUR, download=2_000_000, ping=15.0),
        make_sample(timestamp=NOW - 1 * HOUR, failed=True),
    ]

    _, latest = compute_node_statistics(samples, NOW)

    assert latest.timestamp == NOW - 2 * HOUR
    assert latest.download_mbps == pytest.approx(16.0)
    assert latest.ping_ms == 15.0


def test_node_details_payload():
    node = make_node("node-a", name="Node A")
    samples = [
        make_sample(timestamp=NOW - 30 * HOUR, failed=True),
        make_sample(timestamp=NOW - 2 * HOUR, download=12_500_000, upload=2_500_000),
        make_sample(timestamp=NOW - 1 * HOUR, failed=True),
    ]

    details = compute_node_details(node, samples, NOW)

    assert details["id"] == "node-a"
    assert details["name"] == "Node A"
    assert details["total_measurements"] == 3
    assert details["failed_test_count"] == 2
    assert details["latest_measurement"] == {
        "timestamp": "2024-01-02T10:00:00.000Z",
        "download_mbps": pytest.approx(100.0),
        "upload_mbps": pytest.approx(20.0),
        "ping_ms": 10.0,
    }
    assert details["statistics"]["success_rate_24h"] == pytest.approx(50.0)
    assert details["statistics"]["failed_count_24h"] == 1


def test_node_details_without_successful_samples_omits_latest():
    details = compute_node_details(make_node(), [make_sample(failed=True)], NOW)

    assert "latest_measurement" not in details
    assert details["statistics"]["success_rate_24h"] == 0.0
