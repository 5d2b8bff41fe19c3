"""
Per-node statistics: whole-history averages and rolling 24h success rates.
"""

import datetime
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import STATS_WINDOW_HOURS
from .models import LatestMeasurement, Node, NodeStatistics, Sample

log = logging.getLogger("SpeedtestMonitor.NodeStats")

STATS_WINDOW = datetime.timedelta(hours=STATS_WINDOW_HOURS)


def mean(values: List[float]) -> float:
    """Arithmetic mean; an empty list yields 0.0 instead of raising."""
    if not values:
        return 0.0
    return sum(values) / len(values)


def within_window(sample: Sample, now: datetime.datetime, window: datetime.timedelta = STATS_WINDOW) -> bool:
    return now - sample.timestamp <= window


def calculate_success_rate(success_count: int, failed_count: int) -> float:
    """
    Percentage of successful samples. No samples at all counts as 100%:
    there is no evidence of failure.
    """
    total = success_count + failed_count
    if total == 0:
        return 100.0
    return success_count / total * 100


def latest_successful(samples: Sequence[Sample]) -> Optional[LatestMeasurement]:
    """The last successful sample in stream order (input is ascending by time)."""
    for sample in reversed(samples):
        if not sample.is_failed:
            return LatestMeasurement(
                timestamp=sample.timestamp,
                download_mbps=sample.download_mbps,
                upload_mbps=sample.upload_mbps,
                ping_ms=sample.ping_latency or 0.0,
            )
    return None


def compute_node_statistics(
    samples: Sequence[Sample], now: datetime.datetime
) -> Tuple[NodeStatistics, Optional[LatestMeasurement]]:
    """
    Compute statistics for a single node's full sample history.

    Args:
        samples: The node's samples, ordered ascending by timestamp
        now: Reference instant for the rolling 24h window

    Returns:
        Tuple of (NodeStatistics, latest successful measurement or None)
    """
    successful = [s for s in samples if not s.is_failed]
    failed = [s for s in samples if s.is_failed]

    success_count_24h = sum(1 for s in successful if within_window(s, now))
    failed_count_24h = sum(1 for s in failed if within_window(s, now))

    stats = NodeStatistics(
        avg_download_mbps=mean([s.download_mbps for s in successful]),
        avg_upload_mbps=mean([s.upload_mbps for s in successful]),
        avg_ping_ms=mean([s.ping_latency or 0.0 for s in successful]),
        avg_jitter_ms=mean([s.ping_jitter or 0.0 for s in successful]),
        avg_packet_loss=mean([s.packet_loss or 0.0 for s in successful]),
        success_rate_24h=calculate_success_rate(success_count_24h, failed_count_24h),
        success_count_24h=success_count_24h,
        failed_count_24h=failed_count_24h,
    )
    return stats, latest_successful(samples)


def compute_node_details(node: Node, samples: Sequence[Sample], now: datetime.datetime) -> Dict[str, Any]:
    """Build the node-details payload: node fields, counts, latest measurement and statistics."""
    stats, latest = compute_node_statistics(samples, now)
    failed_total = sum(1 for s in samples if s.is_failed)

    details = node.to_dict()
    details['total_measurements'] = len(samples)
    details['failed_test_count'] = failed_total
    if latest is not None:
        details['latest_measurement'] = latest.to_dict()
    details['statistics'] = stats.to_dict()

    log.debug(f"Computed details for node '{node.id}': {len(samples)} samples, {failed_total} failed.")
    return details
