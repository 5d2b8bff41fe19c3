"""
Fleet-wide dashboard summary.
"""

import datetime
import logging
from typing import Iterable, Optional, Sequence

from .models import AverageStats24h, FleetSummary, Node, Sample
from .node_stats import mean, within_window

log = logging.getLogger("SpeedtestMonitor.FleetSummary")


def compute_fleet_summary(nodes: Sequence[Node], samples: Iterable[Sample], now: datetime.datetime) -> FleetSummary:
    """
    Summarize the fleet for the dashboard.

    Node counts and the 24h averages consider non-archived nodes only, while
    measurements_last_24h counts successful samples from every node. The
    averages block is None when no visible node has a successful sample in the last 24h,
    so callers can tell "no recent data" apart from "averages of zero".
    last_measurement looks at the whole history of every node.
    """
    visible = {n.id: n for n in nodes if not n.archived}
    by_status = {'active': 0, 'unreachable': 0, 'inactive': 0}
    for node in visible.values():
        if node.status in by_status:
            by_status[node.status] += 1

    total_measurements = 0
    measurements_last_24h = 0
    last_measurement: Optional[datetime.datetime] = None
    recent = []
    for sample in samples:
        total_measurements += 1
        if sample.is_failed:
            continue
        if last_measurement is None or sample.timestamp > last_measurement:
            last_measurement = sample.timestamp
        if within_window(sample, now):
            measurements_last_24h += 1
            if sample.node_id in visible:
                recent.append(sample)

    average_stats = None
    if recent:
        average_stats = AverageStats24h(
            download_mbps=mean([s.download_mbps for s in recent]),
            upload_mbps=mean([s.upload_mbps for s in recent]),
            ping_ms=mean([s.ping_latency or 0.0 for s in recent]),
            jitter_ms=mean([s.ping_jitter or 0.0 for s in recent]),
            packet_loss=mean([s.packet_loss or 0.0 for s in recent]),
        )

    summary = FleetSummary(
        total_nodes=len(visible),
        active_nodes=by_status['active'],
        unreachable_nodes=by_status['unreachable'],
        inactive_nodes=by_status['inactive'],
        total_measurements=total_measurements,
        measurements_last_24h=measurements_last_24h,
        last_measurement=last_measurement,
        average_stats_24h=average_stats,
    )
    log.debug(f"Fleet summary: {summary.total_nodes} nodes, {measurements_last_24h} samples in the last 24h.")
    return summary
