"""
Bucket aggregation for speedtest charts.

Samples are grouped into fixed-width buckets aligned to the Unix epoch, per
node, and folded into running accumulators. Buckets never depend on the query
window, so two windows with the same interval share bucket boundaries.
"""

import datetime
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .config import DEFAULT_INTERVAL
from .models import Bucket, Node, Sample, from_epoch_ms, to_epoch_ms
from .query_filter import QueryFilter

log = logging.getLogger("SpeedtestMonitor.Aggregation")

INTERVAL_REGEX = re.compile(r'^(\d+)([mhd])$')
UNIT_MS = {'m': 60_000, 'h': 3_600_000, 'd': 86_400_000}


def parse_interval(interval: Optional[str]) -> int:
    """
    Convert an interval such as '5m', '1h' or '1d' to milliseconds.

    Missing, malformed or zero-width intervals fall back to DEFAULT_INTERVAL (6h).
    """
    match = INTERVAL_REGEX.match(interval.strip()) if isinstance(interval, str) else None
    if match:
        width = int(match.group(1)) * UNIT_MS[match.group(2)]
        if width > 0:
            return width
    if interval:
        log.debug(f"Unparseable interval {interval!r}, falling back to {DEFAULT_INTERVAL}.")
    default = INTERVAL_REGEX.match(DEFAULT_INTERVAL)
    return int(default.group(1)) * UNIT_MS[default.group(2)]


DEFAULT_INTERVAL_MS = parse_interval(DEFAULT_INTERVAL)


def normalize_interval(interval: Optional[str]) -> str:
    """The interval label actually used: the given value when valid, else DEFAULT_INTERVAL."""
    if isinstance(interval, str):
        match = INTERVAL_REGEX.match(interval.strip())
        if match and int(match.group(1)) > 0:
            return interval.strip()
    return DEFAULT_INTERVAL


def bucket_start_ms(ts_ms: int, interval_ms: int) -> int:
    # Floor division also floors pre-epoch timestamps correctly
    return (ts_ms // interval_ms) * interval_ms


def running_average(current: float, count: int, value: float) -> float:
    """Incremental mean: count is the number of values already folded into current."""
    return (current * count + value) / (count + 1)


@dataclass
class BucketAccumulator:
    """Running statistics for one (bucket_start, node_id) pair."""
    bucket_start_ms: int
    node_id: str
    node_name: str
    avg_download_mbps: float = 0.0
    avg_upload_mbps: float = 0.0
    avg_ping_ms: float = 0.0
    avg_jitter_ms: float = 0.0
    avg_packet_loss: float = 0.0
    min_download_mbps: Optional[float] = None
    max_download_mbps: Optional[float] = None
    sample_count: int = 0

    def add_sample(self, sample: Sample):
        """Fold one successful sample into the running statistics."""
        n = self.sample_count
        download = sample.download_mbps
        upload = sample.upload_mbps

        self.avg_download_mbps = running_average(self.avg_download_mbps, n, download)
        self.avg_upload_mbps = running_average(self.avg_upload_mbps, n, upload)
        self.avg_ping_ms = running_average(self.avg_ping_ms, n, sample.ping_latency or 0.0)
        self.avg_jitter_ms = running_average(self.avg_jitter_ms, n, sample.ping_jitter or 0.0)
        self.avg_packet_loss = running_average(self.avg_packet_loss, n, sample.packet_loss or 0.0)

        if self.min_download_mbps is None or download < self.min_download_mbps:
            self.min_download_mbps = download
        if self.max_download_mbps is None or download > self.max_download_mbps:
            self.max_download_mbps = download
        self.sample_count = n + 1

    def to_bucket(self) -> Bucket:
        return Bucket(
            bucket_start=from_epoch_ms(self.bucket_start_ms),
            node_id=self.node_id,
            node_name=self.node_name,
            avg_download_mbps=self.avg_download_mbps,
            avg_upload_mbps=self.avg_upload_mbps,
            avg_ping_ms=self.avg_ping_ms,
            avg_jitter_ms=self.avg_jitter_ms,
            avg_packet_loss=self.avg_packet_loss,
            min_download_mbps=self.min_download_mbps,
            max_download_mbps=self.max_download_mbps,
            sample_count=self.sample_count,
        )


def aggregate(
    samples: Iterable[Sample],
    nodes: Mapping[str, Node],
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    interval: Optional[str] = None,
    hide_archived: bool = False,
    node_ids: Optional[Iterable[str]] = None,
) -> List[Bucket]:
    """
    Group samples into epoch-aligned buckets per node.

    A sample is skipped when its node is not requested, is archived while
    hide_archived is set, is unknown, when the sample failed, or when its
    timestamp lies outside [start, end]. A missing bound leaves that side open.

    Returns buckets sorted by bucket start, then node id.
    """
    interval_ms = parse_interval(interval)
    query_filter = QueryFilter(
        node_ids=frozenset(node_ids) if node_ids is not None else None,
        hide_archived=hide_archived,
        status='successful',
        start=start,
        end=end,
        end_inclusive=True,
    )

    buckets: Dict[Tuple[int, str], BucketAccumulator] = {}
    dropped_unknown = 0
    for sample in samples:
        if not query_filter.matches(sample, nodes):
            continue
        node = nodes.get(sample.node_id)
        if node is None:
            dropped_unknown += 1
            continue

        key = (bucket_start_ms(to_epoch_ms(sample.timestamp), interval_ms), sample.node_id)
        accumulator = buckets.get(key)
        if accumulator is None:
            accumulator = BucketAccumulator(bucket_start_ms=key[0], node_id=node.id, node_name=node.name)
            buckets[key] = accumulator
        accumulator.add_sample(sample)

    if dropped_unknown:
        log.debug(f"Dropped {dropped_unknown} samples that belong to unknown nodes.")

    return [buckets[key].to_bucket() for key in sorted(buckets)]
