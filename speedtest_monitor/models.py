import datetime
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)
_ONE_MS = datetime.timedelta(milliseconds=1)


# --- Time helpers ---

def ensure_utc(dt: datetime.datetime) -> datetime.datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def to_epoch_ms(dt: datetime.datetime) -> int:
    # Integer arithmetic on the timedelta keeps bucket keys exact
    return (ensure_utc(dt) - EPOCH) // _ONE_MS


def from_epoch_ms(ms: int) -> datetime.datetime:
    return EPOCH + datetime.timedelta(milliseconds=ms)


def parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    """
    Parse an ISO-8601 string (a trailing 'Z' is accepted) or a datetime.

    Returns None for anything that cannot be interpreted.
    """
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return ensure_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    try:
        return ensure_utc(datetime.datetime.fromisoformat(text))
    except ValueError:
        return None


def isoformat_z(dt: Optional[datetime.datetime]) -> Optional[str]:
    """Render as '2024-01-01T00:00:00.000Z' (UTC, millisecond precision)."""
    if dt is None:
        return None
    dt = ensure_utc(dt)
    return dt.strftime('%Y-%m-%dT%H:%M:%S') + f".{dt.microsecond // 1000:03d}Z"


def bytes_per_sec_to_mbps(value: Optional[float]) -> float:
    bits = (value or 0) * 8
    return bits / 1_000_000


# --- Domain types ---

@dataclass(frozen=True)
class Sample:
    """One speedtest measurement, successful or failed."""
    node_id: str
    timestamp: datetime.datetime
    is_failed: bool = False
    download_bandwidth: Optional[int] = None  # bytes/second
    upload_bandwidth: Optional[int] = None  # bytes/second
    ping_latency: Optional[float] = None  # ms
    ping_jitter: Optional[float] = None  # ms
    packet_loss: Optional[float] = None  # percent
    error_message: Optional[str] = None
    isp: Optional[str] = None
    server_name: Optional[str] = None
    server_location: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self):
        # Naive timestamps are taken as UTC
        object.__setattr__(self, 'timestamp', ensure_utc(self.timestamp))

    @property
    def download_mbps(self) -> float:
        return bytes_per_sec_to_mbps(self.download_bandwidth)

    @property
    def upload_mbps(self) -> float:
        return bytes_per_sec_to_mbps(self.upload_bandwidth)

    def to_dict(self) -> Dict[str, Any]:
        payload = {k: v for k, v in asdict(self).items() if v is not None}
        payload['timestamp'] = isoformat_z(self.timestamp)
        payload['is_failed'] = self.is_failed
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any], node_id: Optional[str] = None) -> "Sample":
        timestamp = parse_timestamp(data.get('timestamp'))
        if timestamp is None:
            raise ValueError(f"Invalid sample timestamp: {data.get('timestamp')!r}")
        sample_node_id = data.get('node_id') or node_id
        if not sample_node_id:
            raise ValueError(f"Sample at {data.get('timestamp')!r} has no node_id")
        return cls(
            node_id=str(sample_node_id),
            timestamp=timestamp,
            is_failed=bool(data.get('is_failed', False)),
            download_bandwidth=data.get('download_bandwidth'),
            upload_bandwidth=data.get('upload_bandwidth'),
            ping_latency=data.get('ping_latency'),
            ping_jitter=data.get('ping_jitter'),
            packet_loss=data.get('packet_loss'),
            error_message=data.get('error_message'),
            isp=data.get('isp'),
            server_name=data.get('server_name'),
            server_location=data.get('server_location'),
            id=data.get('id'),
        )


@dataclass
class Node:
    """A monitored speedtest endpoint. Status and timestamps are maintained by the store."""
    id: str
    name: str
    status: str = 'active'
    archived: bool = False
    favorite: bool = False
    first_seen: Optional[datetime.datetime] = None
    last_seen: Optional[datetime.datetime] = None
    last_alive: Optional[datetime.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'status': self.status,
            'archived': self.archived,
            'favorite': self.favorite,
            'first_seen': isoformat_z(self.first_seen),
            'last_seen': isoformat_z(self.last_seen),
            'last_alive': isoformat_z(self.last_alive),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        return cls(
            id=str(data['id']),
            name=data.get('name') or str(data['id']),
            status=data.get('status', 'active'),
            archived=bool(data.get('archived', False)),
            favorite=bool(data.get('favorite', False)),
            first_seen=parse_timestamp(data.get('first_seen')),
            last_seen=parse_timestamp(data.get('last_seen')),
            last_alive=parse_timestamp(data.get('last_alive')),
        )


@dataclass(frozen=True)
class Bucket:
    """Aggregated statistics for one node over one epoch-aligned time interval."""
    bucket_start: datetime.datetime
    node_id: str
    node_name: str
    avg_download_mbps: float
    avg_upload_mbps: float
    avg_ping_ms: float
    avg_jitter_ms: float
    avg_packet_loss: float
    min_download_mbps: float
    max_download_mbps: float
    sample_count: int

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        del payload['bucket_start']
        return {'timestamp': isoformat_z(self.bucket_start), **payload}


@dataclass(frozen=True)
class LatestMeasurement:
    timestamp: datetime.datetime
    download_mbps: float
    upload_mbps: float
    ping_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), 'timestamp': isoformat_z(self.timestamp)}


@dataclass(frozen=True)
class NodeStatistics:
    avg_download_mbps: float = 0.0
    avg_upload_mbps: float = 0.0
    avg_ping_ms: float = 0.0
    avg_jitter_ms: float = 0.0
    avg_packet_loss: float = 0.0
    success_rate_24h: float = 100.0
    success_count_24h: int = 0
    failed_count_24h: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AverageStats24h:
    download_mbps: float
    upload_mbps: float
    ping_ms: float
    jitter_ms: float
    packet_loss: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FleetSummary:
    total_nodes: int
    active_nodes: int
    unreachable_nodes: int
    inactive_nodes: int
    total_measurements: int
    measurements_last_24h: int
    last_measurement: Optional[datetime.datetime] = None
    average_stats_24h: Optional[AverageStats24h] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            'total_nodes': self.total_nodes,
            'active_nodes': self.active_nodes,
            'unreachable_nodes': self.unreachable_nodes,
            'inactive_nodes': self.inactive_nodes,
            'total_measurements': self.total_measurements,
            'measurements_last_24h': self.measurements_last_24h,
        }
        # Absent rather than null: "no recent data" differs from "averages of zero"
        if self.last_measurement is not None:
            payload['last_measurement'] = isoformat_z(self.last_measurement)
        if self.average_stats_24h is not None:
            payload['average_stats_24h'] = self.average_stats_24h.to_dict()
        return payload
