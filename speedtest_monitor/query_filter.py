"""
Query filtering applied before any aggregation or listing.

Everything here is a pure predicate or a parser: unparseable input falls back
to the permissive default instead of being rejected.
"""

import datetime
import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from .config import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, SAMPLE_STATUSES
from .models import Node, Sample, ensure_utc, parse_timestamp

log = logging.getLogger("SpeedtestMonitor.QueryFilter")

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}


def _getall(query: Mapping[str, Any], key: str) -> List[str]:
    """Read every value of a possibly repeated query parameter (MultiDict or plain dict)."""
    if hasattr(query, 'getall'):
        return list(query.getall(key, []))
    value = query.get(key)
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(v) for v in value]
    return [str(value)]


def parse_node_ids(values: Iterable[str]) -> Optional[FrozenSet[str]]:
    """Accepts repeated values and/or comma-joined strings. None means 'all nodes'."""
    ids = set()
    for value in values:
        for part in str(value).split(','):
            part = part.strip()
            if part:
                ids.add(part)
    return frozenset(ids) if ids else None


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def parse_status(value: Optional[str]) -> str:
    if value and value in SAMPLE_STATUSES:
        return value
    if value:
        log.debug(f"Unknown status filter '{value}', using 'all'.")
    return 'all'


def _parse_bound(query: Mapping[str, Any], key: str) -> Optional[datetime.datetime]:
    values = _getall(query, key)
    if not values:
        return None
    parsed = parse_timestamp(values[0])
    if parsed is None:
        log.warning(f"Ignoring unparseable '{key}' parameter: {values[0]!r}")
    return parsed


@dataclass(frozen=True)
class QueryFilter:
    node_ids: Optional[FrozenSet[str]] = None
    hide_archived: bool = False
    status: str = 'all'
    start: Optional[datetime.datetime] = None
    end: Optional[datetime.datetime] = None
    end_inclusive: bool = True  # closed [start, end] for aggregation, half-open for listings

    def __post_init__(self):
        for bound in ('start', 'end'):
            value = getattr(self, bound)
            if value is not None:
                object.__setattr__(self, bound, ensure_utc(value))

    def allows_node(self, node_id: str, node: Optional[Node] = None) -> bool:
        if self.node_ids is not None and node_id not in self.node_ids:
            return False
        if self.hide_archived and node is not None and node.archived:
            return False
        return True

    def allows_status(self, sample: Sample) -> bool:
        if self.status == 'successful':
            return not sample.is_failed
        if self.status == 'failed':
            return sample.is_failed
        return True

    def in_range(self, timestamp: datetime.datetime) -> bool:
        if self.start is not None and timestamp < self.start:
            return False
        if self.end is not None:
            if self.end_inclusive:
                return timestamp <= self.end
            return timestamp < self.end
        return True

    def matches(self, sample: Sample, nodes: Mapping[str, Node]) -> bool:
        return (self.allows_node(sample.node_id, nodes.get(sample.node_id))
                and self.allows_status(sample)
                and self.in_range(sample.timestamp))

    def apply(self, samples: Iterable[Sample], nodes: Mapping[str, Node]) -> List[Sample]:
        return [s for s in samples if self.matches(s, nodes)]

    @classmethod
    def from_query(cls, query: Mapping[str, Any], end_inclusive: bool = True) -> "QueryFilter":
        hide_values = _getall(query, 'hide_archived')
        status_values = _getall(query, 'status')
        return cls(
            node_ids=parse_node_ids(_getall(query, 'node_ids')),
            hide_archived=parse_bool(hide_values[0] if hide_values else None),
            status=parse_status(status_values[0] if status_values else None),
            start=_parse_bound(query, 'from'),
            end=_parse_bound(query, 'to'),
            end_inclusive=end_inclusive,
        )


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Pagination:
    """page wins over offset when both are given: skip = (page - 1) * limit."""
    limit: int = DEFAULT_PAGE_LIMIT
    offset: int = 0
    page: Optional[int] = None

    @property
    def skip(self) -> int:
        if self.page is not None:
            return (self.page - 1) * self.limit
        return self.offset

    def paginate(self, items: List[Any]) -> List[Any]:
        return items[self.skip:self.skip + self.limit]

    def to_dict(self, total: int) -> Dict[str, int]:
        return {'total': total, 'page': self.page or 1, 'limit': self.limit}

    @classmethod
    def from_query(cls, query: Mapping[str, Any]) -> "Pagination":
        limit_values = _getall(query, 'limit')
        offset_values = _getall(query, 'offset')
        page_values = _getall(query, 'page')

        limit = _parse_int(limit_values[0] if limit_values else None)
        if limit is None or limit < 1:
            limit = DEFAULT_PAGE_LIMIT
        limit = min(limit, MAX_PAGE_LIMIT)

        offset = _parse_int(offset_values[0] if offset_values else None)
        if offset is None or offset < 0:
            offset = 0

        page = _parse_int(page_values[0] if page_values else None)
        if page is not None and page < 1:
            page = 1
        return cls(limit=limit, offset=offset, page=page)
