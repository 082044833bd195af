"""Bounded request log with incrementally maintained aggregate statistics."""
from __future__ import annotations

import copy
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import Lock
from typing import Any, Deque, Dict, List, Optional

from trafficguard.classifier import classify
from trafficguard.utils import path_prefix

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_RECORDS = 1000
DEFAULT_MAX_TRACKED_IPS = 100
MAX_USER_AGENT_LENGTH = 200
PATH_KEY_SEGMENTS = 4

RECENT_LIMIT_CEILING = 500
SUSPICIOUS_LIMIT_CEILING = 200
BY_IP_LIMIT_CEILING = 200


def _utcnow() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class RequestRecord:
    """Snapshot of one completed request."""

    timestamp: str
    service: str
    method: str
    path: str
    status: int
    duration_ms: float
    ip: str
    user_agent: str
    user_id: Optional[str] = None
    is_bot: bool = False
    is_internal: bool = False
    is_suspicious: bool = False
    suspicious_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "service": self.service,
            "method": self.method,
            "path": self.path,
            "status": self.status,
            "durationMs": self.duration_ms,
            "ip": self.ip,
            "userAgent": self.user_agent,
            "isBot": self.is_bot,
            "isInternal": self.is_internal,
            "isSuspicious": self.is_suspicious,
        }
        if self.user_id is not None:
            payload["userId"] = self.user_id
        if self.suspicious_reason is not None:
            payload["suspiciousReason"] = self.suspicious_reason
        return payload


@dataclass
class AggregatedStats:
    total_requests: int = 0
    external_requests: int = 0
    internal_requests: int = 0
    requests_by_status: Dict[int, int] = field(default_factory=dict)
    requests_by_path: Dict[str, int] = field(default_factory=dict)
    requests_by_ip: Dict[str, int] = field(default_factory=dict)
    bot_requests: int = 0
    suspicious_requests: int = 0
    avg_duration_ms: float = 0.0
    last_updated: str = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRequests": self.total_requests,
            "externalRequests": self.external_requests,
            "internalRequests": self.internal_requests,
            "requestsByStatus": {str(code): count for code, count in self.requests_by_status.items()},
            "requestsByPath": dict(self.requests_by_path),
            "requestsByIP": dict(self.requests_by_ip),
            "botRequests": self.bot_requests,
            "suspiciousRequests": self.suspicious_requests,
            "avgDurationMs": self.avg_duration_ms,
            "lastUpdated": self.last_updated,
        }


class MetricsStore:
    """Thread-safe ring of recent requests plus running aggregates.

    The ring only serves recent-request queries. Aggregates are updated per
    record and never recomputed from it, so they stay accurate after the ring
    has evicted older entries.
    """

    def __init__(
        self,
        max_records: int = DEFAULT_MAX_RECORDS,
        max_tracked_ips: int = DEFAULT_MAX_TRACKED_IPS,
    ) -> None:
        if max_records <= 0:
            raise ValueError("max_records must be positive")
        self.max_records = max_records
        self.max_tracked_ips = max_tracked_ips
        self._records: Deque[RequestRecord] = deque(maxlen=max_records)
        self._stats = AggregatedStats()
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._records)

    def observe(
        self,
        *,
        service: str,
        method: str,
        path: str,
        status: int,
        duration_ms: float,
        ip: str,
        user_agent: Optional[str],
        is_internal: bool,
        user_id: Optional[str] = None,
    ) -> RequestRecord:
        """Classify a completed request, record it and return the record."""

        user_agent = user_agent or ""
        verdict = classify(user_agent, is_internal, path)
        record = RequestRecord(
            timestamp=_utcnow(),
            service=service,
            method=method,
            path=path,
            status=status,
            duration_ms=duration_ms,
            ip=ip,
            user_agent=user_agent[:MAX_USER_AGENT_LENGTH],
            user_id=user_id,
            is_bot=verdict.is_bot,
            is_internal=is_internal,
            is_suspicious=verdict.is_suspicious,
            suspicious_reason=verdict.reason,
        )
        self.record(record)
        return record

    def record(self, record: RequestRecord) -> None:
        with self._lock:
            self._records.append(record)
            self._update_stats(record)

        if record.is_suspicious:
            LOGGER.warning(
                "suspicious request",
                extra={
                    "service": record.service,
                    "client_ip": record.ip,
                    "method": record.method,
                    "path": record.path,
                    "reason": record.suspicious_reason,
                },
            )

    def _update_stats(self, record: RequestRecord) -> None:
        stats = self._stats
        stats.total_requests += 1
        stats.requests_by_status[record.status] = stats.requests_by_status.get(record.status, 0) + 1

        if record.is_internal:
            stats.internal_requests += 1
        else:
            stats.external_requests += 1
            path_key = path_prefix(record.path, PATH_KEY_SEGMENTS)
            stats.requests_by_path[path_key] = stats.requests_by_path.get(path_key, 0) + 1
            by_ip = stats.requests_by_ip
            if record.ip in by_ip:
                by_ip[record.ip] += 1
            elif len(by_ip) < self.max_tracked_ips:
                by_ip[record.ip] = 1
            stats.avg_duration_ms += (
                record.duration_ms - stats.avg_duration_ms
            ) / stats.external_requests

        if record.is_bot:
            stats.bot_requests += 1
        if record.is_suspicious:
            stats.suspicious_requests += 1
        stats.last_updated = _utcnow()

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._stats = AggregatedStats()

    def recent(self, limit: int = 100) -> List[RequestRecord]:
        limit = _clamp(limit, RECENT_LIMIT_CEILING)
        with self._lock:
            records = list(self._records)
        return records[-limit:] if limit else []

    def suspicious(self, limit: int = 50) -> List[RequestRecord]:
        return self._filtered(lambda r: r.is_suspicious, _clamp(limit, SUSPICIOUS_LIMIT_CEILING))

    def by_ip(self, ip: str, limit: int = 50) -> List[RequestRecord]:
        return self._filtered(lambda r: r.ip == ip, _clamp(limit, BY_IP_LIMIT_CEILING))

    def summary(self) -> AggregatedStats:
        with self._lock:
            return copy.deepcopy(self._stats)

    def status_breakdown(self) -> Dict[str, Any]:
        """Bucket status counts by class, keeping the raw per-code detail."""

        stats = self.summary()
        breakdown: Dict[str, Any] = {"2xx": 0, "3xx": 0, "4xx": 0, "5xx": 0}
        for code, count in stats.requests_by_status.items():
            if 200 <= code < 300:
                breakdown["2xx"] += count
            elif 300 <= code < 400:
                breakdown["3xx"] += count
            elif 400 <= code < 500:
                breakdown["4xx"] += count
            elif code >= 500:
                breakdown["5xx"] += count
        breakdown["details"] = {str(code): count for code, count in stats.requests_by_status.items()}
        return breakdown

    def _filtered(self, predicate, limit: int) -> List[RequestRecord]:
        if not limit:
            return []
        with self._lock:
            matches = [record for record in self._records if predicate(record)]
        return matches[-limit:]


def _clamp(limit: int, ceiling: int) -> int:
    return max(0, min(int(limit), ceiling))
