from __future__ import annotations

import re
import threading
from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.clock import to_iso, utcnow

_SHA_SEGMENT = re.compile(r"^[0-9a-f]{40}$", re.IGNORECASE)


def normalize_route(path: str) -> str:
    bare = path.split("?", 1)[0]
    segments = []
    for segment in bare.split("/"):
        if segment.isdigit():
            segments.append(":id")
        elif _SHA_SEGMENT.match(segment):
            segments.append(":sha")
        else:
            segments.append(segment)
    return "/".join(segments)


def _status_class(status: int) -> str:
    if status <= 0:
        return "network_error"
    return f"{status // 100}xx"


def _header_int(headers: Mapping[str, str], name: str) -> int | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


@dataclass
class _MinuteBucket:
    calls: int = 0
    rate_limited: int = 0
    latency_ms_total: float = 0.0
    status_classes: Counter = field(default_factory=Counter)
    routes: Counter = field(default_factory=Counter)


class GithubMetrics:
    """Per-minute counters of real GitHub network calls, kept for one hour."""

    def __init__(self, *, window_minutes: int = 60, clock: Callable[[], datetime] = utcnow) -> None:
        self._window_minutes = window_minutes
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[int, _MinuteBucket] = {}
        self._last_rate_limit: dict[str, Any] | None = None

    def record_call(
        self,
        *,
        method: str,
        path: str,
        status: int,
        latency_ms: float,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        headers = headers or {}
        remaining = _header_int(headers, "x-ratelimit-remaining")
        limit = _header_int(headers, "x-ratelimit-limit")
        reset = _header_int(headers, "x-ratelimit-reset")
        retry_after = _header_int(headers, "retry-after")
        rate_limited = status == 429 or (status == 403 and remaining == 0)
        now = self._clock()
        minute = int(now.timestamp() // 60)
        with self._lock:
            bucket = self._buckets.setdefault(minute, _MinuteBucket())
            bucket.calls += 1
            bucket.latency_ms_total += max(0.0, latency_ms)
            bucket.status_classes[_status_class(status)] += 1
            bucket.routes[f"{method.upper()} {normalize_route(path)}"] += 1
            if rate_limited:
                bucket.rate_limited += 1
            if remaining is not None or limit is not None:
                self._last_rate_limit = {
                    "remaining": remaining,
                    "limit": limit,
                    "reset": reset,
                    "retryAfter": retry_after,
                    "observedAt": to_iso(now),
                }
            self._prune(minute)

    def _prune(self, current_minute: int) -> None:
        horizon = current_minute - self._window_minutes
        for minute in [m for m in self._buckets if m <= horizon]:
            del self._buckets[minute]

    def _window(self, current_minute: int, minutes: int) -> dict[str, Any]:
        calls = 0
        rate_limited = 0
        latency_total = 0.0
        status_classes: Counter = Counter()
        routes: Counter = Counter()
        for minute, bucket in self._buckets.items():
            if minute <= current_minute - minutes:
                continue
            calls += bucket.calls
            rate_limited += bucket.rate_limited
            latency_total += bucket.latency_ms_total
            status_classes.update(bucket.status_classes)
            routes.update(bucket.routes)
        return {
            "calls": calls,
            "rate_limited": rate_limited,
            "avg_latency_ms": round(latency_total / calls, 1) if calls else 0.0,
            "status_classes": dict(status_classes),
            "top_routes": [{"route": route, "calls": count} for route, count in routes.most_common(10)],
        }

    def snapshot(self) -> dict[str, Any]:
        current_minute = int(self._clock().timestamp() // 60)
        with self._lock:
            self._prune(current_minute)
            return {
                "window_5m": self._window(current_minute, 5),
                "window_60m": self._window(current_minute, self._window_minutes),
                "last_rate_limit": dict(self._last_rate_limit) if self._last_rate_limit else None,
            }

    def total_calls(self) -> int:
        with self._lock:
            return sum(bucket.calls for bucket in self._buckets.values())

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._last_rate_limit = None
