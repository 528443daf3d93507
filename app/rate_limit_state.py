from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from app.clock import parse_iso, to_iso, utcnow
from app.object_storage import ObjectStorageBackend
from app.run_index import WEBHOOK_PREFIX, safe_segment

logger = logging.getLogger(__name__)

GLOBAL_MARKER_KEY = f"{WEBHOOK_PREFIX}/ratelimit/global.json"


class RateLimitMarkers:
    """Persisted backoff windows so every instance stops polling a throttled repo."""

    def __init__(self, *, storage: ObjectStorageBackend, clock: Callable[[], datetime] = utcnow) -> None:
        self._storage = storage
        self._clock = clock

    @staticmethod
    def key(owner: str | None = None, repo: str | None = None) -> str:
        if not owner or not repo:
            return GLOBAL_MARKER_KEY
        return f"{WEBHOOK_PREFIX}/ratelimit/{safe_segment(owner)}_{safe_segment(repo)}.json"

    def set(
        self,
        *,
        retry_after_ms: int,
        reason: str,
        owner: str | None = None,
        repo: str | None = None,
    ) -> dict[str, Any]:
        now = self._clock()
        marker = {
            "until": to_iso(now + timedelta(milliseconds=max(0, retry_after_ms))),
            "setAt": to_iso(now),
            "retryAfterMs": int(retry_after_ms),
            "reason": reason,
        }
        self._storage.put_json(self.key(owner, repo), marker)
        logger.warning(
            "github_backoff_marker_set scope=%s retry_after_ms=%s reason=%s",
            f"{owner}/{repo}" if owner and repo else "global",
            retry_after_ms,
            reason,
        )
        return marker

    def get_active(self, owner: str | None = None, repo: str | None = None) -> dict[str, Any] | None:
        keys = [self.key(owner, repo)] if owner and repo else []
        keys.append(GLOBAL_MARKER_KEY)
        now = self._clock()
        for key in keys:
            try:
                stored = self._storage.get_json(key)
            except ValueError:
                continue
            if stored is None or not isinstance(stored.body, dict):
                continue
            until = parse_iso(stored.body.get("until"))
            if until is not None and until > now:
                return {**stored.body, "scope": "global" if key == GLOBAL_MARKER_KEY else "repo"}
        return None
