from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from app.clock import to_iso, utcnow
from app.object_storage import ObjectStorageBackend
from app.run_index import safe_segment

logger = logging.getLogger(__name__)


class LifecycleAuditLog:
    """Append-only lifecycle events per request, one object per event."""

    def __init__(self, *, storage: ObjectStorageBackend, clock: Callable[[], datetime] = utcnow) -> None:
        self._storage = storage
        self._clock = clock

    @staticmethod
    def prefix(request_id: str) -> str:
        return f"logs/{safe_segment(request_id)}/"

    def record(
        self,
        *,
        request_id: str,
        event: str,
        actor: str | None = None,
        source: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        timestamp = to_iso(self._clock())
        entry = {
            "timestamp": timestamp,
            "requestId": request_id,
            "event": event,
            "actor": actor,
            "source": source,
            "data": data or {},
        }
        key = f"{self.prefix(request_id)}{safe_segment(timestamp)}-{uuid.uuid4().hex[:8]}.json"
        try:
            self._storage.put_json(key, entry)
        except Exception:
            # Audit failures must not break the lifecycle operation.
            logger.warning("lifecycle_audit_write_failed request_id=%s event=%s", request_id, event, exc_info=True)

    def list(self, request_id: str, *, limit: int = 100) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        for summary in self._storage.list_keys(self.prefix(request_id))[:limit]:
            try:
                stored = self._storage.get_json(summary.key)
            except ValueError:
                continue
            if stored is not None and isinstance(stored.body, dict):
                entries.append(stored.body)
        entries.sort(key=lambda entry: str(entry.get("timestamp", "")), reverse=True)
        return entries
