from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from app.audit_log import LifecycleAuditLog
from app.clock import to_iso, utcnow
from app.event_notifier import EventNotifier
from app.requests_store import RequestDocumentStore, apply_patch, update_retrying

logger = logging.getLogger(__name__)


class DriftRecorder:
    """Stores out-of-band drift check results reported by the drift-plan workflow."""

    def __init__(
        self,
        *,
        store: RequestDocumentStore,
        audit: LifecycleAuditLog,
        notifier: EventNotifier,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._notifier = notifier
        self._clock = clock

    def record(
        self,
        request_id: str,
        *,
        run_id: int,
        run_url: str,
        has_drift: bool,
        summary: str | None = None,
    ) -> dict[str, Any]:
        status = "detected" if has_drift else "none"
        checked_at = to_iso(self._clock())
        previous: dict[str, Any] = {}

        def _mutate(current: dict[str, Any]) -> dict[str, Any]:
            drift = current.get("drift")
            previous.clear()
            previous.update(drift if isinstance(drift, dict) else {})
            return apply_patch(
                current,
                {
                    "drift": {
                        "status": status,
                        "lastCheckedAt": checked_at,
                        "runId": run_id,
                        "runUrl": run_url,
                        "summary": summary,
                    }
                },
            )

        updated, _ = update_retrying(self._store, request_id, _mutate)
        was_detected = previous.get("status") == "detected"
        if has_drift != was_detected:
            event = "drift_detected" if has_drift else "drift_cleared"
            self._audit.record(
                request_id=request_id,
                event=event,
                source="drift-result",
                data={"runId": run_id, "runUrl": run_url, "summary": summary},
            )
            logger.info("%s request_id=%s run_id=%s", event, request_id, run_id)
        self._notifier.publish(request_id=request_id, event_type="drift", updated_at=str(updated.get("updatedAt")))
        return updated
