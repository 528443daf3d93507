from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from app.clock import parse_iso, to_iso, utcnow
from app.object_storage import ObjectStorageBackend, PreconditionFailedError

logger = logging.getLogger(__name__)

WEBHOOK_PREFIX = "webhooks/github"
DEFAULT_RETENTION = timedelta(days=90)


def safe_segment(value: Any) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", str(value).strip())
    return cleaned or "unknown"


class RunIndex:
    """Maps (operation kind, external run id) to the owning request id."""

    def __init__(
        self,
        *,
        storage: ObjectStorageBackend,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._retention = retention
        self._clock = clock

    @staticmethod
    def key(kind: str, run_id: int) -> str:
        return f"{WEBHOOK_PREFIX}/run-index/{safe_segment(kind)}/run-{int(run_id)}.json"

    def _entry(self, kind: str, run_id: int, request_id: str) -> dict[str, Any]:
        now = self._clock()
        return {
            "kind": kind,
            "runId": int(run_id),
            "requestId": request_id,
            "createdAt": to_iso(now),
            "expiresAt": to_iso(now + self._retention),
        }

    def _read(self, kind: str, run_id: int) -> tuple[str | None, str | None]:
        """Return (request id if the entry is live, etag of whatever is stored)."""
        try:
            stored = self._storage.get_json(self.key(kind, run_id))
        except ValueError:
            logger.warning("run_index_entry_invalid kind=%s run_id=%s", kind, run_id)
            return None, None
        if stored is None:
            return None, None
        body = stored.body if isinstance(stored.body, dict) else {}
        request_id = body.get("requestId")
        if not isinstance(request_id, str) or not request_id:
            return None, stored.etag
        expires_at = parse_iso(body.get("expiresAt"))
        if expires_at is not None and expires_at <= self._clock():
            return None, stored.etag
        return request_id, stored.etag

    def put(self, kind: str, run_id: int, request_id: str) -> None:
        self._storage.put_json(self.key(kind, run_id), self._entry(kind, run_id, request_id))

    def get(self, kind: str, run_id: int) -> str | None:
        request_id, _ = self._read(kind, run_id)
        return request_id

    def claim(self, kind: str, run_id: int, request_id: str) -> bool:
        """Bind a run to a request unless another request already owns it.

        The write is conditional, so two dispatchers racing for the same run
        cannot both win.
        """
        owner, etag = self._read(kind, run_id)
        if owner is not None:
            return owner == request_id
        try:
            if etag is None:
                self._storage.put_json(
                    self.key(kind, run_id),
                    self._entry(kind, run_id, request_id),
                    if_none_match=True,
                )
            else:
                self._storage.put_json(
                    self.key(kind, run_id),
                    self._entry(kind, run_id, request_id),
                    if_match=etag,
                )
        except PreconditionFailedError:
            owner, _ = self._read(kind, run_id)
            return owner == request_id
        return True


class PrIndex:
    """Maps a pull request in a repository to the owning request id."""

    def __init__(self, *, storage: ObjectStorageBackend, clock: Callable[[], datetime] = utcnow) -> None:
        self._storage = storage
        self._clock = clock

    @staticmethod
    def key(owner: str, repo: str, pr_number: int) -> str:
        return f"{WEBHOOK_PREFIX}/pr-index/{safe_segment(owner)}_{safe_segment(repo)}/pr-{int(pr_number)}.json"

    def put(self, owner: str, repo: str, pr_number: int, request_id: str) -> None:
        self._storage.put_json(
            self.key(owner, repo, pr_number),
            {
                "owner": owner,
                "repo": repo,
                "prNumber": int(pr_number),
                "requestId": request_id,
                "createdAt": to_iso(self._clock()),
            },
        )

    def get(self, owner: str, repo: str, pr_number: int) -> str | None:
        try:
            stored = self._storage.get_json(self.key(owner, repo, pr_number))
        except ValueError:
            return None
        if stored is None or not isinstance(stored.body, dict):
            return None
        request_id = stored.body.get("requestId")
        return request_id if isinstance(request_id, str) and request_id else None


class DeliveryLedger:
    """Webhook delivery ids already processed."""

    def __init__(self, *, storage: ObjectStorageBackend, clock: Callable[[], datetime] = utcnow) -> None:
        self._storage = storage
        self._clock = clock

    @staticmethod
    def key(delivery_id: str) -> str:
        return f"{WEBHOOK_PREFIX}/deliveries/{safe_segment(delivery_id)}.json"

    def seen(self, delivery_id: str) -> bool:
        return self._storage.exists(self.key(delivery_id))

    def record(self, delivery_id: str, event: str) -> bool:
        """Record a delivery; False when it was already recorded by someone else."""
        try:
            self._storage.put_json(
                self.key(delivery_id),
                {"deliveryId": delivery_id, "event": event, "receivedAt": to_iso(self._clock())},
                if_none_match=True,
            )
        except PreconditionFailedError:
            return False
        return True
