from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from app.clock import to_iso, utcnow
from app.errors import RequestNotFoundError, VersionConflictError
from app.object_storage import ObjectStorageBackend, PreconditionFailedError, StoredObject

logger = logging.getLogger(__name__)

REQUESTS_PREFIX = "requests/"
HISTORY_PREFIX = "history/"

Mutate = Callable[[dict[str, Any]], dict[str, Any]]


def request_key(request_id: str) -> str:
    return f"{REQUESTS_PREFIX}{request_id}.json"


def history_key(request_id: str) -> str:
    return f"{HISTORY_PREFIX}{request_id}.json"


def apply_patch(document: dict[str, Any], patch: dict[str, Any] | None) -> dict[str, Any]:
    """Shallow-merge a patch, returning the same object when there is nothing to write."""
    if not patch:
        return document
    return {**document, **patch}


def _as_version(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    return 0


class RequestDocumentStore:
    """Request documents persisted one object per request with optimistic versioning.

    ``update`` reads the document together with its ETag, hands a private copy to
    ``mutate`` and writes the result conditioned on that ETag. When ``mutate``
    returns the copy it was given, nothing is written. A precondition failure
    surfaces as ``VersionConflictError``; it is not retried here because mutate
    callbacks are not assumed to be safe to re-run.
    """

    def __init__(
        self,
        *,
        storage: ObjectStorageBackend,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._clock = clock

    def get(self, request_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._read(request_id).body)

    def create(self, document: dict[str, Any]) -> dict[str, Any]:
        request_id = str(document.get("id") or "").strip()
        if not request_id:
            raise ValueError("request document requires an id")
        now_iso = to_iso(self._clock())
        payload = {
            **document,
            "version": 1,
            "createdAt": document.get("createdAt") or now_iso,
            "updatedAt": now_iso,
        }
        try:
            self._storage.put_json(request_key(request_id), payload, if_none_match=True)
        except PreconditionFailedError as exc:
            raise VersionConflictError(request_id, expected_version=0) from exc
        logger.info("request_created request_id=%s", request_id)
        return payload

    def update(self, request_id: str, mutate: Mutate) -> tuple[dict[str, Any], bool]:
        stored = self._read(request_id)
        current = copy.deepcopy(stored.body)
        result = mutate(current)
        if result is current:
            return current, False
        base_version = _as_version(stored.body.get("version"))
        next_doc = dict(result)
        next_doc["id"] = request_id
        next_doc["version"] = base_version + 1
        if next_doc.get("updatedAt") == stored.body.get("updatedAt"):
            next_doc["updatedAt"] = to_iso(self._clock())
        try:
            self._storage.put_json(request_key(request_id), next_doc, if_match=stored.etag)
        except PreconditionFailedError as exc:
            logger.info(
                "request_version_conflict request_id=%s base_version=%s",
                request_id,
                base_version,
            )
            raise VersionConflictError(request_id, expected_version=base_version) from exc
        return next_doc, True

    def archive(self, document: dict[str, Any]) -> dict[str, Any]:
        request_id = str(document["id"])
        payload = {**document, "archivedAt": to_iso(self._clock())}
        self._storage.put_json(history_key(request_id), payload)
        logger.info("request_archived request_id=%s version=%s", request_id, document.get("version"))
        return payload

    def get_archived(self, request_id: str) -> dict[str, Any] | None:
        stored = self._storage.get_json(history_key(request_id))
        if stored is None or not isinstance(stored.body, dict):
            return None
        return stored.body

    def list(self, *, limit: int = 50) -> list[dict[str, Any]]:
        documents: list[dict[str, Any]] = []
        for summary in self._storage.list_keys(REQUESTS_PREFIX):
            if len(documents) >= limit:
                break
            try:
                stored = self._storage.get_json(summary.key)
            except ValueError:
                logger.warning("request_document_unreadable key=%s", summary.key)
                continue
            if stored is not None and isinstance(stored.body, dict):
                documents.append(stored.body)
        return documents

    def _read(self, request_id: str) -> StoredObject:
        stored = self._storage.get_json(request_key(request_id))
        if stored is None or not isinstance(stored.body, dict):
            raise RequestNotFoundError(request_id)
        return stored


def update_retrying(
    store: RequestDocumentStore,
    request_id: str,
    mutate: Mutate,
    *,
    attempts: int = 3,
) -> tuple[dict[str, Any], bool]:
    """Re-read and reapply ``mutate`` on version conflicts.

    Only for mutations that derive everything from the document they are given.
    """
    for attempt in range(1, attempts + 1):
        try:
            return store.update(request_id, mutate)
        except VersionConflictError:
            if attempt >= attempts:
                raise
            logger.info("request_update_retry request_id=%s attempt=%s", request_id, attempt)
    raise VersionConflictError(request_id)
