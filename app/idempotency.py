from __future__ import annotations

import hashlib
import json
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from app.clock import parse_iso, to_iso
from app.errors import IdempotencyConflictError

DEFAULT_WINDOW = timedelta(minutes=10)

IdempotencyMode = Literal["no_key", "replay", "recorded"]


@dataclass(frozen=True)
class IdempotencyCheck:
    mode: IdempotencyMode
    patch: dict[str, Any] = field(default_factory=dict)


def _ledger(document: dict[str, Any]) -> dict[str, Any]:
    ledger = document.get("idempotency")
    return ledger if isinstance(ledger, dict) else {}


def check(
    document: dict[str, Any],
    operation: str,
    key: str | None,
    now: datetime,
    *,
    window: timedelta = DEFAULT_WINDOW,
) -> IdempotencyCheck:
    """Decide whether a keyed operation is new, a replay or a conflicting duplicate.

    A missing key proceeds unprotected. Inside the window the same key replays and
    a different key conflicts; outside it (or with an unreadable timestamp) the
    key is recorded and the returned patch must be persisted before dispatching.
    """
    clean_key = (key or "").strip()
    if not clean_key:
        return IdempotencyCheck(mode="no_key")

    ledger = _ledger(document)
    entry = ledger.get(operation)
    if isinstance(entry, dict):
        recorded_at = parse_iso(entry.get("at"))
        if recorded_at is not None and now - recorded_at < window:
            if entry.get("key") == clean_key:
                return IdempotencyCheck(mode="replay")
            raise IdempotencyConflictError(operation=operation)

    next_ledger = {**ledger, operation: {"key": clean_key, "at": to_iso(now)}}
    return IdempotencyCheck(mode="recorded", patch={"idempotency": next_ledger})


def clear_patch(document: dict[str, Any], operation: str, key: str) -> dict[str, Any] | None:
    """Drop the ledger entry for a keyed operation whose dispatch failed."""
    ledger = _ledger(document)
    entry = ledger.get(operation)
    if not isinstance(entry, dict) or entry.get("key") != key:
        return None
    next_ledger = {name: value for name, value in ledger.items() if name != operation}
    return {"idempotency": next_ledger}


@dataclass
class _CreateRecord:
    fingerprint: str
    data: dict[str, Any]


class CreateIdempotencyLedger:
    """Keyed replay of request creation, bounded in size."""

    def __init__(self, *, max_entries: int = 1000) -> None:
        self._lock = threading.RLock()
        self._max_entries = max_entries
        self._records: OrderedDict[str, _CreateRecord] = OrderedDict()

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        raw = json.dumps(payload, ensure_ascii=True, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def run(
        self,
        *,
        actor: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Any,
    ) -> dict[str, Any]:
        key = f"{actor}:{idempotency_key}"
        fingerprint = self._fingerprint(payload)
        with self._lock:
            record = self._records.get(key)
            if record is not None:
                if record.fingerprint != fingerprint:
                    raise IdempotencyConflictError(
                        operation="create",
                        message="same idempotency key with different payload",
                    )
                return record.data
            data = execute()
            self._records[key] = _CreateRecord(fingerprint=fingerprint, data=data)
            while len(self._records) > self._max_entries:
                self._records.popitem(last=False)
            return data

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
