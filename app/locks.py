from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from app.clock import parse_iso, to_iso
from app.errors import LockConflictError

DEFAULT_LOCK_TTL = timedelta(minutes=2)


def is_lock_expired(lock: Any, now: datetime) -> bool:
    if not isinstance(lock, dict):
        return True
    expires_at = parse_iso(lock.get("expiresAt"))
    if expires_at is None:
        return True
    return now >= expires_at


def is_lock_active(lock: Any, now: datetime) -> bool:
    return not is_lock_expired(lock, now)


def acquire(
    document: dict[str, Any],
    operation: str,
    holder: str,
    now: datetime,
    *,
    ttl: timedelta = DEFAULT_LOCK_TTL,
) -> dict[str, Any] | None:
    """Return the patch that takes the advisory lock.

    ``None`` means the caller already holds an unexpired lock and nothing needs
    writing. A foreign unexpired lock raises ``LockConflictError``.
    """
    lock = document.get("lock")
    if is_lock_active(lock, now):
        if lock.get("holder") == holder:
            return None
        raise LockConflictError(
            holder=str(lock.get("holder") or "unknown"),
            operation=str(lock.get("operation") or "unknown"),
            expires_at=str(lock.get("expiresAt")),
        )
    return {
        "lock": {
            "holder": holder,
            "operation": operation,
            "acquiredAt": to_iso(now),
            "expiresAt": to_iso(now + ttl),
        }
    }


def release(document: dict[str, Any], holder: str) -> dict[str, Any] | None:
    lock = document.get("lock")
    if not isinstance(lock, dict):
        return None if lock is None else {"lock": None}
    if lock.get("holder") != holder:
        return None
    return {"lock": None}
