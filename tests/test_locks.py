from datetime import UTC, datetime, timedelta

import pytest

from app.errors import LockConflictError
from app.locks import acquire, is_lock_active, release

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def _locked(holder: str, expires_at: datetime) -> dict:
    return {
        "lock": {
            "holder": holder,
            "operation": "plan",
            "acquiredAt": (expires_at - timedelta(minutes=2)).isoformat(),
            "expiresAt": expires_at.isoformat(),
        }
    }


def test_acquire_free_document_returns_lock_patch():
    patch = acquire({"lock": None}, "plan", "carol:1", NOW)
    assert patch["lock"]["holder"] == "carol:1"
    assert patch["lock"]["expiresAt"] == (NOW + timedelta(minutes=2)).isoformat()


def test_foreign_unexpired_lock_conflicts():
    document = _locked("dave:2", NOW + timedelta(seconds=30))
    with pytest.raises(LockConflictError) as exc_info:
        acquire(document, "apply", "carol:1", NOW)
    assert exc_info.value.code == "REQUEST_LOCKED"
    assert exc_info.value.retryable is True


def test_expired_foreign_lock_can_be_taken():
    document = _locked("dave:2", NOW - timedelta(seconds=1))
    patch = acquire(document, "apply", "carol:1", NOW)
    assert patch["lock"]["holder"] == "carol:1"


def test_same_holder_needs_no_write():
    document = _locked("carol:1", NOW + timedelta(seconds=30))
    assert acquire(document, "plan", "carol:1", NOW) is None


def test_unparsable_expiry_counts_as_expired():
    document = {"lock": {"holder": "dave:2", "expiresAt": "garbage"}}
    assert is_lock_active(document["lock"], NOW) is False
    assert acquire(document, "plan", "carol:1", NOW)["lock"]["holder"] == "carol:1"


def test_release_only_by_holder():
    document = _locked("carol:1", NOW + timedelta(seconds=30))
    assert release(document, "dave:2") is None
    assert release(document, "carol:1") == {"lock": None}
    assert release({"lock": None}, "carol:1") is None
