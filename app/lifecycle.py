from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from app.clock import parse_iso, utcnow
from app.runs_model import AttemptRecord, current_attempt, ensure_current_attempt, runs_of

DESTROY_STALE_AFTER = timedelta(minutes=15)
FAILED_CONCLUSIONS = frozenset({"failure", "cancelled", "timed_out"})


def _failed(attempt: AttemptRecord | None) -> bool:
    return attempt is not None and attempt.conclusion in FAILED_CONCLUSIONS


def _in_flight(attempt: AttemptRecord | None) -> bool:
    return attempt is not None and attempt.run_id is not None and attempt.conclusion is None


def _pr(document: dict[str, Any]) -> dict[str, Any]:
    pr = document.get("pr")
    return pr if isinstance(pr, dict) else {}


def is_destroy_stale(document: dict[str, Any], now: datetime | None = None) -> bool:
    destroy = current_attempt(runs_of(document), "destroy")
    if not _in_flight(destroy):
        return False
    dispatched_at = parse_iso(destroy.dispatched_at)
    if dispatched_at is None:
        return False
    return (now or utcnow()) - dispatched_at > DESTROY_STALE_AFTER


def derive_lifecycle_status(document: dict[str, Any] | None, now: datetime | None = None) -> str:
    """Lifecycle status as a pure function of the stored facts.

    Reads run state only through the current attempt of each kind. Priority:
    destroy outcome, apply/plan failure, apply progress, merge, approval,
    plan outcome, planning, created.
    """
    if not document:
        return "request_created"
    runs = runs_of(document)
    request_id = str(document.get("id") or "")
    for kind in ("plan", "apply", "destroy"):
        ensure_current_attempt(runs, kind, request_id)
    plan = current_attempt(runs, "plan")
    apply = current_attempt(runs, "apply")
    destroy = current_attempt(runs, "destroy")

    if _failed(destroy):
        return "failed"
    if destroy is not None and destroy.conclusion == "success":
        return "destroyed"
    if _in_flight(destroy):
        return "failed" if is_destroy_stale(document, now) else "destroying"

    if _failed(apply) or _failed(plan):
        return "failed"
    if _in_flight(apply):
        return "applying"
    if apply is not None and apply.conclusion == "success":
        return "applied"

    pr = _pr(document)
    if pr.get("merged") or document.get("mergedSha"):
        return "merged"
    approval = document.get("approval")
    if isinstance(approval, dict) and approval.get("approved"):
        return "approved"
    if plan is not None and plan.conclusion == "success":
        return "plan_ready"
    if plan is not None and plan.status in {"queued", "in_progress"}:
        return "planning"
    if pr.get("open"):
        return "planning"
    return "request_created"


def needs_repair(document: dict[str, Any] | None, now: datetime | None = None) -> bool:
    """True when GitHub facts are missing and there is enough context to fetch them."""
    if not document or not document.get("targetOwner") or not document.get("targetRepo"):
        return False
    if is_destroy_stale(document, now):
        return True
    has_pr = bool(_pr(document).get("number") or document.get("prNumber"))
    if not has_pr and document.get("branchName"):
        return True
    runs = runs_of(document)
    for kind in ("plan", "apply", "destroy"):
        attempt = current_attempt(runs, kind)
        if attempt is not None and (attempt.run_id is None or attempt.conclusion is None):
            return True
    return False
