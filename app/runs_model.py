from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from app.clock import to_iso

logger = logging.getLogger(__name__)

RunKind = Literal["plan", "apply", "destroy"]
RUN_KINDS: tuple[str, ...] = ("plan", "apply", "destroy")

AttemptStatus = Literal["queued", "in_progress", "completed", "unknown"]
AttemptConclusion = Literal["success", "failure", "cancelled", "skipped", "timed_out"]

_STATUS_RANK = {"queued": 0, "unknown": 0, "in_progress": 1, "completed": 2}
_CONCLUSION_ALIASES = {
    "success": "success",
    "failure": "failure",
    "cancelled": "cancelled",
    "skipped": "skipped",
    "timed_out": "timed_out",
    "action_required": "failure",
    "startup_failure": "failure",
    "stale": "failure",
    "neutral": "skipped",
}


class AttemptRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    attempt: int = Field(ge=1)
    run_id: int | None = Field(default=None, alias="runId")
    url: str | None = None
    status: AttemptStatus = "queued"
    conclusion: AttemptConclusion | None = None
    dispatched_at: str = Field(alias="dispatchedAt")
    completed_at: str | None = Field(default=None, alias="completedAt")
    head_sha: str | None = Field(default=None, alias="headSha")
    ref: str | None = None
    actor: str | None = None


class RunOpState(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    current_attempt: int = Field(default=0, ge=0, alias="currentAttempt")
    attempts: list[AttemptRecord] = Field(default_factory=list)

    def find(self, attempt_number: int) -> AttemptRecord | None:
        for attempt in self.attempts:
            if attempt.attempt == attempt_number:
                return attempt
        return None


@dataclass(frozen=True)
class DispatchMeta:
    actor: str | None = None
    head_sha: str | None = None
    ref: str | None = None
    run_id: int | None = None
    url: str | None = None


def normalize_status(raw: Any) -> AttemptStatus:
    value = str(raw or "").strip().lower()
    if value in {"queued", "in_progress", "completed"}:
        return value  # type: ignore[return-value]
    return "unknown"


def normalize_conclusion(raw: Any) -> AttemptConclusion | None:
    value = str(raw or "").strip().lower()
    return _CONCLUSION_ALIASES.get(value)  # type: ignore[return-value]


@dataclass(frozen=True)
class RunFacts:
    """Observed facts about one external run, from a webhook or a poll."""

    status: AttemptStatus | None = None
    conclusion: AttemptConclusion | None = None
    completed_at: str | None = None
    head_sha: str | None = None
    url: str | None = None

    @classmethod
    def from_github_run(cls, run: Mapping[str, Any]) -> "RunFacts":
        status = normalize_status(run.get("status")) if run.get("status") else None
        completed_at = None
        if status == "completed":
            completed_at = run.get("completed_at") or run.get("updated_at") or None
        return cls(
            status=status,
            conclusion=normalize_conclusion(run.get("conclusion")),
            completed_at=completed_at,
            head_sha=run.get("head_sha") or None,
            url=run.get("html_url") or None,
        )


def runs_of(document: Mapping[str, Any]) -> dict[str, Any]:
    runs = document.get("runs")
    return dict(runs) if isinstance(runs, dict) else {}


def load_state(runs: Mapping[str, Any], kind: str) -> RunOpState:
    raw = runs.get(kind)
    if not isinstance(raw, dict):
        return RunOpState()
    return RunOpState.model_validate(raw)


def _with_state(runs: Mapping[str, Any], kind: str, state: RunOpState) -> dict[str, Any]:
    return {**runs, kind: state.model_dump(by_alias=True)}


def persist_dispatch_attempt(
    document: Mapping[str, Any],
    kind: str,
    meta: DispatchMeta,
    now: datetime,
) -> dict[str, Any]:
    """Open a new queued attempt and make it current.

    This is the only operation that advances ``currentAttempt``.
    """
    runs = runs_of(document)
    state = load_state(runs, kind)
    highest = max([state.current_attempt, *(a.attempt for a in state.attempts)])
    next_number = highest + 1
    now_iso = to_iso(now)
    record = AttemptRecord(
        attempt=next_number,
        run_id=meta.run_id,
        url=meta.url,
        status="queued",
        dispatched_at=now_iso,
        head_sha=meta.head_sha,
        ref=meta.ref,
        actor=meta.actor,
    )
    next_state = RunOpState(current_attempt=next_number, attempts=[*state.attempts, record])
    return {"runs": _with_state(runs, kind, next_state), "updatedAt": now_iso}


def attach_run_id(
    runs: Mapping[str, Any],
    kind: str,
    attempt_number: int,
    run_id: int,
    url: str | None,
) -> dict[str, Any] | None:
    """Backfill a resolved run id onto an attempt.

    A run id, once set, never changes, and a run owned by another attempt of the
    same kind is never bound a second time.
    """
    state = load_state(runs, kind)
    target = state.find(attempt_number)
    if target is None:
        return None
    owner = attempt_by_run_id(runs, kind, run_id)
    if owner is not None and owner.attempt != attempt_number:
        return None
    if target.run_id is not None and target.run_id != run_id:
        return None
    next_url = url or target.url
    if target.run_id == run_id and target.url == next_url:
        return None
    updated = target.model_copy(update={"run_id": run_id, "url": next_url})
    attempts = [updated if a.attempt == attempt_number else a for a in state.attempts]
    return _with_state(runs, kind, state.model_copy(update={"attempts": attempts}))


def attach_run_id_to_pending(
    runs: Mapping[str, Any],
    kind: str,
    run_id: int,
    url: str | None,
    head_sha: str | None,
) -> dict[str, Any] | None:
    current = current_attempt(runs, kind)
    if current is None or current.run_id is not None:
        return None
    if not head_sha or current.head_sha != head_sha:
        return None
    return attach_run_id(runs, kind, current.attempt, run_id, url)


def patch_by_run_id(
    runs: Mapping[str, Any],
    kind: str,
    run_id: int,
    facts: RunFacts,
) -> dict[str, Any] | None:
    """Merge run facts onto the attempt owning ``run_id`` without regressing it.

    Status only moves forward (queued/unknown, in_progress, completed), a set
    conclusion is kept, and completedAt is written once. Returns None when the
    merge changes nothing, which includes every attempted regression.
    """
    state = load_state(runs, kind)
    target = attempt_by_run_id(runs, kind, run_id)
    if target is None:
        return None

    status = target.status
    if facts.status is not None and _STATUS_RANK[facts.status] >= _STATUS_RANK[target.status]:
        status = facts.status
    conclusion = target.conclusion if target.conclusion is not None else facts.conclusion
    completed_at = target.completed_at
    if completed_at is None and status == "completed":
        completed_at = facts.completed_at

    head_sha = facts.head_sha or target.head_sha
    before = (target.status, target.conclusion, target.completed_at, target.head_sha)
    if (status, conclusion, completed_at, head_sha) == before:
        return None

    updated = target.model_copy(
        update={
            "status": status,
            "conclusion": conclusion,
            "completed_at": completed_at,
            "head_sha": head_sha,
            "url": target.url or facts.url,
        }
    )
    attempts = [updated if a.attempt == target.attempt else a for a in state.attempts]
    return _with_state(runs, kind, state.model_copy(update={"attempts": attempts}))


def current_attempt(runs: Mapping[str, Any], kind: str) -> AttemptRecord | None:
    """The attempt numbered ``currentAttempt``; never the most recent by time."""
    state = load_state(runs, kind)
    if state.current_attempt <= 0:
        return None
    return state.find(state.current_attempt)


def attempt_by_run_id(runs: Mapping[str, Any], kind: str, run_id: int) -> AttemptRecord | None:
    for attempt in load_state(runs, kind).attempts:
        if attempt.run_id == run_id:
            return attempt
    return None


def needs_reconcile(attempt: AttemptRecord | None) -> bool:
    if attempt is None or attempt.run_id is None:
        return False
    return attempt.conclusion is None or attempt.completed_at is None


def is_attempt_active(attempt: AttemptRecord | None) -> bool:
    if attempt is None:
        return False
    return attempt.status in {"queued", "in_progress"} and attempt.conclusion is None


def ensure_current_attempt(runs: Mapping[str, Any], kind: str, request_id: str) -> bool:
    state = load_state(runs, kind)
    if state.current_attempt > 0 and state.find(state.current_attempt) is None:
        logger.error(
            "run_state_integrity_violation request_id=%s kind=%s current_attempt=%s attempts=%s",
            request_id,
            kind,
            state.current_attempt,
            [a.attempt for a in state.attempts],
        )
        return False
    return True
