from __future__ import annotations

from typing import Any

from app.runs_model import (
    RUN_KINDS,
    RunFacts,
    attach_run_id_to_pending,
    attempt_by_run_id,
    current_attempt,
    patch_by_run_id,
    runs_of,
)
from app.webhook_events import (
    PullRequestEvent,
    PullRequestPayload,
    PullRequestReviewEvent,
    WebhookEvent,
    WorkflowRunEvent,
    classify_workflow,
)


def _changed_only(document: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in patch.items() if document.get(key) != value}


def pull_request_patch(document: dict[str, Any], pr: PullRequestPayload) -> dict[str, Any]:
    """PR facts are last-write-wins."""
    merged = bool(pr.merged) or bool(pr.merged_at)
    patch: dict[str, Any] = {
        "pr": {
            "number": pr.number,
            "url": pr.html_url,
            "merged": merged,
            "headSha": pr.head.sha,
            "open": pr.state == "open",
        },
        "prNumber": pr.number,
        "prUrl": pr.html_url,
    }
    if merged and pr.merge_commit_sha:
        patch["mergedSha"] = pr.merge_commit_sha
    return _changed_only(document, patch)


def patch_pull_request(document: dict[str, Any], event: PullRequestEvent) -> dict[str, Any]:
    return pull_request_patch(document, event.pull_request)


def patch_review(document: dict[str, Any], event: PullRequestReviewEvent) -> dict[str, Any]:
    state = (event.review.state or "").strip().lower()
    approval = document.get("approval") if isinstance(document.get("approval"), dict) else {}
    approvers = [str(x) for x in approval.get("approvers") or []]
    if state == "approved":
        login = event.review.user.login
        if login and login not in approvers:
            approvers.append(login)
        next_approval = {"approved": True, "approvers": approvers}
    elif state == "changes_requested":
        next_approval = {"approved": False, "approvers": approvers}
    else:
        return {}
    if approval.get("approved") is next_approval["approved"] and list(approval.get("approvers") or []) == approvers:
        return {}
    return {"approval": next_approval}


def approval_from_reviews(document: dict[str, Any], reviews: list[dict[str, Any]]) -> dict[str, Any]:
    """Recompute approval from a full review listing; each reviewer's latest verdict counts."""
    latest: dict[str, str] = {}
    ordered = sorted(reviews, key=lambda review: str(review.get("submitted_at") or ""))
    for review in ordered:
        login = (review.get("user") or {}).get("login")
        state = str(review.get("state") or "").lower()
        if login and state in {"approved", "changes_requested", "dismissed"}:
            latest[str(login)] = state
    approvers = [login for login, state in latest.items() if state == "approved"]
    blocked = any(state == "changes_requested" for state in latest.values())
    return _changed_only(document, {"approval": {"approved": bool(approvers) and not blocked, "approvers": approvers}})


def patch_workflow_run(document: dict[str, Any], event: WorkflowRunEvent, kind: str) -> dict[str, Any]:
    """Merge a workflow run onto the current attempt of ``kind``.

    Only the run tracked by the current attempt may change it. When the current
    attempt has no run id yet, the run is attached first if its head sha matches.
    """
    run = event.workflow_run
    runs = runs_of(document)
    current = current_attempt(runs, kind)
    if current is None:
        return {}
    if current.run_id is not None and current.run_id != run.id:
        return {}
    owner = attempt_by_run_id(runs, kind, run.id)
    if owner is not None and owner.attempt != current.attempt:
        return {}

    working = runs
    if current.run_id is None:
        attached = attach_run_id_to_pending(runs, kind, run.id, run.html_url, run.head_sha)
        if attached is None:
            return {}
        working = attached

    patched = patch_by_run_id(working, kind, run.id, RunFacts.from_github_run(run.model_dump()))
    if patched is not None:
        return {"runs": patched}
    if working is not runs:
        return {"runs": working}
    return {}


def patch_request_facts(document: dict[str, Any], event: WebhookEvent) -> dict[str, Any]:
    """Partial update for one inbound fact; an empty dict means nothing changed."""
    if isinstance(event, PullRequestEvent):
        return patch_pull_request(document, event)
    if isinstance(event, PullRequestReviewEvent):
        return patch_review(document, event)
    if isinstance(event, WorkflowRunEvent):
        kind = classify_workflow(event.workflow_run.name, event.workflow_run.display_title)
        if kind not in RUN_KINDS:
            return {}
        return patch_workflow_run(document, event, kind)
    return {}
