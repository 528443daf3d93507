from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from app.dispatch import repository_of
from app.errors import ApiError
from app.github_client import GithubClient
from app.requests_store import RequestDocumentStore
from app.run_resolver import run_url
from app.runs_model import RUN_KINDS, attempt_by_run_id, current_attempt, is_attempt_active, runs_of
from app.settings import ReconcilerSettings

logger = logging.getLogger(__name__)

TAIL_LINES = 120


def _run_not_found(message: str) -> ApiError:
    return ApiError(code="RUN_NOT_FOUND", message=message, error_class="validation", retryable=False, http_status=404)


def extract_output(log: str, kind: str) -> str:
    """Cut the terraform section out of a job log, else keep the last lines."""
    lower = log.lower()
    start = lower.find(f"terraform {kind}")
    if start != -1:
        summary = lower.rfind(f"{kind}:")
        if summary > start:
            end = log.find("\n", summary)
            return log[start : None if end == -1 else end + 1]
        return log[start:]
    return "\n".join(log.strip().split("\n")[-TAIL_LINES:])


class RunOutputService:
    """Reads the job log of a request's run, the current attempt unless a run id is given."""

    def __init__(
        self,
        *,
        store: RequestDocumentStore,
        settings: ReconcilerSettings,
        github_for: Callable[[str | None], GithubClient],
    ) -> None:
        self._store = store
        self._settings = settings
        self._github_for = github_for

    def fetch(
        self,
        request_id: str,
        kind: str,
        *,
        run_id: int | None = None,
        github_token: str | None = None,
    ) -> dict[str, Any]:
        if kind not in RUN_KINDS:
            raise ApiError(
                code="REQ_VALIDATION_FAILED",
                message=f"unknown run kind: {kind}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        document = self._store.get(request_id)
        owner, repo = repository_of(document, self._settings)
        runs = runs_of(document)
        attempt = attempt_by_run_id(runs, kind, run_id) if run_id is not None else current_attempt(runs, kind)
        if attempt is None or attempt.run_id is None:
            raise _run_not_found(f"no {kind} run recorded for request {request_id}")

        github = self._github_for(github_token)
        run = github.get_run(owner=owner, repo=repo, run_id=attempt.run_id)
        jobs = github.list_run_jobs(owner=owner, repo=repo, run_id=attempt.run_id)
        if not jobs or not isinstance(jobs[0].get("id"), int):
            raise _run_not_found(f"run {attempt.run_id} has no jobs yet")
        log = github.get_job_logs(owner=owner, repo=repo, job_id=int(jobs[0]["id"]))
        logger.info("run_output_loaded request_id=%s kind=%s run_id=%s bytes=%s", request_id, kind, attempt.run_id, len(log))
        return {
            "kind": kind,
            "attempt": attempt.attempt,
            "runId": attempt.run_id,
            "status": run.get("status"),
            "conclusion": run.get("conclusion"),
            "active": is_attempt_active(attempt),
            "output": extract_output(log, kind),
            "rawLogUrl": attempt.url or run_url(owner, repo, {"id": attempt.run_id}),
        }
