from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from app.clock import parse_iso
from app.github_client import GithubClient
from app.run_index import RunIndex

logger = logging.getLogger(__name__)

BACKOFF_SCHEDULE_SECONDS: tuple[float, ...] = (0.5, 0.5, 1.0, 1.0, 1.5, 1.5, 2.0, 2.0, 2.0, 2.0, 2.0, 2.0)
CLOCK_SKEW_TOLERANCE = timedelta(seconds=5)


@dataclass(frozen=True)
class ResolvedRun:
    run_id: int
    url: str
    head_sha: str | None = None


def run_url(owner: str, repo: str, run: dict[str, Any]) -> str:
    url = run.get("html_url")
    if isinstance(url, str) and url:
        return url
    return f"https://github.com/{owner}/{repo}/actions/runs/{run.get('id')}"


def select_candidates(
    runs: Iterable[dict[str, Any]],
    *,
    branch: str,
    dispatch_time: datetime,
    candidate_head_shas: Sequence[str] = (),
) -> list[dict[str, Any]]:
    """Runs that could belong to a dispatch, oldest first.

    A run qualifies when it was created no earlier than the dispatch time minus
    the skew tolerance and, when GitHub reports a head branch, ran on ``branch``.
    Runs whose head sha is among ``candidate_head_shas`` sort ahead of the rest.
    """
    floor = dispatch_time - CLOCK_SKEW_TOLERANCE
    selected: list[tuple[datetime, dict[str, Any]]] = []
    for run in runs:
        if not isinstance(run.get("id"), int):
            continue
        created_at = parse_iso(run.get("created_at"))
        if created_at is None or created_at < floor:
            continue
        head_branch = run.get("head_branch")
        if head_branch and head_branch != branch:
            continue
        selected.append((created_at, run))
    shas = {sha for sha in candidate_head_shas if sha}
    selected.sort(key=lambda item: (0 if shas and item[1].get("head_sha") in shas else 1, item[0]))
    return [run for _, run in selected]


class RunResolver:
    """Discovers the run id GitHub assigned to a workflow dispatch.

    The dispatch API does not return the run, so recent runs of the workflow
    are listed with backoff until an unclaimed candidate shows up. Claiming goes
    through the run index, which keeps two near-simultaneous dispatches from
    binding the same run.
    """

    def __init__(
        self,
        *,
        github: GithubClient,
        run_index: RunIndex,
        schedule: Sequence[float] = BACKOFF_SCHEDULE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._github = github
        self._run_index = run_index
        self._schedule = tuple(schedule)
        self._sleep = sleep

    def resolve_once(
        self,
        *,
        kind: str,
        request_id: str,
        owner: str,
        repo: str,
        workflow_file: str,
        branch: str,
        dispatch_time: datetime,
        candidate_head_shas: Sequence[str] = (),
    ) -> ResolvedRun | None:
        runs = self._github.list_workflow_runs(owner=owner, repo=repo, workflow_file=workflow_file, branch=branch)
        for run in select_candidates(
            runs,
            branch=branch,
            dispatch_time=dispatch_time,
            candidate_head_shas=candidate_head_shas,
        ):
            run_id = int(run["id"])
            if not self._run_index.claim(kind, run_id, request_id):
                logger.info(
                    "run_resolver_skip_claimed kind=%s run_id=%s request_id=%s",
                    kind,
                    run_id,
                    request_id,
                )
                continue
            return ResolvedRun(run_id=run_id, url=run_url(owner, repo, run), head_sha=run.get("head_sha"))
        return None

    def resolve(
        self,
        *,
        kind: str,
        request_id: str,
        owner: str,
        repo: str,
        workflow_file: str,
        branch: str,
        dispatch_time: datetime,
        candidate_head_shas: Sequence[str] = (),
    ) -> ResolvedRun | None:
        for attempt, delay in enumerate(self._schedule, start=1):
            self._sleep(delay)
            resolved = self.resolve_once(
                kind=kind,
                request_id=request_id,
                owner=owner,
                repo=repo,
                workflow_file=workflow_file,
                branch=branch,
                dispatch_time=dispatch_time,
                candidate_head_shas=candidate_head_shas,
            )
            if resolved is not None:
                logger.info(
                    "run_resolved kind=%s request_id=%s run_id=%s attempt=%s",
                    kind,
                    request_id,
                    resolved.run_id,
                    attempt,
                )
                return resolved
        logger.warning(
            "run_resolver_exhausted kind=%s request_id=%s branch=%s attempts=%s",
            kind,
            request_id,
            branch,
            len(self._schedule),
        )
        return None
