from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.clock import parse_iso, utcnow
from app.dispatch import DispatchService, repository_of
from app.errors import ApiError, GithubRateLimitedError, VersionConflictError
from app.event_notifier import EventNotifier
from app.fact_patcher import approval_from_reviews, pull_request_patch
from app.github_client import GithubClient
from app.lifecycle import derive_lifecycle_status, needs_repair
from app.rate_limit_state import RateLimitMarkers
from app.requests_store import RequestDocumentStore, apply_patch
from app.run_resolver import ResolvedRun, RunResolver
from app.runs_model import (
    RUN_KINDS,
    RunFacts,
    attach_run_id,
    current_attempt,
    needs_reconcile,
    patch_by_run_id,
    runs_of,
)
from app.settings import ReconcilerSettings
from app.webhook_events import PullRequestPayload

logger = logging.getLogger(__name__)


@dataclass
class SyncFacts:
    pull_request: dict[str, Any] | None = None
    reviews: list[dict[str, Any]] | None = None
    resolved: dict[str, tuple[int, ResolvedRun]] = field(default_factory=dict)
    runs: dict[str, tuple[int, RunFacts]] = field(default_factory=dict)


@dataclass
class SyncResult:
    request: dict[str, Any]
    mode: str
    written: bool = False
    degraded: bool = False
    reason: str | None = None
    retry_after_ms: int | None = None
    scope: str | None = None

    def as_dict(self) -> dict[str, Any]:
        sync: dict[str, Any] = {"mode": self.mode, "written": self.written}
        if self.degraded:
            sync.update(
                {
                    "degraded": True,
                    "reason": self.reason,
                    "retryAfterMs": self.retry_after_ms,
                    "scope": self.scope,
                }
            )
        return {
            "request": {**self.request, "status": derive_lifecycle_status(self.request)},
            "sync": sync,
        }


def merge_sync_facts(document: dict[str, Any], facts: SyncFacts) -> dict[str, Any]:
    """Apply fetched GitHub facts to a document; returns the same object if nothing changed.

    Only the run tracked by each kind's current attempt is patched.
    """
    patch: dict[str, Any] = {}
    if facts.pull_request:
        patch.update(pull_request_patch(document, PullRequestPayload.model_validate(facts.pull_request)))
    if facts.reviews is not None:
        patch.update(approval_from_reviews(document, facts.reviews))

    original_runs = runs_of(document)
    runs = original_runs
    for kind, (attempt_number, resolved) in facts.resolved.items():
        attached = attach_run_id(runs, kind, attempt_number, resolved.run_id, resolved.url)
        if attached is not None:
            runs = attached
    for kind, (run_id, run_facts) in facts.runs.items():
        current = current_attempt(runs, kind)
        if current is None or current.run_id != run_id:
            continue
        patched = patch_by_run_id(runs, kind, run_id, run_facts)
        if patched is not None:
            runs = patched
    if runs != original_runs:
        patch["runs"] = runs
    return apply_patch(document, patch)


class ReconcileService:
    """Poll-based repair of request facts that webhooks may have missed."""

    def __init__(
        self,
        *,
        store: RequestDocumentStore,
        settings: ReconcilerSettings,
        github_for: Callable[[str | None], GithubClient],
        resolver_for: Callable[[GithubClient], RunResolver],
        markers: RateLimitMarkers,
        dispatcher: DispatchService,
        notifier: EventNotifier,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._github_for = github_for
        self._resolver_for = resolver_for
        self._markers = markers
        self._dispatcher = dispatcher
        self._notifier = notifier
        self._clock = clock

    def _collect(self, github: GithubClient, document: dict[str, Any], owner: str, repo: str) -> SyncFacts:
        facts = SyncFacts()
        request_id = str(document["id"])
        pr = document.get("pr") if isinstance(document.get("pr"), dict) else {}
        pr_number = document.get("prNumber") or pr.get("number")
        if pr_number:
            facts.pull_request = github.get_pull_request(owner=owner, repo=repo, number=int(pr_number))
            facts.reviews = github.list_reviews(owner=owner, repo=repo, number=int(pr_number))
        elif document.get("branchName"):
            found = github.find_pull_request_for_branch(owner=owner, repo=repo, branch=str(document["branchName"]))
            if found is not None:
                facts.pull_request = found
                facts.reviews = github.list_reviews(owner=owner, repo=repo, number=int(found["number"]))

        runs = runs_of(document)
        resolver = self._resolver_for(github)
        for kind in RUN_KINDS:
            attempt = current_attempt(runs, kind)
            if attempt is None:
                continue
            run_id = attempt.run_id
            if run_id is None and attempt.ref:
                dispatched_at = parse_iso(attempt.dispatched_at) or self._clock()
                resolved = resolver.resolve_once(
                    kind=kind,
                    request_id=request_id,
                    owner=owner,
                    repo=repo,
                    workflow_file=self._settings.workflow_file(kind),
                    branch=attempt.ref,
                    dispatch_time=dispatched_at,
                    candidate_head_shas=[attempt.head_sha] if attempt.head_sha else [],
                )
                if resolved is not None:
                    facts.resolved[kind] = (attempt.attempt, resolved)
                    run_id = resolved.run_id
            if run_id is not None and (kind in facts.resolved or needs_reconcile(attempt)):
                run = github.get_run(owner=owner, repo=repo, run_id=run_id)
                facts.runs[kind] = (run_id, RunFacts.from_github_run(run))
        return facts

    def sync(self, request_id: str, *, force: bool = False, github_token: str | None = None) -> SyncResult:
        document = self._store.get(request_id)
        if not force and not needs_repair(document, self._clock()):
            return SyncResult(request=document, mode="store_only")
        try:
            owner, repo = repository_of(document, self._settings)
        except ApiError:
            return SyncResult(request=document, mode="store_only", reason="no_repository")

        marker = self._markers.get_active(owner, repo)
        if marker is not None:
            return SyncResult(
                request=document,
                mode="store_only",
                degraded=True,
                reason=str(marker.get("reason") or "rate_limited"),
                retry_after_ms=int(marker.get("retryAfterMs") or 0),
                scope=str(marker.get("scope") or "repo"),
            )

        try:
            facts = self._collect(self._github_for(github_token), document, owner, repo)
        except GithubRateLimitedError as exc:
            retry_after_ms = int((exc.retry_after_seconds or self._settings.rate_limit_max_wait_seconds) * 1000)
            self._markers.set(owner=owner, repo=repo, retry_after_ms=retry_after_ms, reason="rate_limited")
            return SyncResult(
                request=document,
                mode="store_only",
                degraded=True,
                reason="rate_limited",
                retry_after_ms=retry_after_ms,
                scope="repo",
            )

        try:
            updated, written = self._store.update(request_id, lambda current: merge_sync_facts(current, facts))
        except VersionConflictError:
            # A concurrent writer won; the next poll picks the facts up again.
            logger.info("sync_update_deferred request_id=%s", request_id)
            return SyncResult(request=self._store.get(request_id), mode="github", degraded=True, reason="version_conflict")

        if written:
            self._notifier.publish(request_id=request_id, event_type="sync", updated_at=str(updated.get("updatedAt")))
            destroy = current_attempt(runs_of(updated), "destroy")
            if destroy is not None and destroy.conclusion == "success":
                try:
                    self._dispatcher.dispatch_cleanup(request_id, github_token=github_token)
                except ApiError as exc:
                    logger.warning("cleanup_dispatch_deferred request_id=%s code=%s", request_id, exc.code)
        return SyncResult(request=updated, mode="github", written=written)

    def sync_all(self, *, limit: int = 100, github_token: str | None = None) -> dict[str, int]:
        stats = {"scanned": 0, "repaired": 0, "written": 0, "degraded": 0, "errors": 0}
        now = self._clock()
        for document in self._store.list(limit=limit):
            stats["scanned"] += 1
            if not needs_repair(document, now):
                continue
            try:
                result = self.sync(str(document["id"]), github_token=github_token)
            except ApiError as exc:
                stats["errors"] += 1
                logger.warning("sync_failed request_id=%s code=%s", document.get("id"), exc.code)
                continue
            stats["repaired"] += 1
            if result.written:
                stats["written"] += 1
            if result.degraded:
                stats["degraded"] += 1
        return stats
