from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from app import idempotency, locks
from app.audit_log import LifecycleAuditLog
from app.clock import to_iso, utcnow
from app.errors import ApiError, LockConflictError, precondition_failed
from app.event_notifier import EventNotifier
from app.github_client import GithubClient
from app.requests_store import RequestDocumentStore, apply_patch, update_retrying
from app.run_resolver import RunResolver
from app.runs_model import RUN_KINDS, DispatchMeta, current_attempt, persist_dispatch_attempt, runs_of
from app.security import require_dispatch_allowed
from app.settings import ReconcilerSettings

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    request: dict[str, Any]
    kind: str
    replayed: bool

    def as_dict(self) -> dict[str, Any]:
        """Response body; identical for the original call and its replays."""
        attempt = current_attempt(runs_of(self.request), self.kind)
        return {
            "request": self.request,
            "kind": self.kind,
            "attempt": attempt.model_dump(by_alias=True) if attempt is not None else None,
            "resolved": attempt is not None and attempt.run_id is not None,
        }


def repository_of(document: dict[str, Any], settings: ReconcilerSettings) -> tuple[str, str]:
    owner = str(document.get("targetOwner") or settings.default_owner or "").strip()
    repo = str(document.get("targetRepo") or settings.default_repo or "").strip()
    if not owner or not repo:
        raise precondition_failed("request has no target repository")
    return owner, repo


class DispatchService:
    """Runs one workflow dispatch for a request from start to finish.

    Order: idempotency record and lock (one conditional write), workflow
    dispatch, run id resolution, attempt persistence, then lock release, which
    happens on every exit path. A failed dispatch also forgets its idempotency
    key so the client can retry with the same key.
    """

    def __init__(
        self,
        *,
        store: RequestDocumentStore,
        settings: ReconcilerSettings,
        github_for: Callable[[str | None], GithubClient],
        resolver_for: Callable[[GithubClient], RunResolver],
        audit: LifecycleAuditLog,
        notifier: EventNotifier,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._github_for = github_for
        self._resolver_for = resolver_for
        self._audit = audit
        self._notifier = notifier
        self._clock = clock

    def _ref_and_shas(self, document: dict[str, Any], kind: str) -> tuple[str, list[str]]:
        pr = document.get("pr") if isinstance(document.get("pr"), dict) else {}
        base = str(document.get("targetBase") or self._settings.default_base_branch)
        if kind == "plan":
            branch = str(document.get("branchName") or "").strip()
            if not branch:
                raise precondition_failed("plan requires a request branch")
            return branch, [sha for sha in (pr.get("headSha"), document.get("commitSha")) if sha]
        if kind == "apply":
            if not (pr.get("merged") or document.get("mergedSha")):
                raise precondition_failed("apply requires a merged pull request")
            return base, [sha for sha in (document.get("mergedSha"),) if sha]
        return base, []

    def dispatch(
        self,
        request_id: str,
        kind: str,
        *,
        actor: str,
        idempotency_key: str | None = None,
        github_token: str | None = None,
    ) -> DispatchOutcome:
        if kind not in RUN_KINDS:
            raise ValueError(f"unknown run kind: {kind}")
        document = self._store.get(request_id)
        require_dispatch_allowed(
            actor=actor,
            kind=kind,
            environment=str(document.get("environment") or ""),
            settings=self._settings,
        )
        owner, repo = repository_of(document, self._settings)
        ref, head_shas = self._ref_and_shas(document, kind)

        now = self._clock()
        holder = f"{actor}:{uuid.uuid4().hex[:8]}"
        window = timedelta(seconds=self._settings.idempotency_window_seconds)
        ttl = timedelta(seconds=self._settings.lock_ttl_seconds)
        begin: dict[str, Any] = {"replay": False, "recorded": False}

        def _begin(current: dict[str, Any]) -> dict[str, Any]:
            check = idempotency.check(current, kind, idempotency_key, now, window=window)
            if check.mode == "replay":
                lock = current.get("lock")
                if locks.is_lock_active(lock, now) and lock.get("operation") == kind:
                    # The keyed call is still running; its outcome is not stored yet.
                    raise LockConflictError(
                        holder=str(lock.get("holder") or "unknown"),
                        operation=kind,
                        expires_at=str(lock.get("expiresAt")),
                    )
                begin["replay"] = True
                return current
            begin["recorded"] = check.mode == "recorded"
            lock_patch = locks.acquire(current, kind, holder, now, ttl=ttl)
            return apply_patch(current, {**check.patch, **(lock_patch or {})})

        document, _ = self._store.update(request_id, _begin)
        if begin["replay"]:
            logger.info("dispatch_replayed request_id=%s kind=%s", request_id, kind)
            return DispatchOutcome(request=document, kind=kind, replayed=True)

        succeeded = False
        try:
            github = self._github_for(github_token)
            workflow_file = self._settings.workflow_file(kind)
            dispatch_time = self._clock()
            github.dispatch_workflow(
                owner=owner,
                repo=repo,
                workflow_file=workflow_file,
                ref=ref,
                inputs={"request_id": request_id, "environment": str(document.get("environment") or "")},
            )
            resolved = self._resolver_for(github).resolve(
                kind=kind,
                request_id=request_id,
                owner=owner,
                repo=repo,
                workflow_file=workflow_file,
                branch=ref,
                dispatch_time=dispatch_time,
                candidate_head_shas=head_shas,
            )
            meta = DispatchMeta(
                actor=actor,
                ref=ref,
                head_sha=(resolved.head_sha if resolved and resolved.head_sha else (head_shas[0] if head_shas else None)),
                run_id=resolved.run_id if resolved else None,
                url=resolved.url if resolved else None,
            )
            update_retrying(
                self._store,
                request_id,
                lambda current: apply_patch(current, persist_dispatch_attempt(current, kind, meta, dispatch_time)),
            )
            succeeded = True
        finally:
            self._release(
                request_id,
                kind,
                holder,
                failed_key=idempotency_key if begin["recorded"] and not succeeded else None,
            )

        updated = self._store.get(request_id)
        if kind == "destroy":
            self._archive(updated)
        self._audit.record(
            request_id=request_id,
            event=f"{kind}_dispatched",
            actor=actor,
            source="api",
            data={"runId": meta.run_id, "url": meta.url, "ref": ref},
        )
        self._notifier.publish(request_id=request_id, event_type=f"{kind}_dispatched", updated_at=str(updated.get("updatedAt")))
        return DispatchOutcome(request=updated, kind=kind, replayed=False)

    def _release(self, request_id: str, kind: str, holder: str, *, failed_key: str | None) -> None:
        def _mutate(current: dict[str, Any]) -> dict[str, Any]:
            patch = dict(locks.release(current, holder) or {})
            if failed_key:
                patch.update(idempotency.clear_patch(current, kind, failed_key) or {})
            return apply_patch(current, patch)

        try:
            update_retrying(self._store, request_id, _mutate)
        except ApiError:
            # The lease expires on its own; the primary outcome must not be masked.
            logger.warning("lock_release_failed request_id=%s kind=%s holder=%s", request_id, kind, holder, exc_info=True)

    def _archive(self, document: dict[str, Any]) -> None:
        try:
            self._store.archive(document)
        except Exception:
            logger.warning("request_archive_failed request_id=%s", document.get("id"), exc_info=True)

    def dispatch_cleanup(self, request_id: str, *, github_token: str | None = None) -> str:
        """Fire the cleanup workflow once after a successful destroy.

        Returns the resulting ``cleanupDispatchStatus``.
        """
        now_iso = to_iso(self._clock())

        def _mark_pending(current: dict[str, Any]) -> dict[str, Any]:
            if current.get("cleanupDispatchStatus") in {"pending", "dispatched"}:
                return current
            return apply_patch(current, {"cleanupDispatchStatus": "pending", "cleanupDispatchAttemptedAt": now_iso})

        document, written = update_retrying(self._store, request_id, _mark_pending)
        if not written:
            return str(document.get("cleanupDispatchStatus"))

        status = "dispatched"
        error: str | None = None
        try:
            owner, repo = repository_of(document, self._settings)
            self._github_for(github_token).dispatch_workflow(
                owner=owner,
                repo=repo,
                workflow_file=self._settings.cleanup_workflow_file,
                ref=str(document.get("targetBase") or self._settings.default_base_branch),
                inputs={"request_id": request_id, "environment": str(document.get("environment") or "")},
            )
        except ApiError as exc:
            status = "error"
            error = exc.message
            logger.warning("cleanup_dispatch_failed request_id=%s code=%s", request_id, exc.code)

        update_retrying(
            self._store,
            request_id,
            lambda current: apply_patch(current, {"cleanupDispatchStatus": status, "cleanupDispatchError": error}),
        )
        self._audit.record(
            request_id=request_id,
            event="cleanup_dispatched" if status == "dispatched" else "cleanup_dispatch_failed",
            source="webhook",
            data={"error": error} if error else None,
        )
        return status
