from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

from app.audit_log import LifecycleAuditLog
from app.clock import to_iso, utcnow
from app.errors import precondition_failed
from app.event_notifier import EventNotifier
from app.request_ids import branch_for_request, generate_request_id
from app.requests_store import RequestDocumentStore
from app.schemas import CreateRequestPayload
from app.settings import ReconcilerSettings


class RequestIntake:
    def __init__(
        self,
        *,
        store: RequestDocumentStore,
        settings: ReconcilerSettings,
        audit: LifecycleAuditLog,
        notifier: EventNotifier,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._audit = audit
        self._notifier = notifier
        self._clock = clock

    def create(self, payload: CreateRequestPayload, *, actor: str) -> dict[str, Any]:
        owner = (payload.target_owner or self._settings.default_owner).strip()
        repo = (payload.target_repo or self._settings.default_repo).strip()
        if not owner or not repo:
            raise precondition_failed("target repository is not configured")
        environment = payload.environment.strip().lower()
        request_id = generate_request_id(environment, payload.module)
        now_iso = to_iso(self._clock())
        document = self._store.create(
            {
                "id": request_id,
                "project": payload.project,
                "environment": environment,
                "module": payload.module,
                "config": payload.config,
                "targetOwner": owner,
                "targetRepo": repo,
                "targetBase": payload.target_base or self._settings.default_base_branch,
                "targetEnvPath": payload.target_env_path or f"envs/{environment}",
                "branchName": branch_for_request(request_id),
                "createdBy": actor,
                "receivedAt": now_iso,
                "createdAt": now_iso,
                "approval": {"approved": False, "approvers": []},
                "runs": {},
                "idempotency": {},
                "lock": None,
            }
        )
        self._audit.record(request_id=request_id, event="request_created", actor=actor, source="api")
        self._notifier.publish(request_id=request_id, event_type="created", updated_at=str(document["updatedAt"]))
        return document
