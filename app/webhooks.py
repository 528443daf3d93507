from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from app.audit_log import LifecycleAuditLog
from app.dispatch import DispatchService
from app.errors import ApiError, RequestNotFoundError, VersionConflictError
from app.event_notifier import EventNotifier
from app.fact_patcher import patch_request_facts
from app.requests_store import RequestDocumentStore, apply_patch
from app.run_index import DeliveryLedger, PrIndex, RunIndex
from app.runs_model import RUN_KINDS, current_attempt, runs_of
from app.security import verify_webhook_signature
from app.webhook_events import (
    PullRequestEvent,
    PullRequestReviewEvent,
    WebhookEvent,
    WorkflowRunEvent,
    classify_workflow,
    parse_webhook_event,
    request_id_from_branch,
    request_id_from_text,
)

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    event: str
    request_id: str | None = None
    written: bool = False
    ignored: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"event": self.event, "request_id": self.request_id, "written": self.written}
        if self.ignored:
            data["ignored"] = self.ignored
        return data


def _bad_request(code: str, message: str) -> ApiError:
    return ApiError(code=code, message=message, error_class="validation", retryable=False, http_status=400)


class WebhookService:
    def __init__(
        self,
        *,
        secret: str,
        store: RequestDocumentStore,
        run_index: RunIndex,
        pr_index: PrIndex,
        deliveries: DeliveryLedger,
        dispatcher: DispatchService,
        audit: LifecycleAuditLog,
        notifier: EventNotifier,
    ) -> None:
        self._secret = secret
        self._store = store
        self._run_index = run_index
        self._pr_index = pr_index
        self._deliveries = deliveries
        self._dispatcher = dispatcher
        self._audit = audit
        self._notifier = notifier

    def receive(
        self,
        *,
        event_name: str,
        delivery_id: str | None,
        body: bytes,
        signature: str | None,
    ) -> dict[str, Any]:
        if not verify_webhook_signature(secret=self._secret, body=body, signature_header=signature):
            raise ApiError(
                code="WEBHOOK_SIGNATURE_INVALID",
                message="webhook signature verification failed",
                error_class="security_sensitive",
                retryable=False,
                http_status=401,
            )
        if not delivery_id:
            raise _bad_request("WEBHOOK_DELIVERY_MISSING", "X-GitHub-Delivery header is required")
        if self._deliveries.seen(delivery_id):
            logger.info("webhook_duplicate_delivery event=%s delivery=%s", event_name, delivery_id)
            return {"duplicate": True}
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise _bad_request("WEBHOOK_PAYLOAD_INVALID", "webhook body is not valid json") from None
        if not isinstance(payload, dict):
            raise _bad_request("WEBHOOK_PAYLOAD_INVALID", "webhook body must be a json object")

        logger.info(
            "webhook_received event=%s action=%s delivery=%s",
            event_name,
            payload.get("action"),
            delivery_id,
        )
        try:
            event = parse_webhook_event(event_name, payload)
        except ValidationError as exc:
            logger.warning("webhook_payload_unrecognized event=%s errors=%s", event_name, exc.error_count())
            result = WebhookResult(event=event_name, ignored="invalid_payload")
        else:
            result = self.apply(event) if event is not None else WebhookResult(event=event_name, ignored="unsupported_event")
        self._deliveries.record(delivery_id, event_name)
        return {"ok": True, **result.as_dict()}

    def correlate(self, event: WebhookEvent) -> str | None:
        """Find the request an event concerns, cheapest signal first."""
        if isinstance(event, WorkflowRunEvent):
            run = event.workflow_run
            kind = classify_workflow(run.name, run.display_title)
            if kind in RUN_KINDS:
                request_id = self._run_index.get(kind, run.id)
                if request_id:
                    return request_id
            return request_id_from_branch(run.head_branch) or request_id_from_text(run.display_title, run.name)

        pr = event.pull_request
        owner = event.repository.owner.login
        repo = event.repository.name
        request_id = request_id_from_branch(pr.head.ref) or request_id_from_text(pr.title, pr.body)
        if request_id:
            if isinstance(event, PullRequestEvent) and owner and repo:
                if self._pr_index.get(owner, repo, pr.number) != request_id:
                    self._pr_index.put(owner, repo, pr.number, request_id)
            return request_id
        if owner and repo:
            return self._pr_index.get(owner, repo, pr.number)
        return None

    def apply(self, event: WebhookEvent) -> WebhookResult:
        request_id = self.correlate(event)
        if not request_id:
            logger.info("webhook_uncorrelated event=%s", event.kind)
            return WebhookResult(event=event.kind, ignored="uncorrelated")

        try:
            updated, written = self._store.update(
                request_id,
                lambda current: apply_patch(current, patch_request_facts(current, event)),
            )
        except RequestNotFoundError:
            logger.info("webhook_request_missing event=%s request_id=%s", event.kind, request_id)
            return WebhookResult(event=event.kind, request_id=request_id, ignored="request_missing")
        except VersionConflictError:
            # The fact will arrive again with the next delivery or sync.
            logger.info("webhook_update_deferred event=%s request_id=%s", event.kind, request_id)
            return WebhookResult(event=event.kind, request_id=request_id, ignored="version_conflict")

        if written:
            self._notifier.publish(request_id=request_id, event_type=event.kind, updated_at=str(updated.get("updatedAt")))
            self._after_write(request_id, updated, event)
        return WebhookResult(event=event.kind, request_id=request_id, written=written)

    def _after_write(self, request_id: str, document: dict[str, Any], event: WebhookEvent) -> None:
        if isinstance(event, PullRequestReviewEvent):
            self._audit.record(
                request_id=request_id,
                event=f"review_{(event.review.state or 'unknown').lower()}",
                actor=event.review.user.login,
                source="webhook",
            )
            return
        if not isinstance(event, WorkflowRunEvent):
            return
        run = event.workflow_run
        kind = classify_workflow(run.name, run.display_title)
        attempt = current_attempt(runs_of(document), kind) if kind in RUN_KINDS else None
        if attempt is None:
            return
        if attempt.run_id == run.id and not self._run_index.claim(kind, run.id, request_id):
            logger.warning(
                "webhook_run_index_conflict kind=%s run_id=%s request_id=%s owner=%s",
                kind,
                run.id,
                request_id,
                self._run_index.get(kind, run.id),
            )
        if attempt.status != "completed":
            return
        self._audit.record(
            request_id=request_id,
            event=f"{kind}_completed",
            source="webhook",
            data={"runId": attempt.run_id, "conclusion": attempt.conclusion},
        )
        if kind == "destroy" and attempt.conclusion == "success":
            try:
                self._dispatcher.dispatch_cleanup(request_id)
            except ApiError as exc:
                logger.warning("cleanup_dispatch_deferred request_id=%s code=%s", request_id, exc.code)
