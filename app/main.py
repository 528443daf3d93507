from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.errors import ApiError
from app.event_notifier import stream_events
from app.lifecycle import derive_lifecycle_status
from app.schemas import CreateRequestPayload, DriftResultPayload, error_envelope, success_envelope
from app.security import (
    JwtSecurityConfig,
    parse_and_validate_bearer_token,
    redact_sensitive,
    verify_shared_secret,
)
from app.services import Services, create_services_from_env

logger = logging.getLogger(__name__)

_UNAUTHENTICATED_PREFIXES = (
    "/api/v1/internal/",
    "/api/v1/github/webhook",
    "/api/v1/health",
    "/api/v1/stream",
)


def _trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def _request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"http_{uuid.uuid4().hex[:12]}"


def _actor_from_request(request: Request) -> str:
    subject = getattr(request.state, "auth_subject", None)
    if subject:
        return subject
    return request.headers.get("x-actor", "").strip()


def _requires_bearer(path: str) -> bool:
    if not path.startswith("/api/v1/"):
        return False
    if path.endswith("/drift-result"):
        return False
    return not path.startswith(_UNAUTHENTICATED_PREFIXES)


def _error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=_trace_id_from_request(request),
        ),
    )


def _with_status(document: dict[str, object]) -> dict[str, object]:
    return {**document, "status": derive_lifecycle_status(document)}


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(title="Infrastructure Request Reconciler API", version="0.1.0")
    services = services or create_services_from_env()
    app.state.services = services
    security_cfg = JwtSecurityConfig.from_env()

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"http_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = None
        try:
            if security_cfg.enabled and _requires_bearer(request.url.path):
                auth_ctx = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=security_cfg,
                )
                request.state.auth_subject = auth_ctx.subject
            response = await call_next(request)
        except ApiError as exc:
            headers_obj = dict(request.headers.items())
            logger.warning(
                "security_blocked code=%s path=%s headers=%s",
                exc.code,
                request.url.path,
                redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj,
            )
            response = _error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
        response.headers["x-trace-id"] = _trace_id_from_request(request)
        response.headers["x-request-id"] = _request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in {"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN", "WEBHOOK_SIGNATURE_INVALID"}:
            logger.warning("security_blocked code=%s path=%s", exc.code, request.url.path)
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return _error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    @app.post("/api/v1/requests")
    def create_request(
        payload: CreateRequestPayload,
        request: Request,
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    ):
        actor = _actor_from_request(request) or "anonymous"

        def _execute() -> dict[str, object]:
            return _with_status(services.intake.create(payload, actor=actor))

        if idempotency_key:
            data = services.create_ledger.run(
                actor=actor,
                idempotency_key=idempotency_key,
                payload=payload.model_dump(mode="json"),
                execute=_execute,
            )
        else:
            data = _execute()
        return JSONResponse(
            status_code=201,
            content=success_envelope(data, _trace_id_from_request(request)),
        )

    @app.get("/api/v1/requests")
    def list_requests(request: Request, limit: int = Query(default=50, ge=1, le=500)):
        items = [_with_status(document) for document in services.store.list(limit=limit)]
        return success_envelope({"items": items, "total": len(items)}, _trace_id_from_request(request))

    @app.get("/api/v1/requests/{request_id}")
    def get_request(request_id: str, request: Request):
        document = services.store.get(request_id)
        return success_envelope(_with_status(document), _trace_id_from_request(request))

    def _dispatch(kind: str, request_id: str, request: Request, idempotency_key: str | None):
        outcome = services.dispatcher.dispatch(
            request_id,
            kind,
            actor=_actor_from_request(request),
            idempotency_key=idempotency_key,
            github_token=request.headers.get("x-github-token") or None,
        )
        return JSONResponse(
            status_code=202,
            content=success_envelope(outcome.as_dict(), _trace_id_from_request(request)),
        )

    @app.post("/api/v1/requests/{request_id}/plan")
    def dispatch_plan(
        request_id: str,
        request: Request,
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    ):
        return _dispatch("plan", request_id, request, idempotency_key)

    @app.post("/api/v1/requests/{request_id}/apply")
    def dispatch_apply(
        request_id: str,
        request: Request,
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    ):
        return _dispatch("apply", request_id, request, idempotency_key)

    @app.post("/api/v1/requests/{request_id}/destroy")
    def dispatch_destroy(
        request_id: str,
        request: Request,
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    ):
        return _dispatch("destroy", request_id, request, idempotency_key)

    @app.post("/api/v1/requests/{request_id}/sync")
    def sync_request(request_id: str, request: Request, force: bool = Query(default=False)):
        result = services.reconciler.sync(
            request_id,
            force=force,
            github_token=request.headers.get("x-github-token") or None,
        )
        return success_envelope(result.as_dict(), _trace_id_from_request(request))

    @app.get("/api/v1/requests/{request_id}/runs/{kind}/output")
    def run_output(request_id: str, kind: str, request: Request, run_id: int | None = Query(default=None, alias="runId")):
        data = services.run_output.fetch(
            request_id,
            kind,
            run_id=run_id,
            github_token=request.headers.get("x-github-token") or None,
        )
        return success_envelope(data, _trace_id_from_request(request))

    @app.get("/api/v1/requests/{request_id}/audit-logs")
    def list_audit_logs(request_id: str, request: Request, limit: int = Query(default=100, ge=1, le=1000)):
        services.store.get(request_id)
        items = services.audit.list(request_id, limit=limit)
        return success_envelope({"items": items, "total": len(items)}, _trace_id_from_request(request))

    @app.post("/api/v1/requests/{request_id}/drift-result")
    def record_drift_result(
        request_id: str,
        payload: DriftResultPayload,
        request: Request,
        drift_secret: str | None = Header(default=None, alias="x-drift-secret"),
    ):
        if not verify_shared_secret(expected=services.settings.drift_result_secret, provided=drift_secret):
            parse_and_validate_bearer_token(
                authorization=request.headers.get("Authorization"),
                cfg=security_cfg,
            )
        document = services.drift.record(
            request_id,
            run_id=payload.run_id,
            run_url=payload.run_url,
            has_drift=payload.has_drift,
            summary=payload.summary,
        )
        return success_envelope({"ok": True, "drift": document.get("drift")}, _trace_id_from_request(request))

    @app.post("/api/v1/github/webhook")
    async def github_webhook(request: Request):
        body = await request.body()
        data = services.webhooks.receive(
            event_name=request.headers.get("x-github-event", "").strip(),
            delivery_id=request.headers.get("x-github-delivery", "").strip() or None,
            body=body,
            signature=request.headers.get("x-hub-signature-256"),
        )
        return success_envelope(data, _trace_id_from_request(request))

    @app.get("/api/v1/stream")
    async def stream(request: Request, since: int = Query(default=0, ge=0)):
        return StreamingResponse(
            stream_events(
                services.notifier,
                since=since,
                is_disconnected=request.is_disconnected,
                poll_interval=services.settings.stream_poll_seconds,
                heartbeat_interval=services.settings.stream_heartbeat_seconds,
            ),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/api/v1/internal/ops/github-metrics")
    def github_metrics(request: Request):
        return success_envelope(services.metrics.snapshot(), _trace_id_from_request(request))

    return app


app = create_app()
