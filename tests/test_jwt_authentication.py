from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import UTC, datetime, timedelta

import jwt
from conftest import DRIFT_SECRET, JWT_SECRET, issue_token
from fastapi.testclient import TestClient

from app.main import create_app


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _auth_client(monkeypatch, services) -> TestClient:
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    return TestClient(create_app(services))


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_jwt_required_rejects_missing_authorization(monkeypatch, services):
    client = _auth_client(monkeypatch, services)
    resp = client.get("/api/v1/requests")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert resp.headers["x-trace-id"]


def test_jwt_rejects_expired_token(monkeypatch, services):
    client = _auth_client(monkeypatch, services)
    token = issue_token(subject="carol", ttl_minutes=-1)
    resp = client.get("/api/v1/requests", headers=_bearer(token))
    assert resp.status_code == 401


def test_jwt_rejects_wrong_signature_and_audience(monkeypatch, services):
    client = _auth_client(monkeypatch, services)
    forged = issue_token(subject="carol", secret="another_secret")
    assert client.get("/api/v1/requests", headers=_bearer(forged)).status_code == 401

    now = datetime.now(UTC)
    wrong_aud = jwt.encode(
        {"sub": "carol", "exp": int((now + timedelta(minutes=5)).timestamp()), "iss": "test-issuer", "aud": "other"},
        JWT_SECRET,
        algorithm="HS256",
    )
    assert client.get("/api/v1/requests", headers=_bearer(wrong_aud)).status_code == 401


def test_jwt_rejects_unsupported_algorithm(monkeypatch, services):
    client = _auth_client(monkeypatch, services)
    header = _b64url(json.dumps({"alg": "none", "typ": "JWT"}).encode("utf-8"))
    payload = _b64url(json.dumps({"sub": "carol", "exp": 9999999999}).encode("utf-8"))
    signature = _b64url(hmac.new(JWT_SECRET.encode("utf-8"), f"{header}.{payload}".encode("ascii"), hashlib.sha256).digest())
    resp = client.get("/api/v1/requests", headers=_bearer(f"{header}.{payload}.{signature}"))
    assert resp.status_code == 401


def test_jwt_subject_becomes_actor(monkeypatch, services):
    client = _auth_client(monkeypatch, services)
    token = issue_token(subject="dave")

    resp = client.post(
        "/api/v1/requests",
        json={"project": "payments", "environment": "dev", "module": "s3-bucket", "config": {}},
        headers={**_bearer(token), "x-actor": "spoofed"},
    )

    assert resp.status_code == 201
    assert resp.json()["data"]["createdBy"] == "dave"


def test_exempt_routes_skip_bearer(monkeypatch, services, make_request):
    client = _auth_client(monkeypatch, services)
    assert client.get("/healthz").status_code == 200
    assert client.get("/api/v1/health").status_code == 200
    assert client.get("/api/v1/internal/ops/github-metrics").status_code == 200

    webhook = client.post(
        "/api/v1/github/webhook",
        content=b"{}",
        headers={"X-GitHub-Event": "ping", "X-GitHub-Delivery": "d-1", "X-Hub-Signature-256": "sha256=bad"},
    )
    assert webhook.status_code == 401
    assert webhook.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"

    request = make_request()
    drift = client.post(
        f"/api/v1/requests/{request['id']}/drift-result",
        json={"runId": 1, "runUrl": "https://github.com/acme/infra/actions/runs/1", "hasDrift": False},
        headers={"x-drift-secret": DRIFT_SECRET},
    )
    assert drift.status_code == 200


def test_drift_result_accepts_bearer_instead_of_secret(monkeypatch, services, make_request):
    client = _auth_client(monkeypatch, services)
    request = make_request()

    resp = client.post(
        f"/api/v1/requests/{request['id']}/drift-result",
        json={"runId": 2, "runUrl": "https://github.com/acme/infra/actions/runs/2", "hasDrift": True},
        headers=_bearer(issue_token(subject="drift-bot")),
    )

    assert resp.status_code == 200
    assert resp.json()["data"]["drift"]["status"] == "detected"
