import hashlib
import hmac
import json
import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
import requests
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.main import create_app
from app.object_storage import create_object_storage_from_env
from app.services import Services
from app.settings import ReconcilerSettings

WEBHOOK_SECRET = "whsec_test_secret"
DRIFT_SECRET = "drift_test_secret"
JWT_SECRET = "jwt_test_secret"


def github_response(status: int, body=None, headers: dict | None = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = b"" if body is None else json.dumps(body).encode("utf-8")
    response.encoding = "utf-8"
    response.headers.update(headers or {})
    return response


class FakeGithubSession:
    """Stands in for ``requests.Session``: canned responses per route, every call recorded.

    A route holding several responses hands them out in order and then keeps
    repeating the last one. Later routes shadow earlier ones.
    """

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self._routes: list[tuple[str, str, list]] = []

    def route(self, method: str, fragment: str, *responses) -> None:
        self._routes.insert(0, (method.upper(), fragment, list(responses)))

    def request(self, method: str, url: str, **kwargs):
        self.calls.append({"method": method.upper(), "url": url, "json": kwargs.get("json"), "headers": kwargs.get("headers")})
        for route_method, fragment, responses in self._routes:
            if route_method != method.upper() or fragment not in url:
                continue
            item = responses.pop(0) if len(responses) > 1 else responses[0]
            if isinstance(item, Exception):
                raise item
            return item
        return github_response(404, {"message": "Not Found"})

    def calls_to(self, method: str, fragment: str) -> list[dict]:
        return [call for call in self.calls if call["method"] == method.upper() and fragment in call["url"]]


def workflow_run(
    run_id: int,
    *,
    name: str = "plan",
    branch: str = "main",
    head_sha: str = "abc123",
    status: str = "queued",
    conclusion: str | None = None,
    created_at: datetime | None = None,
) -> dict:
    created = created_at or datetime.now(timezone.utc)
    return {
        "id": run_id,
        "name": name,
        "display_title": name,
        "head_branch": branch,
        "head_sha": head_sha,
        "status": status,
        "conclusion": conclusion,
        "html_url": f"https://github.com/acme/infra/actions/runs/{run_id}",
        "created_at": created.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "updated_at": created.strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


def sign_body(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def issue_token(*, subject: str, secret: str = JWT_SECRET, ttl_minutes: int = 30) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture(autouse=True)
def reconciler_env(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("RECONCILER_OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    monkeypatch.setenv("RECONCILER_ENV", "dev")
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_test_token")
    monkeypatch.setenv("GITHUB_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("GITHUB_DEFAULT_OWNER", "acme")
    monkeypatch.setenv("GITHUB_DEFAULT_REPO", "infra")
    monkeypatch.setenv("DRIFT_RESULT_SECRET", DRIFT_SECRET)
    monkeypatch.setenv("ADMIN_USERS", "alice")
    monkeypatch.setenv("APPROVER_USERS", "bob")
    for name in ("JWT_SHARED_SECRET", "JWT_ISSUER", "JWT_AUDIENCE", "JWT_REQUIRED_CLAIMS", "PROD_ALLOWED_USERS"):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def github() -> FakeGithubSession:
    return FakeGithubSession()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def services(github: FakeGithubSession, sleeps: list[float]) -> Services:
    return Services(
        settings=ReconcilerSettings.from_env(),
        storage=create_object_storage_from_env(),
        session=github,
        sleep=sleeps.append,
    )


@pytest.fixture
def client(services: Services) -> TestClient:
    return TestClient(create_app(services))


@pytest.fixture
def make_request(services: Services):
    from app.schemas import CreateRequestPayload

    def _make(**overrides) -> dict:
        payload = {
            "project": "payments",
            "environment": "dev",
            "module": "s3-bucket",
            "config": {"name": "payments-logs"},
        }
        payload.update(overrides)
        return services.intake.create(CreateRequestPayload(**payload), actor="carol")

    return _make


@pytest.fixture
def send_webhook(client: TestClient):
    counter = {"n": 0}

    def _send(event: str, payload: dict, *, delivery_id: str | None = None, signature: str | None = None):
        counter["n"] += 1
        body = json.dumps(payload).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-GitHub-Event": event,
            "X-GitHub-Delivery": delivery_id or f"delivery-{counter['n']}",
            "X-Hub-Signature-256": signature or sign_body(body),
        }
        return client.post("/api/v1/github/webhook", content=body, headers=headers)

    return _send
