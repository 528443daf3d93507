import json

from conftest import github_response, sign_body, workflow_run

from app.requests_store import apply_patch


def _pr_payload(request_id: str, *, number: int = 42, merged: bool = False, state: str = "open") -> dict:
    return {
        "action": "closed" if merged else "opened",
        "pull_request": {
            "number": number,
            "html_url": f"https://github.com/acme/infra/pull/{number}",
            "title": "Provision payments-logs",
            "state": state,
            "merged": merged,
            "merge_commit_sha": "merge-sha" if merged else None,
            "head": {"ref": f"request/{request_id}", "sha": "head-sha"},
            "base": {"ref": "main"},
        },
        "repository": {"name": "infra", "full_name": "acme/infra", "owner": {"login": "acme"}},
    }


def test_bad_signature_is_rejected(client, send_webhook, make_request):
    request = make_request()
    resp = send_webhook("pull_request", _pr_payload(request["id"]), signature="sha256=" + "0" * 64)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"


def test_missing_delivery_id_is_rejected(client):
    body = json.dumps({"zen": "hi"}).encode("utf-8")
    resp = client.post(
        "/api/v1/github/webhook",
        content=body,
        headers={"X-GitHub-Event": "ping", "X-Hub-Signature-256": sign_body(body)},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "WEBHOOK_DELIVERY_MISSING"


def test_invalid_json_is_rejected(client):
    body = b"{not json"
    resp = client.post(
        "/api/v1/github/webhook",
        content=body,
        headers={"X-GitHub-Event": "pull_request", "X-GitHub-Delivery": "d-bad", "X-Hub-Signature-256": sign_body(body)},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "WEBHOOK_PAYLOAD_INVALID"


def test_duplicate_delivery_short_circuits(send_webhook, make_request, services):
    request = make_request()
    first = send_webhook("pull_request", _pr_payload(request["id"]), delivery_id="d-1")
    assert first.json()["data"]["ok"] is True
    version = services.store.get(request["id"])["version"]

    second = send_webhook("pull_request", _pr_payload(request["id"], merged=True, state="closed"), delivery_id="d-1")

    assert second.status_code == 200
    assert second.json()["data"] == {"duplicate": True}
    assert services.store.get(request["id"])["version"] == version


def test_pull_request_event_records_pr_facts(send_webhook, make_request, services, client):
    request = make_request()
    resp = send_webhook("pull_request", _pr_payload(request["id"]))
    data = resp.json()["data"]
    assert data == {"ok": True, "event": "pull_request", "request_id": request["id"], "written": True}

    stored = client.get(f"/api/v1/requests/{request['id']}").json()["data"]
    assert stored["prNumber"] == 42
    assert stored["pr"]["open"] is True
    assert stored["status"] == "planning"
    assert services.pr_index.get("acme", "infra", 42) == request["id"]

    send_webhook("pull_request", _pr_payload(request["id"], merged=True, state="closed"))
    merged = services.store.get(request["id"])
    assert merged["pr"]["merged"] is True
    assert merged["mergedSha"] == "merge-sha"


def test_review_correlates_through_pr_index(send_webhook, make_request, services):
    request = make_request()
    send_webhook("pull_request", _pr_payload(request["id"]))
    review = {
        "action": "submitted",
        "review": {"state": "approved", "user": {"login": "bob"}},
        "pull_request": {"number": 42, "title": "unrelated title", "head": {"ref": "renamed-branch"}},
        "repository": {"name": "infra", "owner": {"login": "acme"}},
    }

    resp = send_webhook("pull_request_review", review)

    assert resp.json()["data"]["request_id"] == request["id"]
    assert services.store.get(request["id"])["approval"] == {"approved": True, "approvers": ["bob"]}
    events = [entry["event"] for entry in services.audit.list(request["id"])]
    assert "review_approved" in events


def test_unsupported_and_uncorrelated_events_are_acknowledged(send_webhook):
    push = send_webhook("push", {"ref": "refs/heads/main"})
    assert push.json()["data"]["ignored"] == "unsupported_event"

    stray = send_webhook("workflow_run", {"action": "completed", "workflow_run": workflow_run(4242, name="lint")})
    assert stray.json()["data"]["ignored"] == "uncorrelated"


def test_malformed_supported_event_is_ignored(send_webhook):
    resp = send_webhook("workflow_run", {"action": "completed", "workflow_run": {"name": "plan"}})
    assert resp.status_code == 200
    assert resp.json()["data"]["ignored"] == "invalid_payload"


def test_event_for_unknown_request_is_ignored(send_webhook):
    resp = send_webhook("pull_request", _pr_payload("req_dev_s3_gone00"))
    assert resp.status_code == 200
    assert resp.json()["data"]["ignored"] == "request_missing"


def test_destroy_success_dispatches_cleanup_once(client, services, github, make_request, send_webhook):
    request = make_request()
    github.route("POST", "/dispatches", github_response(204))
    github.route(
        "GET",
        "/actions/workflows/destroy.yml/runs?",
        github_response(200, {"workflow_runs": [workflow_run(300, name="destroy", branch="main")]}),
    )
    client.post(f"/api/v1/requests/{request['id']}/destroy", headers={"x-actor": "alice"})

    done = workflow_run(300, name="destroy", branch="main", status="completed", conclusion="success")
    send_webhook("workflow_run", {"action": "completed", "workflow_run": done})
    stored = services.store.get(request["id"])
    assert stored["cleanupDispatchStatus"] == "dispatched"
    assert len(github.calls_to("POST", "/actions/workflows/cleanup.yml/dispatches")) == 1

    assert services.dispatcher.dispatch_cleanup(request["id"]) == "dispatched"
    assert len(github.calls_to("POST", "/actions/workflows/cleanup.yml/dispatches")) == 1
    assert client.get(f"/api/v1/requests/{request['id']}").json()["data"]["status"] == "destroyed"


def test_cleanup_failure_is_recorded(services, github, make_request):
    request = make_request()
    github.route("POST", "/actions/workflows/cleanup.yml/dispatches", github_response(404, {"message": "missing"}))
    services.store.update(request["id"], lambda doc: apply_patch(doc, {"cleanupDispatchStatus": None}))

    assert services.dispatcher.dispatch_cleanup(request["id"]) == "error"
    stored = services.store.get(request["id"])
    assert stored["cleanupDispatchStatus"] == "error"
    assert stored["cleanupDispatchError"]
