from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from app.request_ids import REQUEST_ID_PATTERN

WorkflowKind = Literal["drift_plan", "apply", "destroy", "cleanup", "plan"]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GithubUser(_Payload):
    login: str | None = None


class GithubOwner(_Payload):
    login: str = ""


class GithubRepository(_Payload):
    name: str = ""
    full_name: str = ""
    owner: GithubOwner = Field(default_factory=GithubOwner)


class GitRef(_Payload):
    ref: str | None = None
    sha: str | None = None


class PullRequestPayload(_Payload):
    number: int
    html_url: str | None = None
    title: str | None = None
    body: str | None = None
    state: str | None = None
    merged: bool | None = None
    merged_at: str | None = None
    merge_commit_sha: str | None = None
    head: GitRef = Field(default_factory=GitRef)
    base: GitRef = Field(default_factory=GitRef)


class ReviewPayload(_Payload):
    state: str | None = None
    user: GithubUser = Field(default_factory=GithubUser)
    submitted_at: str | None = None


class WorkflowRunPayload(_Payload):
    id: int
    name: str | None = None
    display_title: str | None = None
    status: str | None = None
    conclusion: str | None = None
    head_branch: str | None = None
    head_sha: str | None = None
    html_url: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    completed_at: str | None = None


class PullRequestEvent(_Payload):
    kind: Literal["pull_request"] = "pull_request"
    action: str | None = None
    pull_request: PullRequestPayload
    repository: GithubRepository = Field(default_factory=GithubRepository)


class PullRequestReviewEvent(_Payload):
    kind: Literal["pull_request_review"] = "pull_request_review"
    action: str | None = None
    review: ReviewPayload
    pull_request: PullRequestPayload
    repository: GithubRepository = Field(default_factory=GithubRepository)


class WorkflowRunEvent(_Payload):
    kind: Literal["workflow_run"] = "workflow_run"
    action: str | None = None
    workflow_run: WorkflowRunPayload
    repository: GithubRepository = Field(default_factory=GithubRepository)


WebhookEvent = Annotated[
    Union[PullRequestEvent, PullRequestReviewEvent, WorkflowRunEvent],
    Field(discriminator="kind"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(WebhookEvent)
SUPPORTED_EVENTS = frozenset({"pull_request", "pull_request_review", "workflow_run"})


def parse_webhook_event(event_name: str, payload: dict[str, Any]) -> WebhookEvent | None:
    """Parse a webhook body into its typed variant; None for events not handled here.

    Raises pydantic's ``ValidationError`` when a supported event is malformed.
    """
    if event_name not in SUPPORTED_EVENTS:
        return None
    return _EVENT_ADAPTER.validate_python({**payload, "kind": event_name})


def classify_workflow(name: str | None, display_title: str | None = None) -> WorkflowKind | None:
    text = f"{name or ''} {display_title or ''}".lower()
    if "drift" in text and "plan" in text:
        return "drift_plan"
    if "apply" in text:
        return "apply"
    if "destroy" in text:
        return "destroy"
    if "cleanup" in text:
        return "cleanup"
    if "plan" in text:
        return "plan"
    return None


def request_id_from_branch(ref: str | None) -> str | None:
    if not ref:
        return None
    branch = ref.removeprefix("refs/heads/")
    if not branch.startswith("request/"):
        return None
    candidate = branch[len("request/") :]
    return candidate if REQUEST_ID_PATTERN.fullmatch(candidate) else None


def request_id_from_text(*texts: str | None) -> str | None:
    for text in texts:
        if not text:
            continue
        match = REQUEST_ID_PATTERN.search(text)
        if match:
            return match.group(0)
    return None
