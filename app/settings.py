from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    return env.get(name, default).strip() or default


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(x.strip() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class ReconcilerSettings:
    environment: str
    github_token: str
    github_webhook_secret: str
    github_api_base: str
    plan_workflow_file: str
    apply_workflow_file: str
    destroy_workflow_file: str
    cleanup_workflow_file: str
    default_owner: str
    default_repo: str
    default_base_branch: str
    drift_result_secret: str
    admin_users: tuple[str, ...]
    approver_users: tuple[str, ...]
    prod_allowed_users: tuple[str, ...]
    idempotency_window_seconds: int
    lock_ttl_seconds: int
    run_index_retention_days: int
    event_buffer_size: int
    stream_poll_seconds: float
    stream_heartbeat_seconds: float

    @property
    def is_prod(self) -> bool:
        return self.environment == "prod"

    @property
    def rate_limit_max_wait_seconds(self) -> float:
        return 60.0 if self.is_prod else 30.0

    def workflow_file(self, kind: str) -> str:
        files = {
            "plan": self.plan_workflow_file,
            "apply": self.apply_workflow_file,
            "destroy": self.destroy_workflow_file,
            "cleanup": self.cleanup_workflow_file,
        }
        if kind not in files:
            raise ValueError(f"unknown workflow kind: {kind}")
        return files[kind]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ReconcilerSettings":
        env = os.environ if environ is None else environ
        environment = _env_str(env, "RECONCILER_ENV", "dev").lower()
        if environment not in {"dev", "prod"}:
            environment = "dev"
        return cls(
            environment=environment,
            github_token=_env_str(env, "GITHUB_TOKEN"),
            github_webhook_secret=_env_str(env, "GITHUB_WEBHOOK_SECRET"),
            github_api_base=_env_str(env, "GITHUB_API_BASE", "https://api.github.com").rstrip("/"),
            plan_workflow_file=_env_str(env, "GITHUB_PLAN_WORKFLOW_FILE", "plan.yml"),
            apply_workflow_file=_env_str(env, "GITHUB_APPLY_WORKFLOW_FILE", "apply.yml"),
            destroy_workflow_file=_env_str(env, "GITHUB_DESTROY_WORKFLOW_FILE", "destroy.yml"),
            cleanup_workflow_file=_env_str(env, "GITHUB_CLEANUP_WORKFLOW_FILE", "cleanup.yml"),
            default_owner=_env_str(env, "GITHUB_DEFAULT_OWNER"),
            default_repo=_env_str(env, "GITHUB_DEFAULT_REPO"),
            default_base_branch=_env_str(env, "GITHUB_DEFAULT_BASE_BRANCH", "main"),
            drift_result_secret=_env_str(env, "DRIFT_RESULT_SECRET"),
            admin_users=_split_csv(env.get("ADMIN_USERS", "")),
            approver_users=_split_csv(env.get("APPROVER_USERS", "")),
            prod_allowed_users=_split_csv(env.get("PROD_ALLOWED_USERS", "")),
            idempotency_window_seconds=_env_int(env, "IDEMPOTENCY_WINDOW_SECONDS", default=600, minimum=1),
            lock_ttl_seconds=_env_int(env, "LOCK_TTL_SECONDS", default=120, minimum=1),
            run_index_retention_days=_env_int(env, "RUN_INDEX_RETENTION_DAYS", default=90, minimum=1),
            event_buffer_size=_env_int(env, "EVENT_BUFFER_SIZE", default=50, minimum=1),
            stream_poll_seconds=_env_float(env, "STREAM_POLL_SECONDS", default=2.0, minimum=0.05),
            stream_heartbeat_seconds=_env_float(env, "STREAM_HEARTBEAT_SECONDS", default=15.0, minimum=0.1),
        )
