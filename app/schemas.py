from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CreateRequestPayload(BaseModel):
    project: str = Field(min_length=1)
    environment: str = Field(min_length=1)
    module: str = Field(min_length=1)
    config: dict[str, Any]
    target_owner: str | None = None
    target_repo: str | None = None
    target_base: str | None = None
    target_env_path: str | None = None


class DriftResultPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: int = Field(alias="runId")
    run_url: str = Field(alias="runUrl", min_length=1)
    has_drift: bool = Field(alias="hasDrift")
    summary: str | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
