from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class RequestNotFoundError(ApiError):
    def __init__(self, request_id: str) -> None:
        super().__init__(
            code="REQUEST_NOT_FOUND",
            message=f"request not found: {request_id}",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
        self.request_id = request_id


class VersionConflictError(ApiError):
    def __init__(self, request_id: str, *, expected_version: int | None = None) -> None:
        super().__init__(
            code="VERSION_CONFLICT",
            message=f"request {request_id} was modified concurrently",
            error_class="concurrency",
            retryable=True,
            http_status=409,
        )
        self.request_id = request_id
        self.expected_version = expected_version


class LockConflictError(ApiError):
    def __init__(self, *, holder: str, operation: str, expires_at: str) -> None:
        super().__init__(
            code="REQUEST_LOCKED",
            message=f"request is locked by {holder} for {operation} until {expires_at}, try later",
            error_class="concurrency",
            retryable=True,
            http_status=409,
        )
        self.holder = holder
        self.operation = operation
        self.expires_at = expires_at


class IdempotencyConflictError(ApiError):
    def __init__(self, *, operation: str, message: str | None = None) -> None:
        super().__init__(
            code="IDEMPOTENCY_CONFLICT",
            message=message or f"another {operation} with a different idempotency key is in progress",
            error_class="validation",
            retryable=False,
            http_status=409,
        )
        self.operation = operation


class GithubApiError(ApiError):
    def __init__(self, *, status: int, path: str, message: str, retryable: bool = False) -> None:
        super().__init__(
            code="GITHUB_UNAVAILABLE" if retryable else "GITHUB_REQUEST_FAILED",
            message=message,
            error_class="upstream",
            retryable=retryable,
            http_status=502,
        )
        self.status = status
        self.path = path


class GithubRateLimitedError(ApiError):
    def __init__(self, *, path: str, retry_after_seconds: float | None = None) -> None:
        super().__init__(
            code="GITHUB_RATE_LIMITED",
            message=f"github rate limit exhausted for {path}",
            error_class="upstream",
            retryable=True,
            http_status=429,
        )
        self.path = path
        self.retry_after_seconds = retry_after_seconds


def forbidden(message: str) -> ApiError:
    return ApiError(
        code="AUTH_FORBIDDEN",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=403,
    )


def precondition_failed(message: str) -> ApiError:
    return ApiError(
        code="REQUEST_PRECONDITION_FAILED",
        message=message,
        error_class="business_rule",
        retryable=False,
        http_status=400,
    )
