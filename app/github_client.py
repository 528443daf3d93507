from __future__ import annotations

import copy
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from typing import Any
from urllib.parse import quote, urlencode

import requests

from app.errors import GithubApiError, GithubRateLimitedError
from app.github_metrics import GithubMetrics

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"
TRANSIENT_BACKOFF_SECONDS = (1.0, 2.0, 4.0)


class TtlCache:
    """Bounded in-memory cache for read-only GitHub responses."""

    def __init__(self, *, max_entries: int = 500, clock: Callable[[], float] = time.monotonic) -> None:
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[tuple[str, str], tuple[float, Any]] = OrderedDict()

    def get(self, key: tuple[str, str]) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return copy.deepcopy(value)

    def set(self, key: tuple[str, str], value: Any, ttl_seconds: float) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (self._clock() + ttl_seconds, copy.deepcopy(value))
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _parse_float(raw: Any) -> float | None:
    if raw is None:
        return None
    try:
        return float(str(raw).strip())
    except ValueError:
        return None


class GithubClient:
    """GitHub REST client that caches reads, waits out rate limits and retries 5xx.

    Retries are bounded: at most ``max_retries`` rate-limit waits (each capped at
    ``max_wait_seconds``) and at most ``max_retries`` transient backoffs of
    1, 2 and 4 seconds. Any other non-2xx response raises immediately. Every
    request that reaches the network is recorded in ``metrics``.
    """

    def __init__(
        self,
        *,
        token: str,
        api_base: str = "https://api.github.com",
        session: requests.Session | None = None,
        cache: TtlCache | None = None,
        metrics: GithubMetrics | None = None,
        max_wait_seconds: float = 30.0,
        max_retries: int = 3,
        timeout_seconds: float = 15.0,
        sleep: Callable[[float], None] = time.sleep,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._session = session or requests.Session()
        self._cache = cache if cache is not None else TtlCache()
        self._metrics = metrics if metrics is not None else GithubMetrics()
        self._max_wait_seconds = max_wait_seconds
        self._max_retries = max_retries
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._wall_clock = wall_clock

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _rate_limit_wait(self, response: requests.Response) -> float | None:
        status = response.status_code
        if status not in {403, 429}:
            return None
        headers = response.headers
        retry_after = _parse_float(headers.get("retry-after"))
        if retry_after is not None:
            return min(max(retry_after, 0.0), self._max_wait_seconds)
        remaining = str(headers.get("x-ratelimit-remaining", "")).strip()
        if status == 403 and remaining != "0":
            return None
        reset = _parse_float(headers.get("x-ratelimit-reset"))
        if reset is not None:
            return min(max(reset - self._wall_clock(), 0.0), self._max_wait_seconds)
        return self._max_wait_seconds

    def _record(self, method: str, path: str, status: int, started: float, headers: Mapping[str, str]) -> None:
        latency_ms = (time.perf_counter() - started) * 1000.0
        self._metrics.record_call(method=method, path=path, status=status, latency_ms=latency_ms, headers=headers)

    def request(self, method: str, path: str, *, json_body: Any = None) -> requests.Response:
        url = f"{self._api_base}{path}"
        retries = 0
        while True:
            started = time.perf_counter()
            try:
                response = self._session.request(
                    method,
                    url,
                    headers=self._headers(),
                    json=json_body,
                    timeout=self._timeout_seconds,
                )
            except requests.RequestException as exc:
                self._record(method, path, 0, started, {})
                if retries >= self._max_retries:
                    raise GithubApiError(
                        status=0,
                        path=path,
                        message=f"github {method} {path} failed: {exc}",
                        retryable=True,
                    ) from exc
                delay = TRANSIENT_BACKOFF_SECONDS[min(retries, len(TRANSIENT_BACKOFF_SECONDS) - 1)]
                retries += 1
                logger.warning("github_network_retry path=%s attempt=%s delay_s=%s", path, retries, delay)
                self._sleep(delay)
                continue

            self._record(method, path, response.status_code, started, response.headers)
            status = response.status_code
            if 200 <= status < 300:
                return response

            wait = self._rate_limit_wait(response)
            if wait is not None:
                if retries >= self._max_retries:
                    raise GithubRateLimitedError(path=path, retry_after_seconds=wait)
                retries += 1
                logger.warning(
                    "github_rate_limited path=%s status=%s attempt=%s wait_s=%.1f",
                    path,
                    status,
                    retries,
                    wait,
                )
                self._sleep(wait)
                continue

            if status >= 500:
                if retries >= self._max_retries:
                    raise GithubApiError(
                        status=status,
                        path=path,
                        message=f"github {method} {path} failed with {status} after {retries} retries",
                        retryable=True,
                    )
                delay = TRANSIENT_BACKOFF_SECONDS[min(retries, len(TRANSIENT_BACKOFF_SECONDS) - 1)]
                retries += 1
                logger.warning("github_transient_retry path=%s status=%s attempt=%s", path, status, retries)
                self._sleep(delay)
                continue

            raise GithubApiError(
                status=status,
                path=path,
                message=f"github {method} {path} failed with {status}: {response.text[:200]}",
            )

    def get_json(self, path: str, *, purpose: str = "default", ttl_seconds: float = 0) -> Any:
        cache_key = (path, purpose)
        if ttl_seconds > 0:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached
        response = self.request("GET", path)
        data = response.json() if response.content else None
        if ttl_seconds > 0 and data is not None:
            self._cache.set(cache_key, data, ttl_seconds)
        return data

    def post_json(self, path: str, body: Any) -> Any:
        response = self.request("POST", path, json_body=body)
        if not response.content:
            return None
        return response.json()

    def dispatch_workflow(
        self,
        *,
        owner: str,
        repo: str,
        workflow_file: str,
        ref: str,
        inputs: Mapping[str, str],
    ) -> None:
        path = f"/repos/{owner}/{repo}/actions/workflows/{quote(workflow_file, safe='')}/dispatches"
        self.post_json(path, {"ref": ref, "inputs": dict(inputs)})
        logger.info(
            "github_workflow_dispatched repo=%s/%s workflow=%s ref=%s request_id=%s",
            owner,
            repo,
            workflow_file,
            ref,
            inputs.get("request_id"),
        )

    def list_workflow_runs(
        self,
        *,
        owner: str,
        repo: str,
        workflow_file: str,
        branch: str,
        per_page: int = 30,
    ) -> list[dict[str, Any]]:
        query = urlencode({"branch": branch, "per_page": per_page})
        path = f"/repos/{owner}/{repo}/actions/workflows/{quote(workflow_file, safe='')}/runs?{query}"
        data = self.get_json(path, purpose="resolve-runs")
        runs = data.get("workflow_runs") if isinstance(data, dict) else None
        return [run for run in runs or [] if isinstance(run, dict)]

    def get_run(self, *, owner: str, repo: str, run_id: int, ttl_seconds: float = 10) -> dict[str, Any]:
        data = self.get_json(f"/repos/{owner}/{repo}/actions/runs/{int(run_id)}", purpose="run", ttl_seconds=ttl_seconds)
        return data if isinstance(data, dict) else {}

    def get_pull_request(self, *, owner: str, repo: str, number: int, ttl_seconds: float = 30) -> dict[str, Any]:
        data = self.get_json(f"/repos/{owner}/{repo}/pulls/{int(number)}", purpose="pr", ttl_seconds=ttl_seconds)
        return data if isinstance(data, dict) else {}

    def find_pull_request_for_branch(self, *, owner: str, repo: str, branch: str) -> dict[str, Any] | None:
        query = urlencode({"head": f"{owner}:{branch}", "state": "all", "per_page": 5})
        data = self.get_json(f"/repos/{owner}/{repo}/pulls?{query}", purpose="pr-by-branch", ttl_seconds=30)
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0]
        return None

    def list_reviews(
        self,
        *,
        owner: str,
        repo: str,
        number: int,
        ttl_seconds: float = 15,
    ) -> list[dict[str, Any]]:
        data = self.get_json(
            f"/repos/{owner}/{repo}/pulls/{int(number)}/reviews?per_page=100",
            purpose="reviews",
            ttl_seconds=ttl_seconds,
        )
        return [review for review in data or [] if isinstance(review, dict)] if isinstance(data, list) else []

    def list_run_jobs(self, *, owner: str, repo: str, run_id: int) -> list[dict[str, Any]]:
        data = self.get_json(f"/repos/{owner}/{repo}/actions/runs/{int(run_id)}/jobs", purpose="jobs", ttl_seconds=10)
        jobs = data.get("jobs") if isinstance(data, dict) else None
        return [job for job in jobs or [] if isinstance(job, dict)]

    def get_job_logs(self, *, owner: str, repo: str, job_id: int) -> str:
        response = self.request("GET", f"/repos/{owner}/{repo}/actions/jobs/{int(job_id)}/logs")
        return response.text
