from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from hashlib import sha256
from pathlib import Path
from typing import Any


class PreconditionFailedError(Exception):
    """Raised when a conditional put does not match the stored object."""

    def __init__(self, key: str) -> None:
        super().__init__(f"precondition failed for {key}")
        self.key = key


@dataclass(frozen=True)
class StoredObject:
    key: str
    body: Any
    etag: str


@dataclass(frozen=True)
class ObjectSummary:
    key: str
    last_modified: datetime


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool
    server_side_encryption: str


def _encode(body: Any) -> bytes:
    return json.dumps(body, ensure_ascii=True, indent=2, sort_keys=True).encode("utf-8")


def _decode(key: str, raw: bytes) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"object {key} is not valid json") from exc


class ObjectStorageBackend:
    backend_name = "base"

    def get_json(self, key: str) -> StoredObject | None:
        raise NotImplementedError

    def put_json(
        self,
        key: str,
        body: Any,
        *,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> str:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def list_keys(self, prefix: str) -> list[ObjectSummary]:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorageBackend):
    """Directory-backed storage for development and tests.

    Conditional writes are serialised with a process lock, so compare-and-swap
    only holds within one process.
    """

    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._root = Path(config.root) / config.bucket
        self._prefix = config.prefix.strip("/")
        self._lock = threading.Lock()
        self._root.mkdir(parents=True, exist_ok=True)

    def get_json(self, key: str) -> StoredObject | None:
        path = self._path_for_key(key)
        if not path.exists():
            return None
        raw = path.read_bytes()
        return StoredObject(key=key, body=_decode(key, raw), etag=sha256(raw).hexdigest())

    def put_json(
        self,
        key: str,
        body: Any,
        *,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> str:
        raw = _encode(body)
        path = self._path_for_key(key)
        with self._lock:
            current = path.read_bytes() if path.exists() else None
            if if_none_match and current is not None:
                raise PreconditionFailedError(key)
            if if_match is not None and (current is None or sha256(current).hexdigest() != if_match):
                raise PreconditionFailedError(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(f".{path.name}.tmp")
            tmp_path.write_bytes(raw)
            os.replace(tmp_path, path)
        return sha256(raw).hexdigest()

    def exists(self, key: str) -> bool:
        return self._path_for_key(key).exists()

    def list_keys(self, prefix: str) -> list[ObjectSummary]:
        base = self._root / self._prefix if self._prefix else self._root
        search_root = base / prefix.strip("/")
        if not search_root.exists():
            return []
        items: list[tuple[int, ObjectSummary]] = []
        for path in search_root.rglob("*.json"):
            if not path.is_file() or path.name.startswith("."):
                continue
            stat = path.stat()
            items.append(
                (
                    stat.st_mtime_ns,
                    ObjectSummary(
                        key=path.relative_to(base).as_posix(),
                        last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                    ),
                )
            )
        items.sort(key=lambda item: (item[0], item[1].key), reverse=True)
        return [summary for _, summary in items]

    def reset(self) -> None:
        if not self._root.exists():
            return
        for path in sorted(self._root.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
            elif path.is_dir():
                path.rmdir()

    def _path_for_key(self, key: str) -> Path:
        clean = key.strip("/")
        if ".." in clean.split("/"):
            raise ValueError(f"invalid object key: {key}")
        if self._prefix:
            return self._root / self._prefix / clean
        return self._root / clean


def _client_error_code(exc: Exception) -> str:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        return str(response.get("Error", {}).get("Code", ""))
    return ""


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")
        self._sse = config.server_side_encryption
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def get_json(self, key: str) -> StoredObject | None:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=self._full_key(key))
        except Exception as exc:
            if _client_error_code(exc) in {"NoSuchKey", "404", "NotFound"}:
                return None
            raise
        raw = response["Body"].read()
        return StoredObject(key=key, body=_decode(key, raw), etag=str(response.get("ETag", "")))

    def put_json(
        self,
        key: str,
        body: Any,
        *,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> str:
        params: dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": self._full_key(key),
            "Body": _encode(body),
            "ContentType": "application/json",
        }
        if self._sse:
            params["ServerSideEncryption"] = self._sse
        if if_match is not None:
            params["IfMatch"] = if_match
        if if_none_match:
            params["IfNoneMatch"] = "*"
        try:
            response = self._client.put_object(**params)
        except Exception as exc:
            if _client_error_code(exc) in {"PreconditionFailed", "412", "ConditionalRequestConflict"}:
                raise PreconditionFailedError(key) from exc
            raise
        return str(response.get("ETag", ""))

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self._bucket, Key=self._full_key(key))
            return True
        except Exception as exc:
            if _client_error_code(exc) in {"NoSuchKey", "404", "NotFound"}:
                return False
            raise

    def list_keys(self, prefix: str) -> list[ObjectSummary]:
        paginator = self._client.get_paginator("list_objects_v2")
        summaries: list[ObjectSummary] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=self._full_key(prefix)):
            for item in page.get("Contents", []) or []:
                key = str(item.get("Key", ""))
                if self._prefix and key.startswith(f"{self._prefix}/"):
                    key = key[len(self._prefix) + 1 :]
                summaries.append(ObjectSummary(key=key, last_modified=item["LastModified"]))
        summaries.sort(key=lambda summary: (summary.last_modified, summary.key), reverse=True)
        return summaries

    def _full_key(self, key: str) -> str:
        clean = key.lstrip("/")
        if self._prefix:
            return f"{self._prefix}/{clean}"
        return clean


def create_object_storage_from_env(environ: dict[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("RECONCILER_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "infra-requests").strip() or "infra-requests",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/reconciler-object-storage").strip()
        or "/tmp/reconciler-object-storage",
        prefix=env.get("OBJECT_STORAGE_PREFIX", "").strip(),
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=env.get("OBJECT_STORAGE_FORCE_PATH_STYLE", "true").strip().lower()
        not in {"0", "false", "no", "off"},
        server_side_encryption=env.get("OBJECT_STORAGE_SSE", "AES256").strip(),
    )
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    return LocalObjectStorage(config=config)
