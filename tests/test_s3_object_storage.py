"""Tests for S3ObjectStorage with mocked boto3."""

import io
import sys
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from app.object_storage import (
    LocalObjectStorage,
    ObjectStorageConfig,
    PreconditionFailedError,
    S3ObjectStorage,
    create_object_storage_from_env,
)


class FakeClientError(Exception):
    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.response = {"Error": {"Code": code}}


def _config(**overrides) -> ObjectStorageConfig:
    values = {
        "backend": "s3",
        "bucket": "test-bucket",
        "root": "/tmp",
        "prefix": "reconciler",
        "endpoint": "http://localhost:9000",
        "region": "us-east-1",
        "access_key": "key",
        "secret_key": "secret",
        "force_path_style": True,
        "server_side_encryption": "AES256",
    }
    values.update(overrides)
    return ObjectStorageConfig(**values)


@pytest.fixture
def mock_boto3():
    """boto3 is imported lazily, so patching sys.modules is enough."""
    mock_boto3_module = MagicMock()
    mock_client = MagicMock()
    mock_boto3_module.session.Session.return_value.client.return_value = mock_client

    with patch.dict(sys.modules, {"boto3": mock_boto3_module}):
        yield mock_boto3_module, mock_client


def test_s3_put_json_sends_conditional_headers(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.put_object.return_value = {"ETag": '"etag-2"'}
    storage = S3ObjectStorage(config=_config())

    etag = storage.put_json("requests/req_1.json", {"id": "req_1"}, if_match='"etag-1"')

    assert etag == '"etag-2"'
    kwargs = mock_client.put_object.call_args.kwargs
    assert kwargs["Bucket"] == "test-bucket"
    assert kwargs["Key"] == "reconciler/requests/req_1.json"
    assert kwargs["ContentType"] == "application/json"
    assert kwargs["ServerSideEncryption"] == "AES256"
    assert kwargs["IfMatch"] == '"etag-1"'
    assert "IfNoneMatch" not in kwargs


def test_s3_create_only_put_uses_if_none_match(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.put_object.return_value = {"ETag": '"e"'}
    storage = S3ObjectStorage(config=_config(server_side_encryption=""))

    storage.put_json("webhooks/runs/plan/1.json", {"requestId": "req_1"}, if_none_match=True)

    kwargs = mock_client.put_object.call_args.kwargs
    assert kwargs["IfNoneMatch"] == "*"
    assert "ServerSideEncryption" not in kwargs


def test_s3_precondition_failure_is_mapped(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.put_object.side_effect = FakeClientError("PreconditionFailed")
    storage = S3ObjectStorage(config=_config())

    with pytest.raises(PreconditionFailedError):
        storage.put_json("requests/req_1.json", {"id": "req_1"}, if_match='"stale"')


def test_s3_other_errors_propagate(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.put_object.side_effect = FakeClientError("AccessDenied")
    storage = S3ObjectStorage(config=_config())

    with pytest.raises(FakeClientError):
        storage.put_json("requests/req_1.json", {"id": "req_1"})


def test_s3_get_json_reads_body_and_etag(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.get_object.return_value = {"Body": io.BytesIO(b'{"id": "req_1"}'), "ETag": '"abc"'}
    storage = S3ObjectStorage(config=_config())

    stored = storage.get_json("requests/req_1.json")

    assert stored.body == {"id": "req_1"}
    assert stored.etag == '"abc"'
    mock_client.get_object.assert_called_once_with(Bucket="test-bucket", Key="reconciler/requests/req_1.json")


def test_s3_missing_key_returns_none(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.get_object.side_effect = FakeClientError("NoSuchKey")
    mock_client.head_object.side_effect = FakeClientError("404")
    storage = S3ObjectStorage(config=_config())

    assert storage.get_json("requests/missing.json") is None
    assert storage.exists("requests/missing.json") is False


def test_s3_list_keys_strips_prefix_newest_first(mock_boto3):
    _, mock_client = mock_boto3
    older = datetime(2025, 3, 1, tzinfo=UTC)
    newer = datetime(2025, 3, 2, tzinfo=UTC)
    paginator = MagicMock()
    paginator.paginate.return_value = [
        {"Contents": [{"Key": "reconciler/requests/a.json", "LastModified": older}]},
        {"Contents": [{"Key": "reconciler/requests/b.json", "LastModified": newer}]},
    ]
    mock_client.get_paginator.return_value = paginator
    storage = S3ObjectStorage(config=_config())

    keys = [summary.key for summary in storage.list_keys("requests/")]

    assert keys == ["requests/b.json", "requests/a.json"]
    paginator.paginate.assert_called_once_with(Bucket="test-bucket", Prefix="reconciler/requests/")


def test_env_factory_selects_backend(tmp_path, mock_boto3):
    local = create_object_storage_from_env({"OBJECT_STORAGE_ROOT": str(tmp_path)})
    assert isinstance(local, LocalObjectStorage)

    s3 = create_object_storage_from_env({"RECONCILER_OBJECT_STORAGE_BACKEND": "s3", "OBJECT_STORAGE_BUCKET": "b"})
    assert isinstance(s3, S3ObjectStorage)


def test_local_storage_conditional_puts(tmp_path):
    storage = LocalObjectStorage(config=_config(backend="local", root=str(tmp_path), prefix=""))

    etag = storage.put_json("requests/req_1.json", {"v": 1}, if_none_match=True)
    with pytest.raises(PreconditionFailedError):
        storage.put_json("requests/req_1.json", {"v": 2}, if_none_match=True)
    with pytest.raises(PreconditionFailedError):
        storage.put_json("requests/req_1.json", {"v": 2}, if_match='"not-it"')

    storage.put_json("requests/req_1.json", {"v": 2}, if_match=etag)
    assert storage.get_json("requests/req_1.json").body == {"v": 2}
