import pytest

from app.errors import RequestNotFoundError, VersionConflictError
from app.object_storage import LocalObjectStorage, ObjectStorageConfig
from app.requests_store import RequestDocumentStore, apply_patch, request_key, update_retrying


def _storage(tmp_path) -> LocalObjectStorage:
    return LocalObjectStorage(
        config=ObjectStorageConfig(
            backend="local",
            bucket="test-bucket",
            root=str(tmp_path),
            prefix="",
            endpoint="",
            region="",
            access_key="",
            secret_key="",
            force_path_style=True,
            server_side_encryption="",
        )
    )


def test_create_starts_at_version_one(tmp_path):
    store = RequestDocumentStore(storage=_storage(tmp_path))
    created = store.create({"id": "req_dev_s3_aaaaaa", "project": "p"})
    assert created["version"] == 1
    assert store.get("req_dev_s3_aaaaaa")["project"] == "p"


def test_create_twice_is_a_conflict(tmp_path):
    store = RequestDocumentStore(storage=_storage(tmp_path))
    store.create({"id": "req_dev_s3_aaaaaa"})
    with pytest.raises(VersionConflictError):
        store.create({"id": "req_dev_s3_aaaaaa"})


def test_get_missing_raises_not_found(tmp_path):
    store = RequestDocumentStore(storage=_storage(tmp_path))
    with pytest.raises(RequestNotFoundError) as exc_info:
        store.get("req_missing")
    assert exc_info.value.http_status == 404


def test_each_write_bumps_version_by_one(tmp_path):
    store = RequestDocumentStore(storage=_storage(tmp_path))
    store.create({"id": "req_dev_s3_aaaaaa", "counter": 0})
    for expected in (2, 3, 4):
        updated, written = store.update(
            "req_dev_s3_aaaaaa",
            lambda doc: apply_patch(doc, {"counter": doc["counter"] + 1}),
        )
        assert written is True
        assert updated["version"] == expected
    assert store.get("req_dev_s3_aaaaaa")["counter"] == 3


def test_mutate_returning_same_object_skips_write(tmp_path):
    store = RequestDocumentStore(storage=_storage(tmp_path))
    store.create({"id": "req_dev_s3_aaaaaa"})
    document, written = store.update("req_dev_s3_aaaaaa", lambda doc: apply_patch(doc, {}))
    assert written is False
    assert document["version"] == 1
    assert store.get("req_dev_s3_aaaaaa")["version"] == 1


def test_stale_write_is_rejected_and_not_retried(tmp_path):
    storage = _storage(tmp_path)
    store = RequestDocumentStore(storage=storage)
    store.create({"id": "req_dev_s3_aaaaaa", "value": "a"})
    calls = []

    def _mutate(doc):
        calls.append(1)
        # Another writer lands between our read and our write.
        stored = storage.get_json(request_key("req_dev_s3_aaaaaa"))
        storage.put_json(request_key("req_dev_s3_aaaaaa"), {**stored.body, "version": 2, "value": "b"})
        return apply_patch(doc, {"value": "c"})

    with pytest.raises(VersionConflictError) as exc_info:
        store.update("req_dev_s3_aaaaaa", _mutate)
    assert exc_info.value.code == "VERSION_CONFLICT"
    assert calls == [1]
    assert store.get("req_dev_s3_aaaaaa")["value"] == "b"


def test_update_retrying_reapplies_after_conflict(tmp_path):
    storage = _storage(tmp_path)
    store = RequestDocumentStore(storage=storage)
    store.create({"id": "req_dev_s3_aaaaaa", "tags": []})
    interfered = {"done": False}

    def _mutate(doc):
        if not interfered["done"]:
            interfered["done"] = True
            stored = storage.get_json(request_key("req_dev_s3_aaaaaa"))
            storage.put_json(
                request_key("req_dev_s3_aaaaaa"),
                {**stored.body, "version": 2, "tags": ["other"]},
            )
        return apply_patch(doc, {"tags": [*doc["tags"], "mine"]})

    updated, written = update_retrying(store, "req_dev_s3_aaaaaa", _mutate)
    assert written is True
    assert updated["tags"] == ["other", "mine"]
    assert updated["version"] == 3


def test_archive_keeps_a_history_copy(tmp_path):
    store = RequestDocumentStore(storage=_storage(tmp_path))
    created = store.create({"id": "req_dev_s3_aaaaaa"})
    store.archive(created)
    archived = store.get_archived("req_dev_s3_aaaaaa")
    assert archived is not None
    assert archived["archivedAt"]
    assert store.get("req_dev_s3_aaaaaa")["id"] == "req_dev_s3_aaaaaa"
