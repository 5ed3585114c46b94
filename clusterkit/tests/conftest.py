from __future__ import annotations

import io
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from botocore.exceptions import ClientError


def pytest_configure() -> None:
    project_root = Path(__file__).resolve().parents[2]
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class _Paginator:
    def __init__(self, client: FakeS3) -> None:
        self._client = client

    def paginate(self, *, Bucket: str, Prefix: str) -> Iterator[dict[str, Any]]:
        self._client._require_bucket(Bucket, "ListObjectsV2")
        keys = sorted(key for key in self._client.objects if key.startswith(Prefix))
        yield {"Contents": [{"Key": key} for key in keys]}


class FakeS3:
    """In-memory stand-in for the handful of S3 calls clusterkit makes."""

    def __init__(self, bucket: str, *, exists: bool = True) -> None:
        self.bucket = bucket
        self.exists = exists
        self.objects: dict[str, bytes] = {}
        self.events: list[tuple[str, str]] = []

    def create_bucket(self) -> None:
        self.exists = True

    def _require_bucket(self, bucket: str, operation: str) -> None:
        if bucket != self.bucket or not self.exists:
            raise _client_error("NoSuchBucket", operation)

    def head_bucket(self, *, Bucket: str) -> dict[str, Any]:
        if Bucket != self.bucket or not self.exists:
            raise _client_error("404", "HeadBucket")
        return {}

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, **kwargs: Any) -> dict[str, Any]:
        self._require_bucket(Bucket, "PutObject")
        if kwargs.get("IfNoneMatch") == "*" and Key in self.objects:
            raise _client_error("PreconditionFailed", "PutObject")
        self.objects[Key] = Body
        self.events.append(("put", Key))
        return {}

    def get_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        self._require_bucket(Bucket, "GetObject")
        if Key not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def delete_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        self._require_bucket(Bucket, "DeleteObject")
        self.objects.pop(Key, None)
        self.events.append(("delete", Key))
        return {}

    def get_paginator(self, operation: str) -> _Paginator:
        assert operation == "list_objects_v2"
        return _Paginator(self)


@pytest.fixture
def fake_s3() -> FakeS3:
    return FakeS3("dev-example-com-state")
