"""Remote state bucket access and the state-locking scope.

The bucket named by :attr:`ClusterIdentity.state_bucket` holds three things:
the kops state store (``kops/``, managed by kops itself), the terraform
backend state (managed by terraform), and a mirror of the local working
directory under ``workspace/``. Every writer to the mirror holds the lock
object, so two operators cannot interleave pushes.
"""

from __future__ import annotations

import getpass
import json
import logging
import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from clusterkit._cluster_errors import RemoteStateError, StateLockedError

logger = logging.getLogger(__name__)

LOCK_KEY = ".clusterkit.lock"
WORKSPACE_PREFIX = "workspace/"
_SKIPPED_PARTS = frozenset({".terraform", "__pycache__"})
_SKIPPED_NAMES = frozenset({".kubeconfig.admin.yaml", ".terraform.lock.hcl"})
_MISSING_BUCKET_CODES = frozenset({"404", "NoSuchBucket", "NotFound"})
_LOCK_HELD_CODES = frozenset({"PreconditionFailed", "ConditionalRequestConflict"})
# Missing credentials and unreachable endpoints raise BotoCoreError.
_AWS_ERRORS = (ClientError, BotoCoreError)


def default_lock_owner() -> str:
    """Describe this invocation for the lock object."""
    return f"{getpass.getuser()}@{socket.gethostname()}:{os.getpid()}"


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _should_push(rel: PurePosixPath) -> bool:
    if any(part in _SKIPPED_PARTS for part in rel.parts):
        return False
    return rel.name not in _SKIPPED_NAMES and not rel.name.startswith(".#")


class RemoteStateStore:
    """Thin wrapper over an S3 client bound to one bucket.

    Parameters
    ----------
    bucket
        State bucket name.
    client
        A boto3 S3 client; created from the default session when omitted.
    """

    def __init__(self, bucket: str, client: Any | None = None) -> None:
        self.bucket = bucket
        if client is None:
            import boto3

            client = boto3.client("s3")
        self._client = client

    def bucket_exists(self) -> bool:
        """Return whether the bucket exists and is reachable."""
        try:
            self._client.head_bucket(Bucket=self.bucket)
        except _AWS_ERRORS as exc:
            if isinstance(exc, ClientError) and _error_code(exc) in _MISSING_BUCKET_CODES:
                return False
            msg = f"Cannot access state bucket {self.bucket!r}: {exc}"
            raise RemoteStateError(msg) from exc
        return True

    def acquire_lock(self, owner: str) -> None:
        """Create the lock object, failing when another writer holds it.

        Raises
        ------
        StateLockedError
            When the lock object already exists.
        """
        body = json.dumps(
            {"owner": owner, "acquired_at": datetime.now(tz=UTC).isoformat()},
            sort_keys=True,
        )
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=LOCK_KEY,
                Body=body.encode("utf-8"),
                IfNoneMatch="*",
            )
        except _AWS_ERRORS as exc:
            if isinstance(exc, ClientError) and _error_code(exc) in _LOCK_HELD_CODES:
                holder = self._describe_lock()
                msg = (
                    f"State bucket {self.bucket!r} is locked by {holder}; "
                    f"remove s3://{self.bucket}/{LOCK_KEY} if that run is gone"
                )
                raise StateLockedError(msg) from exc
            msg = f"Failed to lock state bucket {self.bucket!r}: {exc}"
            raise RemoteStateError(msg) from exc
        logger.debug("Locked s3://%s/%s as %s", self.bucket, LOCK_KEY, owner)

    def _describe_lock(self) -> str:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=LOCK_KEY)
            payload = json.loads(response["Body"].read())
        except (*_AWS_ERRORS, ValueError, KeyError):
            return "another invocation"
        return str(payload.get("owner", "another invocation"))

    def release_lock(self) -> None:
        """Delete the lock object."""
        try:
            self._client.delete_object(Bucket=self.bucket, Key=LOCK_KEY)
        except _AWS_ERRORS as exc:
            msg = f"Failed to unlock state bucket {self.bucket!r}: {exc}"
            raise RemoteStateError(msg) from exc
        logger.debug("Unlocked s3://%s/%s", self.bucket, LOCK_KEY)

    def put(self, path: str, content: bytes) -> None:
        """Upload one workspace file."""
        key = WORKSPACE_PREFIX + path
        try:
            self._client.put_object(Bucket=self.bucket, Key=key, Body=content)
        except _AWS_ERRORS as exc:
            msg = f"Failed to upload s3://{self.bucket}/{key}: {exc}"
            raise RemoteStateError(msg) from exc

    def pull(self, local_dir: Path) -> int:
        """Download the workspace mirror into ``local_dir``.

        Returns
        -------
        int
            Number of files downloaded.
        """
        count = 0
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=WORKSPACE_PREFIX):
                for entry in page.get("Contents", []):
                    rel = PurePosixPath(entry["Key"][len(WORKSPACE_PREFIX):])
                    if not rel.parts or ".." in rel.parts or rel.is_absolute():
                        continue
                    response = self._client.get_object(Bucket=self.bucket, Key=entry["Key"])
                    dest = local_dir.joinpath(*rel.parts)
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    dest.write_bytes(response["Body"].read())
                    count += 1
        except _AWS_ERRORS as exc:
            msg = f"Failed to download state from s3://{self.bucket}: {exc}"
            raise RemoteStateError(msg) from exc
        logger.debug("Pulled %d files from s3://%s", count, self.bucket)
        return count

    def push(self, local_dir: Path) -> int:
        """Upload every file in ``local_dir`` to the workspace mirror."""
        count = 0
        for file_path in sorted(local_dir.rglob("*")):
            if not file_path.is_file():
                continue
            rel = PurePosixPath(file_path.relative_to(local_dir).as_posix())
            if not _should_push(rel):
                continue
            self.put(rel.as_posix(), file_path.read_bytes())
            count += 1
        logger.debug("Pushed %d files to s3://%s", count, self.bucket)
        return count


class RemoteStateScope:
    """Handle for a held lock; passed to :meth:`AssetStore.flush`."""

    def __init__(self, store: RemoteStateStore) -> None:
        self._store = store
        self.held = False

    @property
    def bucket(self) -> str:
        return self._store.bucket

    def put(self, path: str, content: bytes) -> None:
        """Mirror one asset while the lock is held."""
        if not self.held:
            msg = f"State lock on {self._store.bucket!r} is not held"
            raise RemoteStateError(msg)
        self._store.put(path, content)


@contextmanager
def remote_state(
    store: RemoteStateStore,
    local_dir: Path,
    *,
    owner: str | None = None,
) -> Iterator[RemoteStateScope]:
    """Run the body inside the state-locking scope.

    When the bucket exists, the lock is taken and the workspace mirror is
    pulled before the body runs, then pushed afterwards. When the bucket does
    not exist yet (the bootstrap apply creates it), the body runs unlocked
    and the workspace is pushed once the bucket appears. The lock is released
    on every exit path.
    """
    lock_owner = owner or default_lock_owner()
    scope = RemoteStateScope(store)
    local_dir.mkdir(parents=True, exist_ok=True)

    if store.bucket_exists():
        store.acquire_lock(lock_owner)
        scope.held = True
        try:
            store.pull(local_dir)
            yield scope
            store.push(local_dir)
        finally:
            scope.held = False
            store.release_lock()
        return

    logger.info("State bucket %r does not exist yet", store.bucket)
    yield scope
    if not store.bucket_exists():
        msg = f"State bucket {store.bucket!r} was not created"
        raise RemoteStateError(msg)
    store.acquire_lock(lock_owner)
    scope.held = True
    try:
        store.push(local_dir)
    finally:
        scope.held = False
        store.release_lock()
