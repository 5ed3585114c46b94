"""Unit tests for the remote state bucket and locking scope."""

from __future__ import annotations

from pathlib import Path

import pytest
from botocore.exceptions import EndpointConnectionError, NoCredentialsError

from clusterkit._cluster_errors import RemoteStateError, StateLockedError
from clusterkit._remote_state import LOCK_KEY, RemoteStateStore, remote_state


def _store(fake_s3) -> RemoteStateStore:
    return RemoteStateStore(fake_s3.bucket, client=fake_s3)


def test_scope_locks_pulls_and_pushes(tmp_path: Path, fake_s3) -> None:
    fake_s3.objects["workspace/tf/output.json"] = b'{"vpc_id": "vpc-1"}'
    local_dir = tmp_path / "state"

    with remote_state(_store(fake_s3), local_dir, owner="alice@host:1") as scope:
        assert scope.held
        assert LOCK_KEY in fake_s3.objects
        assert (local_dir / "tf" / "output.json").read_bytes() == b'{"vpc_id": "vpc-1"}'
        (local_dir / ".env").write_text("CLUSTER=dev.example.com\n", encoding="utf-8")

    assert not scope.held
    assert LOCK_KEY not in fake_s3.objects
    assert fake_s3.objects["workspace/.env"] == b"CLUSTER=dev.example.com\n"


def test_scope_releases_lock_when_body_fails(tmp_path: Path, fake_s3) -> None:
    with pytest.raises(RuntimeError, match="apply failed"):
        with remote_state(_store(fake_s3), tmp_path, owner="test"):
            (tmp_path / "partial.txt").write_text("x", encoding="utf-8")
            raise RuntimeError("apply failed")

    assert LOCK_KEY not in fake_s3.objects
    assert "workspace/partial.txt" not in fake_s3.objects, "Failed runs do not push"


def test_second_writer_is_rejected(tmp_path: Path, fake_s3) -> None:
    store = _store(fake_s3)
    store.acquire_lock("bob@laptop:42")

    with pytest.raises(StateLockedError, match="bob@laptop:42"):
        with remote_state(store, tmp_path, owner="alice"):
            pytest.fail("Body must not run without the lock")

    assert LOCK_KEY in fake_s3.objects, "Another writer's lock is left alone"


def test_missing_bucket_runs_unlocked_then_pushes(tmp_path: Path, fake_s3) -> None:
    fake_s3.exists = False

    with remote_state(_store(fake_s3), tmp_path, owner="test") as scope:
        assert not scope.held
        (tmp_path / "tf_state").mkdir()
        (tmp_path / "tf_state" / "terraform.tfstate").write_text("{}", encoding="utf-8")
        fake_s3.create_bucket()

    assert fake_s3.objects["workspace/tf_state/terraform.tfstate"] == b"{}"
    assert ("delete", LOCK_KEY) in fake_s3.events


def test_missing_bucket_that_is_never_created_fails(tmp_path: Path, fake_s3) -> None:
    fake_s3.exists = False
    with pytest.raises(RemoteStateError, match="was not created"):
        with remote_state(_store(fake_s3), tmp_path, owner="test"):
            pass


def test_push_skips_provider_caches_and_admin_credentials(tmp_path: Path, fake_s3) -> None:
    (tmp_path / "tf" / ".terraform" / "providers").mkdir(parents=True)
    (tmp_path / "tf" / ".terraform" / "providers" / "aws").write_bytes(b"binary")
    (tmp_path / "tf" / "main.tf").write_text("", encoding="utf-8")
    (tmp_path / ".kubeconfig.admin.yaml").write_text("admin", encoding="utf-8")

    pushed = _store(fake_s3).push(tmp_path)

    assert pushed == 1
    assert list(fake_s3.objects) == ["workspace/tf/main.tf"]


def test_put_through_scope_requires_held_lock(tmp_path: Path, fake_s3) -> None:
    with remote_state(_store(fake_s3), tmp_path, owner="test") as scope:
        pass
    with pytest.raises(RemoteStateError, match="not held"):
        scope.put("kubeconfig.yaml", b"")


class _NoCredentialsS3:
    def head_bucket(self, *, Bucket: str) -> dict[str, object]:
        raise NoCredentialsError()


def test_missing_credentials_surface_as_remote_state_error() -> None:
    store = RemoteStateStore("dev-example-com-state", client=_NoCredentialsS3())

    with pytest.raises(RemoteStateError, match="Unable to locate credentials"):
        store.bucket_exists()


def test_unreachable_endpoint_while_unlocking_is_remote_state_error(
    fake_s3, monkeypatch: pytest.MonkeyPatch
) -> None:
    def unreachable(**_: object) -> None:
        raise EndpointConnectionError(endpoint_url="https://s3.example.invalid")

    monkeypatch.setattr(fake_s3, "delete_object", unreachable)

    with pytest.raises(RemoteStateError, match="Failed to unlock"):
        _store(fake_s3).release_lock()
