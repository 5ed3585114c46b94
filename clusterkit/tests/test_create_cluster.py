"""Tests for the clusterkit create command."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from clusterkit import create_cluster as cli
from clusterkit._cluster_errors import CommandError
from clusterkit._cluster_inputs import InputSet
from clusterkit._cluster_models import DEFAULT_CLIENT_AUTH_API_VERSION, ExecutionContext
from clusterkit._create_cluster_flow import ProvisionOptions
from clusterkit._remote_state import RemoteStateStore


def test_resolve_create_inputs_defaults(tmp_path: Path) -> None:
    resolved = cli.resolve_create_inputs(
        cli.RawCreateInputs(name="Dev.Example.com", state_dir=tmp_path), env={}
    )

    assert resolved.identity.name == "dev.example.com"
    assert resolved.identity.state_dir == tmp_path
    assert resolved.fast is False
    assert resolved.auto_approve is False
    assert resolved.debug is False
    assert resolved.terraform_bin == "terraform"
    assert resolved.client_auth_api_version == DEFAULT_CLIENT_AUTH_API_VERSION


def test_resolve_create_inputs_reads_environment(tmp_path: Path) -> None:
    env = {
        "CLUSTERKIT_STATE_DIR": str(tmp_path),
        "CLUSTERKIT_FAST": "true",
        "CLUSTERKIT_AUTO_APPROVE": "1",
        "CLUSTERKIT_DEBUG": "no",
        "CLUSTERKIT_TERRAFORM_BIN": "tofu",
        "CLUSTERKIT_CLIENT_AUTH_API_VERSION": "client.authentication.k8s.io/v1",
    }

    resolved = cli.resolve_create_inputs(cli.RawCreateInputs(name="dev.example.com"), env)

    assert resolved.identity.state_dir == tmp_path
    assert resolved.fast is True
    assert resolved.auto_approve is True
    assert resolved.debug is False
    assert resolved.terraform_bin == "tofu"
    assert resolved.client_auth_api_version == "client.authentication.k8s.io/v1"


def test_cli_values_override_environment(tmp_path: Path) -> None:
    raw = cli.RawCreateInputs(
        name="dev.example.com", state_dir=tmp_path, fast=False, terraform_bin="terraform"
    )
    resolved = cli.resolve_create_inputs(
        raw, {"CLUSTERKIT_FAST": "true", "CLUSTERKIT_TERRAFORM_BIN": "tofu"}
    )
    assert resolved.fast is False
    assert resolved.terraform_bin == "terraform"


def test_resolve_create_inputs_rejects_invalid_name() -> None:
    with pytest.raises(ValueError, match="cluster_name"):
        cli.resolve_create_inputs(cli.RawCreateInputs(name="not_valid"), env={})


class _FlowRecorder:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[ExecutionContext, InputSet, ProvisionOptions]] = []

    def __call__(
        self,
        context: ExecutionContext,
        inputs: InputSet,
        options: ProvisionOptions,
        store: RemoteStateStore,
        **_: Any,
    ) -> None:
        self.calls.append((context, inputs, options))
        if self.error is not None:
            raise self.error


@pytest.fixture
def flow(monkeypatch: pytest.MonkeyPatch) -> _FlowRecorder:
    recorder = _FlowRecorder()
    monkeypatch.setattr(cli, "create_cluster", recorder)
    monkeypatch.setattr(cli, "build_s3_client", lambda inputs: object())
    monkeypatch.setattr(cli, "configure_logging", lambda *, debug: None)
    for key in ("CLUSTERKIT_FAST", "CLUSTERKIT_AUTO_APPROVE", "CLUSTERKIT_DEBUG"):
        monkeypatch.delenv(key, raising=False)
    return recorder


def test_create_runs_the_flow(flow: _FlowRecorder, tmp_path: Path) -> None:
    input_file = tmp_path / "aws.json"
    input_file.write_text('{"aws_region": "eu-west-1"}', encoding="utf-8")

    code = cli.create(
        "dev.example.com",
        fast=True,
        yes=True,
        input_files=[input_file],
        state_dir=tmp_path / "state",
        terraform_bin="tofu",
    )

    assert code == 0
    context, inputs, options = flow.calls[0]
    assert context.terraform_bin == "tofu"
    assert context.identity.state_dir == tmp_path / "state"
    assert inputs.groups == {"aws": {"aws_region": "eu-west-1"}}
    assert options.fast is True
    assert options.auto_approve is True


def test_create_reports_provisioning_errors(
    flow: _FlowRecorder, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    flow.error = CommandError("Command 'kops' failed (exit status 1): boom")

    code = cli.create("dev.example.com", state_dir=tmp_path)

    assert code == 1
    assert "error: Command 'kops' failed" in capsys.readouterr().err


def test_create_rejects_invalid_name(
    flow: _FlowRecorder, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.create("bad_name") == 2
    assert "cluster_name" in capsys.readouterr().err
    assert flow.calls == []


def test_create_rejects_unreadable_input(
    flow: _FlowRecorder, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code = cli.create(
        "dev.example.com", input_files=[tmp_path / "missing.json"], state_dir=tmp_path
    )
    assert code == 2
    assert "Failed to read input file" in capsys.readouterr().err
    assert flow.calls == []
