"""Unit tests for the convergence pollers."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from clusterkit._cluster_models import (
    ClusterIdentity,
    CommandResult,
    ExecutionContext,
    Probe,
    ProbeFailed,
    ProbeSucceeded,
)
from clusterkit._convergence import (
    is_converged,
    parse_validation_report,
    poll_until,
    wait_for_authentication,
    wait_for_validation,
)

AUTHENTICATOR = "kube-system/aws-iam-authenticator"


def _context(tmp_path: Path) -> ExecutionContext:
    identity = ClusterIdentity.from_name("dev.example.com", tmp_path)
    return ExecutionContext(identity=identity, base_env={})


def _report(*names: str) -> str:
    return json.dumps({"failures": [{"type": "Pod", "name": name} for name in names]})


def test_poll_until_sleeps_fixed_interval_between_attempts() -> None:
    outcomes = iter([1, 2, 3])
    sleeps: list[float] = []
    rejected: list[int] = []

    result = poll_until(
        lambda: next(outcomes),
        lambda value: value == 3,
        interval=30,
        sleep=sleeps.append,
        on_retry=rejected.append,
    )

    assert result == 3
    assert sleeps == [30, 30]
    assert rejected == [1, 2]


def test_poll_until_returns_immediately_without_sleeping() -> None:
    sleeps: list[float] = []
    assert poll_until(lambda: "ready", bool, sleep=sleeps.append) == "ready"
    assert sleeps == []


def test_only_expected_failures_is_converged() -> None:
    report = parse_validation_report(_report(f"{AUTHENTICATOR}-x"))
    assert is_converged(report, (AUTHENTICATOR,)) is True


def test_unexpected_failure_is_not_converged() -> None:
    report = parse_validation_report(_report(f"{AUTHENTICATOR}-x", "other-check"))
    assert is_converged(report, (AUTHENTICATOR,)) is False


@pytest.mark.parametrize("payload", ['{"failures": null}', "{}", '{"failures": []}'])
def test_report_without_failures_is_converged(payload: str) -> None:
    assert is_converged(parse_validation_report(payload)) is True


@pytest.mark.parametrize("payload", ["", "not json", "[]", '{"failures": "many"}'])
def test_malformed_report_is_not_converged(payload: str) -> None:
    assert is_converged(parse_validation_report(payload)) is False


def test_failure_without_name_is_unexpected() -> None:
    assert is_converged({"failures": [{"type": "Node"}]}) is False


def test_wait_for_validation_retries_until_expected_failures_remain(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    results = [
        CommandResult(False, "cluster not found", "error", 1),
        CommandResult(False, _report("kube-system/coredns-abc", f"{AUTHENTICATOR}-x"), "", 2),
        CommandResult(False, _report(f"{AUTHENTICATOR}-x"), "", 2),
    ]
    monkeypatch.setattr(
        "clusterkit._convergence.kops_validate_cluster",
        lambda _context: results.pop(0),
    )
    sleeps: list[float] = []

    report = wait_for_validation(_context(tmp_path), sleep=sleeps.append)

    assert report["failures"][0]["name"] == f"{AUTHENTICATOR}-x"
    assert sleeps == [30.0, 30.0]
    assert results == []


def test_wait_for_validation_honours_custom_prefixes(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setattr(
        "clusterkit._convergence.kops_validate_cluster",
        lambda _context: CommandResult(False, _report("kube-system/ebs-csi-node"), "", 2),
    )
    report = wait_for_validation(
        _context(tmp_path),
        sleep=lambda _s: None,
        expected_prefixes=("kube-system/ebs-csi",),
    )
    assert report["failures"]


def test_wait_for_authentication_treats_failures_as_not_ready(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    probes: list[Probe] = [
        ProbeFailed("Unauthorized"),
        ProbeFailed("dial tcp: i/o timeout"),
        ProbeSucceeded("pod/coredns"),
    ]
    monkeypatch.setattr(
        "clusterkit._convergence.kubectl_probe", lambda _context: probes.pop(0)
    )
    sleeps: list[float] = []

    outcome = wait_for_authentication(_context(tmp_path), interval=5, sleep=sleeps.append)

    assert outcome == ProbeSucceeded("pod/coredns")
    assert sleeps == [5, 5]
