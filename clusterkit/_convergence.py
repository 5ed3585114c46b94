"""Convergence polling for cluster validation and authentication.

Both waits are unbounded fixed-interval loops: provisioning runs unattended
until the cluster converges or the process is killed.
"""

from __future__ import annotations

import json
import logging
import time
from collections import abc as cabc
from typing import Any, TypeVar

from clusterkit._cluster_models import ExecutionContext, Probe, ProbeSucceeded
from clusterkit._kops import kops_validate_cluster
from clusterkit._kubectl import kubectl_probe

logger = logging.getLogger(__name__)

T = TypeVar("T")

POLL_INTERVAL_SECONDS = 30.0

# TODO: expose as a create option so operators can allow-list other add-ons.
EXPECTED_VALIDATION_FAILURE_PREFIXES: tuple[str, ...] = (
    "kube-system/aws-iam-authenticator",
)


def poll_until(
    attempt: cabc.Callable[[], T],
    is_done: cabc.Callable[[T], bool],
    *,
    interval: float = POLL_INTERVAL_SECONDS,
    sleep: cabc.Callable[[float], object] = time.sleep,
    on_retry: cabc.Callable[[T], object] | None = None,
) -> T:
    """Call ``attempt`` until ``is_done`` accepts its result.

    Parameters
    ----------
    attempt
        Zero-argument callable producing one observation.
    is_done
        Exit predicate evaluated against each observation.
    interval
        Seconds to sleep between attempts.
    sleep
        Sleep function; tests inject a recorder.
    on_retry
        Called with each rejected observation before sleeping.

    Returns
    -------
    T
        The first observation accepted by ``is_done``.

    Examples
    --------
    >>> outcomes = iter([False, False, True])
    >>> poll_until(lambda: next(outcomes), bool, sleep=lambda _s: None)
    True
    """
    while True:
        outcome = attempt()
        if is_done(outcome):
            return outcome
        if on_retry is not None:
            on_retry(outcome)
        sleep(interval)


def parse_validation_report(stdout: str) -> dict[str, Any] | None:
    """Parse ``kops validate cluster -o json``; return ``None`` when malformed.

    Examples
    --------
    >>> parse_validation_report('{"failures": []}')
    {'failures': []}
    >>> parse_validation_report("cluster not ready") is None
    True
    """
    try:
        report = json.loads(stdout)
    except json.JSONDecodeError:
        return None
    if not isinstance(report, dict):
        return None
    return report


def is_expected_failure(
    failure: object,
    expected_prefixes: cabc.Sequence[str] = EXPECTED_VALIDATION_FAILURE_PREFIXES,
) -> bool:
    """Return whether a failure entry names an allow-listed component."""
    if not isinstance(failure, dict):
        return False
    name = failure.get("name")
    return isinstance(name, str) and name.startswith(tuple(expected_prefixes))


def is_converged(
    report: cabc.Mapping[str, Any] | None,
    expected_prefixes: cabc.Sequence[str] = EXPECTED_VALIDATION_FAILURE_PREFIXES,
) -> bool:
    """Return whether every failure in ``report`` is expected.

    A missing report is never converged.

    Examples
    --------
    >>> is_converged({"failures": [{"name": "kube-system/aws-iam-authenticator-x"}]})
    True
    >>> is_converged({"failures": [{"name": "other-check"}]})
    False
    """
    if report is None:
        return False
    failures = report.get("failures")
    if failures is None:
        return True
    if not isinstance(failures, list):
        return False
    return all(is_expected_failure(failure, expected_prefixes) for failure in failures)


def validate_once(context: ExecutionContext) -> dict[str, Any] | None:
    """Run one validation and return the parsed report."""
    result = kops_validate_cluster(context)
    if not result.success:
        logger.warning(
            "kops validate cluster exited with status %s: %s",
            result.return_code,
            result.stderr.strip(),
        )
    report = parse_validation_report(result.stdout)
    if report is not None and context.debug:
        logger.debug("Validation report: %s", json.dumps(report, indent=2))
    return report


def wait_for_validation(
    context: ExecutionContext,
    *,
    interval: float = POLL_INTERVAL_SECONDS,
    sleep: cabc.Callable[[float], object] = time.sleep,
    expected_prefixes: cabc.Sequence[str] = EXPECTED_VALIDATION_FAILURE_PREFIXES,
) -> dict[str, Any]:
    """Block until the only remaining validation failures are expected."""

    def _retry(_report: object) -> None:
        logger.warning(
            "Cluster validation failed, trying again in %ss", int(interval)
        )

    report = poll_until(
        lambda: validate_once(context),
        lambda candidate: is_converged(candidate, expected_prefixes),
        interval=interval,
        sleep=sleep,
        on_retry=_retry,
    )
    logger.info("Cluster validation passed")
    return report or {}


def wait_for_authentication(
    context: ExecutionContext,
    *,
    interval: float = POLL_INTERVAL_SECONDS,
    sleep: cabc.Callable[[float], object] = time.sleep,
) -> Probe:
    """Block until the active kubeconfig authenticates against the API."""

    def _retry(_probe: Probe) -> None:
        logger.info(
            "Cluster authentication failed, trying again in %ss", int(interval)
        )

    return poll_until(
        lambda: kubectl_probe(context),
        lambda probe: isinstance(probe, ProbeSucceeded),
        interval=interval,
        sleep=sleep,
        on_retry=_retry,
    )
