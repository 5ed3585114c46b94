"""kubectl helpers for clusterkit."""

from __future__ import annotations

from clusterkit._cluster_models import CommandResult, ExecutionContext, Probe
from clusterkit._commands import CommandContext, probe_command, run_command


def kubectl_apply(context: ExecutionContext, manifest: str) -> CommandResult:
    """Apply a rendered multi-document manifest from stdin."""
    return run_command(
        context,
        "kubectl",
        "apply",
        "-f",
        "-",
        options=CommandContext(stdin=manifest),
    )


def kubectl_probe(context: ExecutionContext) -> Probe:
    """Perform a trivial authenticated read against the cluster API."""
    return probe_command(
        context, "kubectl", "get", "pods", "-n", "kube-system", "-o", "name"
    )
