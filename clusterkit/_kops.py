"""kops command helpers for clusterkit."""

from __future__ import annotations

from collections import abc as cabc
from pathlib import Path

from clusterkit._cluster_models import CommandResult, ExecutionContext, Probe
from clusterkit._commands import CommandContext, probe_command, run_command


def kops_get_cluster(context: ExecutionContext) -> Probe:
    """Probe whether the state store already holds this cluster."""
    return probe_command(context, "kops", "get", "cluster", context.identity.name)


def kops_toolbox_template(
    context: ExecutionContext,
    cwd: Path,
    templates: cabc.Sequence[Path],
    values: Path,
    *,
    set_cluster_name: bool = False,
) -> str:
    """Render templates against terraform outputs and return the YAML.

    Parameters
    ----------
    context
        Execution context for the run.
    cwd
        Directory the command runs in.
    templates
        Template files, rendered in order.
    values
        Values file, normally ``tf/output.json``.
    set_cluster_name
        Also pass ``cluster_name`` explicitly, as the cluster spec needs it
        even before the outputs carry it.
    """
    name = context.identity.name
    args = ["toolbox", "template", "--name", name]
    if set_cluster_name:
        args.extend(["--set-string", f"cluster_name={name}"])
    args.extend(["--values", str(values)])
    for template in templates:
        args.extend(["--template", str(template)])
    args.append("--format-yaml")
    result = run_command(context, "kops", *args, options=CommandContext(cwd=cwd))
    return result.stdout


def kops_replace(context: ExecutionContext, spec_file: Path) -> CommandResult:
    """Force-replace the cluster specification.

    ``--force`` creates the cluster when no record exists and allows new
    instance groups on an existing cluster.
    """
    return run_command(
        context,
        "kops",
        "replace",
        "--force",
        "-f",
        str(spec_file),
        options=CommandContext(stream=True),
    )


def kops_export_admin_kubeconfig(
    context: ExecutionContext, kubeconfig: Path
) -> CommandResult:
    """Export temporary admin credentials to ``kubeconfig``."""
    return run_command(
        context,
        "kops",
        "export",
        "kubeconfig",
        context.identity.name,
        "--admin",
        "--kubeconfig",
        str(kubeconfig),
    )


def kops_update_cluster(
    context: ExecutionContext,
    out_dir: Path,
    *,
    create_kube_config: bool,
) -> CommandResult:
    """Emit the kops terraform definition into ``out_dir``."""
    args = ["update", "cluster", context.identity.name]
    if not create_kube_config:
        args.append("--create-kube-config=false")
    args.extend(["--target", "terraform", "--out", ".", "--yes"])
    args.extend(context.verbosity_args())
    args.append("--allow-kops-downgrade")
    return run_command(
        context, "kops", *args, options=CommandContext(cwd=out_dir, stream=True)
    )


def kops_rolling_update(context: ExecutionContext, *, fast: bool) -> CommandResult:
    """Roll the cluster's nodes; ``fast`` skips drain and validation."""
    args = ["rolling-update", "cluster", context.identity.name]
    if fast:
        args.append("--cloudonly")
    args.extend(context.verbosity_args())
    args.append("--yes")
    return run_command(context, "kops", *args, options=CommandContext(stream=True))


def kops_validate_cluster(context: ExecutionContext) -> CommandResult:
    """Run ``kops validate cluster``; a failing validation is not an error."""
    args = ["validate", "cluster", context.identity.name, "-o", "json"]
    args.extend(context.verbosity_args())
    return run_command(context, "kops", *args, options=CommandContext(check=False))
