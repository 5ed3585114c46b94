"""Infrastructure applier helpers for clusterkit.

The applier binary defaults to ``terraform`` and is taken from
:attr:`ExecutionContext.terraform_bin`, so OpenTofu works as a drop-in.
"""

from __future__ import annotations

import json
from collections import abc as cabc
from pathlib import Path

from clusterkit._cluster_errors import MalformedOutputError
from clusterkit._cluster_models import CommandResult, ExecutionContext
from clusterkit._commands import CommandContext, run_command


def var_flags(context: ExecutionContext, var_files: cabc.Sequence[Path]) -> list[str]:
    """Build the ``-var``/``-var-file`` flags shared by every apply.

    Examples
    --------
    >>> from pathlib import Path
    >>> from clusterkit._cluster_models import ClusterIdentity
    >>> identity = ClusterIdentity.from_name("dev.example.com", Path("/tmp/dev"))
    >>> var_flags(ExecutionContext(identity=identity), [])
    ['-var', 'cluster_name=dev.example.com', '-var', 'state_bucket_name=dev-example-com-state']
    """
    identity = context.identity
    flags = [
        "-var",
        f"cluster_name={identity.name}",
        "-var",
        f"state_bucket_name={identity.state_bucket}",
    ]
    flags.extend(f"-var-file={path}" for path in var_files)
    return flags


def terraform_init(
    context: ExecutionContext,
    cwd: Path,
    backend_config: cabc.Mapping[str, str] | None = None,
) -> CommandResult:
    """Run ``terraform init -upgrade`` with optional backend settings.

    Parameters
    ----------
    context
        Execution context for the run.
    cwd
        Terraform configuration directory.
    backend_config
        Partial backend configuration passed as ``-backend-config`` flags.

    Returns
    -------
    CommandResult
        Result of the init command.
    """
    args = ["init", "-upgrade", "-input=false"]
    for key, value in (backend_config or {}).items():
        args.append(f"-backend-config={key}={value}")
    return run_command(
        context,
        context.terraform_bin,
        *args,
        options=CommandContext(cwd=cwd, stream=True),
    )


def terraform_apply(
    context: ExecutionContext,
    cwd: Path,
    var_files: cabc.Sequence[Path] = (),
    *,
    auto_approve: bool = True,
    refresh: bool = True,
) -> CommandResult:
    """Run ``terraform apply`` attached to the terminal.

    Parameters
    ----------
    context
        Execution context for the run.
    cwd
        Terraform configuration directory.
    var_files
        Variable files derived from the resolved input set.
    auto_approve
        Skip the interactive confirmation.
    refresh
        Refresh real-world state before planning. Disabled when only local
        documents changed since the previous apply.

    Returns
    -------
    CommandResult
        Result of the apply command.
    """
    args = ["apply", "-compact-warnings"]
    if not refresh:
        args.append("-refresh=false")
    if auto_approve:
        args.append("-auto-approve")
    args.extend(var_flags(context, var_files))
    return run_command(
        context,
        context.terraform_bin,
        *args,
        options=CommandContext(cwd=cwd, stream=True),
    )


def flatten_outputs(raw: object) -> dict[str, object]:
    """Reduce ``terraform output -json`` to a plain name → value mapping.

    Examples
    --------
    >>> flatten_outputs({"cluster_name": {"value": "dev", "type": "string"}})
    {'cluster_name': 'dev'}
    """
    if not isinstance(raw, dict):
        msg = "terraform output must be a JSON object"
        raise MalformedOutputError(msg)
    flattened: dict[str, object] = {}
    for key, output in raw.items():
        if isinstance(output, dict) and "value" in output:
            flattened[key] = output["value"]
        else:
            flattened[key] = output
    return flattened


def terraform_output(context: ExecutionContext, cwd: Path) -> dict[str, object]:
    """Retrieve outputs as a flat JSON mapping.

    Raises
    ------
    CommandError
        When ``terraform output`` exits non-zero.
    MalformedOutputError
        When the output is not a JSON object.
    """
    result = run_command(
        context,
        context.terraform_bin,
        "output",
        "-json",
        options=CommandContext(cwd=cwd),
    )
    try:
        raw = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        msg = f"terraform output returned invalid JSON (cwd={cwd}): {exc}"
        raise MalformedOutputError(msg) from exc
    return flatten_outputs(raw)


def required_output(outputs: cabc.Mapping[str, object], key: str) -> str:
    """Return a required string output or raise ``MalformedOutputError``."""
    value = outputs.get(key)
    if not isinstance(value, str) or not value:
        msg = f"terraform output {key!r} must be a non-empty string"
        raise MalformedOutputError(msg)
    return value
