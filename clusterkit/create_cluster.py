#!/usr/bin/env -S uv run python
# /// script
# requires-python = ">=3.11"
# dependencies = ["cyclopts>=2.9", "plumbum", "boto3", "pyyaml"]
# ///
"""Create or update a kops-managed Kubernetes cluster on AWS.

This script:
- bootstraps the per-cluster state bucket with terraform;
- applies the cluster infrastructure and the kops-generated terraform;
- waits for the cluster to validate and applies in-cluster resources; and
- writes ``kubeconfig.yaml`` and ``.env`` to the cluster working directory.

Re-running the command is the recovery path for an interrupted run.
"""

from __future__ import annotations

import logging
import sys
from collections import abc as cabc
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any

from cyclopts import App, Parameter

from clusterkit._cluster_errors import ClusterKitError
from clusterkit._cluster_inputs import InputSet, resolve_input_set
from clusterkit._cluster_models import (
    DEFAULT_CLIENT_AUTH_API_VERSION,
    ClusterIdentity,
    ExecutionContext,
)
from clusterkit._create_cluster_flow import ProvisionOptions, create_cluster
from clusterkit._input_resolution import (
    ENV_AUTO_APPROVE,
    ENV_CLIENT_AUTH_API_VERSION,
    ENV_DEBUG,
    ENV_FAST,
    ENV_STATE_DIR,
    ENV_TERRAFORM_BIN,
    InputResolution,
    resolve_flag,
    resolve_input,
)
from clusterkit._remote_state import RemoteStateStore

app = App(
    name="clusterkit",
    help="Create or update a kops-managed Kubernetes cluster on AWS.",
)


@dataclass(frozen=True, slots=True)
class CreateInputs:
    """Resolved inputs for the create command."""

    identity: ClusterIdentity
    input_files: tuple[Path, ...]
    fast: bool
    auto_approve: bool
    client_auth_api_version: str
    terraform_bin: str
    debug: bool


@dataclass(frozen=True, slots=True)
class RawCreateInputs:
    """Raw create inputs from the CLI; ``None`` means not given."""

    name: str
    input_files: tuple[Path, ...] = ()
    fast: bool | None = None
    auto_approve: bool | None = None
    client_auth_api_version: str | None = None
    state_dir: Path | None = None
    terraform_bin: str | None = None
    debug: bool | None = None


def resolve_create_inputs(
    raw: RawCreateInputs,
    env: cabc.Mapping[str, str] | None = None,
) -> CreateInputs:
    """Resolve create inputs from CLI values, environment, and defaults."""
    state_dir = resolve_input(
        raw.state_dir,
        InputResolution(env_key=ENV_STATE_DIR, as_path=True),
        env,
    )
    api_version = resolve_input(
        raw.client_auth_api_version,
        InputResolution(
            env_key=ENV_CLIENT_AUTH_API_VERSION,
            default=DEFAULT_CLIENT_AUTH_API_VERSION,
        ),
        env,
    )
    terraform_bin = resolve_input(
        raw.terraform_bin,
        InputResolution(env_key=ENV_TERRAFORM_BIN, default="terraform"),
        env,
    )

    return CreateInputs(
        identity=ClusterIdentity.from_name(
            raw.name, Path(state_dir) if state_dir else None
        ),
        input_files=tuple(raw.input_files),
        fast=resolve_flag(raw.fast, ENV_FAST, env),
        auto_approve=resolve_flag(raw.auto_approve, ENV_AUTO_APPROVE, env),
        client_auth_api_version=str(api_version),
        terraform_bin=str(terraform_bin),
        debug=resolve_flag(raw.debug, ENV_DEBUG, env),
    )


def configure_logging(*, debug: bool) -> None:
    """Send log records to stderr at INFO, or DEBUG when debugging."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    # botocore is very chatty at DEBUG.
    logging.getLogger("botocore").setLevel(logging.INFO)


def build_s3_client(inputs: InputSet) -> Any:
    """Create an S3 client honouring the ``aws_profile``/``aws_region`` inputs."""
    import boto3

    values = inputs.values
    session = boto3.session.Session(
        profile_name=values.get("aws_profile") or None,
        region_name=values.get("aws_region") or None,
    )
    return session.client("s3")


@app.command(name="create")
def create(
    name: str,
    *,
    fast: bool | None = None,
    yes: bool | None = None,
    client_authentication_api_version: str | None = None,
    input_files: Annotated[list[Path] | None, Parameter(name="--input")] = None,
    state_dir: Path | None = None,
    terraform_bin: str | None = None,
    debug: bool | None = None,
) -> int:
    """Create a new cluster, or update an existing one.

    Parameters
    ----------
    name
        Cluster DNS name, for example ``k8s.example.com``.
    fast
        Apply updates as quickly as possible. This is not safe in production.
    yes
        Skip confirmation of infrastructure applies.
    client_authentication_api_version
        Version of the Kubernetes Client Authentication API to use when
        generating the kubeconfig file.
    input_files
        JSON or YAML input files; each becomes one terraform var file.
    state_dir
        Working directory for generated assets (default: temp dir/name).
    terraform_bin
        Infrastructure applier binary, such as ``terraform`` or ``tofu``.
    debug
        Verbose logging for clusterkit and kops.
    """
    try:
        resolved = resolve_create_inputs(
            RawCreateInputs(
                name=name,
                input_files=tuple(input_files or ()),
                fast=fast,
                auto_approve=yes,
                client_auth_api_version=client_authentication_api_version,
                state_dir=state_dir,
                terraform_bin=terraform_bin,
                debug=debug,
            )
        )
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    configure_logging(debug=resolved.debug)
    identity = resolved.identity

    try:
        inputs = resolve_input_set(resolved.input_files, identity.state_dir)
    except (TypeError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    context = ExecutionContext(
        identity=identity,
        debug=resolved.debug,
        terraform_bin=resolved.terraform_bin,
    )
    options = ProvisionOptions(
        fast=resolved.fast,
        auto_approve=resolved.auto_approve,
        client_auth_api_version=resolved.client_auth_api_version,
    )
    store = RemoteStateStore(identity.state_bucket, client=build_s3_client(inputs))

    try:
        create_cluster(context, inputs, options, store)
    except ClusterKitError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(app())
