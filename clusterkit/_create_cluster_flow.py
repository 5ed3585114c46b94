"""Create or update a kops cluster whose infrastructure terraform owns.

This module sequences one provisioning run:

1. bootstrap the state bucket from ``tf_state/``;
2. apply the infrastructure in ``tf/`` and capture its outputs;
3. probe kops for an existing cluster record (the existence flag);
4. render the cluster spec from ``kops/`` and force-replace it;
5. have kops emit ``tf/kubernetes.tf.json``, patch it, and apply again;
6. wait for the control plane (new) or roll the nodes (existing), then wait
   for validation;
7. apply the manifests in ``k8s/`` and write ``kubeconfig.yaml`` and ``.env``;
8. wait until the written kubeconfig authenticates.

Every step is safe to repeat, so an interrupted run is recovered by running
it again from the start.

Prerequisites
-------------
``terraform`` (or ``tofu``), ``kops``, ``kubectl``, and
``aws-iam-authenticator`` on the PATH, with AWS credentials available to
both the binaries and boto3.

Usage::

    identity = ClusterIdentity.from_name("dev.example.com")
    context = ExecutionContext(identity=identity)
    store = RemoteStateStore(identity.state_bucket)
    create_cluster(context, InputSet(), ProvisionOptions(auto_approve=True), store)
"""

from __future__ import annotations

import json
import logging
import time
from collections import abc as cabc
from dataclasses import dataclass, field, replace
from pathlib import Path

from clusterkit._assets import AssetStore
from clusterkit._cluster_errors import AssetError
from clusterkit._cluster_inputs import (
    InputSet,
    aws_environment,
    process_inputs,
    resolve_input_set,
    var_files,
)
from clusterkit._cluster_models import (
    DEFAULT_CLIENT_AUTH_API_VERSION,
    ClusterExistence,
    ExecutionContext,
    PhaseTracker,
    RunPhase,
)
from clusterkit._convergence import (
    POLL_INTERVAL_SECONDS,
    wait_for_authentication,
    wait_for_validation,
)
from clusterkit._kops import (
    kops_export_admin_kubeconfig,
    kops_get_cluster,
    kops_replace,
    kops_rolling_update,
    kops_toolbox_template,
    kops_update_cluster,
)
from clusterkit._kops_terraform_patch import patch_kops_terraform_file
from clusterkit._kubeconfig import (
    build_environment_file,
    build_kubeconfig,
    cluster_endpoint,
    render_kubeconfig,
)
from clusterkit._kubectl import kubectl_apply
from clusterkit._remote_state import RemoteStateScope, RemoteStateStore, remote_state
from clusterkit._terraform import (
    required_output,
    terraform_apply,
    terraform_init,
    terraform_output,
)

logger = logging.getLogger(__name__)

CONTROL_PLANE_GRACE_SECONDS = 180.0
ADMIN_ROLE_OUTPUT = "aws_iam_cluster_admin_role_arn"
CLUSTER_SPEC_ASSET = "cluster.yaml"
OUTPUT_ASSET = "tf/output.json"
KOPS_TERRAFORM_FILE = "kubernetes.tf.json"


@dataclass(frozen=True, slots=True)
class ProvisionOptions:
    """Behaviour switches for one run.

    Attributes
    ----------
    fast
        Skip draining and validation during rolling updates.
    auto_approve
        Skip the confirmation prompt of infrastructure applies.
    client_auth_api_version
        Exec plugin API version written to the kubeconfig.
    grace_period
        Seconds to wait for a new control plane before validating.
    poll_interval
        Seconds between validation and authentication attempts.
    """

    fast: bool = False
    auto_approve: bool = False
    client_auth_api_version: str = DEFAULT_CLIENT_AUTH_API_VERSION
    grace_period: float = CONTROL_PLANE_GRACE_SECONDS
    poll_interval: float = POLL_INTERVAL_SECONDS


@dataclass(frozen=True, slots=True)
class ProvisionResult:
    """Outcome of a completed run."""

    is_new_cluster: bool
    kubeconfig_path: Path
    env_file_path: Path
    phases: tuple[RunPhase, ...]


@dataclass(slots=True)
class _Run:
    """Mutable state of one run; the existence flag is set exactly once."""

    context: ExecutionContext
    options: ProvisionOptions
    assets: AssetStore
    tracker: PhaseTracker
    sleep: cabc.Callable[[float], object]
    inputs: InputSet = field(default_factory=InputSet)
    var_files: list[Path] = field(default_factory=list)
    backend_region: str | None = None
    existence: ClusterExistence | None = None

    @property
    def state_dir(self) -> Path:
        return self.context.identity.state_dir

    @property
    def tf_dir(self) -> Path:
        return self.state_dir / "tf"

    @property
    def is_new_cluster(self) -> bool:
        if self.existence is None:
            msg = "Cluster existence has not been determined yet"
            raise RuntimeError(msg)
        return self.existence.is_new_cluster


def _adopt_inputs(run: _Run, inputs: InputSet) -> None:
    """Stage ``inputs`` and derive the var files and AWS environment from them."""
    input_ids = process_inputs(inputs, run.assets)
    run.inputs = inputs
    run.var_files = var_files(run.state_dir, input_ids)
    run.context = replace(
        run.context, input_env={**run.context.input_env, **aws_environment(inputs)}
    )
    region = inputs.values.get("aws_region")
    run.backend_region = str(region) if region else None


def _restore_inputs(run: _Run) -> None:
    """Pick up var files the scope pulled when the run started without inputs."""
    if run.inputs.groups:
        return
    restored = resolve_input_set((), run.state_dir)
    if restored.groups:
        _adopt_inputs(run, restored)


def _bootstrap_state(run: _Run, store: RemoteStateStore) -> None:
    """Create the state bucket itself from ``tf_state/``."""
    run.tracker.advance(RunPhase.BOOTSTRAPPING_STATE)
    tf_state_dir = run.state_dir / "tf_state"
    run.assets.flush("tf_vars/*", "tf_state/*")
    with remote_state(store, run.state_dir):
        _restore_inputs(run)
        run.assets.flush("tf_vars/*", "tf_state/*")
        terraform_init(run.context, tf_state_dir)
        terraform_apply(run.context, tf_state_dir, run.var_files, auto_approve=True)


def _capture_outputs(run: _Run, scope: RemoteStateScope) -> dict[str, object]:
    """Read terraform outputs and persist them as ``tf/output.json``."""
    outputs = terraform_output(run.context, run.tf_dir)
    run.assets.stage(
        OUTPUT_ASSET,
        json.dumps(outputs, indent=2, sort_keys=True) + "\n",
        remote=True,
    )
    run.assets.flush(OUTPUT_ASSET, remote=scope)
    return outputs


def _apply_infrastructure(run: _Run, scope: RemoteStateScope) -> dict[str, object]:
    run.tracker.advance(RunPhase.APPLYING_INFRA)
    run.assets.flush(remote=scope)
    backend_config = {
        "bucket": run.context.identity.state_bucket,
        "key": "terraform.tfstate",
    }
    if run.backend_region:
        backend_config["region"] = run.backend_region
    terraform_init(run.context, run.tf_dir, backend_config)
    terraform_apply(
        run.context, run.tf_dir, run.var_files, auto_approve=run.options.auto_approve
    )
    return _capture_outputs(run, scope)


def _determine_existence(run: _Run) -> None:
    run.tracker.advance(RunPhase.DETERMINING_CLUSTER_EXISTENCE)
    run.existence = ClusterExistence.from_probe(kops_get_cluster(run.context))
    if run.is_new_cluster:
        logger.info('Cluster "%s" does not exist yet; creating it', run.context.identity.name)
    else:
        logger.info('Cluster "%s" exists; updating it', run.context.identity.name)


def _export_admin_kubeconfig(run: _Run) -> None:
    """Export temporary admin credentials and make them active."""
    path = run.context.identity.admin_kubeconfig_path
    kops_export_admin_kubeconfig(run.context, path)
    run.context = run.context.with_kubeconfig(path)


def _templates(directory: Path, pattern: str) -> list[Path]:
    templates = sorted(path for path in directory.glob(pattern) if path.is_file())
    if not templates:
        msg = f"No templates matching {pattern!r} in {directory}"
        raise AssetError(msg)
    return templates


def _replace_cluster_spec(run: _Run) -> None:
    run.tracker.advance(RunPhase.GENERATING_CLUSTER_SPEC)
    if not run.is_new_cluster:
        _export_admin_kubeconfig(run)
    rendered = kops_toolbox_template(
        run.context,
        run.tf_dir,
        _templates(run.state_dir / "kops", "*"),
        run.tf_dir / "output.json",
        set_cluster_name=True,
    )
    run.assets.stage(CLUSTER_SPEC_ASSET, rendered)
    run.assets.flush(CLUSTER_SPEC_ASSET)
    kops_replace(run.context, run.state_dir / CLUSTER_SPEC_ASSET)


def _finalize_infrastructure(
    run: _Run, scope: RemoteStateScope, outputs: dict[str, object]
) -> dict[str, object]:
    run.tracker.advance(RunPhase.FINALIZING_INFRA)
    identity = run.context.identity
    if run.is_new_cluster:
        run.context = run.context.with_kubeconfig(identity.kubeconfig_path)
    kops_update_cluster(run.context, run.tf_dir, create_kube_config=run.is_new_cluster)
    if run.is_new_cluster:
        _export_admin_kubeconfig(run)

    patch_kops_terraform_file(run.tf_dir / KOPS_TERRAFORM_FILE, outputs)
    # Only local documents changed, so the real-world state needs no refresh.
    terraform_apply(
        run.context,
        run.tf_dir,
        run.var_files,
        auto_approve=run.options.auto_approve,
        refresh=False,
    )
    return _capture_outputs(run, scope)


def _await_convergence(run: _Run) -> None:
    run.tracker.advance(RunPhase.AWAITING_CONVERGENCE)
    if run.is_new_cluster:
        logger.info(
            "Waiting %ss for the cluster to come online", int(run.options.grace_period)
        )
        run.sleep(run.options.grace_period)
    else:
        kops_rolling_update(run.context, fast=run.options.fast)
    wait_for_validation(
        run.context, interval=run.options.poll_interval, sleep=run.sleep
    )


def _apply_cluster_resources(
    run: _Run, scope: RemoteStateScope, outputs: dict[str, object]
) -> None:
    run.tracker.advance(RunPhase.APPLYING_CLUSTER_RESOURCES)
    manifest = kops_toolbox_template(
        run.context,
        run.tf_dir,
        _templates(run.state_dir / "k8s", "*.yaml"),
        run.tf_dir / "output.json",
    )
    kubectl_apply(run.context, manifest)
    _write_access_artifacts(run, scope, outputs)


def _write_access_artifacts(
    run: _Run, scope: RemoteStateScope, outputs: dict[str, object]
) -> None:
    """Write the authenticator kubeconfig and the ``.env`` file."""
    identity = run.context.identity
    role_arn = required_output(outputs, ADMIN_ROLE_OUTPUT)

    server = certificate_authority = None
    if identity.admin_kubeconfig_path.is_file():
        server, certificate_authority = cluster_endpoint(
            identity.admin_kubeconfig_path.read_text(encoding="utf-8"), identity.name
        )

    kubeconfig = build_kubeconfig(
        identity.name,
        role_arn,
        run.options.client_auth_api_version,
        server=server,
        certificate_authority_data=certificate_authority,
    )
    # kops wrote its own kubeconfig here for new clusters; ours replaces it.
    run.assets.stage(identity.kubeconfig_path.name, render_kubeconfig(kubeconfig), remote=True)
    run.assets.flush(identity.kubeconfig_path.name, remote=scope)

    run.assets.stage(
        identity.env_file_path.name,
        build_environment_file(identity, run.context.feature_flags),
        remote=True,
    )
    run.assets.flush(identity.env_file_path.name, remote=scope)
    run.context = run.context.with_kubeconfig(identity.kubeconfig_path)


def create_cluster(
    context: ExecutionContext,
    inputs: InputSet,
    options: ProvisionOptions,
    store: RemoteStateStore,
    *,
    assets: AssetStore | None = None,
    sleep: cabc.Callable[[float], object] = time.sleep,
) -> ProvisionResult:
    """Bring the cluster in ``context`` to a ready state.

    Parameters
    ----------
    context
        Execution context carrying the cluster identity.
    inputs
        Resolved input set; one var file per group.
    options
        Behaviour switches for the run.
    store
        Remote state bucket access.
    assets
        Asset store; defaults to one rooted at the working directory that
        holds the bundled templates.
    sleep
        Sleep function used by the grace period and the pollers.

    Returns
    -------
    ProvisionResult
        Existence flag, artefact paths, and the phases traversed.

    Raises
    ------
    ClusterKitError
        On the first failing command or malformed collaborator output.
    """
    identity = context.identity
    identity.state_dir.mkdir(parents=True, exist_ok=True)
    if assets is None:
        assets = AssetStore(identity.state_dir)
        assets.stage_tree()

    logger.info('Applying changes to cluster "%s"', identity.name)
    run = _Run(
        context=context,
        options=options,
        assets=assets,
        tracker=PhaseTracker(),
        sleep=sleep,
    )
    _adopt_inputs(run, inputs)

    _bootstrap_state(run, store)

    logger.info('Writing output to "s3://%s"', identity.state_bucket)
    with remote_state(store, identity.state_dir) as scope:
        outputs = _apply_infrastructure(run, scope)
        _determine_existence(run)
        _replace_cluster_spec(run)
        outputs = _finalize_infrastructure(run, scope, outputs)
        _await_convergence(run)
        _apply_cluster_resources(run, scope, outputs)

    run.tracker.advance(RunPhase.AWAITING_AUTH_READINESS)
    wait_for_authentication(
        run.context, interval=options.poll_interval, sleep=sleep
    )
    run.tracker.advance(RunPhase.COMPLETE)

    logger.info("☕️ Your cluster is ready!")
    logger.info('Output written to "%s"', identity.state_dir)
    return ProvisionResult(
        is_new_cluster=run.is_new_cluster,
        kubeconfig_path=identity.kubeconfig_path,
        env_file_path=identity.env_file_path,
        phases=tuple(run.tracker.history),
    )
