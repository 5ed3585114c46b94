"""Data models for clusterkit orchestration.

These models provide a small, typed contract shared by the command wrappers,
the pollers, and the orchestrator, keeping data flow explicit across module
boundaries instead of routing it through ``os.environ``.

Examples
--------
>>> identity = ClusterIdentity.from_name("k8s.example.com")
>>> identity.state_bucket
'k8s-example-com-state'
"""

from __future__ import annotations

import enum
import logging
import os
import re
import tempfile
from collections import abc as cabc
from dataclasses import dataclass, field, replace
from pathlib import Path

from clusterkit._cluster_errors import ProvisionError

logger = logging.getLogger(__name__)

KOPS_FEATURE_FLAGS = "+TerraformJSON,-TerraformManagedFiles"
DEFAULT_CLIENT_AUTH_API_VERSION = "client.authentication.k8s.io/v1beta1"

_CLUSTER_NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9.-]*[a-z0-9])?$")
_BUCKET_DISALLOWED = re.compile(r"[^a-z0-9-]")


def validate_cluster_name(name: str) -> str:
    """Validate and normalize a cluster name.

    Parameters
    ----------
    name
        Cluster name to validate. kops cluster names are DNS names, so dots
        are allowed in addition to lowercase letters, digits, and hyphens.

    Returns
    -------
    str
        Normalized cluster name.

    Raises
    ------
    ValueError
        If the name is invalid.

    Examples
    --------
    >>> validate_cluster_name(" K8s.Example.com ")
    'k8s.example.com'
    """
    name = name.strip().lower()
    if not name:
        msg = "cluster_name must not be blank"
        raise ValueError(msg)
    if not _CLUSTER_NAME_PATTERN.match(name) or ".." in name:
        msg = (
            "cluster_name must contain only lowercase letters, numbers, "
            "hyphens, and dots"
        )
        raise ValueError(msg)
    return name


def state_bucket_name(name: str) -> str:
    """Derive the remote state bucket name for a cluster.

    Examples
    --------
    >>> state_bucket_name("k8s.example.com")
    'k8s-example-com-state'
    """
    return _BUCKET_DISALLOWED.sub("-", name.lower()) + "-state"


@dataclass(frozen=True, slots=True)
class ClusterIdentity:
    """Stable identity of one cluster across re-runs.

    Attributes
    ----------
    name
        Validated cluster DNS name.
    state_bucket
        Remote state bucket derived from ``name``.
    state_dir
        Local working directory holding generated assets.
    """

    name: str
    state_bucket: str
    state_dir: Path

    @classmethod
    def from_name(cls, name: str, state_dir: Path | None = None) -> ClusterIdentity:
        """Build an identity, defaulting the working directory to the temp dir."""
        normalized = validate_cluster_name(name)
        directory = state_dir or Path(tempfile.gettempdir()) / normalized
        return cls(
            name=normalized,
            state_bucket=state_bucket_name(normalized),
            state_dir=directory,
        )

    @property
    def state_store(self) -> str:
        """Return the kops state store URI."""
        return f"s3://{self.state_bucket}/kops"

    @property
    def admin_kubeconfig_path(self) -> Path:
        return self.state_dir / ".kubeconfig.admin.yaml"

    @property
    def kubeconfig_path(self) -> Path:
        return self.state_dir / "kubeconfig.yaml"

    @property
    def env_file_path(self) -> Path:
        return self.state_dir / ".env"


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Context passed to every collaborator invocation.

    Attributes
    ----------
    identity
        Cluster identity the run operates on.
    input_env
        Environment variables derived from the resolved input set.
    feature_flags
        kops feature flag string.
    kubeconfig
        Active kubeconfig path, or ``None`` before credentials exist.
    debug
        Whether collaborators should run with verbose logging.
    terraform_bin
        Name of the infrastructure applier binary.
    base_env
        Snapshot of the parent environment taken when the context was built.

    Examples
    --------
    >>> identity = ClusterIdentity.from_name("dev.example.com", Path("/tmp/dev"))
    >>> ctx = ExecutionContext(identity=identity, base_env={})
    >>> ctx.process_env()["KOPS_STATE_STORE"]
    's3://dev-example-com-state/kops'
    """

    identity: ClusterIdentity
    input_env: cabc.Mapping[str, str] = field(default_factory=dict)
    feature_flags: str = KOPS_FEATURE_FLAGS
    kubeconfig: Path | None = None
    debug: bool = False
    terraform_bin: str = "terraform"
    base_env: cabc.Mapping[str, str] = field(
        default_factory=lambda: dict(os.environ), repr=False
    )

    def process_env(self) -> dict[str, str]:
        """Return the environment for an external process."""
        env = {**self.base_env, **self.input_env}
        env["CLUSTER"] = self.identity.name
        env["KOPS_STATE_STORE"] = self.identity.state_store
        env["KOPS_FEATURE_FLAGS"] = self.feature_flags
        if self.kubeconfig is not None:
            env["KUBECONFIG"] = str(self.kubeconfig)
        return env

    def with_kubeconfig(self, path: Path) -> ExecutionContext:
        """Return a copy of the context pointing at ``path``."""
        logger.debug("Switching active kubeconfig to %s", path)
        return replace(self, kubeconfig=path)

    def verbosity_args(self) -> list[str]:
        """Return the kops verbosity flag when debugging."""
        return ["-v7"] if self.debug else []


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Result of an external command execution.

    Attributes
    ----------
    success
        Whether the command exited with status code ``0``.
    stdout
        Captured standard output (empty when streamed).
    stderr
        Captured standard error (empty when streamed).
    return_code
        Process exit status code.

    Examples
    --------
    >>> CommandResult(success=True, stdout="ok", stderr="", return_code=0).success
    True
    """

    success: bool
    stdout: str
    stderr: str
    return_code: int


@dataclass(frozen=True, slots=True)
class ProbeSucceeded:
    """Outcome of a probe whose command exited cleanly."""

    stdout: str = ""


@dataclass(frozen=True, slots=True)
class ProbeFailed:
    """Outcome of a probe whose command failed; an expected branch."""

    reason: str


Probe = ProbeSucceeded | ProbeFailed


@dataclass(frozen=True, slots=True)
class ClusterExistence:
    """The existence flag, determined once per run."""

    is_new_cluster: bool

    @classmethod
    def from_probe(cls, probe: Probe) -> ClusterExistence:
        """Treat a failed ``kops get cluster`` as a new cluster.

        Examples
        --------
        >>> ClusterExistence.from_probe(ProbeFailed("not found")).is_new_cluster
        True
        """
        return cls(is_new_cluster=isinstance(probe, ProbeFailed))


class RunPhase(enum.Enum):
    """Where the orchestrator is within a run."""

    BOOTSTRAPPING_STATE = 1
    APPLYING_INFRA = 2
    DETERMINING_CLUSTER_EXISTENCE = 3
    GENERATING_CLUSTER_SPEC = 4
    FINALIZING_INFRA = 5
    AWAITING_CONVERGENCE = 6
    APPLYING_CLUSTER_RESOURCES = 7
    AWAITING_AUTH_READINESS = 8
    COMPLETE = 9


@dataclass(slots=True)
class PhaseTracker:
    """Record phase transitions, allowing forward moves only.

    Examples
    --------
    >>> tracker = PhaseTracker()
    >>> tracker.advance(RunPhase.BOOTSTRAPPING_STATE)
    >>> tracker.advance(RunPhase.APPLYING_INFRA)
    >>> tracker.current
    <RunPhase.APPLYING_INFRA: 2>
    """

    history: list[RunPhase] = field(default_factory=list)

    @property
    def current(self) -> RunPhase | None:
        return self.history[-1] if self.history else None

    def advance(self, phase: RunPhase) -> None:
        """Move to ``phase``; raise when it is not strictly later."""
        current = self.current
        if current is not None and phase.value <= current.value:
            msg = f"Cannot move from {current.name} back to {phase.name}"
            raise ProvisionError(msg)
        logger.debug("Entering phase %s", phase.name)
        self.history.append(phase)
