"""Exception hierarchy for clusterkit provisioning helpers.

These exceptions provide a domain-specific error surface for the orchestration
helpers so the CLI can catch a single base error and report it.

Examples
--------
>>> raise CommandError("kops update cluster failed: exit status 1")
Traceback (most recent call last):
    ...
clusterkit._cluster_errors.CommandError: kops update cluster failed: exit status 1
"""

from __future__ import annotations


class ClusterKitError(Exception):
    """Base error for clusterkit orchestration helpers.

    Parameters
    ----------
    message
        Human-readable error message describing the failure.

    Examples
    --------
    >>> raise ClusterKitError("unexpected provisioning failure")
    Traceback (most recent call last):
        ...
    clusterkit._cluster_errors.ClusterKitError: unexpected provisioning failure
    """


class CommandError(ClusterKitError):
    """Raised when an external command exits with a non-zero status.

    Parameters
    ----------
    message
        Human-readable error message including the command's stderr.

    Examples
    --------
    >>> raise CommandError("terraform apply failed: exit status 1")
    Traceback (most recent call last):
        ...
    clusterkit._cluster_errors.CommandError: terraform apply failed: exit status 1
    """


class MalformedOutputError(ClusterKitError):
    """Raised when a collaborator emits JSON that cannot be used.

    Examples
    --------
    >>> raise MalformedOutputError("kubernetes.tf.json: 'resource' must be an object")
    Traceback (most recent call last):
        ...
    clusterkit._cluster_errors.MalformedOutputError: kubernetes.tf.json: 'resource' must be an object
    """


class AssetError(ClusterKitError):
    """Raised when an asset cannot be staged or flushed."""


class RemoteStateError(ClusterKitError):
    """Raised when the remote state bucket cannot be read or written."""


class StateLockedError(RemoteStateError):
    """Raised when another invocation holds the remote state lock."""


class ProvisionError(ClusterKitError):
    """Raised when the provisioning workflow is driven out of order."""
