"""Build the final kubeconfig and environment file for a cluster.

Both artefacts are pure functions of values the orchestrator already holds.
The kubeconfig authenticates through ``aws-iam-authenticator`` assuming the
cluster admin role, so it carries no long-lived credentials.
"""

from __future__ import annotations

from collections import abc as cabc
from typing import Any

import yaml

from clusterkit._cluster_errors import MalformedOutputError
from clusterkit._cluster_models import (
    DEFAULT_CLIENT_AUTH_API_VERSION,
    KOPS_FEATURE_FLAGS,
    ClusterIdentity,
)

AUTHENTICATOR_COMMAND = "aws-iam-authenticator"


def build_kubeconfig(
    cluster_name: str,
    role_arn: str,
    api_version: str = DEFAULT_CLIENT_AUTH_API_VERSION,
    *,
    server: str | None = None,
    certificate_authority_data: str | None = None,
) -> dict[str, Any]:
    """Return a kubeconfig using the authenticator exec plugin.

    Parameters
    ----------
    cluster_name
        Cluster name, also used as the authenticator cluster ID.
    role_arn
        IAM role assumed when requesting a token.
    api_version
        ``client.authentication.k8s.io`` version spoken by the plugin.
    server
        API server URL; defaults to ``https://api.<cluster_name>``.
    certificate_authority_data
        Base64 CA bundle, copied from the admin kubeconfig when known.

    Examples
    --------
    >>> config = build_kubeconfig("dev.example.com", "arn:aws:iam::1:role/admin")
    >>> config["users"][0]["user"]["exec"]["args"][-1]
    'arn:aws:iam::1:role/admin'
    """
    cluster: dict[str, Any] = {"server": server or f"https://api.{cluster_name}"}
    if certificate_authority_data:
        cluster["certificate-authority-data"] = certificate_authority_data
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "preferences": {},
        "current-context": cluster_name,
        "clusters": [{"name": cluster_name, "cluster": cluster}],
        "contexts": [
            {
                "name": cluster_name,
                "context": {"cluster": cluster_name, "user": cluster_name},
            }
        ],
        "users": [
            {
                "name": cluster_name,
                "user": {
                    "exec": {
                        "apiVersion": api_version,
                        "command": AUTHENTICATOR_COMMAND,
                        "args": ["token", "-i", cluster_name, "-r", role_arn],
                        "interactiveMode": "Never",
                    }
                },
            }
        ],
    }


def cluster_endpoint(admin_kubeconfig: str, cluster_name: str) -> tuple[str | None, str | None]:
    """Extract the server URL and CA bundle from an exported kubeconfig.

    Returns ``(None, None)`` when the document has no entry for the cluster.

    Raises
    ------
    MalformedOutputError
        When the document is not valid YAML.
    """
    try:
        document = yaml.safe_load(admin_kubeconfig) or {}
    except yaml.YAMLError as exc:
        msg = f"Exported kubeconfig is not valid YAML: {exc}"
        raise MalformedOutputError(msg) from exc
    if not isinstance(document, dict):
        return None, None
    for entry in document.get("clusters") or []:
        if not isinstance(entry, dict) or entry.get("name") != cluster_name:
            continue
        cluster = entry.get("cluster") or {}
        return cluster.get("server"), cluster.get("certificate-authority-data")
    return None, None


def render_kubeconfig(config: cabc.Mapping[str, Any]) -> str:
    """Serialize a kubeconfig mapping as YAML."""
    return yaml.safe_dump(dict(config), default_flow_style=False, sort_keys=False)


def build_environment_file(
    identity: ClusterIdentity,
    feature_flags: str = KOPS_FEATURE_FLAGS,
) -> str:
    """Return the ``.env`` file a later shell session sources.

    Examples
    --------
    >>> from pathlib import Path
    >>> identity = ClusterIdentity.from_name("dev.example.com", Path("/tmp/dev"))
    >>> print(build_environment_file(identity), end="")
    CLUSTER=dev.example.com
    KOPS_STATE_STORE=s3://dev-example-com-state/kops
    KOPS_FEATURE_FLAGS=+TerraformJSON,-TerraformManagedFiles
    KUBECONFIG=kubeconfig.yaml
    """
    variables = {
        "CLUSTER": identity.name,
        "KOPS_STATE_STORE": identity.state_store,
        "KOPS_FEATURE_FLAGS": feature_flags,
        "KUBECONFIG": identity.kubeconfig_path.name,
    }
    return "".join(f"{key}={value}\n" for key, value in variables.items())
