"""Unit tests for the kubeconfig and environment file builders."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from clusterkit._cluster_errors import MalformedOutputError
from clusterkit._cluster_models import ClusterIdentity
from clusterkit._kubeconfig import (
    build_environment_file,
    build_kubeconfig,
    cluster_endpoint,
    render_kubeconfig,
)

ROLE_ARN = "arn:aws:iam::111122223333:role/dev-example-com-cluster-admin"


def test_kubeconfig_uses_authenticator_exec_plugin() -> None:
    config = build_kubeconfig(
        "dev.example.com", ROLE_ARN, "client.authentication.k8s.io/v1"
    )

    exec_config = config["users"][0]["user"]["exec"]
    assert exec_config["apiVersion"] == "client.authentication.k8s.io/v1"
    assert exec_config["command"] == "aws-iam-authenticator"
    assert exec_config["args"] == ["token", "-i", "dev.example.com", "-r", ROLE_ARN]
    assert exec_config["interactiveMode"] == "Never"
    assert config["current-context"] == "dev.example.com"
    assert config["clusters"][0]["cluster"] == {"server": "https://api.dev.example.com"}


def test_kubeconfig_copies_server_and_ca() -> None:
    config = build_kubeconfig(
        "dev.example.com",
        ROLE_ARN,
        server="https://api-dev.elb.amazonaws.com",
        certificate_authority_data="Q0E=",
    )
    cluster = config["clusters"][0]["cluster"]
    assert cluster["server"] == "https://api-dev.elb.amazonaws.com"
    assert cluster["certificate-authority-data"] == "Q0E="
    assert config["users"][0]["user"]["exec"]["apiVersion"] == (
        "client.authentication.k8s.io/v1beta1"
    )


def test_render_kubeconfig_round_trips_through_yaml() -> None:
    config = build_kubeconfig("dev.example.com", ROLE_ARN)
    assert yaml.safe_load(render_kubeconfig(config)) == config


def test_cluster_endpoint_reads_exported_kubeconfig() -> None:
    exported = yaml.safe_dump(
        {
            "clusters": [
                {"name": "other", "cluster": {"server": "https://other"}},
                {
                    "name": "dev.example.com",
                    "cluster": {
                        "server": "https://api.dev.example.com",
                        "certificate-authority-data": "Q0E=",
                    },
                },
            ]
        }
    )
    assert cluster_endpoint(exported, "dev.example.com") == (
        "https://api.dev.example.com",
        "Q0E=",
    )
    assert cluster_endpoint(exported, "missing") == (None, None)


def test_cluster_endpoint_rejects_invalid_yaml() -> None:
    with pytest.raises(MalformedOutputError, match="not valid YAML"):
        cluster_endpoint("clusters: [", "dev.example.com")


def test_environment_file_lists_session_variables(tmp_path: Path) -> None:
    identity = ClusterIdentity.from_name("dev.example.com", tmp_path)
    content = build_environment_file(identity)
    assert content.splitlines() == [
        "CLUSTER=dev.example.com",
        "KOPS_STATE_STORE=s3://dev-example-com-state/kops",
        "KOPS_FEATURE_FLAGS=+TerraformJSON,-TerraformManagedFiles",
        "KUBECONFIG=kubeconfig.yaml",
    ]
