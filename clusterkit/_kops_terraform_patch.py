"""Patch the terraform document emitted by ``kops update cluster``.

kops writes ``kubernetes.tf.json`` next to our own terraform configuration,
so both are applied as one root module. This module rewrites the kops
document so the two compose:

- the ``cluster_name`` output is dropped because our configuration defines it;
- ``provider`` and ``terraform`` blocks are dropped because provider and
  backend wiring belongs to our configuration;
- every launch configuration and launch template volume is encrypted, with
  the cluster's KMS key when one is available; and
- the ``type`` attribute under Route 53 alias blocks is dropped, since newer
  kops releases emit it and terraform rejects it.

Each rule is a pure function from document to document. Rules skip absent
collections and raise :class:`MalformedOutputError` on unexpected shapes.

Examples
--------
>>> patch_kops_terraform({"provider": {"aws": {}}, "resource": {}}, {})
{'resource': {}}
"""

from __future__ import annotations

import copy
import json
import logging
from collections import abc as cabc
from pathlib import Path
from typing import Any

from clusterkit._cluster_errors import MalformedOutputError

logger = logging.getLogger(__name__)

Document = dict[str, Any]

ENCRYPTION_KEY_OUTPUT = "encryption_key_arn"


def _expect_mapping(value: object, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        msg = f"kubernetes.tf.json: {where} must be an object, got {type(value).__name__}"
        raise MalformedOutputError(msg)
    return value


def _expect_list(value: object, where: str) -> list[Any]:
    if not isinstance(value, list):
        msg = f"kubernetes.tf.json: {where} must be an array, got {type(value).__name__}"
        raise MalformedOutputError(msg)
    return value


def _mapping_items(value: object, where: str) -> list[dict[str, Any]]:
    """Return ``value`` as a list of objects; terraform JSON allows both forms."""
    if isinstance(value, list):
        return [_expect_mapping(item, f"{where}[{index}]") for index, item in enumerate(value)]
    return [_expect_mapping(value, where)]


def _resources(doc: Document, resource_type: str) -> dict[str, Any] | None:
    if "resource" not in doc:
        return None
    resources = _expect_mapping(doc["resource"], "resource")
    if resources.get(resource_type) is None:
        return None
    return _expect_mapping(resources[resource_type], f"resource.{resource_type}")


def remove_duplicate_cluster_name_output(doc: Document) -> Document:
    """Drop the ``cluster_name`` output defined by our own configuration.

    Examples
    --------
    >>> remove_duplicate_cluster_name_output({"output": {"cluster_name": {}, "vpc_id": {}}})
    {'output': {'vpc_id': {}}}
    """
    doc = copy.deepcopy(doc)
    if doc.get("output") is not None:
        _expect_mapping(doc["output"], "output").pop("cluster_name", None)
    return doc


def remove_provider_block(doc: Document) -> Document:
    """Drop provider configuration."""
    doc = copy.deepcopy(doc)
    doc.pop("provider", None)
    return doc


def remove_terraform_block(doc: Document) -> Document:
    """Drop the ``terraform`` settings block (required providers, backend)."""
    doc = copy.deepcopy(doc)
    doc.pop("terraform", None)
    return doc


def _encrypt_volume(volume: dict[str, Any], key_arn: str | None) -> None:
    volume["encrypted"] = True
    if key_arn is not None:
        volume["kms_key_id"] = key_arn


def enforce_volume_encryption(doc: Document, key_arn: str | None) -> Document:
    """Encrypt root volumes of launch configurations and launch templates.

    Covers ``aws_launch_configuration`` (kops 1.19 and earlier) and
    ``aws_launch_template`` (kops 1.20 and later).

    Examples
    --------
    >>> doc = {"resource": {"aws_launch_configuration": {
    ...     "nodes": {"root_block_device": {"volume_size": 128}}}}}
    >>> patched = enforce_volume_encryption(doc, "arn:aws:kms:key")
    >>> patched["resource"]["aws_launch_configuration"]["nodes"]["root_block_device"]
    {'volume_size': 128, 'encrypted': True, 'kms_key_id': 'arn:aws:kms:key'}
    """
    doc = copy.deepcopy(doc)

    launch_configs = _resources(doc, "aws_launch_configuration")
    for name, config in (launch_configs or {}).items():
        where = f"aws_launch_configuration.{name}"
        config = _expect_mapping(config, where)
        if config.get("root_block_device") is None:
            continue
        for volume in _mapping_items(config["root_block_device"], f"{where}.root_block_device"):
            _encrypt_volume(volume, key_arn)

    launch_templates = _resources(doc, "aws_launch_template")
    for name, template in (launch_templates or {}).items():
        where = f"aws_launch_template.{name}"
        template = _expect_mapping(template, where)
        if template.get("block_device_mappings") is None:
            continue
        mappings = _expect_list(
            template["block_device_mappings"], f"{where}.block_device_mappings"
        )
        for index, mapping in enumerate(mappings):
            mapping_where = f"{where}.block_device_mappings[{index}]"
            mapping = _expect_mapping(mapping, mapping_where)
            if mapping.get("ebs") is None:
                continue
            for volume in _mapping_items(mapping["ebs"], f"{mapping_where}.ebs"):
                _encrypt_volume(volume, key_arn)

    return doc


def drop_route53_alias_type(doc: Document) -> Document:
    """Remove the ``type`` attribute nested under Route 53 alias blocks."""
    doc = copy.deepcopy(doc)
    records = _resources(doc, "aws_route53_record")
    for name, record in (records or {}).items():
        where = f"aws_route53_record.{name}"
        record = _expect_mapping(record, where)
        if record.get("alias") is None:
            continue
        for alias in _mapping_items(record["alias"], f"{where}.alias"):
            alias.pop("type", None)
    return doc


def encryption_key_from_outputs(outputs: cabc.Mapping[str, object]) -> str | None:
    """Return the KMS key ARN from flattened terraform outputs, if any."""
    value = outputs.get(ENCRYPTION_KEY_OUTPUT)
    if value is None:
        return None
    if not isinstance(value, str):
        msg = f"terraform output {ENCRYPTION_KEY_OUTPUT!r} must be a string"
        raise MalformedOutputError(msg)
    return value or None


def patch_kops_terraform(doc: Document, outputs: cabc.Mapping[str, object]) -> Document:
    """Apply every rule to ``doc``. Running it on its own output is a no-op."""
    _expect_mapping(doc, "document root")
    key_arn = encryption_key_from_outputs(outputs)
    doc = remove_duplicate_cluster_name_output(doc)
    doc = remove_provider_block(doc)
    doc = remove_terraform_block(doc)
    doc = enforce_volume_encryption(doc, key_arn)
    return drop_route53_alias_type(doc)


def render_document(doc: Document) -> str:
    """Serialize ``doc`` with stable key order and two-space indentation."""
    return json.dumps(doc, indent=2, sort_keys=True) + "\n"


def patch_kops_terraform_file(path: Path, outputs: cabc.Mapping[str, object]) -> Document:
    """Patch the kops terraform document at ``path`` in place.

    Parameters
    ----------
    path
        Path to ``kubernetes.tf.json``.
    outputs
        Flattened terraform outputs of the infrastructure apply.

    Returns
    -------
    Document
        The patched document, as written.

    Raises
    ------
    MalformedOutputError
        When the file is missing, is not JSON, or has unexpected shapes.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        msg = f"kops did not write {path}"
        raise MalformedOutputError(msg) from exc
    try:
        doc = json.loads(raw)
    except json.JSONDecodeError as exc:
        msg = f"Failed to parse {path}: {exc}"
        raise MalformedOutputError(msg) from exc

    patched = patch_kops_terraform(doc, outputs)
    rendered = render_document(patched)
    if rendered != raw:
        path.write_text(rendered, encoding="utf-8")
        logger.info("Patched generated terraform in %s", path)
    else:
        logger.debug("Generated terraform in %s already patched", path)
    return patched
