"""Resolve and stage the input set fed to every terraform apply.

An input set is a collection of named groups. Each group becomes one
``tf_vars/<id>.tfvars.json`` file, and every apply receives one
``-var-file`` flag per group. Groups come from ``--input`` files, or from the
var files a previous run left in the working directory.
"""

from __future__ import annotations

import json
import logging
import re
from collections import abc as cabc
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from clusterkit._assets import AssetStore

logger = logging.getLogger(__name__)

TF_VARS_DIR = "tf_vars"
_VAR_FILE_SUFFIX = ".tfvars.json"
_INPUT_SUFFIXES = (".tfvars.json", ".json", ".yaml", ".yml")
_INPUT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass(frozen=True, slots=True)
class InputSet:
    """Resolved inputs, grouped by input id.

    Examples
    --------
    >>> inputs = InputSet(groups={"aws": {"aws_region": "eu-west-1"}})
    >>> inputs.ids
    ('aws',)
    >>> inputs.values["aws_region"]
    'eu-west-1'
    """

    groups: cabc.Mapping[str, cabc.Mapping[str, Any]] = field(default_factory=dict)

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(self.groups)

    @property
    def values(self) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for group in self.groups.values():
            merged.update(group)
        return merged


def input_id_for(path: Path) -> str:
    """Derive an input id from a file name.

    Examples
    --------
    >>> input_id_for(Path("inputs/aws.tfvars.json"))
    'aws'
    """
    name = path.name
    for suffix in _INPUT_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    if not name or not _INPUT_ID_PATTERN.match(name):
        msg = f"Cannot derive an input id from {path}"
        raise ValueError(msg)
    return name


def load_input_file(path: Path) -> dict[str, Any]:
    """Load one JSON or YAML input file as a mapping."""
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        msg = f"Failed to read input file {path}: {exc}"
        raise ValueError(msg) from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        msg = f"Input file {path} must contain a mapping"
        raise TypeError(msg)
    return payload


def resolve_input_set(input_files: cabc.Sequence[Path], state_dir: Path) -> InputSet:
    """Gather the input set for this run.

    Parameters
    ----------
    input_files
        Files passed with ``--input``; later files win on duplicate ids.
    state_dir
        Working directory searched for a prior run's var files when no
        input files are given.

    Returns
    -------
    InputSet
        The resolved, immutable input set.
    """
    groups: dict[str, dict[str, Any]] = {}
    if input_files:
        for path in input_files:
            groups[input_id_for(path)] = load_input_file(path)
        return InputSet(groups=groups)

    prior_dir = state_dir / TF_VARS_DIR
    for path in sorted(prior_dir.glob(f"*{_VAR_FILE_SUFFIX}")):
        groups[input_id_for(path)] = load_input_file(path)
    if groups:
        logger.info("Reusing inputs from %s: %s", prior_dir, ", ".join(groups))
    return InputSet(groups=groups)


def process_inputs(inputs: InputSet, assets: AssetStore) -> tuple[str, ...]:
    """Stage one var file per input group and return the input ids."""
    for input_id, group in inputs.groups.items():
        assets.stage(
            f"{TF_VARS_DIR}/{input_id}{_VAR_FILE_SUFFIX}",
            json.dumps(dict(group), indent=2, sort_keys=True) + "\n",
        )
    return inputs.ids


def var_files(state_dir: Path, input_ids: cabc.Iterable[str]) -> list[Path]:
    """Return absolute var-file paths for ``input_ids``."""
    return [state_dir / TF_VARS_DIR / f"{input_id}{_VAR_FILE_SUFFIX}" for input_id in input_ids]


def aws_environment(inputs: InputSet) -> dict[str, str]:
    """Map AWS-related inputs onto the variables the AWS tooling reads.

    Examples
    --------
    >>> aws_environment(InputSet(groups={"aws": {"aws_region": "eu-west-1"}}))
    {'AWS_SDK_LOAD_CONFIG': '1', 'AWS_REGION': 'eu-west-1', 'AWS_DEFAULT_REGION': 'eu-west-1'}
    """
    values = inputs.values
    env = {"AWS_SDK_LOAD_CONFIG": "1"}
    if region := values.get("aws_region"):
        env["AWS_REGION"] = str(region)
        env["AWS_DEFAULT_REGION"] = str(region)
    if profile := values.get("aws_profile"):
        env["AWS_PROFILE"] = str(profile)
    return env
