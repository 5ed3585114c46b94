"""Resolve clusterkit settings from the CLI, the environment, and defaults.

A value given on the command line always wins. Otherwise the matching
``CLUSTERKIT_*`` variable is consulted, and finally the setting's default.
"""

from __future__ import annotations

import os
from collections import abc as cabc
from dataclasses import dataclass
from pathlib import Path

ENV_STATE_DIR = "CLUSTERKIT_STATE_DIR"
ENV_TERRAFORM_BIN = "CLUSTERKIT_TERRAFORM_BIN"
ENV_FAST = "CLUSTERKIT_FAST"
ENV_AUTO_APPROVE = "CLUSTERKIT_AUTO_APPROVE"
ENV_DEBUG = "CLUSTERKIT_DEBUG"
ENV_CLIENT_AUTH_API_VERSION = "CLUSTERKIT_CLIENT_AUTH_API_VERSION"

_TRUTHY = frozenset({"true", "1", "yes", "on"})


@dataclass(frozen=True, slots=True)
class InputResolution:
    """Where a setting may come from when the CLI leaves it unset.

    Attributes
    ----------
    env_key
        Environment variable consulted after the CLI value.
    default
        Value used when neither source provides one.
    as_path
        Convert an environment value to :class:`~pathlib.Path`.
    """

    env_key: str
    default: str | Path | None = None
    as_path: bool = False


def resolve_input(
    param_value: str | Path | None,
    resolution: InputResolution,
    env: cabc.Mapping[str, str] | None = None,
) -> str | Path | None:
    """Resolve a setting from the CLI value, the environment, or the default.

    Examples
    --------
    >>> resolve_input(None, InputResolution(ENV_TERRAFORM_BIN, "terraform"), {})
    'terraform'
    >>> resolve_input(None, InputResolution(ENV_STATE_DIR, as_path=True),
    ...               {ENV_STATE_DIR: "/srv/dev"})
    PosixPath('/srv/dev')
    """
    if param_value is not None:
        return param_value

    env_value = (os.environ if env is None else env).get(resolution.env_key)
    if env_value:
        return Path(env_value) if resolution.as_path else env_value
    return resolution.default


def parse_bool(value: str | None, *, default: bool = False) -> bool:
    """Parse a boolean-like environment value.

    Examples
    --------
    >>> parse_bool("Yes")
    True
    >>> parse_bool(None)
    False
    """
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


def resolve_flag(
    value: bool | None,
    env_key: str,
    env: cabc.Mapping[str, str] | None = None,
) -> bool:
    """Resolve a boolean switch; unset everywhere means ``False``."""
    if value is not None:
        return value
    raw = (os.environ if env is None else env).get(env_key)
    return parse_bool(raw)
