# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/infraboot/config/loader.py

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import ValidationError

from infraboot.errors import ConfigError
from .models import BootstrapConfig

log = logging.getLogger("infraboot")

# env var -> dotted config key
ENV_OVERRIDES = {
    "ENVIRONMENT": "environment",
    "GITHUB_ORG": "git.org",
    "GIT_REF": "git.ref",
    "DEPLOYMENTS_REF": "git.deployments_ref",
    "FLUX_VERSION": "flux.version",
    "NODE_COUNT": "cluster.nodes",
    "RESOURCE_TIER": "cluster.tier",
    "BOOTSTRAP_STATE_DIR": "terraform.state_dir",
}


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _set_dotted(data: dict, dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    node = data
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = value


def _find_secrets_file(config_path: Optional[Path]) -> Path | None:
    """
    Locate secrets.yaml using this priority:

    1. INFRABOOT_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the bootstrap config
    """
    env = os.environ.get("INFRABOOT_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("INFRABOOT_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    if config_path is not None:
        p = config_path.parent / "secrets.yaml"
        if p.is_file():
            return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    try:
        data = yaml.safe_load(expanded) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top-level YAML must be a mapping")
    return data


def _env_overrides(environ: Mapping[str, str]) -> dict:
    data: dict = {}
    for var, key in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            _set_dotted(data, key, value)
    return data


def load_config(
    path: str | Path | None = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BootstrapConfig:
    """
    Build the bootstrap configuration.

    Layers, lowest priority first:
      1. model defaults
      2. YAML config file (``${ENV_VAR}`` placeholders expanded)
      3. ``secrets.yaml`` deep-merged on top (``INFRABOOT_SECRETS_FILE`` or
         next to the config file)
      4. well-known environment variables (``GITHUB_ORG``, ``FLUX_VERSION``,
         ``RESOURCE_TIER``, ...)
      5. ``overrides`` as dotted keys, typically CLI flags; ``None`` values
         are ignored

    Credentials are deliberately not part of the model.
    """
    environ = os.environ if environ is None else environ
    config_path = Path(path) if path else None

    data: dict = {}
    if config_path is not None:
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
        data = _load_yaml(config_path)

    secrets_path = _find_secrets_file(config_path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _deep_merge(data, _load_yaml(secrets_path))

    _deep_merge(data, _env_overrides(environ))

    cli: dict = {}
    for key, value in (overrides or {}).items():
        if value is not None:
            _set_dotted(cli, key, value)
    _deep_merge(data, cli)

    try:
        return BootstrapConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid bootstrap configuration:\n{exc}") from exc
