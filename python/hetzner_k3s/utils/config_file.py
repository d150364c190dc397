"""
hetzner_k3s/utils/config_file.py

Reading and updating the cluster YAML file.

The API token comes from `HCLOUD_TOKEN` (via HetznerSettings) when set, and
from `hetzner_token` in the file otherwise.
"""

from __future__ import annotations

import os
from typing import Any, Dict

import aiofiles
import yaml
from pydantic import ValidationError

from hetzner_k3s.models.config import ClusterConfig, HetznerSettings
from hetzner_k3s.models.validator import validate_type


class ConfigFileError(ValueError):
    """The configuration file is missing, unreadable or invalid."""


async def _read_yaml(path: str) -> Dict[str, Any]:
    if not os.path.isfile(path):
        raise ConfigFileError(f"Configuration file {path} does not exist.")
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        content = await f.read()
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigFileError(f"Configuration file {path} is not valid YAML: {exc}") from exc
    try:
        return validate_type(raw, Dict[str, Any], context=path)
    except ValueError as exc:
        raise ConfigFileError(f"Configuration file {path} must be a YAML mapping.") from exc


async def load_config(path: str) -> ClusterConfig:
    """
    Parse and validate the cluster file.

    Raises:
        ConfigFileError: With every validation problem listed.
    """
    raw = await _read_yaml(path)
    try:
        return ClusterConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigFileError(f"Invalid configuration in {path}:\n{exc}") from exc


def hetzner_settings(config: ClusterConfig) -> HetznerSettings:
    """Environment first, then the token from the file."""
    settings = HetznerSettings()
    if not settings.token and config.hetzner_token:
        settings = settings.model_copy(update={"token": config.hetzner_token})
    return settings


async def update_k3s_version(path: str, new_version: str) -> None:
    """Rewrite `k3s_version` in the file, leaving the other keys untouched."""
    raw = await _read_yaml(path)
    raw["k3s_version"] = new_version
    ClusterConfig.model_validate(raw)
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(yaml.safe_dump(raw, default_flow_style=False, sort_keys=False))
