"""Config naming — read id and friendly name fields out of YAML content."""

from __future__ import annotations

from typing import Any

import yaml
from loguru import logger

from confighistory.models.backup_record import Snapshot
from confighistory.models.tracked_config import TrackedConfig


def read_node(content: bytes, key: str) -> str | None:
    """Top-level scalar at *key* of a YAML mapping, or None."""
    try:
        data: Any = yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.debug(f"Content is not YAML, cannot read '{key}': {e}")
        return None
    if not isinstance(data, dict):
        return None
    value = data.get(key)
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def resolve_names(config: TrackedConfig, snapshot: Snapshot | None) -> tuple[str, str]:
    """
    ``(id, friendly name)`` of a config.

    Both default to the config path; directory configs always use it.
    """
    config_id = friendly = config.path
    if snapshot is None or config.is_directory:
        return config_id, friendly

    content = snapshot.single_content()
    if config.id_node:
        config_id = read_node(content, config.id_node) or config.path
    if config.friendly_name_node:
        friendly = read_node(content, config.friendly_name_node) or config.path
    return config_id, friendly
