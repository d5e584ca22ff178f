"""Settings validation — group names, config paths, retention values and cron schedules."""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Any

from confighistory.models.tracked_config import BackupType

_INVALID_GROUP_CHARS = re.compile(r'[<>:"/\\|?*]')
_RESERVED_GROUP_NAMES = {"null", "undefined", "admin", "root", "system"}

_MONTHS = {m: i for i, m in enumerate(
    ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"], start=1
)}
_WEEKDAYS = {d: i for i, d in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

# (name, low, high, aliases)
_CRON_FIELDS: list[tuple[str, int, int, dict[str, int]]] = [
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day of month", 1, 31, {}),
    ("month", 1, 12, _MONTHS),
    ("day of week", 0, 7, _WEEKDAYS),
]


def validate_group_name(name: str) -> str | None:
    if not name or not name.strip():
        return "group name cannot be empty"
    if len(name) > 100:
        return "group name cannot exceed 100 characters"
    if _INVALID_GROUP_CHARS.search(name):
        return "group name contains invalid characters"
    if name.lower() in _RESERVED_GROUP_NAMES:
        return f"group name '{name}' is reserved"
    return None


def validate_config_path(path: str, config_dir: str) -> str | None:
    if not path or not path.strip():
        return "config path cannot be empty"
    if len(path) > 500:
        return "config path cannot exceed 500 characters"
    if ".." in path:
        return "config path cannot contain '..' sequences"
    if path.startswith("/"):
        root = PurePosixPath(config_dir or "/")
        if not PurePosixPath(path).is_relative_to(root):
            return f"absolute paths must be within {root}"
    return None


def _check_retention(value: Any, label: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        return f"{label} must be an integer"
    if value < 0:
        return f"{label} cannot be negative"
    return None


def _parse_cron_value(token: str, low: int, high: int, aliases: dict[str, int]) -> int:
    value = aliases.get(token.lower()) if aliases else None
    if value is None:
        if not token.isdigit():
            raise ValueError(f"'{token}' is not a number")
        value = int(token)
    if not low <= value <= high:
        raise ValueError(f"{value} is outside {low}-{high}")
    return value


def validate_cron_schedule(expr: str) -> str | None:
    """Check a standard 5-field cron expression. Returns a problem or None."""
    fields = expr.split()
    if len(fields) != 5:
        return f"expected 5 fields, got {len(fields)}"

    for text, (name, low, high, aliases) in zip(fields, _CRON_FIELDS):
        for part in text.split(","):
            try:
                base, _, step = part.partition("/")
                if step and (not step.isdigit() or int(step) == 0):
                    raise ValueError(f"invalid step '{step}'")
                if base in ("*", "?"):
                    continue
                start, _, end = base.partition("-")
                lo = _parse_cron_value(start, low, high, aliases)
                if end:
                    hi = _parse_cron_value(end, low, high, aliases)
                    if hi < lo:
                        raise ValueError(f"range {base} is reversed")
            except ValueError as e:
                return f"invalid {name} field '{text}': {e}"
    return None


def validate_settings(document: dict[str, Any]) -> list[str]:
    """
    Every problem found in a settings document; empty when it is valid.

    Paths must be unique across all groups.
    """
    problems: list[str] = []
    config_dir = str(document.get("homeAssistantConfigDir") or "")

    for key in ("defaultMaxBackups", "defaultMaxBackupAgeDays"):
        problem = _check_retention(document.get(key), key)
        if problem:
            problems.append(problem)

    cron = document.get("cronSchedule") or ""
    if cron:
        problem = validate_cron_schedule(cron)
        if problem:
            problems.append(f"Invalid cron schedule: {problem}")

    groups = document.get("configGroups") or []
    if not isinstance(groups, list):
        return problems + ["configGroups must be a list"]

    group_names: set[str] = set()
    owners: dict[str, str] = {}  # path → group name
    for i, group in enumerate(groups):
        if not isinstance(group, dict):
            problems.append(f"config group at index {i} is not an object")
            continue
        name = str(group.get("groupName") or "")
        problem = validate_group_name(name)
        if problem:
            problems.append(f"group at index {i}: {problem}")
        elif name in group_names:
            problems.append(f"duplicate group name: '{name}'")
        group_names.add(name)

        configs = group.get("configs") or []
        if not configs:
            problems.append(f"group '{name}' must contain at least one config")
        for j, config in enumerate(configs):
            if not isinstance(config, dict):
                problems.append(f"config at index {j} in group '{name}' is not an object")
                continue
            problems.extend(_validate_config(config, name, config_dir, owners))

    return problems


def _validate_config(
    config: dict[str, Any], group_name: str, config_dir: str, owners: dict[str, str]
) -> list[str]:
    problems: list[str] = []
    path = str(config.get("path") or "")
    label = f"config '{path}' in group '{group_name}'"

    problem = validate_config_path(path, config_dir)
    if problem:
        problems.append(f"{label}: {problem}")
    elif path in owners:
        problems.append(
            f"config path '{path}' is already assigned to group '{owners[path]}', "
            f"cannot assign to group '{group_name}'"
        )
    else:
        owners[path] = group_name

    backup_type = config.get("backupType")
    if backup_type not in {t.value for t in BackupType}:
        problems.append(f"{label} has invalid backup type: '{backup_type}'")

    if backup_type == BackupType.MULTIPLE:
        has_id = bool(str(config.get("idNode") or "").strip())
        has_name = bool(str(config.get("friendlyNameNode") or "").strip())
        if has_id != has_name:
            problems.append(f"{label}: idNode and friendlyNameNode must be given together")

    if backup_type != BackupType.DIRECTORY and (
        config.get("includeFilePatterns") or config.get("excludeFilePatterns")
    ):
        problems.append(f"{label}: file patterns only apply to directory configs")

    for key in ("maxBackups", "maxBackupAgeDays"):
        problem = _check_retention(config.get(key), key)
        if problem:
            problems.append(f"{label}: {problem}")
    return problems
