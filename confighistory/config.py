"""Application settings — JSON-based, with file locking and batch update support."""

from __future__ import annotations

import json
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

from confighistory.models.tracked_config import ConfigGroup, TrackedConfig

_instance: "Config | None" = None

# Default data directory
_DEFAULT_DATA_DIR = Path(os.environ.get("CONFIG_HISTORY_DATA_DIR", str(Path.home() / ".config-history")))

SETTINGS_FILENAME = "settings.json"


def get_config() -> Config:
    """Module-level factory — single global Config instance."""
    global _instance
    if _instance is None:
        _instance = Config()
    return _instance


def reset_config() -> None:
    """Reset the global config instance (for testing)."""
    global _instance
    _instance = None


def _legacy_group_name(config: dict[str, Any]) -> str:
    name = str(config.get("name", ""))
    path = str(config.get("path", "")).lower()
    if name == "Configuration" or "configuration" in path:
        return "Core Home Assistant"
    if name == "Automations" or "automation" in path:
        return "Automations"
    if name == "Scenes" or "scene" in path:
        return "Scenes"
    if name == "ESP Home" or "esphome" in path:
        return "ESP Home"
    if name == "Storage" or ".storage" in path:
        return "Storage & Settings"
    return name or path or "Ungrouped"


def migrate_to_groups(configs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert the legacy flat ``configs`` list into ``configGroups``, preserving order."""
    groups: dict[str, dict[str, Any]] = {}
    for config in configs:
        if not isinstance(config, dict):
            logger.warning("Skipping malformed config during migration")
            continue
        entry = {k: v for k, v in config.items() if k != "name"}
        group_name = _legacy_group_name(config)
        groups.setdefault(group_name, {"groupName": group_name, "configs": []})["configs"].append(entry)
    return list(groups.values())


class Config:
    """JSON-based settings document with file locking."""

    _DEFAULTS: dict[str, Any] = {
        "homeAssistantConfigDir": "/homeassistant",
        "backupDir": "/data/backups",
        "port": ":40613",
        "cronSchedule": "",
        "defaultMaxBackups": None,
        "defaultMaxBackupAgeDays": None,
        "configGroups": [
            {
                "groupName": "Core Home Assistant",
                "configs": [
                    {"path": "configuration.yaml", "backupType": "multiple"},
                    {
                        "path": ".storage",
                        "backupType": "directory",
                        "includeFilePatterns": ["core.*", "frontend.*", "person"],
                        "excludeFilePatterns": [
                            "core.analytics",
                            "core.config_entries",
                            "core.restore_state",
                            "core.device_registry",
                            "core.entity_registry",
                            "core.uuid",
                        ],
                    },
                ],
            },
            {
                "groupName": "Automations",
                "configs": [{"path": "automations.yaml", "backupType": "multiple"}],
            },
            {
                "groupName": "Scenes",
                "configs": [{"path": "scenes.yaml", "backupType": "multiple"}],
            },
            {
                "groupName": "ESP Home",
                "configs": [
                    {
                        "path": "esphome",
                        "backupType": "directory",
                        "includeFilePatterns": ["*.yaml"],
                        "excludeFilePatterns": ["secrets.yaml"],
                    }
                ],
            },
        ],
        # Engine tuning
        "ioTimeoutSeconds": 30,
        "lockTimeoutSeconds": 30,
        "maxWorkers": 0,  # 0 = one per CPU, capped at 8
        "maxDiffBytes": 1024 * 1024,
        "logLevel": "INFO",
    }

    def __init__(self, data_dir: Path | None = None) -> None:
        self._data: dict[str, Any] = {}
        self._dir = data_dir or _DEFAULT_DATA_DIR
        self._path = self._dir / SETTINGS_FILENAME
        self._lock = threading.Lock()
        self._defer_save = False
        self._load()

    def _load(self) -> None:
        """Load settings from disk, merging with defaults."""
        self._data = json.loads(json.dumps(self._DEFAULTS))  # deep copy defaults
        if not self._path.exists():
            return
        try:
            with open(self._path, encoding="utf-8") as f:
                user_data = json.load(f)
            self._deep_merge(self._data, user_data)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load settings, using defaults: {e}")
            return

        legacy = self._data.pop("configs", None)
        if legacy and "configGroups" in user_data:
            logger.warning("Both legacy configs and config groups exist, using config groups")
            self._save()
        elif legacy:
            logger.info("Migrating settings to grouped structure")
            self._data["configGroups"] = migrate_to_groups(legacy)
            if not self._save():
                # Keep the legacy document on disk untouched; run on the migrated view
                logger.error("Failed to save migrated settings")

        logger.info(
            f"Loaded settings: configDir={self._data['homeAssistantConfigDir']}, "
            f"backupDir={self._data['backupDir']}, groups={len(self._data['configGroups'])}"
        )

    def _deep_merge(self, base: dict, override: dict) -> None:
        """Recursively merge override into base."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _save(self) -> bool:
        """Persist settings to disk with file locking."""
        if self._defer_save:
            return True
        with self._lock:
            self._dir.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(".tmp")
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(self._data, f, ensure_ascii=False, indent=2)
                tmp_path.replace(self._path)
            except OSError as e:
                logger.error(f"Failed to save settings: {e}")
                if tmp_path.exists():
                    tmp_path.unlink(missing_ok=True)
                return False
        return True

    @contextmanager
    def batch_update(self) -> Iterator[None]:
        """Context manager for batching multiple settings changes into a single write."""
        self._defer_save = True
        try:
            yield
        finally:
            self._defer_save = False
            self._save()

    # ── Generic access ──

    def get(self, key: str, default: Any = None) -> Any:
        """Get a settings value by dot-separated key path."""
        parts = key.split(".")
        node = self._data
        for part in parts:
            if isinstance(node, dict) and part in node:
                node = node[part]
            else:
                return default
        return node

    def set(self, key: str, value: Any) -> None:
        """Set a settings value by dot-separated key path."""
        parts = key.split(".")
        node = self._data
        for part in parts[:-1]:
            if part not in node or not isinstance(node[part], dict):
                node[part] = {}
            node = node[part]
        node[parts[-1]] = value
        self._save()

    def as_dict(self) -> dict[str, Any]:
        """Deep copy of the settings document."""
        return json.loads(json.dumps(self._data))

    def replace(self, document: dict[str, Any]) -> bool:
        """Swap in a whole (already validated) settings document and persist it."""
        data = json.loads(json.dumps(self._DEFAULTS))
        self._deep_merge(data, document)
        data.pop("configs", None)
        previous = self._data
        self._data = data
        if not self._save():
            self._data = previous
            return False
        return True

    # ── Typed properties ──

    @property
    def data_dir(self) -> Path:
        return self._dir

    @property
    def settings_path(self) -> Path:
        return self._path

    @property
    def home_assistant_config_dir(self) -> Path:
        return Path(self._data.get("homeAssistantConfigDir", "/homeassistant"))

    @property
    def backup_dir(self) -> Path:
        return Path(self._data.get("backupDir", "/data/backups"))

    @property
    def port(self) -> str:
        return str(self._data.get("port", ":40613"))

    @property
    def cron_schedule(self) -> str:
        return self.get("cronSchedule") or ""

    @cron_schedule.setter
    def cron_schedule(self, value: str) -> None:
        self.set("cronSchedule", value)

    @property
    def default_max_backups(self) -> int | None:
        value = self.get("defaultMaxBackups")
        return int(value) if value is not None else None

    @default_max_backups.setter
    def default_max_backups(self, value: int | None) -> None:
        self.set("defaultMaxBackups", value)

    @property
    def default_max_backup_age_days(self) -> int | None:
        value = self.get("defaultMaxBackupAgeDays")
        return int(value) if value is not None else None

    @default_max_backup_age_days.setter
    def default_max_backup_age_days(self, value: int | None) -> None:
        self.set("defaultMaxBackupAgeDays", value)

    @property
    def config_groups(self) -> list[ConfigGroup]:
        return [ConfigGroup.from_dict(g) for g in self._data.get("configGroups") or []]

    @property
    def io_timeout(self) -> float:
        return float(self.get("ioTimeoutSeconds", 30))

    @property
    def lock_timeout(self) -> float:
        return float(self.get("lockTimeoutSeconds", 30))

    @property
    def max_workers(self) -> int:
        configured = int(self._data.get("maxWorkers", 0) or 0)
        if configured > 0:
            return configured
        return min(8, os.cpu_count() or 1)

    @property
    def max_diff_bytes(self) -> int:
        return int(self._data.get("maxDiffBytes", 1024 * 1024))

    @property
    def log_level(self) -> str:
        return str(self.get("logLevel", "INFO")).upper()

    def tracked_configs(self) -> list[tuple[str, TrackedConfig]]:
        """Every tracked config with its group name, in settings order."""
        return [(g.group_name, c) for g in self.config_groups for c in g.configs]

    def find(self, path: str) -> tuple[str, TrackedConfig] | None:
        for group_name, config in self.tracked_configs():
            if config.path == path:
                return group_name, config
        return None
