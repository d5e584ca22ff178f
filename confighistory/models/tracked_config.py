"""Tracked config models — backup targets, their groups and the settings document."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any


class BackupType(StrEnum):
    """How a tracked path is captured and retained."""

    SINGLE = "single"  # only the latest backup is kept
    MULTIPLE = "multiple"  # ordered history under retention limits
    DIRECTORY = "directory"  # one snapshot covers every matching file


@dataclass
class TrackedConfig:
    """One configured backup target (a file or a directory)."""

    path: str
    backup_type: BackupType = BackupType.MULTIPLE
    max_backups: int | None = None
    max_backup_age_days: int | None = None
    id_node: str | None = None
    friendly_name_node: str | None = None
    include_file_patterns: list[str] = field(default_factory=list)
    exclude_file_patterns: list[str] = field(default_factory=list)
    renamed_from: str | None = None  # settings updates only, never persisted

    @property
    def is_directory(self) -> bool:
        return self.backup_type == BackupType.DIRECTORY

    def resolve(self, base_dir: Path) -> Path:
        """Absolute live path of this config."""
        p = Path(self.path)
        return p if p.is_absolute() else base_dir / p

    def effective_limits(
        self, default_max_backups: int | None, default_max_age_days: int | None
    ) -> tuple[int | None, int | None]:
        """Own retention limits, falling back to the settings defaults."""
        max_backups = self.max_backups if self.max_backups is not None else default_max_backups
        max_age = (
            self.max_backup_age_days
            if self.max_backup_age_days is not None
            else default_max_age_days
        )
        return max_backups, max_age

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackedConfig:
        return cls(
            path=str(data.get("path", "")),
            backup_type=BackupType(data.get("backupType", BackupType.MULTIPLE)),
            max_backups=data.get("maxBackups"),
            max_backup_age_days=data.get("maxBackupAgeDays"),
            id_node=data.get("idNode") or None,
            friendly_name_node=data.get("friendlyNameNode") or None,
            include_file_patterns=list(data.get("includeFilePatterns") or []),
            exclude_file_patterns=list(data.get("excludeFilePatterns") or []),
            renamed_from=data.get("renamedFrom") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"path": self.path, "backupType": str(self.backup_type)}
        if self.max_backups is not None:
            d["maxBackups"] = self.max_backups
        if self.max_backup_age_days is not None:
            d["maxBackupAgeDays"] = self.max_backup_age_days
        if self.id_node:
            d["idNode"] = self.id_node
        if self.friendly_name_node:
            d["friendlyNameNode"] = self.friendly_name_node
        if self.include_file_patterns:
            d["includeFilePatterns"] = list(self.include_file_patterns)
        if self.exclude_file_patterns:
            d["excludeFilePatterns"] = list(self.exclude_file_patterns)
        return d


@dataclass
class ConfigGroup:
    """Named, ordered list of tracked configs. Presentation only."""

    group_name: str
    configs: list[TrackedConfig] = field(default_factory=list)

    @property
    def slug(self) -> str:
        return self.group_name.lower().replace(" ", "-")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConfigGroup:
        return cls(
            group_name=str(data.get("groupName", "")),
            configs=[TrackedConfig.from_dict(c) for c in data.get("configs") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "groupName": self.group_name,
            "configs": [c.to_dict() for c in self.configs],
        }
