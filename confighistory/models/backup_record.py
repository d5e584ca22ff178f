"""Backup record models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from confighistory.models.tracked_config import BackupType


@dataclass(frozen=True)
class BackupRecord:
    """One stored snapshot, discovered from its sidecar JSON."""

    filename: str  # data artifact name; embeds the timestamp and sorts chronologically
    config_path: str
    config_id: str
    date: datetime
    size: int
    content_hash: str
    backup_type: BackupType = BackupType.MULTIPLE
    files: tuple[str, ...] = ()

    @property
    def stamp(self) -> str:
        return self.filename.split(".", 1)[0]

    def to_info(self) -> dict[str, object]:
        """Boundary shape: ``BackupInfo {filename, date, size}``."""
        return {
            "filename": self.filename,
            "date": self.date.isoformat(),
            "size": self.size,
        }


@dataclass
class Snapshot:
    """
    Captured content of a config: relative path → bytes.

    File configs hold a single entry keyed by the file's base name.
    """

    files: dict[str, bytes] = field(default_factory=dict)
    is_directory: bool = False

    @property
    def size(self) -> int:
        return sum(len(v) for v in self.files.values())

    def single_content(self) -> bytes:
        """Content of a file snapshot."""
        if len(self.files) != 1:
            raise ValueError(f"Expected one file in snapshot, found {len(self.files)}")
        return next(iter(self.files.values()))


@dataclass
class ConfigMetadata:
    """Read projection of a tracked config and its backups. Never persisted."""

    id: str
    path: str
    group: str
    friendly_name: str
    backup_type: BackupType
    last_hash: str = ""
    backup_count: int = 0
    backups_size: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "path": self.path,
            "group": self.group,
            "friendlyName": self.friendly_name,
            "lastHash": self.last_hash,
            "backupCount": self.backup_count,
            "backupsSize": self.backups_size,
            "backupType": str(self.backup_type),
        }
