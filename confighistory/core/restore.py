"""Restore manager — write a backup back over the live config with atomic file operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from confighistory.core.hasher import iter_tracked_files
from confighistory.models.backup_record import Snapshot
from confighistory.models.tracked_config import TrackedConfig
from confighistory.utils import atomic_write_bytes


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    success: bool = True
    restored_files: list[str] = field(default_factory=list)
    removed_files: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    message: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, object]:
        d: dict[str, object] = {"success": self.success}
        if self.message:
            d["message"] = self.message
        if self.error:
            d["error"] = self.error
        if self.warnings:
            d["warnings"] = list(self.warnings)
        return d


class RestoreManager:
    """
    Restore snapshots to their live locations.

    File configs: the live file is replaced in one rename.

    Directory configs are replace-not-merge: every file of the backup is
    written back, then every live file that matches the config's
    include/exclude filters but is absent from the backup is deleted. Files
    outside the filters are never touched.
    """

    def restore(self, config: TrackedConfig, target: Path, snapshot: Snapshot) -> RestoreResult:
        if snapshot.is_directory:
            return self._restore_directory(config, target, snapshot)
        return self._restore_file(target, snapshot)

    def _restore_file(self, target: Path, snapshot: Snapshot) -> RestoreResult:
        result = RestoreResult()
        try:
            atomic_write_bytes(target, snapshot.single_content())
        except OSError as e:
            result.success = False
            result.error = f"Failed to restore {target}: {e}"
            logger.error(result.error)
            return result
        result.restored_files.append(str(target))
        result.message = f"Successfully restored backup to {target}"
        return result

    def _restore_directory(self, config: TrackedConfig, target: Path, snapshot: Snapshot) -> RestoreResult:
        result = RestoreResult()
        target.mkdir(parents=True, exist_ok=True)
        root = target.resolve()

        # Phase 1: write every backed-up file
        for rel in sorted(snapshot.files):
            dest = (target / rel).resolve()
            if not dest.is_relative_to(root):
                result.warnings.append(f"Skipped entry outside directory: {rel}")
                continue
            try:
                atomic_write_bytes(dest, snapshot.files[rel])
                result.restored_files.append(rel)
            except OSError as e:
                result.success = False
                result.error = f"Failed to restore {rel}: {e}"
                logger.error(f"Restore error for {dest}: {e}")
                return result

        # Phase 2: drop tracked files that did not exist at backup time
        leftovers: list[str] = []
        for rel, path in iter_tracked_files(config, target):
            if rel in snapshot.files:
                continue
            try:
                path.unlink()
                result.removed_files.append(rel)
            except OSError as e:
                leftovers.append(rel)
                result.warnings.append(f"Failed to remove {rel}: {e}")
                logger.error(f"Restore cleanup error for {path}: {e}")

        if leftovers:
            result.success = False
            result.error = f"Restored files but could not remove: {', '.join(leftovers)}"
            return result

        result.message = (
            f"Successfully restored backup to {target} "
            f"({len(result.restored_files)} written, {len(result.removed_files)} removed)"
        )
        logger.info(result.message)
        return result
