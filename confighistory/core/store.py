"""Backup store — timestamped backup artifacts with sidecar JSON metadata, one directory per config."""

from __future__ import annotations

import io
import json
import shutil
import threading
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from loguru import logger

from confighistory.core.locks import PathLockRegistry
from confighistory.errors import NotFoundError, ReadError, WriteError
from confighistory.models.backup_record import BackupRecord, Snapshot
from confighistory.models.tracked_config import BackupType, TrackedConfig
from confighistory.utils import (
    atomic_write_bytes,
    call_with_timeout,
    format_size,
    is_transient,
    path_key,
    stage_bytes,
)

STAMP_FORMAT = "%Y-%m-%d_%H-%M-%S-%f"
SIDECAR_SUFFIX = ".meta.json"
ARCHIVE_SUFFIX = ".zip"
_MAX_COUNTER = 99


def parse_stamp(stamp: str) -> datetime:
    """``2026-10-19_08-30-00-123456_00`` → aware UTC datetime."""
    base = stamp.rsplit("_", 1)[0]
    return datetime.strptime(base, STAMP_FORMAT).replace(tzinfo=timezone.utc)


def format_stamp(when: datetime, counter: int = 0) -> str:
    return f"{when.astimezone(timezone.utc).strftime(STAMP_FORMAT)}_{counter:02d}"


def next_stamp(now: datetime, latest: str | None) -> str:
    """
    Stamp for a new backup that sorts strictly after *latest*.

    Identical or earlier clocks reuse the latest time with a bumped counter;
    an exhausted counter moves one microsecond forward.
    """
    candidate = format_stamp(now)
    if latest is None or candidate > latest:
        return candidate
    base_time = parse_stamp(latest)
    counter = int(latest.rsplit("_", 1)[1]) + 1
    if counter > _MAX_COUNTER:
        return format_stamp(base_time + timedelta(microseconds=1))
    return format_stamp(base_time, counter)


@dataclass
class DeleteAllResult:
    """Outcome of deleting every backup of a config."""

    deleted: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.remaining


class BackupStore:
    """
    On-disk backup artifacts.

    Directory structure:
      {backup_dir}/{path key}/
        ├── {stamp}{suffix}        raw copy (file configs) or .zip (directory configs)
        └── {stamp}.meta.json      sidecar metadata

    A backup is visible only once both files are in place; each is written to a
    temp file and renamed, artifact first, sidecar last.
    """

    def __init__(
        self,
        backup_dir: Path,
        locks: PathLockRegistry | None = None,
        io_timeout: float | None = None,
    ) -> None:
        self._backup_dir = backup_dir
        self.locks = locks or PathLockRegistry()
        self._io_timeout = io_timeout

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    def config_dir(self, config_path: str) -> Path:
        return self._backup_dir / path_key(config_path)

    # ── Write ──

    def create(
        self,
        config: TrackedConfig,
        snapshot: Snapshot,
        content_hash: str,
        config_id: str | None = None,
        now: datetime | None = None,
    ) -> BackupRecord:
        """Persist *snapshot* as a new backup of *config*."""
        with self.locks.hold(config.path):
            backup_dir = self.config_dir(config.path)
            backup_dir.mkdir(parents=True, exist_ok=True)

            latest = self.latest(config)
            stamp = next_stamp(now or datetime.now(tz=timezone.utc), latest.stamp if latest else None)

            if config.is_directory:
                filename = f"{stamp}{ARCHIVE_SUFFIX}"
                data = self._build_archive(snapshot)
            else:
                filename = f"{stamp}{Path(config.path).suffix}"
                data = snapshot.single_content()

            record = BackupRecord(
                filename=filename,
                config_path=config.path,
                config_id=config_id or config.path,
                date=parse_stamp(stamp),
                size=len(data),
                content_hash=content_hash,
                backup_type=config.backup_type,
                files=tuple(sorted(snapshot.files)),
            )

            artifact = backup_dir / filename
            sidecar = backup_dir / f"{stamp}{SIDECAR_SUFFIX}"
            gate = threading.Lock()
            abandoned = threading.Event()

            def _write() -> None:
                atomic_write_bytes(artifact, data)
                staged = stage_bytes(sidecar, self._sidecar_bytes(record))
                with gate:
                    if abandoned.is_set():
                        # The caller gave up on this write and may already be retrying it.
                        staged.unlink(missing_ok=True)
                        artifact.unlink(missing_ok=True)
                        logger.warning(f"Discarded late backup write: {filename} for {config.path}")
                        return
                    try:
                        staged.replace(sidecar)
                    except OSError:
                        staged.unlink(missing_ok=True)
                        raise

            try:
                call_with_timeout(_write, self._io_timeout, description=f"writing {filename}", error_cls=WriteError)
            except WriteError:
                with gate:
                    if not sidecar.is_file():
                        abandoned.set()
                        raise
                logger.debug(f"Backup write finished after its timeout: {filename}")
            except OSError as e:
                artifact.unlink(missing_ok=True)
                raise WriteError(
                    f"Failed to write backup {filename} for {config.path}: {e}", retryable=is_transient(e)
                ) from e

        logger.info(f"Created backup: {filename} for {config.path} ({format_size(record.size)})")
        return record

    @staticmethod
    def _build_archive(snapshot: Snapshot) -> bytes:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
            for rel in sorted(snapshot.files):
                zf.writestr(rel, snapshot.files[rel])
        return buf.getvalue()

    @staticmethod
    def _sidecar_bytes(record: BackupRecord) -> bytes:
        meta = {
            "filename": record.filename,
            "configPath": record.config_path,
            "configId": record.config_id,
            "backupType": str(record.backup_type),
            "contentHash": record.content_hash,
            "createdAt": record.date.isoformat(),
            "size": record.size,
            "files": list(record.files),
        }
        return json.dumps(meta, ensure_ascii=False, indent=2).encode("utf-8")

    # ── Read ──

    def list(self, config: TrackedConfig) -> list[BackupRecord]:
        """All complete backups of *config*, oldest first. Empty when none exist."""
        backup_dir = self.config_dir(config.path)
        if not backup_dir.is_dir():
            return []

        records: list[BackupRecord] = []
        for meta_file in sorted(backup_dir.glob(f"*{SIDECAR_SUFFIX}")):
            try:
                with open(meta_file, encoding="utf-8") as f:
                    meta = json.load(f)
                filename = meta["filename"]
                artifact = backup_dir / filename
                if not artifact.is_file():
                    continue
                records.append(
                    BackupRecord(
                        filename=filename,
                        config_path=meta.get("configPath", config.path),
                        config_id=meta.get("configId", config.path),
                        date=parse_stamp(filename.split(".", 1)[0]),
                        size=int(meta.get("size", artifact.stat().st_size)),
                        content_hash=meta.get("contentHash", ""),
                        backup_type=BackupType(meta.get("backupType", config.backup_type)),
                        files=tuple(meta.get("files", [])),
                    )
                )
            except (json.JSONDecodeError, KeyError, ValueError, OSError) as e:
                logger.warning(f"Skipping malformed backup metadata: {meta_file}: {e}")

        records.sort(key=lambda r: r.filename)
        return records

    def latest(self, config: TrackedConfig) -> BackupRecord | None:
        records = self.list(config)
        return records[-1] if records else None

    def get(self, config: TrackedConfig, filename: str) -> BackupRecord:
        """Record for *filename*; NotFoundError if it is not a backup of *config*."""
        self._check_filename(filename)
        for record in self.list(config):
            if record.filename == filename:
                return record
        raise NotFoundError(f"Backup '{filename}' not found for config '{config.path}'")

    def read(self, config: TrackedConfig, filename: str) -> Snapshot:
        """Stored content of a backup."""
        record = self.get(config, filename)
        artifact = self.config_dir(config.path) / record.filename
        try:
            if record.backup_type == BackupType.DIRECTORY:
                with zipfile.ZipFile(artifact, "r") as zf:
                    files = {name: zf.read(name) for name in zf.namelist() if not name.endswith("/")}
                return Snapshot(files=files, is_directory=True)
            name = record.files[0] if record.files else Path(config.path).name
            return Snapshot(files={name: artifact.read_bytes()})
        except FileNotFoundError as e:
            raise NotFoundError(f"Backup '{filename}' disappeared for config '{config.path}'") from e
        except (OSError, zipfile.BadZipFile) as e:
            raise ReadError(
                f"Failed to read backup {filename}: {e}", retryable=isinstance(e, OSError) and is_transient(e)
            ) from e

    def total_size(self, config: TrackedConfig) -> int:
        return sum(r.size for r in self.list(config))

    # ── Delete ──

    def delete(self, config: TrackedConfig, filename: str) -> None:
        """Remove one backup. The sidecar goes first so readers never see a dangling record."""
        record = self.get(config, filename)
        backup_dir = self.config_dir(config.path)
        try:
            (backup_dir / f"{record.stamp}{SIDECAR_SUFFIX}").unlink(missing_ok=True)
            (backup_dir / record.filename).unlink(missing_ok=True)
        except OSError as e:
            raise WriteError(f"Failed to delete backup {filename}: {e}", retryable=is_transient(e)) from e
        logger.debug(f"Deleted backup: {filename} of {config.path}")

    def delete_all(self, config: TrackedConfig) -> DeleteAllResult:
        """Remove every backup of *config*, reporting which ones could not be deleted."""
        result = DeleteAllResult()
        for record in self.list(config):
            try:
                self.delete(config, record.filename)
                result.deleted.append(record.filename)
            except (WriteError, NotFoundError) as e:
                result.remaining.append(record.filename)
                result.errors.append(e.message)
                logger.error(f"Failed to delete {record.filename} of {config.path}: {e.message}")

        if result.success:
            backup_dir = self.config_dir(config.path)
            if backup_dir.is_dir() and not any(backup_dir.iterdir()):
                backup_dir.rmdir()
        logger.info(
            f"Deleted {len(result.deleted)} backup(s) of {config.path}, "
            f"{len(result.remaining)} remaining"
        )
        return result

    # ── History moves ──

    def has_history(self, config_path: str) -> bool:
        backup_dir = self.config_dir(config_path)
        return backup_dir.is_dir() and any(backup_dir.glob(f"*{SIDECAR_SUFFIX}"))

    def move_history(self, old_path: str, new_path: str) -> int:
        """Re-home the backups of a renamed config. Returns the number of backups moved."""
        src = self.config_dir(old_path)
        dst = self.config_dir(new_path)
        if not src.is_dir():
            return 0
        if self.has_history(new_path):
            raise WriteError(f"Cannot move history of '{old_path}': '{new_path}' already has backups")

        with self.locks.hold(old_path), self.locks.hold(new_path):
            try:
                if dst.exists():
                    shutil.rmtree(dst)
                src.replace(dst)
                moved = 0
                for meta_file in dst.glob(f"*{SIDECAR_SUFFIX}"):
                    with open(meta_file, encoding="utf-8") as f:
                        meta = json.load(f)
                    meta["configPath"] = new_path
                    if meta.get("configId") == old_path:
                        meta["configId"] = new_path
                    atomic_write_bytes(
                        meta_file, json.dumps(meta, ensure_ascii=False, indent=2).encode("utf-8")
                    )
                    moved += 1
            except (OSError, json.JSONDecodeError) as e:
                raise WriteError(f"Failed to move history of '{old_path}' to '{new_path}': {e}") from e

        logger.info(f"Moved {moved} backup(s) from {old_path} to {new_path}")
        return moved

    @staticmethod
    def _check_filename(filename: str) -> None:
        if not filename or "/" in filename or "\\" in filename or ".." in filename:
            raise NotFoundError(f"Invalid backup filename: '{filename}'")
