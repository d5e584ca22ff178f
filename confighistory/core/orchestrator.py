"""Backup orchestrator — snapshot, prune, restore and compare tracked configs."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from loguru import logger

from confighistory.core.naming import resolve_names
from confighistory.core.retention import select_for_deletion
from confighistory.errors import (
    ConcurrencyConflict,
    NotFoundError,
    ReadError,
    WriteError,
)
from confighistory.models.backup_record import ConfigMetadata, Snapshot
from confighistory.models.diff_result import BackupDiff
from confighistory.models.tracked_config import TrackedConfig
from confighistory.utils import call_with_timeout, retry_io

if TYPE_CHECKING:
    from confighistory.config import Config
    from confighistory.core.diff_engine import DiffEngine
    from confighistory.core.hasher import ContentHasher
    from confighistory.core.restore import RestoreManager, RestoreResult
    from confighistory.core.state import RuntimeState
    from confighistory.core.store import BackupStore, DeleteAllResult

CURRENT = "current"  # compare() sentinel for the live content


class Outcome(StrEnum):
    BACKED_UP = "backed_up"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    BUSY = "busy"
    FAILED = "failed"


@dataclass
class ConfigOutcome:
    """What one trigger did to one config."""

    path: str
    status: Outcome
    filename: str = ""
    pruned: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class RunSummary:
    """Aggregate of a trigger run. Per-config failures are collected, never raised."""

    outcomes: list[ConfigOutcome] = field(default_factory=list)

    def count(self, status: Outcome) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def warnings(self) -> list[str]:
        return [w for o in self.outcomes for w in o.warnings]

    @property
    def pruned(self) -> int:
        return sum(len(o.pruned) for o in self.outcomes)

    @property
    def status(self) -> str:
        if self.count(Outcome.FAILED):
            return "completed_with_errors"
        if self.warnings:
            return "completed_with_warnings"
        return "completed"

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "backedUp": self.count(Outcome.BACKED_UP),
            "unchanged": self.count(Outcome.UNCHANGED),
            "skipped": self.count(Outcome.SKIPPED),
            "busy": self.count(Outcome.BUSY),
            "failed": self.count(Outcome.FAILED),
            "pruned": self.pruned,
            "warnings": self.warnings,
        }


class BackupOrchestrator:
    """
    Top-level coordinator of the backup pipeline.

    Per config: ``hash → (unchanged ⇒ stop) → create → retention → delete``,
    all under the config's path lock so racing triggers cannot both act on the
    same stale view. Configs are independent and run on a bounded pool.
    """

    def __init__(
        self,
        config: Config,
        store: BackupStore,
        hasher: ContentHasher,
        diff_engine: DiffEngine,
        restore_manager: RestoreManager,
        state: RuntimeState,
    ) -> None:
        self._config = config
        self._store = store
        self._hasher = hasher
        self._diff = diff_engine
        self._restorer = restore_manager
        self._state = state
        self._stop = threading.Event()

    # ── Lookup ──

    def find_config(self, path: str, config_id: str | None = None) -> tuple[str, TrackedConfig]:
        """``(group, config)`` for *path*; NotFoundError for unknown paths or a mismatched id."""
        found = self._config.find(path)
        if found is None:
            raise NotFoundError(f"Config '{path}' is not tracked")
        if config_id and config_id != path:
            record = self._state.get(path)
            if record is None or record.id != config_id:
                raise NotFoundError(f"Config '{path}' has no id '{config_id}'")
        return found

    # ── Snapshot pipeline ──

    def trigger_all(self) -> RunSummary:
        """Process every tracked config across all groups."""
        tracked = [config for _, config in self._config.tracked_configs()]
        summary = RunSummary()
        if not tracked:
            return summary

        logger.info(f"Backup run started for {len(tracked)} config(s)")
        with ThreadPoolExecutor(
            max_workers=self._config.max_workers, thread_name_prefix="backup"
        ) as pool:
            futures = [pool.submit(self._run_queued, config) for config in tracked]
            summary.outcomes = [f.result() for f in futures]

        logger.info(
            f"Backup run finished: {summary.count(Outcome.BACKED_UP)} backed up, "
            f"{summary.count(Outcome.UNCHANGED)} unchanged, {summary.count(Outcome.FAILED)} failed, "
            f"{summary.pruned} pruned"
        )
        return summary

    def _run_queued(self, config: TrackedConfig) -> ConfigOutcome:
        if self._stop.is_set():
            return ConfigOutcome(
                path=config.path,
                status=Outcome.SKIPPED,
                warnings=[f"{config.path}: skipped due to shutdown"],
            )
        try:
            return self.trigger(config)
        except Exception as e:
            logger.exception(f"Unexpected error while backing up {config.path}")
            return ConfigOutcome(
                path=config.path, status=Outcome.FAILED, warnings=[f"{config.path}: {e}"]
            )

    def trigger(self, config: TrackedConfig) -> ConfigOutcome:
        """Run the snapshot pipeline for one config. Failures are reported in the outcome."""
        live = self._hasher.live_path(config)
        if not live.exists():
            message = f"{config.path}: path not found at {live}, skipped"
            logger.warning(message)
            self._state.record_error(config.path, message)
            return ConfigOutcome(path=config.path, status=Outcome.SKIPPED, warnings=[message])

        try:
            with self._store.locks.hold(config.path, timeout=self._config.lock_timeout):
                return self._snapshot_locked(config)
        except ConcurrencyConflict as e:
            logger.info(f"Skipping {config.path}: {e.message}")
            return ConfigOutcome(
                path=config.path, status=Outcome.BUSY, warnings=[f"{config.path}: {e.message}"]
            )
        except (ReadError, WriteError, NotFoundError) as e:
            logger.warning(f"Backup of {config.path} failed: {e.message}")
            self._state.record_error(config.path, e.message)
            return ConfigOutcome(
                path=config.path, status=Outcome.FAILED, warnings=[f"{config.path}: {e.message}"]
            )

    def _snapshot_locked(self, config: TrackedConfig) -> ConfigOutcome:
        timeout = self._config.io_timeout
        snapshot: Snapshot = retry_io(
            lambda: call_with_timeout(
                lambda: self._hasher.snapshot(config),
                timeout,
                description=f"reading {config.path}",
            ),
            description=f"reading {config.path}",
        )
        digest = self._hasher.fingerprint(snapshot)
        config_id, friendly_name = resolve_names(config, snapshot)
        latest = self._store.latest(config)
        if latest is not None and latest.content_hash == digest:
            logger.debug(f"{config.path} unchanged since {latest.filename}")
            self._state.observe(config.path, config_id, friendly_name, digest)
            return ConfigOutcome(path=config.path, status=Outcome.UNCHANGED)

        logger.info(f"Config changed, saving backup: {config.path}")
        record = retry_io(
            lambda: self._store.create(config, snapshot, digest, config_id),
            description=f"writing backup of {config.path}",
        )
        self._state.observe(config.path, config_id, friendly_name, digest)
        outcome = ConfigOutcome(path=config.path, status=Outcome.BACKED_UP, filename=record.filename)
        self._prune(config, outcome)
        return outcome

    def _prune(self, config: TrackedConfig, outcome: ConfigOutcome) -> None:
        max_backups, max_age = config.effective_limits(
            self._config.default_max_backups, self._config.default_max_backup_age_days
        )
        records = self._store.list(config)
        for record in select_for_deletion(records, max_backups, max_age, backup_type=config.backup_type):
            try:
                self._store.delete(config, record.filename)
                outcome.pruned.append(record.filename)
            except (WriteError, NotFoundError) as e:
                outcome.warnings.append(f"{config.path}: failed to prune {record.filename}: {e.message}")
                logger.warning(f"Failed to prune {record.filename} of {config.path}: {e.message}")
        if outcome.pruned:
            logger.info(f"Pruned {len(outcome.pruned)} backup(s) of {config.path}")

    def shutdown(self) -> None:
        """Let in-flight configs finish; configs not yet started are skipped."""
        logger.info("Shutdown requested, finishing in-flight backups")
        self._stop.set()

    @property
    def is_stopping(self) -> bool:
        return self._stop.is_set()

    # ── Restore ──

    def restore(self, config: TrackedConfig, filename: str) -> RestoreResult:
        """Overwrite the live config with a backup. Holds the path lock like a snapshot."""
        with self._store.locks.hold(config.path, timeout=self._config.lock_timeout):
            snapshot = self._store.read(config, filename)
            target = self._hasher.live_path(config)
            result = self._restorer.restore(config, target, snapshot)
        if result.success:
            logger.info(f"Restored {config.path} from {filename}")
        return result

    # ── Compare ──

    def _load(self, config: TrackedConfig, name: str) -> Snapshot:
        if name == CURRENT:
            return self._hasher.snapshot(config)
        return self._store.read(config, name)

    def compare(self, config: TrackedConfig, left: str | None, right: str) -> BackupDiff:
        """
        Diff *left* against *right*.

        Either side may be ``"current"`` for the live content. A *left* of
        None compares *right* with the backup just before it.
        """
        if left is None:
            records = self._store.list(config)
            names = [r.filename for r in records]
            if right not in names:
                raise NotFoundError(f"Backup '{right}' not found for config '{config.path}'")
            index = names.index(right)
            left = names[index - 1] if index > 0 else None
            old = self._store.read(config, left) if left else None
        else:
            old = self._load(config, left)

        new = self._load(config, right)
        return self._diff.diff_snapshots(old, new, left or "", right)

    # ── Metadata ──

    def metadata(self, group: str, config: TrackedConfig) -> ConfigMetadata:
        records = self._store.list(config)
        runtime = self._state.get(config.path)
        last_hash = runtime.last_hash if runtime and runtime.last_hash else ""
        if not last_hash and records:
            last_hash = records[-1].content_hash
        return ConfigMetadata(
            id=runtime.id if runtime else config.path,
            path=config.path,
            group=group,
            friendly_name=runtime.friendly_name if runtime else config.path,
            backup_type=config.backup_type,
            last_hash=last_hash,
            backup_count=len(records),
            backups_size=sum(r.size for r in records),
        )

    def list_metadata(self) -> dict[str, list[ConfigMetadata]]:
        result: dict[str, list[ConfigMetadata]] = {}
        for group in self._config.config_groups:
            result[group.group_name] = [self.metadata(group.group_name, c) for c in group.configs]
        return result

    def read(self, config: TrackedConfig, filename: str) -> Snapshot:
        return self._store.read(config, filename)

    def delete(self, config: TrackedConfig, filename: str) -> None:
        with self._store.locks.hold(config.path, timeout=self._config.lock_timeout):
            self._store.delete(config, filename)

    def delete_all(self, config: TrackedConfig) -> DeleteAllResult:
        with self._store.locks.hold(config.path, timeout=self._config.lock_timeout):
            return self._store.delete_all(config)
