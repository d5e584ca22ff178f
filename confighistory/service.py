"""Boundary service — the operations an HTTP layer or CLI exposes, returning serialisable shapes."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from loguru import logger

from confighistory.config import migrate_to_groups
from confighistory.context import EngineContext
from confighistory.core.diff_engine import render_snapshot
from confighistory.core.validation import validate_settings
from confighistory.errors import ConfigHistoryError, WriteError
from confighistory.models.tracked_config import ConfigGroup


class ConfigHistoryService:
    """
    Facade over the engine context.

    Single-target reads (list, read, diff, delete) raise taxonomy errors;
    restore and settings updates never raise and report ``success=false``.
    """

    def __init__(self, ctx: EngineContext) -> None:
        self._ctx = ctx

    # ── Configs & backups ──

    def list_configs(self) -> dict[str, list[dict[str, object]]]:
        metadata = self._ctx.orchestrator.list_metadata()
        return {group: [m.to_dict() for m in items] for group, items in metadata.items()}

    def list_backups(self, path: str, config_id: str | None = None) -> list[dict[str, object]]:
        _, config = self._ctx.orchestrator.find_config(path, config_id)
        return [r.to_info() for r in self._ctx.store.list(config)]

    def read_backup(self, path: str, config_id: str | None, filename: str) -> str:
        orchestrator = self._ctx.orchestrator
        _, config = orchestrator.find_config(path, config_id)
        snapshot = orchestrator.read(config, filename)
        return render_snapshot(snapshot).decode("utf-8", errors="replace")

    def diff_backups(
        self, path: str, config_id: str | None, left: str | None, right: str
    ) -> dict[str, Any]:
        """Diff two backups; either side may be ``"current"``, a None *left* means the previous backup."""
        orchestrator = self._ctx.orchestrator
        _, config = orchestrator.find_config(path, config_id)
        return orchestrator.compare(config, left, right).to_dict()

    def restore_backup(self, path: str, config_id: str | None, filename: str) -> dict[str, object]:
        orchestrator = self._ctx.orchestrator
        try:
            _, config = orchestrator.find_config(path, config_id)
            result = orchestrator.restore(config, filename)
        except ConfigHistoryError as e:
            logger.warning(f"Restore of {path} from {filename} failed: {e.message}")
            return {"success": False, "error": e.message}
        return result.to_dict()

    def trigger_backup(self) -> dict[str, object]:
        return self._ctx.orchestrator.trigger_all().to_dict()

    def delete_backup(self, path: str, config_id: str | None, filename: str) -> dict[str, str]:
        orchestrator = self._ctx.orchestrator
        _, config = orchestrator.find_config(path, config_id)
        orchestrator.delete(config, filename)
        return {"status": "backup deleted successfully"}

    def delete_all_backups(self, path: str, config_id: str | None = None) -> dict[str, object]:
        orchestrator = self._ctx.orchestrator
        _, config = orchestrator.find_config(path, config_id)
        result = orchestrator.delete_all(config)
        status = "all backups deleted successfully" if result.success else "some backups could not be deleted"
        d: dict[str, object] = {
            "status": status,
            "deleted": len(result.deleted),
            "remaining": len(result.remaining),
        }
        if result.errors:
            d["errors"] = list(result.errors)
        return d

    # ── Settings ──

    def get_settings(self) -> dict[str, Any]:
        return self._ctx.config.as_dict()

    def update_settings(self, document: dict[str, Any]) -> dict[str, object]:
        """
        Validate and apply a full settings document.

        Returns ``{success, warnings?, error?, cronChanged}``. Nothing is
        applied when validation fails.
        """
        if not isinstance(document, dict):
            return {"success": False, "error": "Invalid settings format: expected an object"}

        warnings: list[str] = []
        legacy = document.get("configs")
        if isinstance(legacy, list) and legacy and not document.get("configGroups"):
            document = {k: v for k, v in document.items() if k != "configs"}
            document["configGroups"] = migrate_to_groups(legacy)
            warnings.append("Migrated old configs format to config groups")

        problems = validate_settings(document)
        if problems:
            logger.warning(f"Rejected settings update: {'; '.join(problems)}")
            return {"success": False, "error": "; ".join(problems)}

        config = self._ctx.config
        store = self._ctx.store

        config_dir = document.get("homeAssistantConfigDir") or str(config.home_assistant_config_dir)
        backup_dir = document.get("backupDir") or str(config.backup_dir)
        if not Path(config_dir).is_dir():
            warnings.append(f"Home Assistant config directory does not exist: {config_dir}")
        if not Path(backup_dir).is_dir():
            warnings.append(f"Backup directory does not exist: {backup_dir}")

        if document.get("configs") and document.get("configGroups"):
            warnings.append(
                "Both old configs format and new config groups detected. "
                "Using config groups and ignoring old configs."
            )

        groups = [ConfigGroup.from_dict(g) for g in document.get("configGroups") or []]
        old_paths = {c.path for _, c in config.tracked_configs()}
        new_paths = {c.path for g in groups for c in g.configs}

        renames: list[tuple[str, str]] = []
        for group in groups:
            for tracked in group.configs:
                source = tracked.renamed_from
                if not source or source == tracked.path:
                    continue
                if source in new_paths:
                    return {
                        "success": False,
                        "error": f"config '{tracked.path}' is renamed from '{source}', which is still tracked",
                    }
                if source not in old_paths:
                    warnings.append(f"Ignoring rename of '{tracked.path}': '{source}' was not tracked")
                    continue
                renames.append((source, tracked.path))

        backup_dir_changed = Path(backup_dir) != config.backup_dir
        old_cron = config.cron_schedule

        persisted = {k: v for k, v in document.items() if k != "configs"}
        persisted["configGroups"] = [g.to_dict() for g in groups]
        if not config.replace(persisted):
            return {"success": False, "error": f"Failed to save settings file: {config.settings_path}"}

        moved_from = {old for old, _ in renames}
        if backup_dir_changed:
            if any(store.has_history(p) for p in old_paths):
                warnings.append(f"Backup directory changed; existing backups remain in {store.backup_dir}")
        else:
            for old, new in renames:
                try:
                    count = store.move_history(old, new)
                    self._ctx.state.rename(old, new)
                    logger.info(f"Config renamed: {old} -> {new} ({count} backup(s) moved)")
                except WriteError as e:
                    warnings.append(f"{e.message}; history kept in {store.config_dir(old)}")

            for removed in sorted(old_paths - new_paths - moved_from):
                if store.has_history(removed):
                    warnings.append(
                        f"Config '{removed}' is no longer tracked; its backups were kept in "
                        f"{store.config_dir(removed)}"
                    )

        cron_changed = old_cron != config.cron_schedule
        if cron_changed:
            logger.info(f"Cron schedule updated: '{config.cron_schedule}'")

        self._ctx.reload()
        logger.info("Settings updated successfully")

        response: dict[str, object] = {"success": True, "cronChanged": cron_changed}
        if warnings:
            response["warnings"] = warnings
        return response

    def update_defaults(
        self,
        cron_schedule: str | None = None,
        max_backups: int | None = None,
        max_backup_age_days: int | None = None,
    ) -> dict[str, object]:
        """Change the schedule or default retention in place; arguments left as None keep their value."""
        config = self._ctx.config
        document = config.as_dict()
        if cron_schedule is not None:
            document["cronSchedule"] = cron_schedule
        if max_backups is not None:
            document["defaultMaxBackups"] = max_backups
        if max_backup_age_days is not None:
            document["defaultMaxBackupAgeDays"] = max_backup_age_days

        problems = validate_settings(document)
        if problems:
            logger.warning(f"Rejected settings update: {'; '.join(problems)}")
            return {"success": False, "error": "; ".join(problems)}

        old_cron = config.cron_schedule
        with config.batch_update():
            if cron_schedule is not None:
                config.cron_schedule = cron_schedule
            if max_backups is not None:
                config.default_max_backups = max_backups
            if max_backup_age_days is not None:
                config.default_max_backup_age_days = max_backup_age_days

        cron_changed = old_cron != config.cron_schedule
        if cron_changed:
            logger.info(f"Cron schedule updated: '{config.cron_schedule}'")
        self._ctx.reload()
        return {"success": True, "cronChanged": cron_changed}
