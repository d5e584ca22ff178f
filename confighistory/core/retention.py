"""Retention policy — decide which backups to prune after a new one is added."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Sequence

from confighistory.models.backup_record import BackupRecord
from confighistory.models.tracked_config import BackupType


def select_for_deletion(
    records: Sequence[BackupRecord],
    max_backups: int | None,
    max_backup_age_days: int | None,
    now: datetime | None = None,
    backup_type: BackupType = BackupType.MULTIPLE,
) -> list[BackupRecord]:
    """
    Return the records to delete, oldest first.

    *records* must be ordered by date ascending. The count and age rules are
    applied together and their violations united. The newest record is never
    selected. ``single`` configs keep only the newest record regardless of
    limits.
    """
    if len(records) <= 1:
        return []

    candidates = list(records[:-1])  # the newest record is the floor

    if backup_type == BackupType.SINGLE:
        return candidates

    doomed: set[str] = set()

    if max_backups is not None and len(records) > max_backups:
        excess = len(records) - max_backups
        doomed.update(r.filename for r in candidates[:excess])

    if max_backup_age_days is not None:
        now = now or datetime.now(tz=timezone.utc)
        cutoff = now - timedelta(days=max_backup_age_days)
        doomed.update(r.filename for r in candidates if r.date < cutoff)

    return [r for r in candidates if r.filename in doomed]
