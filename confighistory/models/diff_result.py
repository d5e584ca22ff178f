"""Diff results — a tagged variant of unified-diff mode and raw-content mode."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal


def _text(content: bytes | None) -> str | None:
    if content is None:
        return None
    return content.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class UnifiedDiff:
    """Both sides were text: a line-based unified diff (empty when identical)."""

    unified_diff: str
    old_filename: str
    new_filename: str

    type: Literal["diff"] = "diff"
    is_first_backup: Literal[False] = False

    @property
    def has_changes(self) -> bool:
        return bool(self.unified_diff)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "unifiedDiff": self.unified_diff,
            "oldFilename": self.old_filename,
            "newFilename": self.new_filename,
            "isFirstBackup": False,
        }


@dataclass(frozen=True)
class ContentComparison:
    """
    Raw contents for side-by-side display.

    Used when there is nothing to diff against (first backup) or when either
    side is binary or too large for a line diff.
    """

    new_content: bytes
    old_content: bytes | None
    old_filename: str
    new_filename: str
    is_first_backup: bool = False

    type: Literal["content"] = "content"

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": self.type,
            "newContent": _text(self.new_content),
            "newFilename": self.new_filename,
            "isFirstBackup": self.is_first_backup,
        }
        if self.old_content is not None:
            d["oldContent"] = _text(self.old_content)
            d["oldFilename"] = self.old_filename
        return d


BackupDiff = UnifiedDiff | ContentComparison
