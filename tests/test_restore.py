"""Tests for the RestoreManager."""

from __future__ import annotations

from pathlib import Path

import pytest

from confighistory.core.restore import RestoreManager
from confighistory.models.backup_record import Snapshot
from confighistory.models.tracked_config import BackupType, TrackedConfig


@pytest.fixture
def manager() -> RestoreManager:
    return RestoreManager()


class TestFileRestore:
    def test_overwrites_live_file(self, manager: RestoreManager, tmp_path: Path) -> None:
        target = tmp_path / "automations.yaml"
        target.write_text("new")
        result = manager.restore(
            TrackedConfig(path="automations.yaml"), target, Snapshot(files={"automations.yaml": b"old"})
        )
        assert result.success
        assert target.read_text() == "old"
        assert result.to_dict()["success"] is True

    def test_recreates_deleted_file(self, manager: RestoreManager, tmp_path: Path) -> None:
        target = tmp_path / "sub" / "scenes.yaml"
        result = manager.restore(
            TrackedConfig(path="sub/scenes.yaml"), target, Snapshot(files={"scenes.yaml": b"s"})
        )
        assert result.success
        assert target.read_bytes() == b"s"


class TestDirectoryRestore:
    @pytest.fixture
    def config(self) -> TrackedConfig:
        return TrackedConfig(
            path="esphome",
            backup_type=BackupType.DIRECTORY,
            include_file_patterns=["*.yaml"],
            exclude_file_patterns=["secrets.yaml"],
        )

    def test_replace_not_merge(self, manager: RestoreManager, config: TrackedConfig, tmp_path: Path) -> None:
        target = tmp_path / "esphome"
        target.mkdir()
        (target / "a.yaml").write_text("changed")
        (target / "extra.yaml").write_text("added later")
        (target / "secrets.yaml").write_text("keep me")
        (target / "README.md").write_text("untracked")

        snap = Snapshot(files={"a.yaml": b"original", "sub/b.yaml": b"nested"}, is_directory=True)
        result = manager.restore(config, target, snap)

        assert result.success
        assert (target / "a.yaml").read_text() == "original"
        assert (target / "sub" / "b.yaml").read_text() == "nested"
        assert not (target / "extra.yaml").exists()
        assert (target / "secrets.yaml").read_text() == "keep me"
        assert (target / "README.md").exists()
        assert result.removed_files == ["extra.yaml"]

    def test_entries_outside_root_skipped(
        self, manager: RestoreManager, config: TrackedConfig, tmp_path: Path
    ) -> None:
        target = tmp_path / "esphome"
        snap = Snapshot(files={"../escape.yaml": b"x", "ok.yaml": b"y"}, is_directory=True)
        result = manager.restore(config, target, snap)
        assert not (tmp_path / "escape.yaml").exists()
        assert (target / "ok.yaml").read_text() == "y"
        assert result.warnings
