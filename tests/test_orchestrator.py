"""Tests for the BackupOrchestrator pipeline."""

from __future__ import annotations

import errno
import random
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from confighistory.config import Config, reset_config
from confighistory.context import EngineContext, create_context
from confighistory.core.hasher import ContentHasher
from confighistory.core.orchestrator import CURRENT, Outcome
from confighistory.core.store import BackupStore
from confighistory.errors import NotFoundError, WriteError
from confighistory.models.backup_record import Snapshot
from confighistory.models.diff_result import ContentComparison, UnifiedDiff


@pytest.fixture(autouse=True)
def _clean_config():
    reset_config()
    yield
    reset_config()


def _make_ctx(tmp_path: Path, configs: list[dict[str, Any]], **settings: Any) -> EngineContext:
    ha = tmp_path / "homeassistant"
    ha.mkdir(exist_ok=True)
    config = Config(data_dir=tmp_path / "data")
    with config.batch_update():
        config.set("homeAssistantConfigDir", str(ha))
        config.set("backupDir", str(tmp_path / "backups"))
        config.set("configGroups", [{"groupName": "Test", "configs": configs}])
        for key, value in settings.items():
            config.set(key, value)
    return create_context(config)


@pytest.fixture
def ha_dir(tmp_path: Path) -> Path:
    d = tmp_path / "homeassistant"
    d.mkdir()
    return d


@pytest.fixture
def ctx(tmp_path: Path, ha_dir: Path) -> EngineContext:
    return _make_ctx(
        tmp_path,
        [{"path": "automations.yaml", "backupType": "multiple", "maxBackups": 3}],
    )


def _tracked(ctx: EngineContext, path: str = "automations.yaml"):
    return ctx.orchestrator.find_config(path)[1]


def _contents(ctx: EngineContext, path: str = "automations.yaml") -> list[bytes]:
    config = _tracked(ctx, path)
    return [ctx.store.read(config, r.filename).single_content() for r in ctx.store.list(config)]


class TestTrigger:
    def test_first_trigger_creates_backup(self, ctx: EngineContext, ha_dir: Path) -> None:
        (ha_dir / "automations.yaml").write_text("- id: one\n")
        outcome = ctx.orchestrator.trigger(_tracked(ctx))
        assert outcome.status == Outcome.BACKED_UP
        assert outcome.filename
        assert _contents(ctx) == [b"- id: one\n"]

    def test_unchanged_is_idempotent(self, ctx: EngineContext, ha_dir: Path) -> None:
        (ha_dir / "automations.yaml").write_text("- id: one\n")
        ctx.orchestrator.trigger(_tracked(ctx))
        second = ctx.orchestrator.trigger(_tracked(ctx))
        assert second.status == Outcome.UNCHANGED
        assert len(ctx.store.list(_tracked(ctx))) == 1

    def test_max_backups_keeps_most_recent(self, ctx: EngineContext, ha_dir: Path) -> None:
        live = ha_dir / "automations.yaml"
        for version in ("v1", "v2", "v3", "v4"):
            live.write_text(f"{version}\n")
            ctx.orchestrator.trigger(_tracked(ctx))
        assert _contents(ctx) == [b"v2\n", b"v3\n", b"v4\n"]

    def test_pruned_names_reported(self, ctx: EngineContext, ha_dir: Path) -> None:
        live = ha_dir / "automations.yaml"
        filenames = []
        for version in ("v1", "v2", "v3", "v4"):
            live.write_text(version)
            filenames.append(ctx.orchestrator.trigger(_tracked(ctx)).filename)
        # the fourth trigger pruned the first backup
        last = ctx.store.list(_tracked(ctx))
        assert filenames[0] not in [r.filename for r in last]

    def test_age_limit_spares_new_backup(self, tmp_path: Path, ha_dir: Path) -> None:
        ctx = _make_ctx(
            tmp_path, [{"path": "scenes.yaml", "backupType": "multiple", "maxBackupAgeDays": 1}]
        )
        config = _tracked(ctx, "scenes.yaml")
        old = datetime(2020, 1, 1, tzinfo=timezone.utc)
        for text in ("old1", "old2"):
            snap = Snapshot(files={"scenes.yaml": text.encode()})
            ctx.store.create(config, snap, ContentHasher.fingerprint(snap), now=old)

        (ha_dir / "scenes.yaml").write_text("fresh")
        outcome = ctx.orchestrator.trigger(config)
        assert outcome.status == Outcome.BACKED_UP
        assert len(outcome.pruned) == 2
        assert _contents(ctx, "scenes.yaml") == [b"fresh"]

    def test_default_retention_applies(self, tmp_path: Path, ha_dir: Path) -> None:
        ctx = _make_ctx(
            tmp_path, [{"path": "scenes.yaml", "backupType": "multiple"}], defaultMaxBackups=2
        )
        live = ha_dir / "scenes.yaml"
        for version in ("a", "b", "c"):
            live.write_text(version)
            ctx.orchestrator.trigger(_tracked(ctx, "scenes.yaml"))
        assert _contents(ctx, "scenes.yaml") == [b"b", b"c"]

    def test_single_keeps_only_latest(self, tmp_path: Path, ha_dir: Path) -> None:
        ctx = _make_ctx(tmp_path, [{"path": "secrets.yaml", "backupType": "single"}])
        live = ha_dir / "secrets.yaml"
        for version in ("a", "b", "c"):
            live.write_text(version)
            ctx.orchestrator.trigger(_tracked(ctx, "secrets.yaml"))
        assert _contents(ctx, "secrets.yaml") == [b"c"]

    def test_missing_path_is_skipped_with_warning(self, ctx: EngineContext) -> None:
        summary = ctx.orchestrator.trigger_all()
        assert summary.count(Outcome.SKIPPED) == 1
        assert summary.status == "completed_with_warnings"
        assert "automations.yaml" in summary.warnings[0]
        assert ctx.state.get("automations.yaml").last_error

    def test_busy_path_is_reported(self, tmp_path: Path, ha_dir: Path) -> None:
        ctx = _make_ctx(
            tmp_path,
            [{"path": "automations.yaml", "backupType": "multiple"}],
            lockTimeoutSeconds=0.1,
        )
        (ha_dir / "automations.yaml").write_text("x")
        held = threading.Event()
        release = threading.Event()

        def _holder() -> None:
            with ctx.locks.hold("automations.yaml"):
                held.set()
                release.wait(5)

        t = threading.Thread(target=_holder)
        t.start()
        held.wait(5)
        try:
            outcome = ctx.orchestrator.trigger(_tracked(ctx))
        finally:
            release.set()
            t.join()
        assert outcome.status == Outcome.BUSY
        assert ctx.store.list(_tracked(ctx)) == []

    def test_shutdown_skips_remaining(self, ctx: EngineContext, ha_dir: Path) -> None:
        (ha_dir / "automations.yaml").write_text("x")
        ctx.orchestrator.shutdown()
        summary = ctx.orchestrator.trigger_all()
        assert summary.count(Outcome.SKIPPED) == 1
        assert "shutdown" in summary.warnings[0]
        assert ctx.store.list(_tracked(ctx)) == []

    def test_summary_dict(self, ctx: EngineContext, ha_dir: Path) -> None:
        (ha_dir / "automations.yaml").write_text("x")
        result = ctx.orchestrator.trigger_all().to_dict()
        assert result["status"] == "completed"
        assert result["backedUp"] == 1
        assert result["failed"] == 0


class TestFailureHandling:
    def test_transient_read_error_is_retried(
        self, ctx: EngineContext, ha_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (ha_dir / "automations.yaml").write_text("- id: one\n")
        original = Path.read_bytes
        calls = []

        def _flaky(self: Path) -> bytes:
            if self.name == "automations.yaml":
                calls.append(1)
                if len(calls) == 1:
                    raise OSError(errno.EIO, "I/O error")
            return original(self)

        monkeypatch.setattr(Path, "read_bytes", _flaky)
        outcome = ctx.orchestrator.trigger(_tracked(ctx))
        assert outcome.status == Outcome.BACKED_UP
        assert len(calls) == 2

    def test_permanent_read_error_fails_once(
        self, ctx: EngineContext, ha_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (ha_dir / "automations.yaml").write_text("- id: one\n")
        calls = []

        def _denied(self: Path) -> bytes:
            calls.append(1)
            raise PermissionError(errno.EACCES, "Permission denied")

        monkeypatch.setattr(Path, "read_bytes", _denied)
        outcome = ctx.orchestrator.trigger(_tracked(ctx))
        assert outcome.status == Outcome.FAILED
        assert len(calls) == 1

    def test_failed_write_keeps_last_hash(
        self, ctx: EngineContext, ha_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        live = ha_dir / "automations.yaml"
        live.write_text("v1\n")
        ctx.orchestrator.trigger(_tracked(ctx))
        first_hash = ctx.state.get("automations.yaml").last_hash

        def _full(*args: Any, **kwargs: Any) -> None:
            raise WriteError("No space left on device")

        monkeypatch.setattr(ctx.store, "create", _full)
        live.write_text("v2\n")
        outcome = ctx.orchestrator.trigger(_tracked(ctx))

        assert outcome.status == Outcome.FAILED
        record = ctx.state.get("automations.yaml")
        assert record.last_hash == first_hash
        assert "No space left" in record.last_error

    def test_timed_out_write_leaves_no_duplicate(
        self, tmp_path: Path, ha_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        ctx = _make_ctx(
            tmp_path,
            [{"path": "automations.yaml", "backupType": "multiple"}],
            ioTimeoutSeconds=0.3,
        )
        (ha_dir / "automations.yaml").write_text("- id: one\n")
        original = BackupStore._sidecar_bytes
        calls = []

        def _slow(record: Any) -> bytes:
            calls.append(1)
            if len(calls) == 1:
                time.sleep(0.6)
            return original(record)

        monkeypatch.setattr(BackupStore, "_sidecar_bytes", staticmethod(_slow))
        outcome = ctx.orchestrator.trigger(_tracked(ctx))
        time.sleep(1.0)  # let the abandoned writer finish

        assert outcome.status == Outcome.BACKED_UP
        records = ctx.store.list(_tracked(ctx))
        assert [r.filename for r in records] == [outcome.filename]
        for prev, cur in zip(records, records[1:]):
            assert prev.content_hash != cur.content_hash
        leftovers = sorted(p.name for p in ctx.store.config_dir("automations.yaml").iterdir())
        assert len(leftovers) == 2
        assert not [name for name in leftovers if name.endswith(".tmp")]


class TestConcurrency:
    def test_racing_triggers_never_duplicate(self, tmp_path: Path, ha_dir: Path) -> None:
        ctx = _make_ctx(
            tmp_path,
            [{"path": "automations.yaml", "backupType": "multiple"}],
            lockTimeoutSeconds=30,
        )
        live = ha_dir / "automations.yaml"
        live.write_text("v0")
        config = _tracked(ctx)
        errors: list[BaseException] = []

        def _worker(seed: int) -> None:
            rng = random.Random(seed)
            try:
                for _ in range(15):
                    if rng.random() < 0.5:
                        tmp = ha_dir / f".automations.{seed}.tmp"
                        tmp.write_text(f"v{rng.randint(0, 3)}")
                        tmp.replace(live)
                    ctx.orchestrator.trigger(config)
            except BaseException as e:
                errors.append(e)

        threads = [threading.Thread(target=_worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        records = ctx.store.list(config)
        assert records
        for prev, cur in zip(records, records[1:]):
            assert prev.content_hash != cur.content_hash
            assert prev.filename < cur.filename


class TestRestore:
    def test_restore_round_trip(self, ctx: EngineContext, ha_dir: Path) -> None:
        live = ha_dir / "automations.yaml"
        live.write_text("v1\n")
        first = ctx.orchestrator.trigger(_tracked(ctx)).filename
        live.write_text("v2\n")
        ctx.orchestrator.trigger(_tracked(ctx))

        result = ctx.orchestrator.restore(_tracked(ctx), first)
        assert result.success
        assert live.read_text() == "v1\n"

        outcome = ctx.orchestrator.trigger(_tracked(ctx))
        assert outcome.status == Outcome.BACKED_UP
        records = ctx.store.list(_tracked(ctx))
        assert records[-1].content_hash == records[0].content_hash

    def test_restore_unknown_backup(self, ctx: EngineContext, ha_dir: Path) -> None:
        (ha_dir / "automations.yaml").write_text("v1\n")
        with pytest.raises(NotFoundError):
            ctx.orchestrator.restore(_tracked(ctx), "nope.yaml")

    def test_directory_restore_replaces(self, tmp_path: Path, ha_dir: Path) -> None:
        ctx = _make_ctx(
            tmp_path,
            [
                {
                    "path": "esphome",
                    "backupType": "directory",
                    "includeFilePatterns": ["*.yaml"],
                    "excludeFilePatterns": ["secrets.yaml"],
                }
            ],
        )
        d = ha_dir / "esphome"
        d.mkdir()
        (d / "kitchen.yaml").write_text("name: kitchen\n")
        (d / "secrets.yaml").write_text("wifi: a\n")
        config = _tracked(ctx, "esphome")
        first = ctx.orchestrator.trigger(config).filename

        (d / "kitchen.yaml").write_text("name: kitchen2\n")
        (d / "garage.yaml").write_text("name: garage\n")
        (d / "secrets.yaml").write_text("wifi: b\n")
        ctx.orchestrator.trigger(config)

        result = ctx.orchestrator.restore(config, first)
        assert result.success
        assert (d / "kitchen.yaml").read_text() == "name: kitchen\n"
        assert not (d / "garage.yaml").exists()
        # excluded files are left alone
        assert (d / "secrets.yaml").read_text() == "wifi: b\n"
        assert ctx.orchestrator.trigger(config).status == Outcome.BACKED_UP
        records = ctx.store.list(config)
        assert records[-1].content_hash == records[0].content_hash


class TestCompare:
    def test_previous_and_first(self, ctx: EngineContext, ha_dir: Path) -> None:
        live = ha_dir / "automations.yaml"
        live.write_text("line1\nline2\n")
        first = ctx.orchestrator.trigger(_tracked(ctx)).filename
        live.write_text("line1\nlineX\n")
        second = ctx.orchestrator.trigger(_tracked(ctx)).filename

        initial = ctx.orchestrator.compare(_tracked(ctx), None, first)
        assert isinstance(initial, ContentComparison)
        assert initial.is_first_backup

        result = ctx.orchestrator.compare(_tracked(ctx), None, second)
        assert isinstance(result, UnifiedDiff)
        assert "-line2\n+lineX\n" in result.unified_diff

    def test_against_current(self, ctx: EngineContext, ha_dir: Path) -> None:
        live = ha_dir / "automations.yaml"
        live.write_text("a\n")
        first = ctx.orchestrator.trigger(_tracked(ctx)).filename
        live.write_text("b\n")
        result = ctx.orchestrator.compare(_tracked(ctx), first, CURRENT)
        assert result.type == "diff"
        assert "+b\n" in result.unified_diff

    def test_unknown_right_raises(self, ctx: EngineContext) -> None:
        with pytest.raises(NotFoundError):
            ctx.orchestrator.compare(_tracked(ctx), None, "missing.yaml")


class TestMetadata:
    def test_names_from_yaml_nodes(self, tmp_path: Path, ha_dir: Path) -> None:
        ctx = _make_ctx(
            tmp_path,
            [
                {
                    "path": "esphome/kitchen.yaml",
                    "backupType": "multiple",
                    "idNode": "id",
                    "friendlyNameNode": "name",
                }
            ],
        )
        (ha_dir / "esphome").mkdir()
        (ha_dir / "esphome" / "kitchen.yaml").write_text("id: kitchen_node\nname: Kitchen\n")
        ctx.orchestrator.trigger_all()

        metadata = ctx.orchestrator.list_metadata()["Test"][0]
        assert metadata.id == "kitchen_node"
        assert metadata.friendly_name == "Kitchen"
        assert metadata.backup_count == 1
        assert metadata.last_hash

        assert ctx.orchestrator.find_config("esphome/kitchen.yaml", "kitchen_node")
        with pytest.raises(NotFoundError):
            ctx.orchestrator.find_config("esphome/kitchen.yaml", "other")

    def test_untracked_path(self, ctx: EngineContext) -> None:
        with pytest.raises(NotFoundError):
            ctx.orchestrator.find_config("unknown.yaml")
