"""Tests for I/O helpers."""

from __future__ import annotations

import errno
import threading
from pathlib import Path

import pytest

from confighistory.errors import ReadError, WriteError
from confighistory.utils import (
    atomic_write_bytes,
    call_with_timeout,
    format_size,
    is_transient,
    path_key,
    retry_io,
    sanitize_filename,
    stage_bytes,
)


class TestNames:
    def test_sanitize(self) -> None:
        assert sanitize_filename('a<b>:c"d') == "a_b_c_d"

    def test_path_key_is_stable_and_distinct(self) -> None:
        assert path_key("esphome/a.yaml") == path_key("esphome/a.yaml")
        assert path_key("esphome/a.yaml") != path_key("esphome_a.yaml")

    def test_format_size(self) -> None:
        assert format_size(512) == "512 B"
        assert format_size(2048) == "2.0 KB"


class TestAtomicWrite:
    def test_creates_parents(self, tmp_path: Path) -> None:
        target = tmp_path / "a" / "b" / "c.bin"
        atomic_write_bytes(target, b"data")
        assert target.read_bytes() == b"data"
        assert list(target.parent.glob("*.tmp")) == []

    def test_stage_leaves_target_untouched(self, tmp_path: Path) -> None:
        target = tmp_path / "c.bin"
        target.write_bytes(b"old")
        staged = stage_bytes(target, b"new")
        assert target.read_bytes() == b"old"
        assert staged.read_bytes() == b"new"
        staged.replace(target)
        assert target.read_bytes() == b"new"


class TestTransient:
    def test_busy_errno_is_transient(self) -> None:
        assert is_transient(OSError(errno.EBUSY, "busy"))

    def test_missing_file_is_not(self) -> None:
        assert not is_transient(FileNotFoundError(errno.ENOENT, "gone"))

    def test_flagged_errors(self) -> None:
        assert is_transient(WriteError("x", retryable=True))
        assert not is_transient(ReadError("x"))


class TestRetry:
    def test_retries_once(self) -> None:
        calls = []

        def _flaky() -> str:
            calls.append(1)
            if len(calls) == 1:
                raise OSError(errno.EAGAIN, "try again")
            return "ok"

        assert retry_io(_flaky, backoff=0) == "ok"
        assert len(calls) == 2

    def test_permanent_error_not_retried(self) -> None:
        calls = []

        def _broken() -> None:
            calls.append(1)
            raise ReadError("denied")

        with pytest.raises(ReadError):
            retry_io(_broken, backoff=0)
        assert len(calls) == 1


class TestTimeout:
    def test_returns_value(self) -> None:
        assert call_with_timeout(lambda: 7, 1.0) == 7

    def test_reraises(self) -> None:
        def _fail() -> None:
            raise OSError(errno.EIO, "io")

        with pytest.raises(OSError):
            call_with_timeout(_fail, 1.0)

    def test_times_out(self) -> None:
        release = threading.Event()
        with pytest.raises(WriteError) as exc:
            call_with_timeout(lambda: release.wait(5), 0.05, error_cls=WriteError)
        release.set()
        assert exc.value.retryable
