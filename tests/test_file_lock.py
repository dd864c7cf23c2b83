from __future__ import annotations

import json
import os
import time
from pathlib import Path

import pytest

from contextflow.core.errors import LockTimeoutError
from contextflow.state.file_lock import FileLock


def test_lock_creates_marker_with_metadata_and_removes_it(tmp_path: Path) -> None:
    lock = FileLock(tmp_path / "sub" / "log.jsonl.lock")

    with lock:
        assert lock.held
        meta = json.loads(lock.path.read_text(encoding="utf-8"))
        assert meta["pid"] == os.getpid()
        assert set(meta) == {"pid", "host", "created_at", "token"}

    assert not lock.held
    assert not lock.path.exists()


def test_lock_released_when_critical_section_raises(tmp_path: Path) -> None:
    lock = FileLock(tmp_path / "log.lock")

    with pytest.raises(ValueError):
        with lock:
            raise ValueError("boom")

    assert not lock.path.exists()
    assert not lock.held


def test_lock_is_not_reentrant(tmp_path: Path) -> None:
    """同一实例嵌套获取必须立即失败（而不是等到超时）。"""

    lock = FileLock(tmp_path / "log.lock", max_wait_ms=60_000)
    with lock:
        started = time.monotonic()
        with pytest.raises(RuntimeError):
            lock.acquire()
        assert time.monotonic() - started < 1.0
        assert lock.path.exists()


def test_lock_times_out_while_held_by_another_holder(tmp_path: Path) -> None:
    path = tmp_path / "log.lock"
    holder = FileLock(path)
    waiter = FileLock(path, max_wait_ms=150, backoff_min_ms=10, backoff_jitter_ms=10)

    with holder:
        marker_before = path.read_text(encoding="utf-8")
        with pytest.raises(LockTimeoutError) as ei:
            waiter.acquire()
        assert ei.value.error_kind == "lock_timeout"
        assert ei.value.details["waited_ms"] >= 150
        assert not waiter.held
        # 超时方不得删除他人持有的 marker
        assert path.read_text(encoding="utf-8") == marker_before


def test_stale_marker_is_broken_and_lock_acquired(tmp_path: Path) -> None:
    path = tmp_path / "log.lock"
    path.write_text('{"pid": 999999, "host": "gone", "created_at": "2000-01-01T00:00:00.000Z"}', encoding="utf-8")
    old = time.time() - 120
    os.utime(path, (old, old))

    lock = FileLock(path, max_wait_ms=500, stale_ms=30_000)
    with lock:
        meta = json.loads(path.read_text(encoding="utf-8"))
        assert meta["pid"] == os.getpid()
    assert not path.exists()


def test_release_without_acquire_is_noop(tmp_path: Path) -> None:
    lock = FileLock(tmp_path / "log.lock")
    lock.release()
    assert not lock.path.exists()


def test_metadata_write_failure_removes_marker(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """元数据写入失败时不能留下空 marker（否则其它写入者要等到 stale 才能继续）。"""

    import contextflow.state.file_lock as file_lock_mod

    real_write = os.write

    def _fail_write(fd: int, data: bytes) -> int:
        if data.startswith(b'{"pid"'):
            raise OSError(28, "No space left on device")
        return real_write(fd, data)

    monkeypatch.setattr(file_lock_mod.os, "write", _fail_write)
    lock = FileLock(tmp_path / "log.lock", max_wait_ms=50)

    with pytest.raises(OSError):
        lock.acquire()
    assert not lock.held
    assert not lock.path.exists()


def test_release_leaves_marker_owned_by_another_holder(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    lock = FileLock(tmp_path / "log.lock")
    lock.acquire()
    # another writer broke our marker as stale and recreated it
    other = '{"pid": 4242, "host": "elsewhere", "created_at": "2024-05-01T10:00:00.000Z", "token": "other"}'
    lock.path.write_text(other, encoding="utf-8")

    with caplog.at_level("WARNING", logger="contextflow.state.file_lock"):
        lock.release()

    assert not lock.held
    assert lock.path.read_text(encoding="utf-8") == other
    assert "owned by another holder" in caplog.text


def test_release_after_marker_vanished_is_quiet(tmp_path: Path) -> None:
    lock = FileLock(tmp_path / "log.lock")
    lock.acquire()
    lock.path.unlink()
    lock.release()
    assert not lock.held
    assert not lock.path.exists()
