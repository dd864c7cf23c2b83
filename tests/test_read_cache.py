from __future__ import annotations

import json
from pathlib import Path

import pytest

from contextflow.core.errors import ContextFileTooLargeError
from contextflow.state.read_cache import ReadCache
from contextflow.state.record_log import RecordLog, make_file_signature, parse_entries


def _line(i: int) -> str:
    return json.dumps({"id": f"e{i}", "kind": "note", "project": "p", "agent": "a", "text": f"t{i}"})


def test_cache_hit_returns_same_snapshot_without_reading(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    log = RecordLog(tmp_path / "log.jsonl", 1 << 20)
    log.append_line(_line(1))
    cache = ReadCache(log)

    first = cache.read()
    assert cache.signature == first.signature == log.signature()

    def _fail() -> str:
        raise AssertionError("content must not be re-read on cache hit")

    monkeypatch.setattr(log, "read_raw", _fail)
    assert cache.read() is first


def test_missing_file_reads_empty_and_invalidates(tmp_path: Path) -> None:
    log = RecordLog(tmp_path / "log.jsonl", 1 << 20)
    log.append_line(_line(1))
    cache = ReadCache(log)
    assert len(cache.read().entries) == 1

    log.path.unlink()
    snapshot = cache.read()
    assert snapshot.entries == []
    assert snapshot.signature is None
    assert cache.signature is None


def test_invalidate_forces_reread_after_append(tmp_path: Path) -> None:
    log = RecordLog(tmp_path / "log.jsonl", 1 << 20)
    log.append_line(_line(1))
    cache = ReadCache(log)
    assert len(cache.read().entries) == 1

    log.append_line(_line(2))
    cache.invalidate()
    snapshot = cache.read()
    assert [e["id"] for e in snapshot.entries] == ["e1", "e2"]
    assert snapshot.signature == log.signature()


def test_torn_read_is_retried_once_then_cached(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    log = RecordLog(tmp_path / "log.jsonl", 1 << 20)
    log.append_line(_line(1))
    cache = ReadCache(log)
    original = log.read_raw
    calls = {"n": 0}

    def _read_with_concurrent_append() -> str:
        calls["n"] += 1
        raw = original()
        if calls["n"] == 1:
            log.append_line(_line(2))
        return raw

    monkeypatch.setattr(log, "read_raw", _read_with_concurrent_append)
    snapshot = cache.read()

    assert calls["n"] == 2
    assert [e["id"] for e in snapshot.entries] == ["e1", "e2"]
    assert snapshot.signature == log.signature()
    assert cache.signature == snapshot.signature


def test_persistently_torn_read_is_returned_uncached(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """连续两次 torn：返回解析结果，但不得以任何 signature 写入缓存。"""

    log = RecordLog(tmp_path / "log.jsonl", 1 << 20)
    log.append_line(_line(0))
    cache = ReadCache(log)
    original = log.read_raw
    counter = {"n": 0}

    def _always_racing() -> str:
        raw = original()
        counter["n"] += 1
        log.append_line(_line(counter["n"]))
        return raw

    monkeypatch.setattr(log, "read_raw", _always_racing)
    snapshot = cache.read()

    assert snapshot.signature is None
    assert cache.signature is None
    assert counter["n"] == 2


def test_cached_content_never_pairs_with_older_signature(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """读 -> 并发 append -> 读：返回的内容与其 signature 必须一致。"""

    log = RecordLog(tmp_path / "log.jsonl", 1 << 20)
    log.append_line(_line(1))
    cache = ReadCache(log)
    pre_signature = cache.read().signature

    original = log.read_raw
    appended = {"done": False}

    def _race() -> str:
        raw = original()
        if not appended["done"]:
            appended["done"] = True
            log.append_line(_line(2))
        return raw

    log.append_line(_line(3))
    monkeypatch.setattr(log, "read_raw", _race)
    snapshot = cache.read()

    ids = [e["id"] for e in snapshot.entries]
    if snapshot.signature is not None:
        assert snapshot.signature != pre_signature
        entries, _ = parse_entries(original())
        assert snapshot.signature == make_file_signature(log.stat())
        assert ids == [e["id"] for e in entries]
    assert "e3" in ids


def test_oversized_file_fails_read(tmp_path: Path) -> None:
    log = RecordLog(tmp_path / "log.jsonl", 32)
    for i in range(5):
        log.append_line(_line(i))
    with pytest.raises(ContextFileTooLargeError):
        ReadCache(log).read()
