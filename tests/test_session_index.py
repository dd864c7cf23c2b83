from __future__ import annotations

import json
from pathlib import Path

from contextflow.core.contracts import SESSION_INDEX_VERSION
from contextflow.state.session_index import SessionIndexStore
from contextflow.tools.args import AppendNoteArgs, WriteHandoffArgs, parse_args


def _note(ctx, **kw):  # type: ignore[no-untyped-def]
    payload = {"agent": "codex", "text": "n"}
    payload.update(kw)
    return ctx.append_note(parse_args(AppendNoteArgs, payload))


def _handoff(ctx, **kw):  # type: ignore[no-untyped-def]
    payload = {"agent": "claude", "summary": "done"}
    payload.update(kw)
    return ctx.write_handoff(parse_args(WriteHandoffArgs, payload))


def _dump(sessions):  # type: ignore[no-untyped-def]
    return [s.to_jsonable() for s in sessions]


def test_incremental_index_matches_rebuild(ctx) -> None:  # type: ignore[no-untyped-def]
    """N 次 append 的增量维护结果必须与从头重建完全一致。"""

    _note(ctx, session_id="s1", task="t1")
    _note(ctx, session_id="s2", project="other")
    _handoff(ctx, session_id="s1", next_steps=["a", "b"])
    _note(ctx)  # 无 session_id：不进入索引
    _note(ctx, session_id="s3", agent="gemini")
    _handoff(ctx, session_id="s2", project="other", summary="other done")

    signature = ctx.log.signature()
    incremental = ctx.index.load(signature)
    assert incremental is not None
    assert incremental.next_file_index == 6

    snapshot = ctx.read_entries()
    rebuilt = ctx.index.build(snapshot.entries, signature)
    for project in ("shared", "other"):
        assert _dump(ctx.index.list_project_sessions(incremental, project)) == _dump(
            ctx.index.list_project_sessions(rebuilt, project)
        )
    assert set(incremental.projects["shared"]) == {"s1", "s3"}


def test_listing_uses_index_fast_path_when_eligible(ctx) -> None:  # type: ignore[no-untyped-def]
    _note(ctx, session_id="s1")
    result = ctx.list_sessions(project="shared")
    assert result.from_index
    assert [s.session_id for s in result.visible_sessions] == ["s1"]

    assert not ctx.list_sessions(project="shared", agent="codex").from_index
    assert not ctx.list_sessions(project="shared", since="2000-01-01T00:00:00Z").from_index
    assert not ctx.list_sessions(project="shared", include_unsessioned=True).from_index


def test_stale_index_is_rebuilt_on_listing(ctx) -> None:  # type: ignore[no-untyped-def]
    _note(ctx, session_id="s1")
    # 绕过写路径直接追加：索引 signature 失配
    ctx.log.append_line(json.dumps({"id": "x", "ts": "2030-01-01T00:00:00.000Z", "kind": "note", "project": "shared", "agent": "a", "session_id": "s9", "text": "t"}))
    ctx.cache.invalidate()

    first = ctx.list_sessions(project="shared")
    assert not first.from_index
    assert [s.session_id for s in first.all_sessions] == ["s9", "s1"]

    second = ctx.list_sessions(project="shared")
    assert second.from_index
    assert _dump(second.all_sessions) == _dump(first.all_sessions)
    on_disk = json.loads(ctx.paths.index_file.read_text(encoding="utf-8"))
    assert on_disk["context_signature"] == ctx.log.signature()
    assert on_disk["version"] == SESSION_INDEX_VERSION


def test_corrupt_or_mismatched_index_is_treated_as_absent(tmp_path: Path) -> None:
    path = tmp_path / "log.jsonl.sessions-index.json"
    store = SessionIndexStore(path, default_project="shared")

    path.write_text("{not json", encoding="utf-8")
    assert store.load("10:1") is None

    path.write_text(json.dumps([1, 2]), encoding="utf-8")
    assert store.load("10:1") is None

    path.write_text(json.dumps({"version": 2, "context_signature": "10:1", "projects": {}}), encoding="utf-8")
    assert store.load("10:1") is None

    path.write_text(
        json.dumps({"version": 1, "context_signature": "10:1", "projects": {"p": {"s": {"entry_count": -5}}}}),
        encoding="utf-8",
    )
    assert store.load("10:1") is None

    path.write_text(json.dumps({"version": 1, "context_signature": "10:1", "projects": {}}), encoding="utf-8")
    assert store.load("10:2") is None
    assert store.load("10:1") is not None
    assert store.load(None) is None


def test_persist_is_atomic_and_leaves_no_temp_files(tmp_path: Path) -> None:
    path = tmp_path / "idx" / "log.jsonl.sessions-index.json"
    store = SessionIndexStore(path, default_project="shared")
    index = store.build([{"kind": "note", "project": "p", "agent": "a", "session_id": "s", "ts": "2024-01-01T00:00:00Z"}], "5:5")

    assert store.persist(index)
    assert [p.name for p in path.parent.iterdir()] == [path.name]
    assert json.loads(path.read_text(encoding="utf-8"))["projects"]["p"]["s"]["entry_count"] == 1


def test_persist_failure_is_absorbed(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = SessionIndexStore(blocker / "index.json", default_project="shared")

    assert store.persist(store.skeleton("1:1")) is False
    assert store.load("1:1") is None


def test_update_on_append_skips_when_prior_index_missing(tmp_path: Path) -> None:
    path = tmp_path / "index.json"
    store = SessionIndexStore(path, default_project="shared")
    store.update_on_append({"session_id": "s", "kind": "note"}, before_signature="3:3", after_signature="4:4")
    assert not path.exists()

    store.update_on_append({"session_id": "s", "kind": "note"}, before_signature=None, after_signature="4:4")
    loaded = store.load("4:4")
    assert loaded is not None
    assert loaded.projects["shared"]["s"].entry_count == 1
    assert loaded.next_file_index == 1


def test_index_errors_never_break_appends(ctx, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    def _boom(*_a, **_kw):  # type: ignore[no-untyped-def]
        raise RuntimeError("index exploded")

    monkeypatch.setattr(ctx.index, "update_on_append", _boom)
    entry = _note(ctx, session_id="s1")

    snapshot = ctx.read_entries()
    assert [e["id"] for e in snapshot.entries] == [entry.id]
    assert not ctx.lock.path.exists()
    assert [s.session_id for s in ctx.list_sessions(project="shared").all_sessions] == ["s1"]
