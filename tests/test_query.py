from __future__ import annotations

from contextflow.core.contracts import NO_SESSION_BUCKET, SessionSummary
from contextflow.core.query import (
    EntryFilter,
    build_resume_data,
    filter_entries,
    iter_matching,
    latest_handoff,
    select_recent,
)
from contextflow.core.summaries import build_session_summaries, sort_session_summaries


def _e(i: int, **kw):  # type: ignore[no-untyped-def]
    base = {"id": f"e{i}", "kind": "note", "project": "p", "agent": "codex", "ts": "2024-05-01T10:00:00.000Z"}
    base.update(kw)
    return base


def test_since_filter_is_inclusive() -> None:
    entries = [
        _e(1, ts="2024-05-01T10:00:00.000Z"),
        _e(2, ts="2024-05-01T10:05:00.000Z"),
        _e(3, ts="2024-05-01T10:10:00.000Z"),
    ]
    out = filter_entries(entries, EntryFilter(since="2024-05-01T10:05:00.000Z"))
    assert [e["id"] for e in out] == ["e2", "e3"]


def test_since_filter_excludes_unparseable_timestamps() -> None:
    entries = [_e(1, ts="yesterday"), _e(2, ts=None), _e(3, ts="2024-05-01T12:00:00+02:00")]
    out = filter_entries(entries, EntryFilter(since="2024-05-01T09:00:00Z"))
    assert [e["id"] for e in out] == ["e3"]


def test_filters_are_exact_matches_and_keep_order() -> None:
    entries = [
        _e(1, agent="codex", session_id="s1"),
        _e(2, agent="claude", session_id="s1", kind="handoff"),
        _e(3, agent="codex", session_id="s2"),
        _e(4, agent="codex", session_id="s1", project="P"),
    ]
    assert [e["id"] for e in filter_entries(entries, EntryFilter(project="p", session_id="s1"))] == ["e1", "e2"]
    assert [e["id"] for e in filter_entries(entries, EntryFilter(agent="codex", kind="note"))] == ["e1", "e3", "e4"]
    assert [i for i, _ in iter_matching(entries, EntryFilter(session_id="s2"))] == [2]


def test_select_recent_returns_last_n() -> None:
    assert select_recent([1, 2, 3, 4, 5], 2) == [4, 5]
    assert select_recent([1, 2], 5) == [1, 2]
    assert select_recent([1, 2], 0) == []


def test_latest_handoff_is_last_by_append_order() -> None:
    entries = [
        _e(1, kind="handoff", ts="2024-05-01T12:00:00Z"),
        _e(2, kind="handoff", ts="2024-05-01T09:00:00Z"),
        _e(3),
    ]
    assert latest_handoff(entries)["id"] == "e2"
    assert latest_handoff([_e(1)]) is None


def test_session_sort_order_timestamp_then_file_index_then_id() -> None:
    t = "2024-05-01T10:00:00.000Z"
    a = SessionSummary(session_id="A", latest_ts=t, latest_ts_ms=1714557600000.0, latest_file_index=3)
    b = SessionSummary(session_id="B", latest_ts=t, latest_ts_ms=1714557600000.0, latest_file_index=5)
    c = SessionSummary(session_id="C", latest_ts="2024-05-01T09:59:59.999Z", latest_ts_ms=1714557599999.0, latest_file_index=9)
    d = SessionSummary(session_id="D", latest_ts=t, latest_ts_ms=1714557600000.0, latest_file_index=5)
    assert [s.session_id for s in sort_session_summaries([c, a, b])] == ["B", "A", "C"]
    assert [s.session_id for s in sort_session_summaries([d, b, a])] == ["B", "D", "A"]


def test_build_session_summaries_folds_entries() -> None:
    entries = [
        _e(0, session_id="s1", task="first", ts="2024-05-01T10:00:00Z"),
        _e(1, session_id="s1", kind="handoff", agent="claude", summary="line1\nline2", ts="2024-05-01T10:01:00Z"),
        _e(2, ts="2024-05-01T10:02:00Z"),
        _e(3, session_id="s2", task="  ", ts="2024-05-01T09:00:00Z"),
    ]
    sessions = build_session_summaries(enumerate(entries))
    assert [s.session_id for s in sessions] == ["s1", "s2"]
    s1 = sessions[0]
    assert (s1.entry_count, s1.note_count, s1.handoff_count) == (2, 1, 1)
    assert s1.agents == ["claude", "codex"]
    assert s1.task == "first"
    assert s1.last_entry_kind == "handoff"
    assert s1.latest_handoff_summary == "line1 line2"
    assert s1.latest_ts == "2024-05-01T10:01:00.000Z"
    assert s1.latest_file_index == 1
    assert sessions[1].task is None

    with_bucket = build_session_summaries(enumerate(entries), include_unsessioned=True)
    assert [s.session_id for s in with_bucket] == [NO_SESSION_BUCKET, "s1", "s2"]


def test_resume_data_for_named_session_and_bucket() -> None:
    entries = [
        _e(0, session_id="s1"),
        _e(1),
        _e(2, session_id="s1", kind="handoff", summary="h"),
        _e(3, session_id="s1"),
        _e(4, project="other"),
    ]
    data = build_resume_data(entries, [], project="p", session_id="s1", limit=2)
    assert data is not None
    assert [e["id"] for e in data.entries] == ["e2", "e3"]
    assert data.latest_handoff["id"] == "e2"
    assert data.summary.entry_count == 3
    assert data.to_jsonable()["summary"]["session_id"] == "s1"

    bucket = build_resume_data(entries, [], project="p", session_id=NO_SESSION_BUCKET, limit=10)
    assert bucket is not None
    assert [e["id"] for e in bucket.entries] == ["e1"]
    assert bucket.summary.session_id == NO_SESSION_BUCKET

    assert build_resume_data(entries, [], project="p", session_id="missing", limit=5) is None
