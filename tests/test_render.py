from __future__ import annotations

from contextflow.core.contracts import ParseIssue, SessionSummary
from contextflow.core.render import format_entry, format_session_summary, summarize_read, summarize_sessions_text
from contextflow.core.text import sanitize_display_text, truncate_text


def test_sanitize_strips_ansi_and_control_characters() -> None:
    raw = "ok\x1b[2J\x1b]0;title\x07 done\x00\x07\x1b tail\r\nnext\tcol"
    assert sanitize_display_text(raw) == "ok done tail\r\nnext\tcol"
    assert sanitize_display_text(raw, single_line=True) == "ok done tail next col"
    assert sanitize_display_text(None) == ""
    assert sanitize_display_text(12) == "12"


def test_truncate_text() -> None:
    assert truncate_text("a" * 10, 10) == "a" * 10
    assert truncate_text("a" * 11, 10) == "a" * 7 + "..."
    assert truncate_text("  \n ") is None
    assert truncate_text(None) is None


def test_format_note_entry_sanitizes_metadata() -> None:
    entry = {
        "ts": "2024-05-01T10:00:00.000Z",
        "kind": "note",
        "agent": "co\ndex",
        "project": "p",
        "session_id": "s\x1b[31m1",
        "text": "multi\nline",
        "tags": ["t1", "t2"],
    }
    out = format_entry(entry, 0)
    assert out.splitlines()[0] == "[1] 2024-05-01T10:00:00.000Z note by co dex | project=p | session=s1"
    assert "multi\nline" in out
    assert out.endswith("tags: t1, t2")


def test_format_unknown_kind_falls_back_to_json() -> None:
    out = format_entry({"kind": "event", "payload": 1}, 2)
    assert out.startswith("[3] unknown-time event by unknown-agent | project=unknown")
    assert '"payload": 1' in out


def test_summaries_text() -> None:
    assert summarize_read([], [ParseIssue(line=1, error="x")], "/f") == "No matching entries in /f. (1 malformed line(s) skipped)"
    assert summarize_read([], [], "/f") == "No matching entries in /f."
    one = summarize_read([{"kind": "note", "text": "x"}], [], "/f")
    assert one.startswith("Shared context: 1 entry from /f\n\n[1] ")

    s = SessionSummary(
        session_id="s1",
        entry_count=3,
        handoff_count=1,
        latest_ts="2024-05-01T10:00:00.000Z",
        task="fix\nbug",
        agents=["a", "b"],
        latest_handoff_summary="done",
    )
    assert format_session_summary(s, 0) == (
        "[1] session=s1 | entries=3 | handoffs=1 | last=2024-05-01T10:00:00.000Z | task=fix bug\n"
        "agents: a, b\n"
        "latest_handoff: done"
    )
    assert format_session_summary(SessionSummary(session_id="x"), 4) == "[5] session=x | entries=0 | handoffs=0"

    assert summarize_sessions_text([], "/f", project="p", parse_errors=[]) == "No resumable sessions found in /f for project=p."
    listed = summarize_sessions_text([s], "/f", project="p", parse_errors=[ParseIssue(line=2, error="bad")])
    assert listed.startswith("Shared sessions: 1 for project=p from /f\nNote: skipped 1 malformed JSONL line(s).\n\n[1] ")
