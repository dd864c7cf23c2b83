from __future__ import annotations

import re
import subprocess
from datetime import datetime
from pathlib import Path

import pytest

from contextflow.core import session_ids
from contextflow.core.session_ids import sanitize_session_id, suggest_session_id, timestamp_session_id


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("feature/login-page", "feature/login-page"),
        ("  fix bug #12 ", "fix-bug-12"),
        ("--weird  name--", "weird-name"),
        ("版本.v2", "版本.v2"),
        ("***", None),
        ("   ", None),
        (None, None),
    ],
)
def test_sanitize_session_id(raw, expected) -> None:  # type: ignore[no-untyped-def]
    assert sanitize_session_id(raw) == expected


def test_timestamp_session_id_format() -> None:
    sid = timestamp_session_id("session", now=datetime(2024, 5, 1, 9, 8, 7))
    assert re.fullmatch(r"session-20240501-090807-[0-9a-f]{6}", sid)


def test_suggest_prefers_sanitized_branch(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(session_ids, "git_branch_name", lambda cwd=None: "feat/new thing")
    assert suggest_session_id("session") == "feat/new-thing"


def test_suggest_falls_back_to_timestamp(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(session_ids, "git_branch_name", lambda cwd=None: None)
    assert re.fullmatch(r"work-\d{8}-\d{6}-[0-9a-f]{6}", suggest_session_id("work"))


def test_git_branch_name_outside_repo(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """非 git 目录 / git 不可用时返回 None。"""

    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    assert session_ids.git_branch_name(tmp_path) is None

    def _missing(*_a, **_kw):  # type: ignore[no-untyped-def]
        raise FileNotFoundError("git")

    monkeypatch.setattr(subprocess, "run", _missing)
    assert session_ids.git_branch_name(tmp_path) is None
