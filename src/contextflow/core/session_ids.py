"""新 session_id 的生成（git 分支名优先，否则时间戳 + 随机后缀）。"""

from __future__ import annotations

import re
import subprocess
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

_UNSAFE_CHARS_RE = re.compile(r"[^\w./-]+")
_DASH_RUN_RE = re.compile(r"-+")


def sanitize_session_id(value: Any) -> Optional[str]:
    """把任意文本转为安全的 session_id（非 `[\\w./-]` 字符替换为 `-`）；结果为空返回 None。"""

    if not isinstance(value, str) or not value.strip():
        return None
    out = _UNSAFE_CHARS_RE.sub("-", value.strip())
    out = _DASH_RUN_RE.sub("-", out).strip("-")
    return out or None


def git_branch_name(cwd: Optional[Path] = None) -> Optional[str]:
    """返回当前 git 分支名（非 git 仓库/无 git/超时返回 None）。"""

    try:
        cp = subprocess.run(  # noqa: S603
            ["git", "branch", "--show-current"],
            cwd=str(cwd) if cwd is not None else None,
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            timeout=1.5,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if cp.returncode != 0:
        return None
    return (cp.stdout or "").strip() or None


def timestamp_session_id(prefix: str, *, now: Optional[datetime] = None) -> str:
    """返回 `<prefix>-YYYYMMDD-HHMMSS-<6 hex>`（本地时间）。"""

    now = now or datetime.now()
    return f"{prefix}-{now.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


def suggest_session_id(prefix: str, *, cwd: Optional[Path] = None) -> str:
    """建议一个新的 session_id：优先使用（清洗后的）git 分支名。"""

    branch = sanitize_session_id(git_branch_name(cwd))
    if branch:
        return branch
    return timestamp_session_id(prefix)
