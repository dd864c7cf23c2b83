"""
Session 摘要折叠与排序。

说明：
- 全量扫描路径与 session index（重建/增量）共用同一个折叠函数，保证两条路径结果一致；
- 折叠顺序无关（计数/agents），“latest” 字段依赖时间戳与 file index 的比较。
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from contextflow.core.contracts import ENTRY_KINDS, NO_SESSION_BUCKET, SessionSummary
from contextflow.core.text import truncate_text
from contextflow.core.utils import iso_from_ms, parse_ts_ms

HANDOFF_SUMMARY_PREVIEW_CHARS = 180


def entry_session_id(entry: Mapping[str, Any]) -> Optional[str]:
    """返回条目的 session_id（trim 后非空），否则 None。"""

    value = entry.get("session_id")
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _push_unique(target: List[str], value: Any) -> None:
    """把非空字符串（trim 后）追加到列表（已存在则跳过）。"""

    if not isinstance(value, str):
        return
    value = value.strip()
    if value and value not in target:
        target.append(value)


def apply_entry_to_summary(summary: SessionSummary, entry: Mapping[str, Any], file_index: Optional[int]) -> None:
    """
    把一条条目折叠进 session 摘要（就地修改）。

    参数：
    - summary：目标摘要
    - entry：log 条目（dict）
    - file_index：条目在 log 中的 0-based 位置（None 表示未知）
    """

    kind = entry.get("kind")
    summary.entry_count += 1
    if kind == "note":
        summary.note_count += 1
    elif kind == "handoff":
        summary.handoff_count += 1
    if kind in ENTRY_KINDS:
        summary.last_entry_kind = kind
    if file_index is not None:
        summary.latest_file_index = int(file_index)

    project = entry.get("project")
    if not summary.project and isinstance(project, str) and project:
        summary.project = project

    task = entry.get("task")
    if isinstance(task, str) and task.strip():
        summary.task = task.strip()

    _push_unique(summary.agents, entry.get("agent"))
    summary.agents.sort()

    if kind == "handoff":
        preview = truncate_text(entry.get("summary"), HANDOFF_SUMMARY_PREVIEW_CHARS)
        if preview:
            summary.latest_handoff_summary = preview

    raw_ts = entry.get("ts") if isinstance(entry.get("ts"), str) else None
    ts_ms = parse_ts_ms(raw_ts)
    if ts_ms is not None:
        if summary.latest_ts_ms is None or ts_ms >= summary.latest_ts_ms:
            summary.latest_ts_ms = ts_ms
            summary.latest_ts = iso_from_ms(ts_ms)
            if file_index is not None:
                summary.latest_file_index = int(file_index)
    elif not summary.latest_ts and raw_ts:
        summary.latest_ts = raw_ts


def summary_latest_ms(summary: SessionSummary) -> float:
    """返回用于排序的最新时间（毫秒）；缺失时为 -inf。"""

    if summary.latest_ts_ms is not None and math.isfinite(summary.latest_ts_ms):
        return summary.latest_ts_ms
    parsed = parse_ts_ms(summary.latest_ts)
    if parsed is not None:
        return parsed
    return -math.inf


def sort_session_summaries(summaries: Iterable[SessionSummary]) -> List[SessionSummary]:
    """按（最新时间 desc, latest_file_index desc, session_id asc）排序，返回新列表。"""

    return sorted(
        summaries,
        key=lambda s: (-summary_latest_ms(s), -s.latest_file_index, s.session_id),
    )


def build_session_summaries(
    indexed_entries: Iterable[Tuple[int, Mapping[str, Any]]],
    *,
    include_unsessioned: bool = False,
) -> List[SessionSummary]:
    """
    按 session_id 分组折叠并排序。

    参数：
    - indexed_entries：(file_index, entry) 序列（保持 log 顺序）
    - include_unsessioned：是否把无 session_id 的条目归入合成 bucket `(no-session-id)`
    """

    sessions: Dict[str, SessionSummary] = {}
    for file_index, entry in indexed_entries:
        session_id = entry_session_id(entry) or (NO_SESSION_BUCKET if include_unsessioned else None)
        if not session_id:
            continue
        summary = sessions.get(session_id)
        if summary is None:
            project = entry.get("project")
            summary = SessionSummary(session_id=session_id, project=project if isinstance(project, str) and project else None)
            sessions[session_id] = summary
        apply_entry_to_summary(summary, entry, file_index)
    return sort_session_summaries(sessions.values())
