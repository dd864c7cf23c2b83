"""
人类可读 transcript 渲染。

约束：
- 所有来自 log 的字段在输出前都经过 `sanitize_display_text`（防终端注入）；
- 元信息行使用单行化，note 正文/handoff summary 保留换行。
"""

from __future__ import annotations

import json
from typing import Any, List, Mapping, Sequence

from contextflow.core.contracts import ParseIssue, SessionSummary
from contextflow.core.text import sanitize_display_text


def _one_line(value: Any) -> str:
    """单行化清洗。"""

    return sanitize_display_text(value, single_line=True)


def _str_items(value: Any) -> List[Any]:
    """返回非空 list（非 list 视为空）。"""

    if isinstance(value, list) and value:
        return value
    return []


def skipped_lines_note(parse_errors: Sequence[ParseIssue]) -> str:
    """返回“跳过了 N 行坏数据”的提示行；没有解析错误时返回空串。"""

    if not parse_errors:
        return ""
    return f"Note: skipped {len(parse_errors)} malformed JSONL line(s)."


def format_entry(entry: Mapping[str, Any], index: int) -> str:
    """
    渲染单条条目。

    参数：
    - entry：log 条目
    - index：0-based 序号（展示为 `[index+1]`）
    """

    head = [
        f"[{index + 1}] {_one_line(entry.get('ts') or 'unknown-time')} "
        f"{_one_line(entry.get('kind') or 'unknown')} by {_one_line(entry.get('agent') or 'unknown-agent')}",
        f"project={_one_line(entry.get('project') or 'unknown')}",
    ]
    if entry.get("session_id"):
        head.append(f"session={_one_line(entry.get('session_id'))}")
    if entry.get("task"):
        head.append(f"task={_one_line(entry.get('task'))}")

    body: List[str] = []
    kind = entry.get("kind")
    if kind == "note":
        body.append(sanitize_display_text(entry.get("text") or ""))
    elif kind == "handoff":
        body.append(f"summary: {sanitize_display_text(entry.get('summary') or '')}")
        steps = _str_items(entry.get("next_steps"))
        if steps:
            body.append("next_steps: " + " | ".join(f"{i + 1}. {_one_line(s)}" for i, s in enumerate(steps)))
        questions = _str_items(entry.get("open_questions"))
        if questions:
            body.append("open_questions: " + " | ".join(_one_line(s) for s in questions))
        files = _str_items(entry.get("files"))
        if files:
            body.append("files: " + ", ".join(_one_line(s) for s in files))
    else:
        body.append(sanitize_display_text(json.dumps(dict(entry), ensure_ascii=False)))
    tags = _str_items(entry.get("tags"))
    if tags:
        body.append("tags: " + ", ".join(_one_line(s) for s in tags))
    return " | ".join(head) + "\n" + "\n".join(body)


def summarize_read(entries: Sequence[Mapping[str, Any]], parse_errors: Sequence[ParseIssue], file_path: str) -> str:
    """渲染 read_shared_context 的文本结果。"""

    if not entries:
        suffix = f" ({len(parse_errors)} malformed line(s) skipped)" if parse_errors else ""
        return f"No matching entries in {file_path}.{suffix}"
    noun = "entry" if len(entries) == 1 else "entries"
    lines = [f"Shared context: {len(entries)} {noun} from {file_path}"]
    note = skipped_lines_note(parse_errors)
    if note:
        lines.append(note)
    body = "\n\n".join(format_entry(entry, i) for i, entry in enumerate(entries))
    return "\n".join(lines) + "\n\n" + body


def format_session_summary(summary: SessionSummary, index: int) -> str:
    """渲染单个 session 摘要（首行为元信息，随后是 agents / latest_handoff）。"""

    parts = [
        f"[{index + 1}] session={_one_line(summary.session_id) or '(missing)'}",
        f"entries={summary.entry_count}",
        f"handoffs={summary.handoff_count}",
    ]
    if summary.latest_ts:
        parts.append(f"last={_one_line(summary.latest_ts)}")
    if summary.task:
        parts.append(f"task={_one_line(summary.task)}")

    body: List[str] = []
    if summary.agents:
        body.append("agents: " + ", ".join(_one_line(a) for a in summary.agents))
    if summary.latest_handoff_summary:
        body.append(f"latest_handoff: {_one_line(summary.latest_handoff_summary)}")
    line = " | ".join(parts)
    return line + "\n" + "\n".join(body) if body else line


def summarize_sessions_text(
    summaries: Sequence[SessionSummary],
    file_path: str,
    *,
    project: str,
    parse_errors: Sequence[ParseIssue],
) -> str:
    """渲染 list_sessions 的文本结果。"""

    if not summaries:
        suffix = f" ({len(parse_errors)} malformed line(s) skipped)" if parse_errors else ""
        return f"No resumable sessions found in {file_path} for project={_one_line(project)}.{suffix}"
    lines = [f"Shared sessions: {len(summaries)} for project={_one_line(project)} from {file_path}"]
    note = skipped_lines_note(parse_errors)
    if note:
        lines.append(note)
    body = "\n\n".join(format_session_summary(s, i) for i, s in enumerate(summaries))
    return "\n".join(lines) + "\n\n" + body
