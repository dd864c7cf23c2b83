"""
Query Engine：过滤、最近 N 条选择、session 条目选取与 resume 数据组装。

说明：
- 条目以 dict 流转；file index 为条目在 `parse_entries()` 结果中的 0-based 位置；
- 过滤保持 log 顺序（append order = file index order）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from contextflow.core.contracts import NO_SESSION_BUCKET, ParseIssue, SessionSummary
from contextflow.core.summaries import build_session_summaries, entry_session_id
from contextflow.core.utils import parse_ts_ms

IndexedEntry = Tuple[int, Dict[str, Any]]


@dataclass(frozen=True)
class EntryFilter:
    """
    条目过滤条件（所有字段可选；空值等价于未设置）。

    字段：
    - project/agent/session_id/kind：与条目同名字段做精确字符串匹配
    - since：ISO-8601 下界（含）；条目 ts 无法解析时视为不匹配
    """

    project: Optional[str] = None
    agent: Optional[str] = None
    session_id: Optional[str] = None
    kind: Optional[str] = None
    since: Optional[str] = None

    def matches(self, entry: Mapping[str, Any], *, since_ms: Optional[float] = None) -> bool:
        """判断单条条目是否满足全部条件（`since_ms` 为预先解析好的 since）。"""

        if self.project and entry.get("project") != self.project:
            return False
        if self.agent and entry.get("agent") != self.agent:
            return False
        if self.session_id and entry.get("session_id") != self.session_id:
            return False
        if self.kind and entry.get("kind") != self.kind:
            return False
        if since_ms is not None:
            entry_ms = parse_ts_ms(entry.get("ts"))
            if entry_ms is None or entry_ms < since_ms:
                return False
        return True


def iter_matching(entries: Sequence[Dict[str, Any]], filters: EntryFilter) -> Iterator[IndexedEntry]:
    """
    按 log 顺序产出满足条件的 `(file_index, entry)`。

    说明：
    - `since` 本身无法解析时按未设置处理（参数层已保证传入的是规范化 ISO）。
    """

    since_ms = parse_ts_ms(filters.since) if filters.since else None
    for i, entry in enumerate(entries):
        if filters.matches(entry, since_ms=since_ms):
            yield i, entry


def filter_entries(entries: Sequence[Dict[str, Any]], filters: EntryFilter) -> List[Dict[str, Any]]:
    """返回满足条件的条目列表（保持顺序）。"""

    return [entry for _, entry in iter_matching(entries, filters)]


def select_recent(items: Sequence[Any], limit: int) -> List[Any]:
    """返回最后 `limit` 个元素（最近追加的），保持原顺序。"""

    if limit <= 0:
        return []
    if len(items) <= limit:
        return list(items)
    return list(items[len(items) - limit :])


def latest_handoff(entries: Iterable[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    """返回最后一条 `kind == "handoff"` 的条目；没有时返回 None。"""

    found: Optional[Dict[str, Any]] = None
    for entry in entries:
        if entry.get("kind") == "handoff":
            found = dict(entry)
    return found


def iter_session_entries(
    entries: Sequence[Dict[str, Any]], *, project: Optional[str], session_id: str
) -> Iterator[IndexedEntry]:
    """
    产出某个 session 的 `(file_index, entry)`。

    说明：
    - `session_id == "(no-session-id)"` 时选择同 project 下没有 session_id 的条目；
    - 其它情况等价于 project + session_id 精确过滤。
    """

    if session_id == NO_SESSION_BUCKET:
        for i, entry in enumerate(entries):
            if project and entry.get("project") != project:
                continue
            if entry_session_id(entry) is None:
                yield i, entry
        return
    yield from iter_matching(entries, EntryFilter(project=project, session_id=session_id))


@dataclass
class ResumeData:
    """
    resume_session 的结果。

    字段：
    - summary：该 session 的摘要
    - latest_handoff：最近 handoff（可能为 None）
    - entries：最近 `limit` 条（按 log 顺序）
    """

    project: Optional[str]
    session_id: str
    summary: SessionSummary
    latest_handoff: Optional[Dict[str, Any]]
    entries: List[Dict[str, Any]] = field(default_factory=list)
    parse_errors: List[ParseIssue] = field(default_factory=list)

    def to_jsonable(self) -> Dict[str, Any]:
        """返回 JSON 输出用的 dict。"""

        return {
            "project": self.project,
            "session_id": self.session_id,
            "summary": self.summary.to_jsonable(),
            "latest_handoff": self.latest_handoff,
            "entries": self.entries,
            "parse_errors": [p.model_dump() for p in self.parse_errors],
        }


def build_resume_data(
    entries: Sequence[Dict[str, Any]],
    parse_errors: List[ParseIssue],
    *,
    project: Optional[str],
    session_id: str,
    limit: int,
) -> Optional[ResumeData]:
    """
    组装 resume 数据；session 没有任何条目时返回 None。

    参数：
    - entries：完整 log 条目（file index 以此为准）
    - parse_errors：读取时的解析错误（原样透传）
    - limit：返回的最近条目数
    """

    indexed = list(iter_session_entries(entries, project=project, session_id=session_id))
    if not indexed:
        return None
    summaries = build_session_summaries(indexed, include_unsessioned=session_id == NO_SESSION_BUCKET)
    session_entries = [entry for _, entry in indexed]
    return ResumeData(
        project=project,
        session_id=session_id,
        summary=summaries[0],
        latest_handoff=latest_handoff(session_entries),
        entries=select_recent(session_entries, limit),
        parse_errors=list(parse_errors),
    )
