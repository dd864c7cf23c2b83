"""
核心契约（Core Contracts）。

包含：
- `NoteEntry` / `HandoffEntry`：log 中一行对应的一个事件（按 `kind` 区分的 tagged union）
- `ParseIssue`：单行解析失败记录（1-based 行号 + 原因）
- `SessionSummary`：按 `(project, session_id)` 聚合的派生摘要
- `SessionIndex`：持久化的 session 索引（`<log>.sessions-index.json`）

说明：
- 写入路径使用 typed model 做校验与序列化；
- 读取路径只要求“每行是 JSON object”，条目以 dict 形式流转（容忍未知字段/未知 kind）。
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

NO_SESSION_BUCKET = "(no-session-id)"
ENTRY_KINDS = ("note", "handoff")
SESSION_INDEX_VERSION = 1


class _EntryBase(BaseModel):
    """
    条目公共字段。

    字段：
    - id：创建时生成的唯一 id
    - ts：创建时生成的 RFC3339 时间（跨进程时钟可能漂移，仅作参考顺序）
    - project：分组键（缺省为配置的 default project）
    - agent：写入者（非空）
    - session_id/task：可选
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    ts: str
    project: str
    agent: str = Field(min_length=1)
    session_id: Optional[str] = None
    task: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        """返回落盘用的 dict（省略 None 字段）。"""

        return self.model_dump(exclude_none=True)

    def to_json_line(self) -> str:
        """序列化为单行 JSON（不含换行）。"""

        return json.dumps(self.to_record(), ensure_ascii=False)


class NoteEntry(_EntryBase):
    """进度笔记。"""

    kind: Literal["note"] = "note"
    text: str = Field(min_length=1)
    tags: Optional[List[str]] = None


class HandoffEntry(_EntryBase):
    """交接条目：已完成工作摘要 + 给后继者的下一步。"""

    kind: Literal["handoff"] = "handoff"
    summary: str = Field(min_length=1)
    next_steps: Optional[List[str]] = None
    open_questions: Optional[List[str]] = None
    files: Optional[List[str]] = None


Entry = Annotated[Union[NoteEntry, HandoffEntry], Field(discriminator="kind")]


class ParseIssue(BaseModel):
    """单行解析失败记录（该行被跳过，不影响其它行）。"""

    model_config = ConfigDict(extra="forbid")

    line: int = Field(ge=1)
    error: str


class SessionSummary(BaseModel):
    """
    session 聚合摘要（按条目逐个折叠维护）。

    字段语义：
    - latest_ts_ms / latest_ts：最新时间戳（数值用于比较，字符串用于展示）
    - latest_file_index：最近一次折叠进来的条目在 log 中的 0-based 位置（稳定的次级排序键）
    - last_entry_kind：最近条目的 kind（note|handoff）
    - task：最近一个非空 task
    - agents：出现过的 agent（去重、排序）
    - latest_handoff_summary：最近 handoff 的 summary（单行化、截断）
    """

    model_config = ConfigDict(extra="ignore")

    session_id: str = Field(min_length=1)
    project: Optional[str] = None
    entry_count: int = Field(default=0, ge=0)
    note_count: int = Field(default=0, ge=0)
    handoff_count: int = Field(default=0, ge=0)
    latest_ts: Optional[str] = None
    latest_ts_ms: Optional[float] = None
    latest_file_index: int = Field(default=-1, ge=-1)
    last_entry_kind: Optional[Literal["note", "handoff"]] = None
    task: Optional[str] = None
    agents: List[str] = Field(default_factory=list)
    latest_handoff_summary: Optional[str] = None

    def to_jsonable(self) -> Dict[str, Any]:
        """返回 JSON 输出用的 dict（agents 排序，省略 None）。"""

        obj = self.model_dump(exclude_none=True)
        obj["agents"] = sorted(self.agents)
        return obj


class SessionIndex(BaseModel):
    """
    持久化 session 索引。

    约束：
    - `version` 必须严格等于 `SESSION_INDEX_VERSION`，否则整份索引作废；
    - 只有 `context_signature` 与当前 log 的 signature 完全相等时才可使用；
    - `projects`：project -> session_id -> SessionSummary（只索引具名 session）。
    """

    model_config = ConfigDict(extra="ignore")

    version: int = SESSION_INDEX_VERSION
    context_signature: Optional[str] = None
    next_file_index: int = Field(default=0, ge=0)
    projects: Dict[str, Dict[str, SessionSummary]] = Field(default_factory=dict)
