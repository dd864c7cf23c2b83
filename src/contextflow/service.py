"""
SharedContext：进程级上下文对象（持有 log/lock/cache/index/active pointer），实现全部读写操作。

并发模型：
- 每个进程一个 `SharedContext`，单线程逐个处理请求；
- 跨进程只通过文件协调：写入持有 `FileLock`，读取不加锁；
- 优化路径（read cache / session index）的失败一律吸收，退化为全量扫描。
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from contextflow.bootstrap import ContextPaths, ResolvedSettings, resolve_context_paths
from contextflow.config.loader import ContextFlowConfig
from contextflow.core.contracts import Entry, HandoffEntry, NoteEntry, ParseIssue, SessionSummary
from contextflow.core.errors import MissingSessionIdError
from contextflow.core.query import EntryFilter, ResumeData, build_resume_data, filter_entries, iter_matching, select_recent
from contextflow.core.session_ids import suggest_session_id
from contextflow.core.summaries import build_session_summaries
from contextflow.core.utils import now_rfc3339
from contextflow.state.active_session import ActiveSessionPointer, normalize_session_id
from contextflow.state.file_lock import FileLock
from contextflow.state.read_cache import ReadCache
from contextflow.state.record_log import LogSnapshot, RecordLog
from contextflow.state.session_index import SessionIndexStore
from contextflow.tools.args import AppendNoteArgs, WriteHandoffArgs

logger = logging.getLogger(__name__)


@dataclass
class SessionListResult:
    """
    session 列表查询结果。

    字段：
    - all_sessions：满足过滤条件的全部 session（已排序）
    - visible_sessions：前 `limit` 个
    - parse_errors：全量扫描时的解析错误（索引快路径为空）
    - from_index：是否由 session index 快路径给出
    """

    all_sessions: List[SessionSummary] = field(default_factory=list)
    visible_sessions: List[SessionSummary] = field(default_factory=list)
    parse_errors: List[ParseIssue] = field(default_factory=list)
    from_index: bool = False


class SharedContext:
    """
    共享 log 的读写入口。

    参数：
    - paths：log/lock/index/active session 路径
    - config：有效配置
    - env：环境变量映射（active session 覆盖在每次解析时读取；测试可注入）
    """

    def __init__(self, paths: ContextPaths, config: ContextFlowConfig, *, env: Optional[Mapping[str, str]] = None) -> None:
        """创建上下文（不触碰文件系统）。"""

        self.paths = paths
        self.config = config
        self.log = RecordLog(paths.log_file, config.limits.max_context_file_bytes)
        self.lock = FileLock(
            paths.lock_file,
            max_wait_ms=config.lock.max_wait_ms,
            stale_ms=config.lock.stale_ms,
            backoff_min_ms=config.lock.backoff_min_ms,
            backoff_jitter_ms=config.lock.backoff_jitter_ms,
        )
        self.cache = ReadCache(self.log)
        self.index = SessionIndexStore(paths.index_file, default_project=config.context.default_project)
        self.active = ActiveSessionPointer(paths.active_session_file, env=env)

    @classmethod
    def from_settings(
        cls,
        settings: ResolvedSettings,
        *,
        explicit_file: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "SharedContext":
        """由 bootstrap 结果创建上下文（解析 log 路径）。"""

        paths = resolve_context_paths(settings.config, explicit_file=explicit_file, sources=settings.sources, env=env)
        return cls(paths, settings.config, env=env)

    @property
    def file_path(self) -> str:
        """log 文件路径（展示用）。"""

        return str(self.paths.log_file)

    @property
    def default_project(self) -> str:
        """默认 project。"""

        return self.config.context.default_project

    def normalize_project(self, project: Optional[str]) -> str:
        """trim 后非空的 project，否则默认 project。"""

        if isinstance(project, str) and project.strip():
            return project.strip()
        return self.default_project

    # ----------------------------
    # Session resolution
    # ----------------------------

    def resolve_session_id(self, explicit: Optional[str], *, required: bool = False) -> Optional[str]:
        """
        解析 session_id：显式参数 > 环境变量覆盖 > active session 文件。

        异常：
        - MissingSessionIdError：`required=True` 且三者均缺失
        """

        value = normalize_session_id(explicit) or self.active.read()
        if value:
            return value
        if required:
            raise MissingSessionIdError()
        return None

    def write_active_session(self, session_id: str) -> str:
        """持久化 active session（返回写入值）。"""

        return self.active.write(session_id)

    def suggest_session_id(self) -> str:
        """建议一个新 session_id（git 分支名或时间戳）。"""

        return suggest_session_id(self.config.context.new_session_prefix, cwd=None)

    # ----------------------------
    # Write path
    # ----------------------------

    def append_entry(self, entry: Entry) -> Entry:
        """
        追加一条条目：持锁 append -> 增量更新 index -> 释放锁 -> 失效 read cache。

        异常：
        - LockTimeoutError：锁等待超时（log 未被修改）
        """

        line = entry.to_json_line()
        record = entry.to_record()
        with self.lock:
            before = self.log.signature()
            self.log.append_line(line)
            after = self.log.signature()
            try:
                self.index.update_on_append(record, before_signature=before, after_signature=after)
            except Exception:
                logger.warning("session index update failed; index will be rebuilt on next listing", exc_info=True)
                self.index.invalidate()
        self.cache.invalidate()
        return entry

    def _entry_base(self, args: Any, session_id: Optional[str]) -> Dict[str, Any]:
        """生成条目公共字段（id/ts/project/agent/session_id/task）。"""

        return {
            "id": str(uuid.uuid4()),
            "ts": now_rfc3339(),
            "project": self.normalize_project(args.project),
            "agent": args.agent,
            "session_id": session_id,
            "task": args.task,
        }

    def append_note(self, args: AppendNoteArgs) -> NoteEntry:
        """追加 note（session_id 按解析规则回退，可缺省）。"""

        session_id = self.resolve_session_id(args.session_id)
        entry = NoteEntry(**self._entry_base(args, session_id), text=args.note_text, tags=args.tags)
        self.append_entry(entry)
        return entry

    def write_handoff(self, args: WriteHandoffArgs) -> HandoffEntry:
        """追加 handoff。"""

        session_id = self.resolve_session_id(args.session_id)
        entry = HandoffEntry(
            **self._entry_base(args, session_id),
            summary=args.summary,
            next_steps=args.next_steps,
            open_questions=args.open_questions,
            files=args.files,
        )
        self.append_entry(entry)
        return entry

    # ----------------------------
    # Read path
    # ----------------------------

    def read_entries(self) -> LogSnapshot:
        """读取（优先缓存）并解析 log。"""

        return self.cache.read()

    def read_context(self, filters: EntryFilter, *, limit: int) -> tuple[List[Dict[str, Any]], List[ParseIssue]]:
        """返回满足过滤条件的最近 `limit` 条与解析错误。"""

        snapshot = self.read_entries()
        return select_recent(filter_entries(snapshot.entries, filters), limit), snapshot.parse_errors

    def latest_handoff(
        self, *, project: str, agent: Optional[str], session_id: Optional[str]
    ) -> tuple[Optional[Dict[str, Any]], List[ParseIssue]]:
        """返回最近一条匹配的 handoff（没有时为 None）。"""

        snapshot = self.read_entries()
        matches = filter_entries(
            snapshot.entries, EntryFilter(project=project, agent=agent, session_id=session_id, kind="handoff")
        )
        return (matches[-1] if matches else None), snapshot.parse_errors

    def list_sessions(
        self,
        *,
        project: str,
        agent: Optional[str] = None,
        since: Optional[str] = None,
        limit: int = 20,
        include_unsessioned: bool = False,
    ) -> SessionListResult:
        """
        列出 session（最新优先）。

        说明：
        - 无 agent/since 过滤且不含 no-session bucket 时优先走 session index；
        - 索引不可用时全量扫描，并顺带重建/持久化索引；
        - 需要逐条检查的过滤条件一律全量扫描。
        """

        if not agent and not since and not include_unsessioned:
            signature = self.log.signature()
            if not signature:
                return SessionListResult()
            indexed = self.index.load(signature)
            if indexed is not None:
                sessions = self.index.list_project_sessions(indexed, project)
                return SessionListResult(all_sessions=sessions, visible_sessions=sessions[:limit], from_index=True)

            snapshot = self.read_entries()
            sessions = build_session_summaries(iter_matching(snapshot.entries, EntryFilter(project=project)))
            index_signature = snapshot.signature or signature
            self.index.persist(self.index.build(snapshot.entries, index_signature))
            return SessionListResult(
                all_sessions=sessions, visible_sessions=sessions[:limit], parse_errors=list(snapshot.parse_errors)
            )

        snapshot = self.read_entries()
        matching = iter_matching(snapshot.entries, EntryFilter(project=project, agent=agent, since=since))
        sessions = build_session_summaries(matching, include_unsessioned=include_unsessioned)
        return SessionListResult(
            all_sessions=sessions, visible_sessions=sessions[:limit], parse_errors=list(snapshot.parse_errors)
        )

    def resume_session(self, *, session_id: str, project: str, limit: int) -> Optional[ResumeData]:
        """返回某个 session 的摘要 + 最近 handoff + 最近条目；session 无条目时返回 None。"""

        snapshot = self.read_entries()
        return build_resume_data(
            snapshot.entries, snapshot.parse_errors, project=project, session_id=session_id, limit=limit
        )

    def describe(self) -> Dict[str, Any]:
        """返回路径/来源/上限等诊断信息（`shared-context://info`）。"""

        st = self.log.stat()
        return {
            "file": self.file_path,
            "file_source": self.paths.source,
            "file_discovery": self.paths.discovery,
            "file_exists": st is not None,
            "file_size": int(st.st_size) if st is not None else 0,
            "lock_file": str(self.paths.lock_file),
            "session_index_file": str(self.paths.index_file),
            "active_session_file": str(self.paths.active_session_file),
            "active_session": self.active.read(),
            "default_project": self.default_project,
            "pid": os.getpid(),
            "limits": self.config.limits.model_dump(),
        }
