"""
ToolDispatcher：按工具名路由到 `SharedContext` 操作，并把结果渲染为 text/json。

约定：
- 入参校验失败 / 锁超时 / 文件过大 / 缺少 session_id 以异常形式向上抛出（由 transport 映射为 JSON-RPC 错误）；
- “按 index/session_id 未找到 session”等领域结果以 `isError: true` 的 ToolResult 返回；
- 未知工具名返回 `isError: true` 的 ToolResult。
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List

from contextflow.core.query import EntryFilter
from contextflow.core.render import (
    format_entry,
    format_session_summary,
    skipped_lines_note,
    summarize_read,
    summarize_sessions_text,
)
from contextflow.service import SharedContext
from contextflow.tools.args import (
    DEFAULT_LIMIT,
    AppendNoteArgs,
    ChooseSessionArgs,
    LatestHandoffArgs,
    ListSessionsArgs,
    ReadContextArgs,
    ResumeSessionArgs,
    WriteHandoffArgs,
    parse_args,
)
from contextflow.tools.protocol import ToolResult, ToolSpec
from contextflow.tools.specs import TOOL_SPECS


def _parse_errors_json(parse_errors: List[Any]) -> List[Dict[str, Any]]:
    """ParseIssue 列表 -> JSON。"""

    return [p.model_dump() for p in parse_errors]


class ToolDispatcher:
    """工具派发器（持有进程级 `SharedContext`）。"""

    def __init__(self, ctx: SharedContext) -> None:
        """创建派发器。"""

        self.ctx = ctx
        self._handlers: Dict[str, Callable[[Any], ToolResult]] = {
            "read_shared_context": self._read_shared_context,
            "append_shared_note": self._append_shared_note,
            "write_shared_handoff": self._write_shared_handoff,
            "get_latest_handoff": self._get_latest_handoff,
            "list_sessions": self._list_sessions,
            "choose_session": self._choose_session,
            "resume_session": self._resume_session,
        }

    def specs(self) -> List[ToolSpec]:
        """返回已注册工具的 spec（顺序稳定）。"""

        return [s for s in TOOL_SPECS if s.name in self._handlers]

    def call(self, name: str, raw_args: Any) -> ToolResult:
        """
        执行一次工具调用。

        参数：
        - name：工具名
        - raw_args：未经校验的 arguments
        """

        handler = self._handlers.get(name)
        if handler is None:
            return ToolResult.error_text(f"Unknown tool: {name}")
        return handler(raw_args)

    @property
    def _limits(self):
        """当前上限配置。"""

        return self.ctx.config.limits

    # ----------------------------
    # Handlers
    # ----------------------------

    def _append_shared_note(self, raw: Any) -> ToolResult:
        """append_shared_note。"""

        args = parse_args(AppendNoteArgs, raw, limits=self._limits)
        entry = self.ctx.append_note(args)
        return ToolResult.ok_text(
            f"Appended note {entry.id} to {self.ctx.file_path}\n"
            f"project={entry.project}\nagent={entry.agent}\nts={entry.ts}"
        )

    def _write_shared_handoff(self, raw: Any) -> ToolResult:
        """write_shared_handoff。"""

        args = parse_args(WriteHandoffArgs, raw, limits=self._limits)
        entry = self.ctx.write_handoff(args)
        return ToolResult.ok_text(
            f"Wrote handoff {entry.id} to {self.ctx.file_path}\n"
            f"project={entry.project}\nagent={entry.agent}\nts={entry.ts}"
        )

    def _read_shared_context(self, raw: Any) -> ToolResult:
        """read_shared_context。"""

        args = parse_args(ReadContextArgs, raw, limits=self._limits)
        project = self.ctx.normalize_project(args.project)
        session_id = self.ctx.resolve_session_id(args.session_id)
        filters = EntryFilter(project=project, agent=args.agent, session_id=session_id, kind=args.kind, since=args.since)
        recent, parse_errors = self.ctx.read_context(filters, limit=args.limit)
        if args.format == "json":
            return ToolResult.ok_json(
                {
                    "file": self.ctx.file_path,
                    "filters": {
                        "project": project,
                        "agent": args.agent,
                        "session_id": session_id,
                        "kind": args.kind,
                        "since": args.since,
                        "limit": args.limit,
                    },
                    "count": len(recent),
                    "parse_errors": _parse_errors_json(parse_errors),
                    "entries": recent,
                }
            )
        return ToolResult.ok_text(summarize_read(recent, parse_errors, self.ctx.file_path))

    def _get_latest_handoff(self, raw: Any) -> ToolResult:
        """get_latest_handoff。"""

        args = parse_args(LatestHandoffArgs, raw, limits=self._limits)
        project = self.ctx.normalize_project(args.project)
        session_id = self.ctx.resolve_session_id(args.session_id)
        latest, parse_errors = self.ctx.latest_handoff(project=project, agent=args.agent, session_id=session_id)
        if latest is None:
            return ToolResult.ok_text(f"No handoff found in {self.ctx.file_path} for project={project}.")
        if args.format == "json":
            return ToolResult.ok_json(
                {"file": self.ctx.file_path, "parse_errors": _parse_errors_json(parse_errors), "handoff": latest}
            )
        text = f"Latest handoff from {self.ctx.file_path}\n{format_entry(latest, 0)}"
        note = skipped_lines_note(parse_errors)
        if note:
            text += f"\n\n{note}"
        return ToolResult.ok_text(text)

    def _list_sessions(self, raw: Any) -> ToolResult:
        """list_sessions。"""

        args = parse_args(ListSessionsArgs, raw, limits=self._limits)
        project = self.ctx.normalize_project(args.project)
        result = self.ctx.list_sessions(
            project=project,
            agent=args.agent,
            since=args.since,
            limit=args.limit,
            include_unsessioned=args.include_unsessioned,
        )
        sessions = result.visible_sessions
        if args.format == "json":
            return ToolResult.ok_json(
                {
                    "file": self.ctx.file_path,
                    "project": project,
                    "filters": {
                        "agent": args.agent,
                        "since": args.since,
                        "limit": args.limit,
                        "include_unsessioned": args.include_unsessioned,
                    },
                    "count": len(sessions),
                    "parse_errors": _parse_errors_json(result.parse_errors),
                    "sessions": [s.to_jsonable() for s in sessions],
                }
            )
        return ToolResult.ok_text(
            summarize_sessions_text(sessions, self.ctx.file_path, project=project, parse_errors=result.parse_errors)
        )

    def _choose_session(self, raw: Any) -> ToolResult:
        """choose_session（选中后持久化 active session）。"""

        args = parse_args(ChooseSessionArgs, raw, limits=self._limits)
        project = self.ctx.normalize_project(args.project)
        result = self.ctx.list_sessions(
            project=project,
            agent=args.agent,
            since=args.since,
            limit=args.limit,
            include_unsessioned=args.include_unsessioned,
        )
        if args.index is not None:
            if args.index > len(result.visible_sessions):
                return ToolResult.error_text(
                    f"No session at index {args.index}. list_sessions returned "
                    f"{len(result.visible_sessions)} session(s) for project={project}."
                )
            selected = result.visible_sessions[args.index - 1]
            choice: Dict[str, Any] = {"index": args.index}
        else:
            found = [s for s in result.all_sessions if s.session_id == args.session_id]
            if not found:
                return ToolResult.error_text(
                    f"Session {args.session_id} not found in {self.ctx.file_path} for project={project}."
                )
            selected = found[0]
            choice = {"session_id": selected.session_id}

        resume_args = {"session_id": selected.session_id, "project": project, "limit": DEFAULT_LIMIT, "format": args.format}
        self.ctx.write_active_session(selected.session_id)

        if args.format == "json":
            return ToolResult.ok_json(
                {
                    "file": self.ctx.file_path,
                    "project": project,
                    "parse_errors": _parse_errors_json(result.parse_errors),
                    "selected_session": selected.to_jsonable(),
                    "choice": choice,
                    "resume_tool": "resume_session",
                    "resume_args": resume_args,
                }
            )
        lines = [
            f"Selected session from {self.ctx.file_path}",
            format_session_summary(selected, 0),
            "",
            "Next: call resume_session with:",
            json.dumps(resume_args, ensure_ascii=False, indent=2),
        ]
        note = skipped_lines_note(result.parse_errors)
        if note:
            lines += ["", note]
        return ToolResult.ok_text("\n".join(lines))

    def _resume_session(self, raw: Any) -> ToolResult:
        """resume_session（session_id 必需，可由 active session 回退）。"""

        args = parse_args(ResumeSessionArgs, raw, limits=self._limits)
        session_id = self.ctx.resolve_session_id(args.session_id, required=True) or ""
        project = self.ctx.normalize_project(args.project)
        data = self.ctx.resume_session(session_id=session_id, project=project, limit=args.limit)
        if data is None:
            return ToolResult.ok_text(
                f"No entries found for session_id={session_id} in {self.ctx.file_path} (project={project})."
            )
        if args.format == "json":
            return ToolResult.ok_json({"file": self.ctx.file_path, **data.to_jsonable()})

        lines = [f"Resume session {session_id} from {self.ctx.file_path}", "", format_session_summary(data.summary, 0)]
        lines += ["", "latest_handoff:", format_entry(data.latest_handoff, 0) if data.latest_handoff else "(none)"]
        lines += ["", "recent_entries:"]
        for i, entry in enumerate(data.entries):
            if i:
                lines.append("")
            lines.append(format_entry(entry, i))
        note = skipped_lines_note(data.parse_errors)
        if note:
            lines += ["", note]
        return ToolResult.ok_text("\n".join(lines))
