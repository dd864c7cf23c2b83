"""
ContextFlow CLI（serve / self-test / sessions）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- `serve` 的 stdout 是协议通道；其它命令在 stdout 输出结果（JSON 或纯文本），日志一律写 stderr
- 失败时尽量输出结构化 JSON（`error_kind/message/details`）
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from contextflow.bootstrap import ResolvedSettings, resolve_settings
from contextflow.core.contracts import HandoffEntry, NoteEntry
from contextflow.core.errors import FrameworkError
from contextflow.core.render import summarize_read
from contextflow.core.session_ids import suggest_session_id
from contextflow.core.utils import now_rfc3339
from contextflow.runtime.server import McpServer
from contextflow.service import SharedContext
from contextflow.state.record_log import RecordLog, parse_entries
from contextflow.tools.dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_VALIDATION = 20

PICK_DEFAULT_LIMIT = 50


def _ensure_utf8_stdio() -> None:
    """best-effort 将 stdout/stderr 切换为 UTF-8（`C` locale 下避免输出非 ASCII 时崩溃）。"""

    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if not callable(reconfigure):
            continue
        try:
            reconfigure(encoding="utf-8", errors="replace")
        except (OSError, ValueError):
            continue


def _dump_json_to_stdout(obj: Dict[str, Any]) -> None:
    """将 dict 以 pretty JSON 输出到 stdout（末尾换行）。"""

    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _dump_error(error_kind: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
    """输出结构化错误 JSON。"""

    _dump_json_to_stdout({"error_kind": error_kind, "message": message, "details": details or {}})


def _configure_logging(level: str) -> None:
    """配置根 logger（stderr）。"""

    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_settings(args: argparse.Namespace) -> Tuple[Optional[ResolvedSettings], int]:
    """
    按公共 flags 解析配置并配置日志。

    返回：
    - (settings, exit_code)：失败时 settings 为 None，且已在 stdout 输出错误 JSON
    """

    ws = Path(str(args.workspace_root)).expanduser().resolve()
    if not ws.is_dir():
        _dump_error("validation", "Workspace root is not found or not a directory.", {"workspace_root": str(ws)})
        return None, EXIT_VALIDATION
    try:
        settings = resolve_settings(workspace_root=ws, extra_overlays=[Path(p) for p in args.config])
    except (FileNotFoundError, ValueError) as exc:
        # pydantic.ValidationError 是 ValueError 的子类
        details: Dict[str, Any] = {"reason": str(exc)}
        if isinstance(exc, ValidationError):
            details = {"errors": exc.errors(include_url=False, include_context=False, include_input=False)}
        _dump_error("config_error", "Config load failed.", details)
        return None, EXIT_VALIDATION
    _configure_logging(args.log_level or settings.config.logging.level)
    return settings, EXIT_OK


def _exit_code_for(exc: FrameworkError) -> int:
    """领域异常 -> exit code。"""

    return EXIT_VALIDATION if exc.error_kind in {"validation", "missing_session_id"} else EXIT_ERROR


# ----------------------------
# Commands
# ----------------------------


def _handle_serve(args: argparse.Namespace) -> int:
    """运行 stdio server（直到 EOF / exit）。"""

    settings, code = _load_settings(args)
    if settings is None:
        return code
    ctx = SharedContext.from_settings(settings, explicit_file=args.file)
    logger.info("serving shared context file %s (source=%s)", ctx.file_path, ctx.paths.source)
    McpServer(ctx).serve(sys.stdin.buffer, sys.stdout.buffer)
    return EXIT_OK


def run_self_test(directory: Optional[Path] = None) -> List[str]:
    """
    自检：向临时 log 写入一条 note 与一条 handoff，解析并渲染，然后删除文件。

    参数：
    - directory：临时文件目录（默认系统临时目录）

    返回：
    - 输出行列表
    """

    base = Path(directory) if directory is not None else Path(tempfile.gettempdir())
    path = base / f"contextflow-selftest-{uuid.uuid4().hex[:12]}.jsonl"
    log = RecordLog(path, 1024 * 1024)
    note = NoteEntry(
        id=str(uuid.uuid4()), ts=now_rfc3339(), project="self-test", agent="codex", text="Created self-test note"
    )
    handoff = HandoffEntry(
        id=str(uuid.uuid4()),
        ts=now_rfc3339(),
        project="self-test",
        agent="claude",
        summary="Validated append/read path",
        next_steps=["Point clients to the same file", "Call get_latest_handoff first"],
    )
    try:
        log.append_line(note.to_json_line())
        log.append_line(handoff.to_json_line())
        entries, parse_errors = parse_entries(log.read_raw())
        return [
            f"self-test file: {path}",
            f"entries: {len(entries)}",
            f"parseErrors: {len(parse_errors)}",
            summarize_read(entries, parse_errors, str(path)),
        ]
    finally:
        path.unlink(missing_ok=True)


def _handle_self_test(args: argparse.Namespace) -> int:
    """self-test 子命令。"""

    for line in run_self_test():
        print(line)
    return EXIT_OK


def _handle_sessions_list(args: argparse.Namespace) -> int:
    """sessions list：等价于调用 `list_sessions` 工具。"""

    settings, code = _load_settings(args)
    if settings is None:
        return code
    ctx = SharedContext.from_settings(settings, explicit_file=args.file)

    raw: Dict[str, Any] = {
        "project": args.project,
        "agent": args.agent,
        "since": args.since,
        "limit": args.limit,
        "include_unsessioned": bool(args.include_unsessioned),
        "format": args.format,
    }
    try:
        result = ToolDispatcher(ctx).call("list_sessions", raw)
    except FrameworkError as exc:
        _dump_error(exc.error_kind, exc.message, exc.details)
        return _exit_code_for(exc)
    print(result.text)
    return EXIT_ERROR if result.is_error else EXIT_OK


def select_option(options: List[Dict[str, Any]], select: str) -> Dict[str, Any]:
    """
    非交互选择（options[0] 为 new session，其后为已有 session）。

    参数：
    - select：`new` / `first` / `index:N`（1-based，含 new）/ `id:SESSION`

    异常：
    - ValueError：选择表达式非法或目标不存在
    """

    if not select or select == "new":
        return options[0]
    if select == "first":
        return options[1] if len(options) > 1 else options[0]
    if select.startswith("index:"):
        raw = select[len("index:") :]
        try:
            value = int(raw)
        except ValueError:
            value = 0
        if value < 1 or value > len(options):
            raise ValueError(f"Invalid --select index: {select}")
        return options[value - 1]
    if select.startswith("id:"):
        wanted = select[len("id:") :].strip()
        for option in options:
            if option["session_id"] == wanted:
                return option
        raise ValueError(f"Session not found: {wanted}")
    raise ValueError(f"Unsupported --select value: {select}")


def _handle_sessions_pick(args: argparse.Namespace) -> int:
    """sessions pick：非交互选择/创建 session，并（默认）持久化为 active session。"""

    settings, code = _load_settings(args)
    if settings is None:
        return code
    ctx = SharedContext.from_settings(settings, explicit_file=args.file)
    project = ctx.normalize_project(args.project)
    prefix = args.prefix or settings.config.context.new_session_prefix
    options: List[Dict[str, Any]] = [{"kind": "new", "session_id": suggest_session_id(prefix, cwd=Path.cwd())}]
    try:
        listing = ctx.list_sessions(project=project, limit=max(1, int(args.limit)))
        options += [{"kind": "existing", "session_id": s.session_id} for s in listing.visible_sessions]
        selected = select_option(options, str(args.select or "new"))
        if not args.no_save:
            ctx.write_active_session(selected["session_id"])
    except FrameworkError as exc:
        _dump_error(exc.error_kind, exc.message, exc.details)
        return _exit_code_for(exc)
    except ValueError as exc:
        _dump_error("validation", str(exc), {"select": args.select})
        return EXIT_VALIDATION

    if args.json:
        _dump_json_to_stdout(
            {
                "session_id": selected["session_id"],
                "selection": selected["kind"],
                "project": project,
                "context_file": ctx.file_path,
                "active_session_file": str(ctx.paths.active_session_file),
                "saved": not args.no_save,
            }
        )
    else:
        print(selected["session_id"])
    return EXIT_OK


# ----------------------------
# Parser
# ----------------------------


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="contextflow",
        description="Shared context JSONL server for cooperating agents (MCP over stdio).",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--workspace-root", default=".", help="Workspace root directory (default: .)")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument(
            "--log-level",
            default=None,
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            help="Log level for stderr logging (default: logging.level from config).",
        )
        p.add_argument("--file", default=None, help="Shared context JSONL path (overrides discovery).")

    serve = root_sub.add_parser("serve", help="Run the MCP stdio server")
    _add_common_flags(serve)

    root_sub.add_parser("self-test", help="Append/parse/render round trip on a temp file")

    sessions = root_sub.add_parser("sessions", help="Session commands")
    sessions_sub = sessions.add_subparsers(dest="sessions_cmd", required=True)

    list_p = sessions_sub.add_parser("list", help="List sessions (newest first)")
    _add_common_flags(list_p)
    list_p.add_argument("--project", default=None, help="Project (default: configured default project).")
    list_p.add_argument("--agent", default=None, help="Only count entries written by this agent.")
    list_p.add_argument("--since", default=None, help="Only count entries at/after this ISO-8601 timestamp.")
    list_p.add_argument("--limit", type=int, default=20, help="Max sessions to show (1..200).")
    list_p.add_argument("--include-unsessioned", action="store_true", help="Include the (no-session-id) bucket.")
    list_p.add_argument("--format", choices=["text", "json"], default="text", help="Output format.")

    pick = sessions_sub.add_parser("pick", help="Select or create the active session (non-interactive)")
    _add_common_flags(pick)
    pick.add_argument("--select", default="new", help="new | first | index:N | id:SESSION (default: new)")
    pick.add_argument("--project", default=None, help="Project (default: configured default project).")
    pick.add_argument("--limit", type=int, default=PICK_DEFAULT_LIMIT, help="Max existing sessions considered.")
    pick.add_argument("--prefix", default=None, help="Prefix for generated ids when no git branch is available.")
    pick.add_argument("--no-save", action="store_true", help="Do not persist the selection as active session.")
    pick.add_argument("--json", action="store_true", help="Print JSON instead of the plain session id.")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    _ensure_utf8_stdio()

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        code = getattr(exc, "code", EXIT_USAGE)
        return EXIT_USAGE if code is None else int(code)

    if args.command == "serve":
        return _handle_serve(args)
    if args.command == "self-test":
        return _handle_self_test(args)
    if args.command == "sessions":
        if args.sessions_cmd == "list":
            return _handle_sessions_list(args)
        if args.sessions_cmd == "pick":
            return _handle_sessions_pick(args)

    _dump_error("validation", "Unknown command.", {"command": args.command})
    return EXIT_USAGE


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
