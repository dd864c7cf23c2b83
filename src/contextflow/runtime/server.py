"""
stdio JSON-RPC 2.0 server（MCP 兼容）。

行为：
- 单线程逐条处理请求（一个请求处理完才读取下一条）；
- notifications（无 id）不回复；处理失败只记录日志；
- 领域异常按 `error_kind` 映射为 JSON-RPC 错误码（validation/missing_session_id -> -32602，其它 -32603）；
- 所有输出文本都经过显示清洗（tool/prompt 文本）。
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, BinaryIO, Callable, Dict, List, Optional

from contextflow import __version__
from contextflow.core.errors import FrameworkError
from contextflow.core.query import EntryFilter, filter_entries, latest_handoff, select_recent
from contextflow.core.render import format_entry, format_session_summary
from contextflow.core.text import sanitize_display_text, truncate_text
from contextflow.service import SharedContext
from contextflow.state.active_session import normalize_session_id
from contextflow.runtime.framing import BufferOverflowError, FramingError, MessageDecoder, encode_message
from contextflow.tools.dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)

SERVER_NAME = "ContextFlowMCP"
DEFAULT_PROTOCOL_VERSION = "2024-11-05"
MAX_PROMPT_SESSIONS = 50
PROMPT_NEW_SESSION = "new_session"
PROMPT_RESUME_BY_ID = "resume_by_id"
PROMPT_RESUME_PREFIX = "resume_"
PROMPT_RESUME_LIMIT = 8
LATEST_RESOURCE_RECENT = 10

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

_INVALID_PARAMS_KINDS = {"validation", "missing_session_id"}
_RESUME_PROMPT_RE = re.compile(r"^resume_(\d+)$")

INSTRUCTIONS = (
    "Preferred: use MCP prompts (new_session or resume_#) so the user can pick from a scrollable "
    "slash-command list. Then call resume_session (session_id optional if active session is set). "
    "During work use append_shared_note and end with write_shared_handoff."
)


class RpcError(Exception):
    """JSON-RPC 协议层错误（携带 code/data）。"""

    def __init__(self, code: int, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        """创建协议错误。"""

        super().__init__(message)
        self.code = int(code)
        self.message = message
        self.data = data


def _require_str(params: Dict[str, Any], key: str) -> str:
    """取必填字符串参数（trim 后非空），否则 -32602。"""

    value = params.get(key)
    if not isinstance(value, str) or not value.strip():
        raise RpcError(INVALID_PARAMS, f"Missing required string: params.{key}")
    return value.strip()


def _short_iso(value: Optional[str]) -> str:
    """`2024-01-02T03:04:05.678Z` -> `2024-01-02 03:04:05`。"""

    if not isinstance(value, str) or not value:
        return "unknown"
    return re.sub(r"\.\d+$", "", value.replace("T", " ").replace("Z", ""))


def _prompt_response(description: str, text: str) -> Dict[str, Any]:
    """prompts/get 结果（清洗描述与正文）。"""

    return {
        "description": sanitize_display_text(description, single_line=True),
        "messages": [{"role": "user", "content": [{"type": "text", "text": sanitize_display_text(text)}]}],
    }


class McpServer:
    """
    MCP server（方法派发 + stdio 循环）。

    参数：
    - ctx：进程级 SharedContext
    - suggest_session_id：新 session id 生成器（默认 `ctx.suggest_session_id`；测试可注入）
    """

    def __init__(self, ctx: SharedContext, *, suggest_session_id: Optional[Callable[[], str]] = None) -> None:
        """创建 server。"""

        self.ctx = ctx
        self.tools = ToolDispatcher(ctx)
        self._suggest_session_id = suggest_session_id or ctx.suggest_session_id
        self.initialized = False
        self.client_protocol_version: Optional[str] = None
        self.exit_requested = False
        limits = ctx.config.limits
        self.decoder = MessageDecoder(
            max_frame_bytes=limits.max_inbound_frame_bytes,
            max_line_bytes=limits.max_inbound_line_bytes,
            max_buffer_bytes=limits.max_input_buffer_bytes,
        )
        self._methods: Dict[str, Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]] = {
            "initialize": self._initialize,
            "ping": lambda _p: {},
            "shutdown": lambda _p: {},
            "exit": self._exit,
            "$/cancelRequest": lambda _p: None,
            "tools/list": lambda _p: {"tools": [s.to_mcp() for s in self.tools.specs()]},
            "tools/call": self._tools_call,
            "resources/list": self._resources_list,
            "resources/read": self._resources_read,
            "resources/templates/list": lambda _p: {"resourceTemplates": []},
            "prompts/list": self._prompts_list,
            "prompts/get": self._prompts_get,
            "logging/setLevel": self._logging_set_level,
        }

    # ----------------------------
    # Dispatch
    # ----------------------------

    def handle_request(self, method: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        执行一个方法。

        返回：
        - dict：result
        - None：无需回复（notification 类方法）

        异常：
        - RpcError：协议错误
        - FrameworkError：领域错误（由 `handle_message` 映射）
        """

        if method.startswith("notifications/"):
            return None
        handler = self._methods.get(method)
        if handler is None:
            raise RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")
        return handler(params)

    def handle_message(self, message: Any) -> Optional[Dict[str, Any]]:
        """
        处理一条已解码的 JSON-RPC 消息，返回响应对象（无需回复时返回 None）。
        """

        if not isinstance(message, dict) or message.get("jsonrpc") != "2.0" or not isinstance(message.get("method"), str):
            msg_id = message.get("id") if isinstance(message, dict) else None
            return self.error_response(msg_id, INVALID_REQUEST, "Invalid Request")
        has_id = "id" in message
        msg_id = message.get("id")
        try:
            params = message.get("params") if isinstance(message.get("params"), dict) else {}
            result = self.handle_request(message["method"], params)
        except RpcError as e:
            return self._error_or_log(has_id, msg_id, e.code, e.message, e.data, e)
        except FrameworkError as e:
            code = INVALID_PARAMS if e.error_kind in _INVALID_PARAMS_KINDS else INTERNAL_ERROR
            return self._error_or_log(has_id, msg_id, code, e.message, {"error_kind": e.error_kind, "code": e.code}, e)
        except Exception as e:
            logger.exception("unexpected error while handling %r", message.get("method"))
            return self._error_or_log(has_id, msg_id, INTERNAL_ERROR, str(e) or "Internal error", None, e)
        if not has_id or result is None:
            return None
        return {"jsonrpc": "2.0", "id": msg_id, "result": result}

    def _error_or_log(
        self, has_id: bool, msg_id: Any, code: int, text: str, data: Optional[Dict[str, Any]], exc: Exception
    ) -> Optional[Dict[str, Any]]:
        """有 id 时返回错误响应；notification 只记录日志。"""

        if not has_id:
            logger.error("notification handling error: %s", exc)
            return None
        return self.error_response(msg_id, code, text, data)

    @staticmethod
    def error_response(msg_id: Any, code: int, text: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """构造 JSON-RPC error 响应。"""

        error: Dict[str, Any] = {"code": code, "message": text}
        if data is not None:
            error["data"] = data
        return {"jsonrpc": "2.0", "id": msg_id, "error": error}

    # ----------------------------
    # Methods
    # ----------------------------

    def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """initialize：回显客户端协议版本。"""

        self.initialized = True
        version = params.get("protocolVersion")
        self.client_protocol_version = version if isinstance(version, str) else None
        return {
            "protocolVersion": self.client_protocol_version or DEFAULT_PROTOCOL_VERSION,
            "capabilities": {"tools": {}, "resources": {}, "prompts": {}},
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
            "instructions": INSTRUCTIONS,
        }

    def _exit(self, _params: Dict[str, Any]) -> None:
        """exit：处理完当前消息后退出循环。"""

        self.exit_requested = True
        return None

    def _logging_set_level(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """logging/setLevel：调整 `contextflow` logger 级别（未知级别忽略）。"""

        level = params.get("level")
        mapping = {"debug": logging.DEBUG, "info": logging.INFO, "notice": logging.INFO, "warning": logging.WARNING}
        if isinstance(level, str):
            logging.getLogger("contextflow").setLevel(mapping.get(level.lower(), logging.ERROR))
        return {}

    def _tools_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """tools/call。"""

        name = _require_str(params, "name")
        arguments = params.get("arguments") if isinstance(params.get("arguments"), dict) else {}
        return self.tools.call(name, arguments).to_mcp()

    def _resources_list(self, _params: Dict[str, Any]) -> Dict[str, Any]:
        """resources/list。"""

        return {
            "resources": [
                {
                    "uri": "shared-context://raw",
                    "name": "Raw Shared Context JSONL",
                    "description": "The raw append-only JSONL file containing notes and handoffs.",
                    "mimeType": "application/x-ndjson",
                },
                {
                    "uri": "shared-context://latest",
                    "name": "Latest Shared Context Handoff",
                    "description": "Most recent handoff plus a few recent entries, formatted for quick resume.",
                    "mimeType": "text/plain",
                },
                {
                    "uri": "shared-context://info",
                    "name": "Shared Context Server Info",
                    "description": "Current file path and usage hints.",
                    "mimeType": "application/json",
                },
            ]
        }

    def _resources_read(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """resources/read。"""

        uri = _require_str(params, "uri")
        if uri == "shared-context://raw":
            return {"contents": [{"uri": uri, "mimeType": "application/x-ndjson", "text": self.ctx.log.read_raw()}]}
        if uri == "shared-context://latest":
            return {"contents": [{"uri": uri, "mimeType": "text/plain", "text": self._latest_text()}]}
        if uri == "shared-context://info":
            payload = {
                "server": {"name": SERVER_NAME, "version": __version__},
                **self.ctx.describe(),
                "tools": [s.name for s in self.tools.specs()],
                "usage": (
                    "Use MCP prompt commands for session picking: new_session (first) or resume_#. "
                    "choose_session/list_sessions are also available. resume_session/read_shared_context/"
                    "get_latest_handoff can use active session by default if session_id is omitted."
                ),
            }
            text = json.dumps(payload, ensure_ascii=False, indent=2)
            return {"contents": [{"uri": uri, "mimeType": "application/json", "text": text}]}
        raise RpcError(INVALID_PARAMS, f"Unknown resource URI: {uri}")

    def _latest_text(self) -> str:
        """`shared-context://latest`：默认 project 的最近 handoff + 最近条目。"""

        snapshot = self.ctx.read_entries()
        project = self.ctx.default_project
        entries = filter_entries(snapshot.entries, EntryFilter(project=project))
        latest = latest_handoff(entries)
        recent = select_recent(entries, LATEST_RESOURCE_RECENT)
        lines = [f"file: {self.ctx.file_path}", f"default_project: {project}", ""]
        if latest is not None:
            lines += ["latest_handoff:", format_entry(latest, 0), ""]
        else:
            lines += ["latest_handoff: none", ""]
        lines.append("recent_entries:")
        if not recent:
            lines.append("(none)")
        for i, entry in enumerate(recent):
            if i:
                lines.append("")
            lines.append(format_entry(entry, i))
        if snapshot.parse_errors:
            lines += ["", f"note: skipped {len(snapshot.parse_errors)} malformed JSONL line(s)."]
        return sanitize_display_text("\n".join(lines))

    def _prompt_sessions(self, project: str) -> List[Any]:
        """prompts 使用的 session 列表（最多 50 个）。"""

        return self.ctx.list_sessions(project=project, limit=MAX_PROMPT_SESSIONS).visible_sessions

    def _prompts_list(self, _params: Dict[str, Any]) -> Dict[str, Any]:
        """prompts/list：new_session + resume_<n> + resume_by_id。"""

        prompts: List[Dict[str, Any]] = [
            {"name": PROMPT_NEW_SESSION, "description": f"New session ({self._suggest_session_id()})", "arguments": []}
        ]
        for i, summary in enumerate(self._prompt_sessions(self.ctx.default_project)):
            parts = [_short_iso(summary.latest_ts), f"entries:{summary.entry_count}"]
            if summary.task:
                parts.append(f"task:{truncate_text(summary.task, 36)}")
            if summary.latest_handoff_summary:
                parts.append(f"handoff:{truncate_text(summary.latest_handoff_summary, 48)}")
            description = f"{sanitize_display_text(summary.session_id, single_line=True)} - {' | '.join(parts)}"
            prompts.append({"name": f"{PROMPT_RESUME_PREFIX}{i + 1}", "description": description, "arguments": []})
        prompts.append(
            {
                "name": PROMPT_RESUME_BY_ID,
                "description": "Resume a session by explicit session_id",
                "arguments": [
                    {"name": "session_id", "description": "Session id to activate and resume", "required": True}
                ],
            }
        )
        return {"prompts": prompts}

    def _prompts_get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """prompts/get：选择/创建 active session 并返回 resume 摘要。"""

        name = _require_str(params, "name")
        arguments = params.get("arguments") if isinstance(params.get("arguments"), dict) else {}
        raw_project = arguments.get("project")
        project = self.ctx.normalize_project(raw_project if isinstance(raw_project, str) else None)

        if name == PROMPT_NEW_SESSION:
            session_id = normalize_session_id(arguments.get("session_id")) or self._suggest_session_id()
            self.ctx.write_active_session(session_id)
            text = "\n".join(
                [
                    f"Active session selected: {session_id}",
                    f"project={project}",
                    "",
                    "Next steps:",
                    "1. Call resume_session with no session_id (uses active session).",
                    "2. If this is a brand-new session, start working and write notes/handoffs.",
                ]
            )
            return _prompt_response("Create/select a new active session", text)

        if name == PROMPT_RESUME_BY_ID:
            selected = normalize_session_id(arguments.get("session_id"))
            if not selected:
                raise RpcError(INVALID_PARAMS, "session_id is required")
        else:
            m = _RESUME_PROMPT_RE.match(name)
            if m is None:
                raise RpcError(INVALID_PARAMS, "Prompt not found")
            idx = int(m.group(1)) - 1
            if idx < 0:
                raise RpcError(INVALID_PARAMS, "Invalid prompt session index")
            sessions = self._prompt_sessions(project)
            if idx >= len(sessions):
                raise RpcError(INVALID_PARAMS, "Session prompt index out of range")
            selected = sessions[idx].session_id

        self.ctx.write_active_session(selected)
        data = self.ctx.resume_session(session_id=selected, project=project, limit=PROMPT_RESUME_LIMIT)
        if data is None:
            text = "\n".join(
                [
                    f"Active session selected: {selected}",
                    f"project={project}",
                    "",
                    f"No entries found yet for this session in {self.ctx.file_path}.",
                    "You can start working and write notes/handoffs.",
                ]
            )
            return _prompt_response("Select and resume a session", text)
        lines = [f"Active session selected: {selected}", f"project={project}", ""]
        lines += ["session_summary:", format_session_summary(data.summary, 0), ""]
        lines += ["latest_handoff:", format_entry(data.latest_handoff, 0) if data.latest_handoff else "(none)", ""]
        lines += ["next_step:", "Call resume_session with no session_id to load full context."]
        return _prompt_response("Select and resume a session", "\n".join(lines))

    # ----------------------------
    # stdio loop
    # ----------------------------

    def _process_buffer(self, write: Callable[[bytes], None]) -> None:
        """处理缓冲中所有完整消息。"""

        while not self.exit_requested:
            try:
                frame = self.decoder.next_message()
            except FramingError as e:
                logger.warning("transport decode error: %s", e)
                write(encode_message(self.error_response(None, PARSE_ERROR, "Parse error", {"detail": str(e)}), self.decoder.mode))
                self.decoder.reset()
                return
            if frame is None:
                return
            try:
                message = json.loads(frame)
            except ValueError as e:
                logger.warning("JSON parse error: %s", e)
                write(encode_message(self.error_response(None, PARSE_ERROR, "Parse error", {"detail": str(e)}), self.decoder.mode))
                continue
            response = self.handle_message(message)
            if response is not None:
                write(self._encode_response(response))

    def _encode_response(self, response: Dict[str, Any]) -> bytes:
        """编码响应；单条响应编码失败时改为 -32603，不影响后续请求。"""

        try:
            return encode_message(response, self.decoder.mode)
        except (TypeError, ValueError) as e:
            logger.exception("failed to encode response for id %r", response.get("id"))
            fallback = self.error_response(response.get("id"), INTERNAL_ERROR, f"Failed to encode response: {type(e).__name__}")
            return encode_message(fallback, self.decoder.mode)

    def serve(self, stdin: BinaryIO, stdout: BinaryIO) -> None:
        """
        运行 stdio 循环直到 EOF 或 `exit`。

        参数：
        - stdin：二进制输入流（`sys.stdin.buffer`）
        - stdout：二进制输出流（`sys.stdout.buffer`）
        """

        def write(data: bytes) -> None:
            """写出并 flush。"""

            stdout.write(data)
            stdout.flush()

        read = getattr(stdin, "read1", stdin.read)
        while not self.exit_requested:
            chunk = read(65536)
            if not chunk:
                break
            try:
                self.decoder.feed(chunk)
            except BufferOverflowError as e:
                write(encode_message(self.error_response(None, INVALID_REQUEST, str(e)), self.decoder.mode))
                continue
            self._process_buffer(write)
