"""
stdio 消息分帧（MCP 兼容）。

支持两种 framing，按首个非空白字节自动识别：
- `{` / `[`：newline-delimited JSON（每行一条消息）
- 其它：`Content-Length: N` header + 空行 + body（header 结束符支持 CRLFCRLF 与 LFLF）

响应使用与请求相同的 framing。本模块不做 I/O（sans-IO）：调用方负责读写字节流。
"""

from __future__ import annotations

import json
import re
from typing import Any, Literal, Optional

Mode = Literal["line", "framed"]

_CONTENT_LENGTH_RE = re.compile(rb"Content-Length:\s*(\d+)", re.IGNORECASE)
_WHITESPACE = b" \t\r\n"


class FramingError(ValueError):
    """输入无法解码为消息（调用方应回复 -32700 并丢弃缓冲区）。"""


class BufferOverflowError(FramingError):
    """输入缓冲超过上限（调用方应回复 -32600 并丢弃缓冲区）。"""


class MessageDecoder:
    """
    增量消息解码器。

    参数：
    - max_frame_bytes：Content-Length 上限
    - max_line_bytes：单行消息上限
    - max_buffer_bytes：未消费缓冲上限
    """

    def __init__(self, *, max_frame_bytes: int, max_line_bytes: int, max_buffer_bytes: int) -> None:
        """创建解码器（mode 在首条消息到达时确定）。"""

        self.max_frame_bytes = int(max_frame_bytes)
        self.max_line_bytes = int(max_line_bytes)
        self.max_buffer_bytes = int(max_buffer_bytes)
        self.mode: Optional[Mode] = None
        self._buffer = bytearray()

    def reset(self) -> None:
        """丢弃全部未消费输入。"""

        self._buffer.clear()

    def feed(self, chunk: bytes) -> None:
        """
        追加输入字节。

        异常：
        - BufferOverflowError：追加后超过 `max_buffer_bytes`（缓冲已被清空）
        """

        if len(chunk) > self.max_buffer_bytes or len(self._buffer) + len(chunk) > self.max_buffer_bytes:
            self.reset()
            raise BufferOverflowError(
                f"Incoming MCP message exceeds max buffer size ({self.max_buffer_bytes} bytes)"
            )
        self._buffer.extend(chunk)

    def _detect_mode(self) -> Optional[Mode]:
        """按首个非空白字节识别 framing；缓冲全为空白时返回 None。"""

        for byte in self._buffer:
            if byte in _WHITESPACE:
                continue
            return "line" if byte in b"{[" else "framed"
        return None

    def next_message(self) -> Optional[str]:
        """
        取出下一条完整消息（未解码的 JSON 文本）；数据不完整时返回 None。

        异常：
        - FramingError：header 缺失/非法、超过大小上限、line 模式下出现非 JSON 行
        """

        if self.mode is None:
            self.mode = self._detect_mode()
            if self.mode is None:
                return None
        if self.mode == "line":
            return self._next_line()
        return self._next_frame()

    def _next_line(self) -> Optional[str]:
        """line 模式：返回下一条非空行。"""

        while True:
            idx = self._buffer.find(b"\n")
            if idx == -1:
                return None
            line = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            if len(line) > self.max_line_bytes:
                raise FramingError(f"Line-delimited JSON message exceeds max size ({self.max_line_bytes} bytes)")
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            if text.startswith(("{", "[")):
                return text
            raise FramingError("Expected line-delimited JSON-RPC message")

    def _next_frame(self) -> Optional[str]:
        """Content-Length 模式：返回下一帧 body。"""

        crlf = self._buffer.find(b"\r\n\r\n")
        lf = self._buffer.find(b"\n\n")
        if crlf != -1:
            header_end, sep_len = crlf, 4
        elif lf != -1:
            header_end, sep_len = lf, 2
        else:
            return None
        m = _CONTENT_LENGTH_RE.search(bytes(self._buffer[:header_end]))
        if m is None:
            raise FramingError("Missing Content-Length header")
        length = int(m.group(1))
        if length > self.max_frame_bytes:
            raise FramingError(
                f"Content-Length {length} exceeds max inbound frame size ({self.max_frame_bytes} bytes)"
            )
        start = header_end + sep_len
        end = start + length
        if len(self._buffer) < end:
            return None
        body = bytes(self._buffer[start:end])
        del self._buffer[:end]
        return body.decode("utf-8", errors="replace")


def encode_message(message: Any, mode: Optional[Mode]) -> bytes:
    """
    按 framing 编码一条出站消息（mode 未知时使用 Content-Length）。

    log 中的孤立 surrogate（例如 `"\\ud800"`）以 `\\uXXXX` 转义写出，仍是合法 JSON。
    """

    payload = json.dumps(message, ensure_ascii=False).encode("utf-8", errors="backslashreplace")
    if mode == "line":
        return payload + b"\n"
    header = f"Content-Length: {len(payload)}\r\nContent-Type: application/json; charset=utf-8\r\n\r\n"
    return header.encode("utf-8") + payload
