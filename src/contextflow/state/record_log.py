"""
共享 Record Log（append-only JSONL）。

实现约定：
- 一行一个 JSON object；文件永远只追加，不做编辑/删除/compaction；
- `append_line()` 只能在调用方持有写锁（`contextflow.state.file_lock.FileLock`）期间调用；
- 单行解析失败记录为 `ParseIssue` 并跳过，不中止读取；
- file signature = `"<size>:<mtime_ms>"`，用于 cache 校验与 torn read 检测。
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from contextflow.core.contracts import ParseIssue
from contextflow.core.errors import ContextFileTooLargeError

_LINE_SPLIT_RE = re.compile(r"\r?\n")


def _reject_constant(token: str) -> Any:
    """`NaN` / `Infinity` / `-Infinity` 不是合法 JSON。"""

    raise ValueError(f"non-standard JSON constant {token}")


@dataclass
class LogSnapshot:
    """
    一次读取得到的 log 视图。

    字段：
    - raw：原始文本
    - entries：成功解析的条目（保持文件顺序；list 下标即 file index）
    - parse_errors：解析失败的行
    - signature：内容对应的 file signature；torn read/文件不存在时为 None
    """

    raw: str = ""
    entries: List[Dict[str, Any]] = field(default_factory=list)
    parse_errors: List[ParseIssue] = field(default_factory=list)
    signature: Optional[str] = None


def make_file_signature(st: Optional[os.stat_result]) -> Optional[str]:
    """由 stat 结果计算 file signature（`size:mtime_ms`，mtime 截断到毫秒）；None 表示文件不存在。"""

    if st is None:
        return None
    return f"{int(st.st_size)}:{int(st.st_mtime_ns // 1_000_000)}"


def parse_entries(raw_text: str) -> Tuple[List[Dict[str, Any]], List[ParseIssue]]:
    """
    解析 JSONL 文本。

    规则：
    - 按 LF / CRLF 切行，忽略空白行；
    - 每行必须解析为 JSON object（数组/标量/非法 JSON 均记为 ParseIssue）；
    - 返回值保持文件顺序。
    """

    entries: List[Dict[str, Any]] = []
    parse_errors: List[ParseIssue] = []
    for i, line in enumerate(_LINE_SPLIT_RE.split(raw_text)):
        if not line.strip():
            continue
        try:
            parsed = json.loads(line, parse_constant=_reject_constant)
        except ValueError as e:
            parse_errors.append(ParseIssue(line=i + 1, error=f"invalid JSON: {e}"))
            continue
        if not isinstance(parsed, dict):
            parse_errors.append(ParseIssue(line=i + 1, error="line is not a JSON object"))
            continue
        entries.append(parsed)
    return entries, parse_errors


@dataclass
class RecordLog:
    """
    共享 log 文件的原始 I/O。

    参数：
    - path：log 文件路径
    - max_bytes：读取上限（超过时 fail，保护内存）
    """

    path: Path
    max_bytes: int

    def __post_init__(self) -> None:
        """规范化 path（不创建文件；首次 append 时才创建目录与文件）。"""

        self.path = Path(self.path)

    def locator(self) -> str:
        """返回 log 的绝对路径字符串。"""

        try:
            return str(self.path.resolve())
        except OSError:
            return str(self.path)

    def stat(self) -> Optional[os.stat_result]:
        """stat log 文件；不存在返回 None。"""

        try:
            return self.path.stat()
        except FileNotFoundError:
            return None

    def signature(self) -> Optional[str]:
        """返回当前 file signature（不存在返回 None）。"""

        return make_file_signature(self.stat())

    def ensure_directory(self) -> None:
        """确保父目录存在。"""

        self.path.parent.mkdir(parents=True, exist_ok=True)

    def append_line(self, line: str) -> None:
        """
        追加一行（自动补换行）并 fsync。

        约束：
        - 调用方必须持有写锁；
        - 不做部分写恢复：崩溃时最多损坏最后一行（读取时作为 ParseIssue 跳过）。
        """

        self.ensure_directory()
        with self.path.open("a", encoding="utf-8", newline="") as fh:
            fh.write(line)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())

    def check_size(self, st: os.stat_result) -> None:
        """文件大小超过 `max_bytes` 时抛出 `ContextFileTooLargeError`。"""

        if int(st.st_size) > int(self.max_bytes):
            raise ContextFileTooLargeError(path=str(self.path), size=int(st.st_size), max_bytes=int(self.max_bytes))

    def read_raw(self) -> str:
        """
        读取原始文本（大小检查先于读取）。

        返回：
        - 文件内容；文件不存在时返回空串

        异常：
        - ContextFileTooLargeError：超过 `max_bytes`
        """

        st = self.stat()
        if st is None:
            return ""
        self.check_size(st)
        try:
            return self.path.read_bytes().decode("utf-8", errors="replace")
        except FileNotFoundError:
            return ""
