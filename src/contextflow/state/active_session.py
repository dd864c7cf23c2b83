"""
Active Session Pointer：持久化的“当前 session_id”（单行文本 + 换行）。

说明：
- 环境变量覆盖（`MCP_SHARED_CONTEXT_ACTIVE_SESSION`）优先于文件，并在每次读取时重新读取；
- 文件不加锁，后写者覆盖（advisory，可由用户重新选择恢复）。
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping, Optional

from contextflow.core.errors import InvalidArgumentError

ACTIVE_SESSION_ENV = "MCP_SHARED_CONTEXT_ACTIVE_SESSION"


def normalize_session_id(value: Any) -> Optional[str]:
    """
    规范化 session_id：None/空白返回 None，字符串 trim。

    异常：
    - InvalidArgumentError：非字符串
    """

    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidArgumentError("Expected string for session_id")
    return value.strip() or None


class ActiveSessionPointer:
    """
    active session 文件读写。

    参数：
    - path：active session 文件路径
    - env：环境变量映射（默认 `os.environ`；测试可注入）
    """

    def __init__(self, path: Path, *, env: Optional[Mapping[str, str]] = None) -> None:
        """创建 pointer（不读取文件）。"""

        self.path = Path(path)
        self._env = env

    def env_override(self) -> Optional[str]:
        """返回环境变量覆盖值（trim 后非空），否则 None。"""

        env = os.environ if self._env is None else self._env
        raw = env.get(ACTIVE_SESSION_ENV)
        if not isinstance(raw, str):
            return None
        return raw.strip() or None

    def read_file(self) -> Optional[str]:
        """读取文件中的 session_id；文件不存在或为空返回 None。"""

        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return text.strip() or None

    def read(self) -> Optional[str]:
        """按“环境变量 > 文件”的顺序返回 active session_id。"""

        return self.env_override() or self.read_file()

    def write(self, session_id: str) -> str:
        """
        覆盖写入 active session_id（整文件替换，不保留历史）。

        返回：
        - 实际写入的（trim 后）session_id

        异常：
        - InvalidArgumentError：session_id 为空
        """

        normalized = normalize_session_id(session_id)
        if not normalized:
            raise InvalidArgumentError("Cannot persist empty session_id")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{normalized}\n", encoding="utf-8")
        return normalized
