"""
展示文本清洗（防止存储内容中的 ANSI/控制字符注入终端）。

说明：
- log 中的文本来自任意 agent，输出到人类可读 transcript 前必须清洗；
- JSON 输出不经过本模块（保持原始数据）。
"""

from __future__ import annotations

import re
from typing import Any, Optional

_ANSI_CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_ANSI_OSC_RE = re.compile(r"\x1b\][^\x07]*(?:\x07|\x1b\\)")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_LINE_BREAKS_RE = re.compile(r"[\r\n\t]+")


def sanitize_display_text(value: Any, *, single_line: bool = False) -> str:
    """
    去除 ANSI 转义序列与控制字符。

    参数：
    - value：任意值（None 视为空串，其它值先转 str）
    - single_line：为 True 时把换行/制表符折叠为单个空格并 strip
    """

    if value is None:
        return ""
    out = _ANSI_OSC_RE.sub("", str(value))
    out = _ANSI_CSI_RE.sub("", out)
    out = out.replace("\x1b", "")
    out = _CONTROL_RE.sub("", out)
    if single_line:
        out = _LINE_BREAKS_RE.sub(" ", out).strip()
    return out


def truncate_text(value: Any, max_length: int = 120) -> Optional[str]:
    """单行化 + 截断（超长时以 `...` 结尾）；非字符串或清洗后为空返回 None。"""

    if not isinstance(value, str):
        return None
    text = sanitize_display_text(value, single_line=True).strip()
    if not text:
        return None
    if len(text) <= max_length:
        return text
    return text[: max(0, max_length - 3)] + "..."
