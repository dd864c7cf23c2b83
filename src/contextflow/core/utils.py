"""共享工具函数（时间戳解析/格式化）。"""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Optional


def now_rfc3339() -> str:
    """返回当前 UTC 时间的 RFC3339 字符串（毫秒精度，以 Z 结尾）。"""
    return iso_from_ms(datetime.now(timezone.utc).timestamp() * 1000)


def iso_from_ms(ms: float) -> str:
    """把 epoch 毫秒格式化为 `YYYY-MM-DDTHH:MM:SS.mmmZ`。"""
    dt = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_ts_ms(value: Any) -> Optional[float]:
    """
    解析 ISO-8601 时间戳为 epoch 毫秒。

    约定：
    - 非字符串/空串/无法解析：返回 None
    - 无时区信息的时间按 UTC 处理
    """
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    ms = dt.timestamp() * 1000
    if not math.isfinite(ms):
        return None
    return ms


def normalize_iso(value: str) -> Optional[str]:
    """把任意可解析的 ISO-8601 字符串规范化为 UTC 毫秒精度形式；失败返回 None。"""
    ms = parse_ts_ms(value)
    if ms is None:
        return None
    return iso_from_ms(ms)
