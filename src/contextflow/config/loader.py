"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；
- 使用 pydantic 做 schema 校验；未知字段直接报错（拼写错误的 key 不会被静默忽略）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ContextConfig(BaseModel):
    """共享 log 的位置与默认值。"""

    model_config = ConfigDict(extra="forbid")

    file: Optional[str] = None
    folder: Optional[str] = None
    auto_discover: bool = True
    default_project: str = Field(default="shared", min_length=1)
    active_session_file: Optional[str] = None
    new_session_prefix: str = Field(default="session", min_length=1)


class LimitsConfig(BaseModel):
    """输入/读取上限（全部为正整数）。"""

    model_config = ConfigDict(extra="forbid")

    max_context_file_bytes: int = Field(default=50 * 1024 * 1024, ge=1)
    max_inbound_frame_bytes: int = Field(default=2 * 1024 * 1024, ge=1)
    max_inbound_line_bytes: int = Field(default=2 * 1024 * 1024, ge=1)
    max_input_buffer_bytes: int = Field(default=4 * 1024 * 1024, ge=1)
    max_note_text_chars: int = Field(default=20000, ge=1)
    max_handoff_summary_chars: int = Field(default=20000, ge=1)
    max_array_items: int = Field(default=200, ge=1)
    max_array_item_chars: int = Field(default=1000, ge=1)


class LockConfig(BaseModel):
    """写锁参数（毫秒）。"""

    model_config = ConfigDict(extra="forbid")

    max_wait_ms: int = Field(default=5000, ge=1)
    stale_ms: int = Field(default=30000, ge=1)
    backoff_min_ms: int = Field(default=40, ge=0)
    backoff_jitter_ms: int = Field(default=60, ge=0)


class LoggingConfig(BaseModel):
    """日志级别（输出到 stderr；stdout 保留给协议）。"""

    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"


class ContextFlowConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    context: ContextConfig = Field(default_factory=ContextConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_yaml_mapping(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> ContextFlowConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `ContextFlowConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return ContextFlowConfig.model_validate(merged)

