"""
Tool 协议（ToolSpec / ToolResult）。

本模块只定义 MCP `tools/*` 所需的最小协议：
- ToolSpec：注册表条目（`inputSchema` 为 object schema，禁止顶层组合子）
- ToolResult：执行输出（文本 content + isError），序列化为 MCP `tools/call` result
"""

from __future__ import annotations

import json
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

from contextflow.core.text import sanitize_display_text


class ToolSpec(BaseModel):
    """
    Tool 注册信息。

    字段：
    - name：工具名（全局唯一，稳定）
    - description：工具说明
    - input_schema：JSON Schema（必须为 object schema）
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    description: str
    input_schema: Dict[str, Any] = Field(default_factory=dict)

    def to_mcp(self) -> Dict[str, Any]:
        """返回 `tools/list` 中的条目形状。"""

        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


class ToolResult(BaseModel):
    """
    Tool 执行结果（统一 envelope）。

    字段：
    - text：返回给客户端的文本（人类可读 transcript 或 JSON 字符串）
    - is_error：是否为领域层“未找到/无法完成”结果（不是协议错误）
    """

    model_config = ConfigDict(extra="forbid")

    text: str
    is_error: bool = False

    @classmethod
    def ok_text(cls, text: str) -> "ToolResult":
        """便捷构造：文本结果（输出前清洗控制字符）。"""

        return cls(text=sanitize_display_text(text))

    @classmethod
    def error_text(cls, text: str) -> "ToolResult":
        """便捷构造：领域错误文本（`isError: true`）。"""

        return cls(text=sanitize_display_text(text), is_error=True)

    @classmethod
    def ok_json(cls, payload: Dict[str, Any]) -> "ToolResult":
        """便捷构造：以格式化 JSON 作为 content 的成功结果（不做文本清洗，保持原始数据）。"""

        return cls(text=json.dumps(payload, ensure_ascii=False, indent=2))

    def to_mcp(self) -> Dict[str, Any]:
        """返回 MCP `tools/call` result 形状。"""

        out: Dict[str, Any] = {"content": [{"type": "text", "text": self.text}]}
        if self.is_error:
            out["isError"] = True
        return out
