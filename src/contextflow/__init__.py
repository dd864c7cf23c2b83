"""
ContextFlow：多 agent 共享上下文（append-only JSONL）协调服务。

对外入口：
- `contextflow.service.SharedContext`：进程级上下文（log/lock/cache/index）与全部操作
- `contextflow.runtime.server`：stdio JSON-RPC（MCP）服务
- `contextflow.cli.main`：命令行入口
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
