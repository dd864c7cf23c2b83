"""
共享上下文最小示例（库方式调用，不经过 stdio server）。

用途：
- 演示如何用 bootstrap 解析配置并构造 `SharedContext`；
- 演示两个 agent 在同一 session 里交替写 note / handoff；
- 演示 `list_sessions` 与 `resume_session` 的文本输出。
"""

from __future__ import annotations

import argparse
from pathlib import Path

from contextflow.bootstrap import resolve_settings
from contextflow.service import SharedContext
from contextflow.tools.dispatcher import ToolDispatcher


def _build_dispatcher(*, workspace_root: Path, config_paths: list[Path], file: str | None) -> ToolDispatcher:
    """
    基于 workspace 与 overlay 构建 ToolDispatcher。

    参数：
    - workspace_root：工作区根目录
    - config_paths：overlay 配置路径列表
    - file：显式 log 路径（None 表示按发现规则）
    """

    settings = resolve_settings(workspace_root=workspace_root, extra_overlays=config_paths)
    return ToolDispatcher(SharedContext.from_settings(settings, explicit_file=file))


def main() -> int:
    """
    示例脚本入口。

    命令行参数：
    - --workspace-root：工作区目录；
    - --config：overlay 路径（可重复）；
    - --file：共享 log 路径；
    - --session：本次演示使用的 session_id。
    """

    parser = argparse.ArgumentParser(description="Shared context minimal demo")
    parser.add_argument("--workspace-root", default=".", help="Workspace root path")
    parser.add_argument("--config", action="append", default=[], help="Overlay YAML path (repeatable)")
    parser.add_argument("--file", default=None, help="Shared context JSONL path")
    parser.add_argument("--session", default="demo-session", help="Session id used by the demo")
    args = parser.parse_args()

    workspace_root = Path(args.workspace_root).resolve()
    config_paths = [Path(p).expanduser().resolve() for p in (args.config or [])]
    tools = _build_dispatcher(workspace_root=workspace_root, config_paths=config_paths, file=args.file)

    print(f"[demo] file={tools.ctx.file_path}")
    tools.call(
        "append_shared_note",
        {"agent": "codex", "text": "Started refactor of the parser.", "session_id": args.session, "task": "parser refactor"},
    )
    tools.call(
        "write_shared_handoff",
        {
            "agent": "claude",
            "summary": "Parser split into tokenizer + grammar.",
            "next_steps": ["Add error recovery", "Update docs"],
            "session_id": args.session,
        },
    )

    print("\n[demo] list_sessions:\n")
    print(tools.call("list_sessions", {}).text)
    print("\n[demo] resume_session:\n")
    print(tools.call("resume_session", {"session_id": args.session}).text)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
