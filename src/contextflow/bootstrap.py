"""
Bootstrap Layer（配置发现/合并/来源追踪 + 共享 log 路径发现）。

设计目标：
- 核心模块无隐式 I/O：`SharedContext` 只接收已解析的路径与配置；
- CLI/server 复用同一个入口，保证两者看到的是同一份 log。

配置优先级（低 -> 高）：
1) 内置默认 `contextflow/assets/default.yaml`
2) `<workspace_root>/config/contextflow.yaml`
3) `CONTEXTFLOW_CONFIG_PATHS`（逗号/分号分隔）
4) 调用方显式传入的 overlays（CLI `--config`）
5) 环境变量 `MCP_SHARED_CONTEXT_*`
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from contextflow.config.defaults import load_default_config_dict
from contextflow.config.loader import ContextFlowConfig, load_config_dicts, load_yaml_mapping

CONFIG_PATHS_ENV = "CONTEXTFLOW_CONFIG_PATHS"
CONTEXT_FILE_NAME = ".mcp-shared-context.jsonl"
ACTIVE_SESSION_FILE_NAME = "active-session.txt"

# env key -> (dotted config path, kind)
_ENV_OVERRIDES: Tuple[Tuple[str, str, str], ...] = (
    ("MCP_SHARED_CONTEXT_FILE", "context.file", "str"),
    ("MCP_SHARED_CONTEXT_FOLDER", "context.folder", "str"),
    ("MCP_SHARED_CONTEXT_PROJECT", "context.default_project", "str"),
    ("MCP_SHARED_CONTEXT_ACTIVE_SESSION_FILE", "context.active_session_file", "str"),
    ("MCP_SHARED_CONTEXT_NEW_SESSION_PREFIX", "context.new_session_prefix", "str"),
    ("MCP_SHARED_CONTEXT_MAX_CONTEXT_FILE_BYTES", "limits.max_context_file_bytes", "int"),
    ("MCP_SHARED_CONTEXT_MAX_INBOUND_FRAME_BYTES", "limits.max_inbound_frame_bytes", "int"),
    ("MCP_SHARED_CONTEXT_MAX_INBOUND_LINE_BYTES", "limits.max_inbound_line_bytes", "int"),
    ("MCP_SHARED_CONTEXT_MAX_INPUT_BUFFER_BYTES", "limits.max_input_buffer_bytes", "int"),
    ("MCP_SHARED_CONTEXT_MAX_NOTE_TEXT_CHARS", "limits.max_note_text_chars", "int"),
    ("MCP_SHARED_CONTEXT_MAX_HANDOFF_SUMMARY_CHARS", "limits.max_handoff_summary_chars", "int"),
    ("MCP_SHARED_CONTEXT_MAX_ARRAY_ITEMS", "limits.max_array_items", "int"),
    ("MCP_SHARED_CONTEXT_MAX_ARRAY_ITEM_CHARS", "limits.max_array_item_chars", "int"),
)

_COMMON_CONTEXT_FILE_NAMES = (
    CONTEXT_FILE_NAME,
    "shared-context.jsonl",
    "agent-context.jsonl",
    "contextflow-context.jsonl",
    "contextflow-shared-context.jsonl",
)

_CONFIG_LINE_PATTERNS = (
    re.compile(r"""^["']MCP_SHARED_CONTEXT_FILE["']\s*:\s*["']([^"']+)["']""", re.IGNORECASE),
    re.compile(r"""^\bMCP_SHARED_CONTEXT_FILE\b\s*=\s*["']([^"']+)["']""", re.IGNORECASE),
    re.compile(r"""^\bMCP_SHARED_CONTEXT_FILE\b\s*=\s*([^\s#;]+)""", re.IGNORECASE),
)


def _split_paths(raw: str) -> list[str]:
    """将逗号/分号分隔的路径串切分为片段列表（去空白与空项，保序）。"""

    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def parse_positive_int(raw: Optional[str]) -> Optional[int]:
    """解析正整数；缺失/非整数/<=0 返回 None（调用方回退到配置值）。"""

    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value > 0 else None


def expand_path(value: Optional[str], *, base_dir: Optional[Path] = None) -> Optional[Path]:
    """展开 `~` 并转为绝对路径（相对路径相对 `base_dir`，缺省为 cwd）；空值返回 None。"""

    if value is None or not str(value).strip():
        return None
    p = Path(str(value).strip()).expanduser()
    if not p.is_absolute():
        p = (base_dir or Path.cwd()) / p
    return p.resolve()


def discover_overlay_paths(*, workspace_root: Path, env: Optional[Mapping[str, str]] = None) -> list[Path]:
    """
    overlay 路径发现规则（固定，顺序稳定）：
    1) `<workspace_root>/config/contextflow.yaml`（存在时）
    2) `CONTEXTFLOW_CONFIG_PATHS`（逗号/分号分隔；相对路径相对 workspace_root）
    """

    env = os.environ if env is None else env
    ws = Path(workspace_root).resolve()
    overlays: list[Path] = []
    default_overlay = ws / "config" / "contextflow.yaml"
    if default_overlay.exists():
        overlays.append(default_overlay.resolve())
    for p in _split_paths(env.get(CONFIG_PATHS_ENV) or ""):
        resolved = expand_path(p, base_dir=ws)
        if resolved is not None:
            overlays.append(resolved)

    seen: set[Path] = set()
    uniq: list[Path] = []
    for p in overlays:
        if p in seen:
            continue
        seen.add(p)
        uniq.append(p)
    return uniq


def _set_dotted(target: Dict[str, Any], dotted: str, value: Any) -> None:
    """按 dotted path 写入嵌套 dict（缺失的中间层自动创建）。"""

    keys = dotted.split(".")
    node = target
    for k in keys[:-1]:
        child = node.get(k)
        if not isinstance(child, dict):
            child = {}
            node[k] = child
        node = child
    node[keys[-1]] = value


def env_overlay(env: Mapping[str, str]) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """
    把 `MCP_SHARED_CONTEXT_*` 环境变量转为 overlay dict。

    返回：
    - (overlay, sources)：sources 为 dotted path -> `env:<KEY>`

    说明：
    - 空串/空白视为未设置；
    - 数值上限非法（非整数或 <= 0）时忽略，保留配置值。
    """

    overlay: Dict[str, Any] = {}
    sources: Dict[str, str] = {}
    for key, dotted, kind in _ENV_OVERRIDES:
        raw = env.get(key)
        if raw is None or not raw.strip():
            continue
        value: Any
        if kind == "int":
            value = parse_positive_int(raw)
            if value is None:
                continue
        else:
            value = raw.strip()
        _set_dotted(overlay, dotted, value)
        sources[dotted] = f"env:{key}"
    return overlay, sources


@dataclass(frozen=True)
class ResolvedSettings:
    """
    bootstrap 解析后的有效配置（含来源追踪）。

    字段：
    - config：校验后的配置
    - overlay_paths：参与合并的 overlay 文件（字符串化）
    - sources：被 overlay/env 覆盖过的叶子字段来源
    """

    config: ContextFlowConfig
    overlay_paths: List[str] = field(default_factory=list)
    sources: Dict[str, str] = field(default_factory=dict)


def _record_leaf_sources(value: Any, *, prefix: str, sources: Dict[str, str], label: str) -> None:
    """递归记录 mapping 的叶子字段来源。"""

    if isinstance(value, Mapping):
        for k, v in value.items():
            path = f"{prefix}.{k}" if prefix else str(k)
            _record_leaf_sources(v, prefix=path, sources=sources, label=label)
        return
    sources[prefix] = label


def resolve_settings(
    *,
    workspace_root: Path,
    extra_overlays: Sequence[Path] = (),
    env: Optional[Mapping[str, str]] = None,
) -> ResolvedSettings:
    """
    解析有效配置（env > 显式 overlays > 发现的 overlays > 内置默认）。

    参数：
    - workspace_root：相对路径锚点
    - extra_overlays：调用方显式传入的 YAML（CLI `--config`）
    - env：环境变量映射（默认 `os.environ`）

    异常：
    - FileNotFoundError / ValueError：overlay 缺失或根节点不是 mapping
    - pydantic.ValidationError：合并结果不合法
    """

    env = os.environ if env is None else env
    ws = Path(workspace_root).resolve()
    overlay_paths = discover_overlay_paths(workspace_root=ws, env=env)
    for p in extra_overlays:
        resolved = expand_path(str(p), base_dir=ws)
        if resolved is not None and resolved not in overlay_paths:
            overlay_paths.append(resolved)

    layers: list[Dict[str, Any]] = [load_default_config_dict()]
    sources: Dict[str, str] = {}
    for p in overlay_paths:
        data = load_yaml_mapping(p)
        _record_leaf_sources(data, prefix="", sources=sources, label=f"overlay:{p}")
        layers.append(data)
    env_layer, env_sources = env_overlay(env)
    layers.append(env_layer)
    sources.update(env_sources)

    cfg = load_config_dicts(layers)
    return ResolvedSettings(config=cfg, overlay_paths=[str(p) for p in overlay_paths], sources=sources)


@dataclass(frozen=True)
class ContextPaths:
    """
    共享状态文件路径集合。

    字段：
    - log_file：共享 JSONL log
    - lock_file：`<log>.lock`
    - index_file：`<log>.sessions-index.json`
    - active_session_file：active session pointer
    - source：log 路径来源（env/config/env-folder/auto-discovered-config/auto-discovered-file/home-default/explicit）
    - discovery：自动发现时的附加信息
    """

    log_file: Path
    lock_file: Path
    index_file: Path
    active_session_file: Path
    source: str
    discovery: Optional[Dict[str, str]] = None


def extract_context_path_from_config_text(text: str) -> Optional[str]:
    """
    从 client 配置文本中提取 `MCP_SHARED_CONTEXT_FILE` 的值。

    支持：`"KEY": "value"`、`KEY = "value"`、`KEY=value`；忽略 `#`/`//`/`;` 注释行。
    """

    for raw_line in re.split(r"\r?\n", text or ""):
        line = raw_line.strip()
        if not line or line.startswith(("#", "//", ";")):
            continue
        for pattern in _CONFIG_LINE_PATTERNS:
            m = pattern.match(line)
            if m and m.group(1).strip():
                return m.group(1).strip()
    return None


def _platform_roots(env: Mapping[str, str]) -> List[Tuple[str, str]]:
    """返回 (根目录, 命名风格) 列表：XDG 使用小写 client 目录，APPDATA/LOCALAPPDATA 使用首字母大写。"""

    roots: List[Tuple[str, str]] = []
    for key, style in (("XDG_CONFIG_HOME", "lower"), ("APPDATA", "title"), ("LOCALAPPDATA", "title")):
        value = env.get(key)
        if value:
            roots.append((value, style))
    return roots


def _client_config_candidates(home: Path, env: Mapping[str, str]) -> List[Tuple[str, Path]]:
    """已知 assistant client 的配置文件候选（去重、保序）。"""

    files = {
        "codex": ("config.toml", "config.json"),
        "claude": ("config.json", "settings.json", "claude_desktop_config.json"),
        "gemini": ("config.json", "settings.json"),
    }
    out: List[Tuple[str, Path]] = []
    seen: set[Path] = set()

    def add(client: str, p: Path) -> None:
        """追加候选（按绝对路径去重）。"""

        p = p.expanduser().resolve()
        if p not in seen:
            seen.add(p)
            out.append((client, p))

    for client, names in files.items():
        for name in names:
            add(client, home / f".{client}" / name)
    for root, style in _platform_roots(env):
        for client, names in files.items():
            for name in names:
                add(client, Path(root) / (client if style == "lower" else client.title()) / name)
    return out


def _common_context_directories(home: Path, env: Mapping[str, str]) -> List[Path]:
    """可能存放共享 log 的常见目录（去重、保序）。"""

    dirs: List[Path] = [home]
    for client in ("codex", "claude", "gemini"):
        dirs.append(home / f".{client}")
    for client in ("codex", "claude", "gemini"):
        dirs.append(home / ".config" / client)
    for root, style in _platform_roots(env):
        for client in ("codex", "claude", "gemini"):
            dirs.append(Path(root) / (client if style == "lower" else client.title()))

    seen: set[Path] = set()
    uniq: List[Path] = []
    for d in dirs:
        d = d.expanduser().resolve()
        if d not in seen:
            seen.add(d)
            uniq.append(d)
    return uniq


def _discover_from_client_configs(home: Path, env: Mapping[str, str]) -> Optional[Tuple[Path, Dict[str, str]]]:
    """扫描 client 配置文件中的 `MCP_SHARED_CONTEXT_FILE`；相对值相对配置文件所在目录。"""

    for client, p in _client_config_candidates(home, env):
        if not p.is_file():
            continue
        try:
            text = p.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        value = extract_context_path_from_config_text(text)
        resolved = expand_path(value, base_dir=p.parent)
        if resolved is not None:
            return resolved, {"client": client, "config_file": str(p)}
    return None


def _discover_from_common_locations(home: Path, env: Mapping[str, str]) -> Optional[Tuple[Path, Dict[str, str]]]:
    """在常见目录中寻找已存在的共享 log。"""

    for directory in _common_context_directories(home, env):
        for name in _COMMON_CONTEXT_FILE_NAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate, {"directory": str(directory), "file_name": name}
    return None


def resolve_context_paths(
    config: ContextFlowConfig,
    *,
    explicit_file: Optional[str] = None,
    sources: Optional[Mapping[str, str]] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> ContextPaths:
    """
    解析共享 log 及其派生文件的路径（先命中者胜）。

    顺序：
    1) `explicit_file`（CLI `--file`）
    2) `context.file`（来源为 env 时记为 `env`，否则 `config`）
    3) `context.folder` -> `<folder>/.mcp-shared-context.jsonl`
    4) client 配置文件中的 `MCP_SHARED_CONTEXT_FILE`（`context.auto_discover` 为 True 时）
    5) 常见目录中已存在的 log 文件（同上）
    6) `~/.mcp-shared-context.jsonl`
    """

    env = os.environ if env is None else env
    sources = sources or {}
    home = Path(home) if home is not None else Path.home()
    ctx = config.context

    discovery: Optional[Dict[str, str]] = None
    log_file = expand_path(explicit_file)
    source = "explicit"
    if log_file is None and ctx.file:
        log_file = expand_path(ctx.file)
        source = "env" if str(sources.get("context.file", "")).startswith("env:") else "config"
    if log_file is None and ctx.folder:
        folder = expand_path(ctx.folder)
        if folder is not None:
            log_file = folder / CONTEXT_FILE_NAME
            source = "env-folder" if str(sources.get("context.folder", "")).startswith("env:") else "config-folder"
            discovery = {"folder": str(folder), "file_name": CONTEXT_FILE_NAME}
    if log_file is None and ctx.auto_discover:
        found = _discover_from_client_configs(home, env)
        source = "auto-discovered-config"
        if found is None:
            found = _discover_from_common_locations(home, env)
            source = "auto-discovered-file"
        if found is not None:
            log_file, discovery = found
    if log_file is None:
        log_file = (home / CONTEXT_FILE_NAME).resolve()
        source = "home-default"
        discovery = None

    active = expand_path(ctx.active_session_file) or (log_file.parent / ACTIVE_SESSION_FILE_NAME)
    return ContextPaths(
        log_file=log_file,
        lock_file=log_file.with_name(f"{log_file.name}.lock"),
        index_file=log_file.with_name(f"{log_file.name}.sessions-index.json"),
        active_session_file=active,
        source=source,
        discovery=discovery,
    )
