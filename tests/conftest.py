from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, Optional

import pytest

from contextflow.bootstrap import resolve_context_paths
from contextflow.config.defaults import load_default_config_dict
from contextflow.config.loader import load_config_dicts
from contextflow.service import SharedContext


def build_context(
    log_path: Path,
    *,
    overlay: Optional[Dict[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
) -> SharedContext:
    """在临时目录上构造一个 SharedContext（不触碰真实 home / 环境变量）。"""

    layers = [load_default_config_dict(), {"context": {"auto_discover": False}}]
    if overlay:
        layers.append(overlay)
    cfg = load_config_dicts(layers)
    env = {} if env is None else env
    paths = resolve_context_paths(cfg, explicit_file=str(log_path), env=env, home=log_path.parent)
    return SharedContext(paths, cfg, env=env)


@pytest.fixture
def make_ctx(tmp_path: Path) -> Callable[..., SharedContext]:
    """工厂 fixture：`make_ctx(overlay=..., env=...)`，默认 log 为 `<tmp>/ctx/shared.jsonl`。"""

    def _make(
        *,
        overlay: Optional[Dict[str, Any]] = None,
        env: Optional[Dict[str, str]] = None,
        log_path: Optional[Path] = None,
    ) -> SharedContext:
        return build_context(log_path or (tmp_path / "ctx" / "shared.jsonl"), overlay=overlay, env=env)

    return _make


@pytest.fixture
def ctx(make_ctx: Callable[..., SharedContext]) -> SharedContext:
    """默认 SharedContext（无环境变量覆盖）。"""

    return make_ctx()
