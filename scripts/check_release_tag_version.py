#!/usr/bin/env python3
"""
发布前版本一致性检查：Git tag / `pyproject.toml` / `contextflow.__version__` 三者必须相同。

tag 允许 `v0.1.0` 或 `refs/tags/v0.1.0` 形式（比较前去掉前缀）。
不传 `--tag` 时只比较 pyproject 与 `__init__.py`。
"""

from __future__ import annotations

import argparse
import re
import sys
import tomllib
from pathlib import Path
from typing import Optional

_INIT_VERSION_RE = re.compile(r"""^__version__\s*=\s*["']([^"']+)["']\s*$""", re.MULTILINE)


def normalize_tag(tag: str) -> str:
    """去掉 `refs/tags/` 与 `v` 前缀。"""

    raw = tag.strip()
    raw = raw.removeprefix("refs/tags/")
    return raw.removeprefix("v")


def read_pyproject_version(pyproject_path: Path) -> str:
    """读取 `[project].version`。"""

    data = tomllib.loads(pyproject_path.read_text(encoding="utf-8"))
    version = (data.get("project") or {}).get("version")
    if not isinstance(version, str) or not version.strip():
        raise ValueError(f"missing [project].version in {pyproject_path}")
    return version.strip()


def read_init_version(init_path: Path) -> str:
    """读取 `__version__` 常量。"""

    match = _INIT_VERSION_RE.search(init_path.read_text(encoding="utf-8"))
    if not match:
        raise ValueError(f"missing __version__ in {init_path}")
    return match.group(1).strip()


def main(argv: Optional[list[str]] = None) -> int:
    """
    入口。

    返回：
    - 0：一致；1：不一致；2：读取失败
    """

    repo_root = Path(__file__).resolve().parents[1]
    parser = argparse.ArgumentParser(description="Check release tag/version alignment.")
    parser.add_argument("--tag", default=None, help="Git tag name (e.g. v0.1.0 or refs/tags/v0.1.0)")
    parser.add_argument("--pyproject", type=Path, default=repo_root / "pyproject.toml")
    parser.add_argument("--init", dest="init_path", type=Path, default=repo_root / "src/contextflow/__init__.py")
    args = parser.parse_args(argv)

    try:
        pyproject_version = read_pyproject_version(args.pyproject)
        init_version = read_init_version(args.init_path)
    except (OSError, ValueError, tomllib.TOMLDecodeError) as e:
        print(f"failed to read versions: {e}", file=sys.stderr)
        return 2

    errors: list[str] = []
    if args.tag is not None and normalize_tag(args.tag) != pyproject_version:
        errors.append(f"tag ({args.tag}) != pyproject ({pyproject_version}) @ {args.pyproject}")
    if pyproject_version != init_version:
        errors.append(f"pyproject ({pyproject_version}) != __init__ ({init_version}) @ {args.init_path}")
    for line in errors:
        print(line, file=sys.stderr)
    if errors:
        return 1
    print(f"[ok] version aligned: pyproject={pyproject_version} init={init_version}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
