"""
Session Index：持久化的 per-project/per-session 摘要（`<log>.sessions-index.json`）。

约定：
- 只有 `context_signature` 与当前 log signature 完全一致的索引才可信；
- append 时增量折叠一条条目（O(1)），读路径发现失效时全量重建；
- 一切读写/校验失败都在本模块吸收（视为“无索引”），调用方退化为全量扫描；
- 增量更新是乐观的：load 与 write-back 之间另一个进程的重建可能覆盖本次更新，
  下一次 signature 校验失败时会触发重建。
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from contextflow.core.contracts import SESSION_INDEX_VERSION, SessionIndex, SessionSummary
from contextflow.core.errors import SessionIndexError
from contextflow.core.summaries import apply_entry_to_summary, entry_session_id, sort_session_summaries

logger = logging.getLogger(__name__)


def _parse_index(text: str) -> SessionIndex:
    """
    解析索引文件内容。

    异常：
    - SessionIndexError：JSON 非法 / 非 object / version 不匹配 / 字段校验失败
    """

    try:
        raw = json.loads(text)
    except ValueError as e:
        raise SessionIndexError(f"invalid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise SessionIndexError("index is not a JSON object")
    if raw.get("version") != SESSION_INDEX_VERSION:
        raise SessionIndexError(f"unsupported index version: {raw.get('version')!r}")
    try:
        return SessionIndex.model_validate(raw)
    except ValidationError as e:
        raise SessionIndexError(f"index validation failed: {e.error_count()} error(s)") from e


class SessionIndexStore:
    """
    session index 的加载/增量维护/持久化（带进程内缓存）。

    参数：
    - path：索引文件路径
    - default_project：条目缺少 project 时归入的 project
    """

    def __init__(self, path: Path, *, default_project: str) -> None:
        """创建 store（不读取文件）。"""

        self.path = Path(path)
        self.default_project = default_project
        self._cache: Optional[SessionIndex] = None

    def invalidate(self) -> None:
        """清空进程内缓存。"""

        self._cache = None

    def skeleton(self, context_signature: Optional[str]) -> SessionIndex:
        """返回空索引。"""

        return SessionIndex(version=SESSION_INDEX_VERSION, context_signature=context_signature)

    def _read_file(self) -> Optional[SessionIndex]:
        """读取索引文件；不存在或损坏返回 None。"""

        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug("session index read failed (%s): %s", self.path, e)
            return None
        try:
            return _parse_index(text)
        except SessionIndexError as e:
            logger.debug("session index ignored (%s): %s", self.path, e)
            return None

    def load(self, expected_signature: Optional[str]) -> Optional[SessionIndex]:
        """
        加载与 `expected_signature` 匹配的索引。

        返回：
        - SessionIndex：可信索引（可能来自缓存）
        - None：无 signature / 文件缺失 / 损坏 / signature 不匹配
        """

        if not expected_signature:
            return None
        cached = self._cache
        if cached is not None and cached.context_signature == expected_signature:
            return cached
        index = self._read_file()
        if index is None or index.context_signature != expected_signature:
            self.invalidate()
            return None
        self._cache = index
        return index

    def persist(self, index: SessionIndex) -> bool:
        """
        原子写入索引（tmp 文件 + rename）。

        返回：
        - True：写入成功并更新缓存
        - False：写入失败（已吸收；缓存失效）
        """

        tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(index.model_dump(mode="json"), ensure_ascii=False) + "\n", encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            logger.warning("session index persist failed (%s): %s", self.path, e)
            with contextlib.suppress(OSError):
                tmp.unlink()
            self.invalidate()
            return False
        self._cache = index
        return True

    def project_of(self, entry: Mapping[str, Any]) -> str:
        """返回条目在索引中的 project key（trim 后非空，否则 default project）。"""

        project = entry.get("project")
        if isinstance(project, str) and project.strip():
            return project.strip()
        return self.default_project

    def apply_entry(self, index: SessionIndex, entry: Mapping[str, Any], file_index: int) -> None:
        """
        把一条条目折叠进索引（就地修改）。

        说明：
        - 无 session_id 的条目只推进 `next_file_index`，不建立摘要。
        """

        if file_index >= 0:
            index.next_file_index = max(index.next_file_index, file_index + 1)
        session_id = entry_session_id(entry)
        if not session_id:
            return
        project = self.project_of(entry)
        bucket = index.projects.setdefault(project, {})
        summary = bucket.get(session_id)
        if summary is None:
            summary = SessionSummary(session_id=session_id, project=project)
            bucket[session_id] = summary
        apply_entry_to_summary(summary, entry, file_index)

    def build(self, entries: Sequence[Mapping[str, Any]], context_signature: str) -> SessionIndex:
        """从全部条目重建索引。"""

        index = self.skeleton(context_signature)
        for i, entry in enumerate(entries):
            self.apply_entry(index, entry, i)
        index.next_file_index = max(index.next_file_index, len(entries))
        return index

    def update_on_append(
        self,
        entry: Mapping[str, Any],
        *,
        before_signature: Optional[str],
        after_signature: Optional[str],
    ) -> None:
        """
        append 后的增量维护（调用方持有写锁）。

        规则：
        - 无 after signature：失效缓存，跳过；
        - 无 before signature（文件是本次新建的）：从空索引开始；
        - 否则必须能加载到匹配 before signature 的索引，加载不到则跳过（读路径会重建）。
        """

        if not after_signature:
            self.invalidate()
            return
        if not before_signature:
            index = self.skeleton(after_signature)
        else:
            loaded = self.load(before_signature)
            if loaded is None:
                self.invalidate()
                return
            index = loaded
            index.context_signature = after_signature
        file_index = index.next_file_index
        self.apply_entry(index, entry, file_index)
        self.persist(index)

    def list_project_sessions(self, index: SessionIndex, project: str) -> List[SessionSummary]:
        """返回某个 project 的全部 session 摘要（已排序；返回副本）。"""

        bucket: Dict[str, SessionSummary] = index.projects.get(project) or {}
        copies = []
        for summary in bucket.values():
            copy = summary.model_copy(deep=True)
            copy.agents = sorted(copy.agents)
            copies.append(copy)
        return sort_session_summaries(copies)
