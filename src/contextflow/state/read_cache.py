"""
Read Cache：以 file signature 为 key 的解析结果缓存（进程内状态）。

算法：
- stat 得到 before signature；命中缓存直接返回（不读内容）；
- 文件不存在：视为空并失效缓存；
- 读内容后再 stat 得到 after signature；两者不同即 torn read，重试一次；
- 仍然 torn：返回本次解析结果但不写入缓存（signature 为 None）；
- 只有 before == after 时才写入缓存。
"""

from __future__ import annotations

import logging
from typing import Optional

from contextflow.state.record_log import LogSnapshot, RecordLog, make_file_signature, parse_entries

logger = logging.getLogger(__name__)

_READ_ATTEMPTS = 2


class ReadCache:
    """
    `RecordLog` 的读缓存。

    说明：
    - 缓存的 snapshot 被多个调用方共享，调用方不得原地修改其中的 list/dict；
    - 任何成功的 append 之后必须调用 `invalidate()`。
    """

    def __init__(self, log: RecordLog) -> None:
        """创建空缓存。"""

        self.log = log
        self._snapshot: Optional[LogSnapshot] = None

    @property
    def signature(self) -> Optional[str]:
        """当前缓存对应的 signature（无缓存为 None）。"""

        return self._snapshot.signature if self._snapshot is not None else None

    def invalidate(self) -> None:
        """清空缓存（下一次读取必然重新 stat/读取）。"""

        self._snapshot = None

    def read(self) -> LogSnapshot:
        """
        读取并解析 log（优先命中缓存）。

        异常：
        - ContextFileTooLargeError：文件超过 `max_bytes`
        """

        attempt = 0
        while True:
            attempt += 1
            before_st = self.log.stat()
            before = make_file_signature(before_st)
            if before is not None and self._snapshot is not None and self._snapshot.signature == before:
                return self._snapshot

            if before_st is None:
                self.invalidate()
                return LogSnapshot()

            self.log.check_size(before_st)
            raw = self.log.read_raw()
            after = self.log.signature()

            if after is not None and before != after and attempt < _READ_ATTEMPTS:
                logger.debug("torn read on %s (%s -> %s); retrying", self.log.path, before, after)
                continue

            entries, parse_errors = parse_entries(raw)
            if after is not None and before == after:
                snapshot = LogSnapshot(raw=raw, entries=entries, parse_errors=parse_errors, signature=after)
                self._snapshot = snapshot
                return snapshot
            self.invalidate()
            return LogSnapshot(raw=raw, entries=entries, parse_errors=parse_errors, signature=None)
