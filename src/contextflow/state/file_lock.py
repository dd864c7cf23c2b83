"""
跨进程写锁（exclusive-create marker file）。

协议：
1) `O_CREAT | O_EXCL` 创建 marker 文件（原子性即全部正确性依据）；
2) 成功：写入元数据 `{pid, host, created_at, token}`（写入失败则删除 marker 并抛出），执行临界区；
   释放时仅当 marker 内容仍是自己写入的内容才删除（被 stale break 后他人重建的 marker 保持不动）；
3) marker 已存在：mtime 超过 `stale_ms` 则 best-effort 删除并立即重试，否则随机退避后重试；
4) 累计等待超过 `max_wait_ms`：抛出 `LockTimeoutError`。

约束：
- 不可重入（同一实例嵌套获取会立即报错，而不是自我死锁到超时）；
- 读取不需要锁。
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import random
import secrets
import socket
import time
from pathlib import Path
from typing import Optional

from contextflow.core.errors import LockTimeoutError
from contextflow.core.utils import now_rfc3339

logger = logging.getLogger(__name__)


class FileLock:
    """
    基于 marker 文件的互斥锁（context manager）。

    参数：
    - path：marker 文件路径（通常为 `<log>.lock`）
    - max_wait_ms：最长等待时间
    - stale_ms：marker 超过该年龄视为持有者已崩溃
    - backoff_min_ms / backoff_jitter_ms：重试间隔 = min + random[0, jitter)
    """

    def __init__(
        self,
        path: Path,
        *,
        max_wait_ms: int = 5000,
        stale_ms: int = 30000,
        backoff_min_ms: int = 40,
        backoff_jitter_ms: int = 60,
    ) -> None:
        """创建锁对象（不触碰文件系统）。"""

        self.path = Path(path)
        self.max_wait_ms = int(max_wait_ms)
        self.stale_ms = int(stale_ms)
        self.backoff_min_ms = int(backoff_min_ms)
        self.backoff_jitter_ms = int(backoff_jitter_ms)
        self._held = False
        self._token: Optional[bytes] = None

    @property
    def held(self) -> bool:
        """当前实例是否持有锁。"""

        return self._held

    def _try_create(self) -> bool:
        """
        尝试独占创建 marker；已存在返回 False，其它 OSError 原样抛出。

        元数据写入失败时 marker 会被删除，避免留下一个要等 `stale_ms` 才能回收的空 marker。
        """

        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        meta = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "created_at": now_rfc3339(),
            "token": secrets.token_hex(8),
        }
        payload = json.dumps(meta).encode("utf-8")
        try:
            try:
                os.write(fd, payload)
            finally:
                os.close(fd)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                self.path.unlink()
            raise
        self._token = payload
        return True

    def _break_if_stale(self) -> bool:
        """marker 超过 `stale_ms` 时删除并返回 True；不存在/未过期返回 False。"""

        try:
            age_ms = (time.time() - self.path.stat().st_mtime) * 1000
        except FileNotFoundError:
            return False
        if age_ms <= self.stale_ms:
            return False
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        logger.warning("broke stale context lock %s (age %.0f ms)", self.path, age_ms)
        return True

    def acquire(self) -> None:
        """
        获取锁（阻塞直到成功或超时）。

        异常：
        - LockTimeoutError：等待超过 `max_wait_ms`
        - RuntimeError：同一实例重入
        """

        if self._held:
            raise RuntimeError(f"FileLock is not reentrant: {self.path}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            if self._try_create():
                self._held = True
                return
            waited_ms = (time.monotonic() - start) * 1000
            if waited_ms > self.max_wait_ms:
                logger.warning("timed out after %.0f ms waiting for context lock %s", waited_ms, self.path)
                raise LockTimeoutError(lock_path=str(self.path), waited_ms=int(waited_ms))
            if self._break_if_stale():
                continue
            time.sleep((self.backoff_min_ms + random.randrange(max(1, self.backoff_jitter_ms))) / 1000.0)

    def release(self) -> None:
        """释放锁（仅删除自己写入的 marker；未持有时为 no-op）。"""

        if not self._held:
            return
        self._held = False
        token, self._token = self._token, None
        try:
            current = self.path.read_bytes()
        except FileNotFoundError:
            return
        if current != token:
            logger.warning("context lock %s is now owned by another holder; leaving it in place", self.path)
            return
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()

    def __enter__(self) -> "FileLock":
        """`with` 入口：获取锁。"""

        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        """`with` 出口：无论是否异常都释放锁。"""

        self.release()
        return None
