"""
ContextFlow 错误分类（异常类型）。

说明：
- 致命错误只终止“单次操作”，不会导致进程退出；
- 优化路径（read cache / session index）的错误一律在本地吸收，退化为全量扫描；
- 单行解析失败不是异常，而是 `ParseIssue` 数据（见 `contextflow.core.contracts`）。
- `error_kind` 为稳定的机器可读分类，transport 层据此映射 JSON-RPC 错误码。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


class ContextFlowError(Exception):
    """ContextFlow 内部错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（可序列化到 JSON 输出）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(ContextFlowError):
    """结构化错误（英文 `code/message/details` + `error_kind`）。"""

    error_kind = "internal"

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建结构化错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息（会原样返回给调用方）
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回错误消息本身（调用方直接展示）。"""

        return self.message

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class InvalidArgumentError(FrameworkError):
    """调用方参数缺失/非法（在任何 I/O 之前中止操作）。"""

    error_kind = "validation"

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        """创建 `InvalidArgumentError`（code 固定为 `VALIDATION_ERROR`）。"""

        super().__init__(code="VALIDATION_ERROR", message=message, details=details)


class ContextFileTooLargeError(FrameworkError):
    """共享 log 文件超过配置的最大字节数（读取中止，不返回部分结果）。"""

    error_kind = "size_exceeded"

    def __init__(self, *, path: str, size: int, max_bytes: int) -> None:
        """
        创建 `ContextFileTooLargeError`。

        参数：
        - path：log 文件路径
        - size：当前文件大小（bytes）
        - max_bytes：配置上限（bytes）
        """

        super().__init__(
            code="SIZE_EXCEEDED",
            message=f"Context file exceeds configured max size ({max_bytes} bytes): {path}",
            details={"path": path, "size": int(size), "max_bytes": int(max_bytes)},
        )


class LockTimeoutError(FrameworkError):
    """写者在超时时间内未能获得互斥锁（写入中止，log 未被修改）。"""

    error_kind = "lock_timeout"

    def __init__(self, *, lock_path: str, waited_ms: int) -> None:
        """创建 `LockTimeoutError`。"""

        super().__init__(
            code="LOCK_TIMEOUT",
            message=f"Timed out waiting for context lock ({lock_path})",
            details={"lock_path": lock_path, "waited_ms": int(waited_ms)},
        )


class MissingSessionIdError(FrameworkError):
    """需要 session_id 的操作在显式参数/env/active pointer 中均未找到可用值。"""

    error_kind = "missing_session_id"

    def __init__(self) -> None:
        """创建 `MissingSessionIdError`（消息中包含补救指引）。"""

        super().__init__(
            code="MISSING_SESSION_ID",
            message=(
                "Missing session_id. Choose one with list_sessions/choose_session "
                "(or run `contextflow sessions pick`) and try again."
            ),
        )


class SessionIndexError(ContextFlowError):
    """session index 读写/校验失败（仅内部使用；调用方永远不会看到）。"""
