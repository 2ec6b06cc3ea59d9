"""
Run session 错误分类（异常类型）。

说明：
- 只有 LockTimeout / Spawn / NotFound（以及创建期的校验与重名）会穿过 manager 的公开 API；
- registry 的损坏/缺失与 load 期 I/O 错误在 registry 边界内吸收，不作为异常抛出；
- CLI 层把 `code` 映射为稳定 exit code 与 JSON 输出。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


class RunsError(Exception):
    """run session 错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（CLI 输出 / 日志使用）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(RunsError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """调用方输入导致的错误（run 名称、命令、配置形状）。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        """创建 `UserError`。

        参数：
        - `message`：可读错误信息
        - `code`：错误码（默认 `USER_ERROR`）
        - `details`：结构化补充信息
        """

        super().__init__(code=code, message=message, details=details or {})


class LockTimeoutError(FrameworkError):
    """在超时时间内未能获得 registry 锁（调用方可重试）。"""

    def __init__(self, *, lock_path: str, timeout_ms: int) -> None:
        super().__init__(
            code="REGISTRY_LOCK_TIMEOUT",
            message=f"Could not acquire registry lock within {timeout_ms}ms.",
            details={"lock_path": lock_path, "timeout_ms": int(timeout_ms)},
        )


class SpawnError(FrameworkError):
    """进程启动失败（registry 保持不变）。"""

    def __init__(self, message: str, *, command: str, details: Dict[str, Any] | None = None) -> None:
        merged: Dict[str, Any] = {"command": command}
        merged.update(details or {})
        super().__init__(code="RUN_SPAWN_FAILED", message=message, details=merged)


class RunNotFoundError(FrameworkError):
    """registry 中不存在该 run（操作没有产生任何效果）。"""

    def __init__(self, run_name: str) -> None:
        super().__init__(code="RUN_NOT_FOUND", message=f"Run {run_name} not found.", details={"run_name": run_name})
        self.run_name = run_name


class RunAlreadyExistsError(FrameworkError):
    """同名 run 仍在运行。"""

    def __init__(self, run_name: str, *, pid: int) -> None:
        super().__init__(
            code="RUN_ALREADY_EXISTS",
            message=f"Run {run_name} is already running.",
            details={"run_name": run_name, "pid": int(pid)},
        )
        self.run_name = run_name


class RunNotAttachedError(FrameworkError):
    """run 存在，但其 PTY 不由当前 manager 实例持有（无法写入/等待）。"""

    def __init__(self, run_name: str) -> None:
        super().__init__(
            code="RUN_NOT_ATTACHED",
            message=f"Run {run_name} is not attached to this instance.",
            details={"run_name": run_name},
        )
        self.run_name = run_name
