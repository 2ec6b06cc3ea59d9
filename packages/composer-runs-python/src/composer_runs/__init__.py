"""
Composer Runs（Python）。

说明：
- 管理由 PTY 承载的长生命周期子进程（run），并在 `<run_dir>/runs.json` 维护跨进程共享的活跃 run registry；
- 当前已包含：
  - RunRecord 契约与 registry（原子写 + 跨进程锁 + 损坏容忍）
  - PTY spawner（RunHandle：输出订阅 / exit 事件 / write / kill）
  - run 日志（逐块 flush + 按大小轮转）
  - liveness 检测与 list 时惰性回收
  - 配置加载器（YAML overlay + pydantic 校验）与 `composer-runs` CLI
"""

from __future__ import annotations

from composer_runs.config.loader import RunsConfig
from composer_runs.core.contracts import RunRecord
from composer_runs.core.errors import (
    LockTimeoutError,
    RunAlreadyExistsError,
    RunNotAttachedError,
    RunNotFoundError,
    RunsError,
    SpawnError,
    UserError,
)
from composer_runs.manager import RunSessionManager, make

__all__ = [
    "LockTimeoutError",
    "RunAlreadyExistsError",
    "RunNotAttachedError",
    "RunNotFoundError",
    "RunRecord",
    "RunSessionManager",
    "RunsConfig",
    "RunsError",
    "SpawnError",
    "UserError",
    "__version__",
    "make",
]

__version__ = "0.1.0"
