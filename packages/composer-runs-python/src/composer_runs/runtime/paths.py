from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RunPaths:
    """run registry 与日志相关路径集合。"""

    run_dir: Path
    registry_path: Path
    lock_path: Path
    log_dir: Path

    def log_file_for(self, run_name: str, *, created_at_ms: int) -> Path:
        """
        生成 run 的日志文件路径：`<log_dir>/<run_name>-<created_at_ms>.log`。

        参数：
        - run_name：已校验的 run 名称
        - created_at_ms：创建时间（ms），用于区分同名 run 的历史日志
        """

        return (self.log_dir / f"{run_name}-{int(created_at_ms)}.log").resolve()


def get_run_paths(*, run_dir: Path, log_dir: Path) -> RunPaths:
    """
    获取 registry（`runs.json`）、锁文件（`runs.lock`）与日志目录的绝对路径。

    说明：
    - 只做路径计算，不创建目录（目录由 registry / log sink 首次使用时惰性创建）。
    """

    rd = Path(run_dir).expanduser().resolve()
    ld = Path(log_dir).expanduser().resolve()
    return RunPaths(
        run_dir=rd,
        registry_path=(rd / "runs.json").resolve(),
        lock_path=(rd / "runs.lock").resolve(),
        log_dir=ld,
    )
