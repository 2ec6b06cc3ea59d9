"""
Run 日志（append-only，逐块落盘）。

实现约定：
- 以 append-binary 打开 `log_file`（不存在则创建，包括父目录）；
- 每个 chunk 原样写入（ANSI 序列也保留）并立即 flush，manager 崩溃最多丢失最后一次写入；
- 超过 `max_bytes` 时按 `<base>.<i><ext>` 轮转（最多 `max_backups` 份），并在原路径重新打开，
  registry 中记录的 `logFile` 始终存在；
- manager 从不删除日志文件本身（保留策略由调用方决定）。
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import BinaryIO, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_MAX_LOG_BYTES = 10 * 1024 * 1024
DEFAULT_MAX_LOG_BACKUPS = 5


def rotate_log_file(log_file: Path, *, max_backups: int) -> None:
    """
    轮转日志：`x.log` → `x.1.log`，`x.1.log` → `x.2.log` …（最旧的一份被覆盖）。

    参数：
    - log_file：当前日志路径
    - max_backups：保留的备份份数（>=1）
    """

    log_file = Path(log_file)
    base = log_file.stem
    ext = log_file.suffix
    parent = log_file.parent
    for i in range(max_backups - 1, 0, -1):
        old = parent / f"{base}.{i}{ext}"
        if old.exists():
            old.replace(parent / f"{base}.{i + 1}{ext}")
    try:
        log_file.replace(parent / f"{base}.1{ext}")
    except OSError:
        logger.warning("Failed to rotate log file %s", log_file, exc_info=True)


class LogSink:
    """
    单个 run 的日志写入器（线程安全）。

    参数：
    - path：日志文件路径
    - max_bytes：触发轮转的大小阈值；0 表示不轮转
    - max_backups：轮转时保留的备份份数
    """

    def __init__(
        self,
        path: Path,
        *,
        max_bytes: int = DEFAULT_MAX_LOG_BYTES,
        max_backups: int = DEFAULT_MAX_LOG_BACKUPS,
    ) -> None:
        self.path = Path(path)
        self.max_bytes = int(max_bytes)
        self.max_backups = max(1, int(max_backups))
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh: Optional[BinaryIO] = self.path.open("ab")
        self._bytes_written = self.path.stat().st_size

    @property
    def closed(self) -> bool:
        """是否已关闭。"""

        return self._fh is None

    @property
    def bytes_written(self) -> int:
        """当前日志文件（轮转后为新文件）的字节数。"""

        return self._bytes_written

    def write(self, chunk: Union[bytes, str]) -> None:
        """
        追加一个输出块并 flush。

        说明：
        - str 按 utf-8 编码；
        - 已关闭时静默丢弃（进程退出后 PTY 可能仍有残余输出）。
        """

        data = chunk.encode("utf-8", errors="replace") if isinstance(chunk, str) else bytes(chunk)
        if not data:
            return
        with self._lock:
            if self._fh is None:
                return
            if self.max_bytes > 0 and self._bytes_written > 0 and self._bytes_written + len(data) > self.max_bytes:
                self._rotate_locked()
            self._fh.write(data)
            self._fh.flush()
            self._bytes_written += len(data)

    def _rotate_locked(self) -> None:
        """在持锁状态下完成一次轮转并重新打开原路径。"""

        assert self._fh is not None
        self._fh.close()
        rotate_log_file(self.path, max_backups=self.max_backups)
        self._fh = self.path.open("ab")
        self._bytes_written = self.path.stat().st_size

    def close(self) -> None:
        """关闭文件句柄（幂等）。"""

        with self._lock:
            fh = self._fh
            self._fh = None
        if fh is None:
            return
        try:
            fh.close()
        except OSError:
            logger.debug("Failed to close log sink %s", self.path, exc_info=True)

    def __enter__(self) -> "LogSink":
        """上下文管理器入口：返回 self。"""
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        """上下文管理器退出：关闭文件。"""
        self.close()
