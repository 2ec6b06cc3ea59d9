"""
Registry 锁（跨进程互斥）。

实现约定：
- 跨进程：对 `<run_dir>/runs.lock` 使用 OS advisory lock（POSIX `fcntl.flock`，Windows `msvcrt.locking`）；
  持有者崩溃时由 OS 释放，锁文件本身不作为 sentinel，也从不删除；
- 进程内：每个锁路径额外对应一个 `threading.Lock`，保证同进程多线程也串行化；
- 获取为“有界轮询”：超过 timeout 抛 `LockTimeoutError`，不会无限阻塞；
- 不可重入：同一线程在持锁期间再次获取同一路径会等待直至超时。
"""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import IO, Callable, Dict, Optional, TypeVar

from composer_runs.core.errors import LockTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT_MS = 20_000
DEFAULT_LOCK_POLL_INTERVAL_MS = 50

_process_locks: Dict[str, threading.Lock] = {}
_process_locks_guard = threading.Lock()


def _process_lock_for(lock_path: Path) -> threading.Lock:
    """返回该锁路径对应的进程内互斥锁（按绝对路径共享）。"""

    key = str(lock_path)
    with _process_locks_guard:
        lock = _process_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _process_locks[key] = lock
        return lock


class RegistryLock:
    """
    以 registry 锁文件路径为 key 的互斥临界区。

    参数：
    - lock_path：锁文件路径（通常为 `RunPaths.lock_path`）
    - timeout_ms：最长等待时间（毫秒）；0 表示只尝试一次
    - poll_interval_ms：两次尝试之间的退避间隔（毫秒）
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
        poll_interval_ms: int = DEFAULT_LOCK_POLL_INTERVAL_MS,
    ) -> None:
        if timeout_ms < 0:
            raise ValueError("timeout_ms must be >= 0")
        if poll_interval_ms < 1:
            raise ValueError("poll_interval_ms must be >= 1")
        self.lock_path = Path(lock_path).resolve()
        self.timeout_ms = int(timeout_ms)
        self.poll_interval_ms = int(poll_interval_ms)
        self._thread_lock = _process_lock_for(self.lock_path)
        self._fh: Optional[IO[bytes]] = None

    @property
    def acquired(self) -> bool:
        """当前实例是否持有锁。"""

        return self._fh is not None

    def acquire(self) -> None:
        """
        获取锁（阻塞，直到成功或超时）。

        异常：
        - LockTimeoutError：超时仍未获得锁
        """

        if self._fh is not None:
            raise RuntimeError("registry lock already held by this instance")

        deadline = time.monotonic() + self.timeout_ms / 1000.0
        if not self._thread_lock.acquire(timeout=self.timeout_ms / 1000.0):
            raise LockTimeoutError(lock_path=str(self.lock_path), timeout_ms=self.timeout_ms)

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            while True:
                fh = self._try_os_lock()
                if fh is not None:
                    self._fh = fh
                    return
                if time.monotonic() >= deadline:
                    logger.warning("Registry lock timed out after %sms: %s", self.timeout_ms, self.lock_path)
                    raise LockTimeoutError(lock_path=str(self.lock_path), timeout_ms=self.timeout_ms)
                time.sleep(self.poll_interval_ms / 1000.0)
        except BaseException:
            self._thread_lock.release()
            raise

    def _try_os_lock(self) -> Optional[IO[bytes]]:
        """尝试一次非阻塞 OS 锁；成功返回已加锁的文件句柄，失败返回 None。"""

        fh = open(self.lock_path, "a+b")
        try:
            if os.name == "nt":
                import msvcrt

                fh.seek(0, os.SEEK_END)
                if fh.tell() < 1:
                    fh.write(b"\0")
                    fh.flush()
                fh.seek(0)
                msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl

                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                # 持有者 pid 仅用于排障
                fh.truncate(0)
                fh.write(str(os.getpid()).encode("ascii"))
                fh.flush()
        except OSError:
            fh.close()
            return None
        return fh

    def release(self) -> None:
        """释放锁（未持有时为 no-op）。"""

        fh = self._fh
        if fh is None:
            return
        self._fh = None
        try:
            if os.name == "nt":
                import msvcrt

                fh.seek(0)
                msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                import fcntl

                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        except OSError:
            logger.debug("Registry lock unlock failed: %s", self.lock_path, exc_info=True)
        finally:
            fh.close()
            self._thread_lock.release()

    def __enter__(self) -> "RegistryLock":
        """上下文管理器入口：获取锁。"""
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        """上下文管理器退出：释放锁。"""
        self.release()


def with_lock(
    lock_path: Path,
    fn: Callable[[], T],
    *,
    timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
    poll_interval_ms: int = DEFAULT_LOCK_POLL_INTERVAL_MS,
) -> T:
    """在 registry 锁的临界区内执行 `fn` 并返回其结果（异常原样传播，锁总会释放）。"""

    with RegistryLock(lock_path, timeout_ms=timeout_ms, poll_interval_ms=poll_interval_ms):
        return fn()
