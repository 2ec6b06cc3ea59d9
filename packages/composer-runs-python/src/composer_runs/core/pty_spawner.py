"""
PTY 进程启动器（Process Spawner）与 RunHandle。

设计目标：
- manager 只依赖 `ProcessSpawner` / `RunHandle` 协议（可注入 test double），不直接调用平台 PTY；
- 默认实现 `PtySpawner`：`pty.openpty()` + `subprocess.Popen([shell, "-c", command])`，
  子进程成为新的 session/进程组 leader（kill 时按进程组终止，避免子孙进程残留）；
- 每个 handle 一个 daemon reader 线程：读取 PTY master，按到达顺序分发输出块，进程退出后回收并触发 exit。

说明：
- 本实现面向 macOS/Linux（Windows 无 `pty` 模块）；
- PTY 输出为 stdout/stderr 合流。
"""

from __future__ import annotations

import logging
import os
import pty
import select
import shutil
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Protocol, Union, runtime_checkable

from composer_runs.core.errors import SpawnError

logger = logging.getLogger(__name__)

DataListener = Callable[[bytes], None]
ExitListener = Callable[[Optional[int]], None]

_READ_CHUNK_BYTES = 4096
_POLL_INTERVAL_SEC = 0.1


@runtime_checkable
class RunHandle(Protocol):
    """
    已启动进程的句柄（协议）。

    约束：
    - `on_data`：按到达顺序接收输出块；
    - `on_exit`：每个订阅者恰好触发一次，参数为 exit code；
    - `kill`：best-effort，不等待进程真正退出。
    """

    @property
    def pid(self) -> int:
        """子进程 pid。"""

        ...

    def on_data(self, listener: DataListener) -> None:
        """订阅输出块。"""

        ...

    def on_exit(self, listener: ExitListener) -> None:
        """订阅退出事件。"""

        ...

    def write(self, data: Union[bytes, str]) -> None:
        """向进程写入输入。"""

        ...

    def kill(self, sig: int = signal.SIGTERM) -> None:
        """请求终止进程。"""

        ...


@runtime_checkable
class ProcessSpawner(Protocol):
    """进程启动能力（协议）：命令原样交给平台 PTY，不做解释。"""

    def spawn(
        self,
        command: str,
        *,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> RunHandle:
        """
        启动命令并返回 handle。

        异常：
        - SpawnError：启动失败（调用方据此保证 registry 不变）
        """

        ...


class PtyRunHandle:
    """基于 PTY master fd 的 RunHandle 实现。"""

    def __init__(self, *, proc: subprocess.Popen[bytes], master_fd: int, command: str) -> None:
        """
        创建 handle（尚未开始读取；由 `PtySpawner.spawn` 调用 `start()`）。

        参数：
        - proc：子进程对象
        - master_fd：PTY master fd（由 handle 负责关闭）
        - command：原始命令（仅用于日志/排障）
        """

        self._proc = proc
        self._master_fd: Optional[int] = master_fd
        self.command = command
        self.created_at_ms = int(time.time() * 1000)

        # 订阅与分发共用同一把 RLock：保证 backlog 回放与新输出的顺序一致
        self._emit_lock = threading.RLock()
        self._fd_lock = threading.Lock()
        self._data_listeners: List[DataListener] = []
        self._exit_listeners: List[ExitListener] = []
        self._backlog: List[bytes] = []
        self._exited = threading.Event()
        self._exit_code: Optional[int] = None
        self._reader: Optional[threading.Thread] = None

    @property
    def pid(self) -> int:
        """子进程 pid（同时也是进程组 id）。"""

        return int(self._proc.pid)

    @property
    def running(self) -> bool:
        """reader 线程尚未观察到进程退出。"""

        return not self._exited.is_set()

    @property
    def exit_code(self) -> Optional[int]:
        """退出码；运行中为 None（被信号终止时为负数）。"""

        return self._exit_code

    def start(self) -> None:
        """启动 reader 线程（幂等）。"""

        if self._reader is not None:
            return
        self._reader = threading.Thread(
            target=self._reader_loop,
            daemon=True,
            name=f"composer-runs-pty-reader-{self.pid}",
        )
        self._reader.start()

    def on_data(self, listener: DataListener) -> None:
        """
        订阅输出块。

        说明：
        - 第一个订阅者会先收到订阅前已到达的输出（backlog），之后按到达顺序接收；
        - listener 抛出的异常只记录日志，不影响其它订阅者与 reader 线程。
        """

        with self._emit_lock:
            self._data_listeners.append(listener)
            backlog, self._backlog = self._backlog, []
            for chunk in backlog:
                self._call_data_listener(listener, chunk)

    def on_exit(self, listener: ExitListener) -> None:
        """订阅退出事件；若进程已退出，立即以 exit code 调用一次。"""

        with self._emit_lock:
            if not self._exited.is_set():
                self._exit_listeners.append(listener)
                return
        self._call_exit_listener(listener, self._exit_code)

    def write(self, data: Union[bytes, str]) -> None:
        """
        写入进程输入（str 按 utf-8 编码）。

        异常：
        - BrokenPipeError：进程已退出、PTY 已关闭
        """

        payload = data.encode("utf-8", errors="replace") if isinstance(data, str) else bytes(data)
        with self._fd_lock:
            if self._master_fd is None:
                raise BrokenPipeError("run has exited")
            view = memoryview(payload)
            while view:
                n = os.write(self._master_fd, view)
                view = view[n:]

    def kill(self, sig: int = signal.SIGTERM) -> None:
        """
        按进程组发送信号（best-effort，不等待退出）。

        说明：
        - 进程已不存在时静默返回；
        - 进程组信号失败时退回到只对子进程本身发信号。
        """

        if self._exited.is_set():
            return
        try:
            os.killpg(self.pid, sig)
            return
        except ProcessLookupError:
            return
        except OSError:
            logger.debug("killpg failed for pid=%s, falling back to kill", self.pid, exc_info=True)
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            return

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """等待进程退出并返回 exit code；超时返回 None。"""

        if not self._exited.wait(timeout):
            return None
        return self._exit_code

    def _call_data_listener(self, listener: DataListener, chunk: bytes) -> None:
        try:
            listener(chunk)
        except Exception:
            logger.warning("Run output listener failed (pid=%s)", self.pid, exc_info=True)

    def _call_exit_listener(self, listener: ExitListener, code: Optional[int]) -> None:
        try:
            listener(code)
        except Exception:
            logger.warning("Run exit listener failed (pid=%s)", self.pid, exc_info=True)

    def _emit(self, chunk: bytes) -> None:
        """分发一个输出块；尚无订阅者时暂存到 backlog。"""

        with self._emit_lock:
            if not self._data_listeners:
                self._backlog.append(chunk)
                return
            for listener in list(self._data_listeners):
                self._call_data_listener(listener, chunk)

    def _read_available(self, timeout: float) -> Optional[bytes]:
        """
        在 timeout 内读取一次 master fd。

        返回：
        - bytes：读到的数据；
        - b""：暂无数据；
        - None：EOF / fd 已失效（slave 端全部关闭）
        """

        fd = self._master_fd
        if fd is None:
            return None
        try:
            rlist, _, _ = select.select([fd], [], [], timeout)
        except (OSError, ValueError):
            return None
        if not rlist:
            return b""
        try:
            data = os.read(fd, _READ_CHUNK_BYTES)
        except OSError:
            # Linux：slave 关闭后 read 返回 EIO
            return None
        return data if data else None

    def _reader_loop(self) -> None:
        """reader 线程：读取输出直到 EOF 或进程退出，随后回收进程并触发 exit。"""

        try:
            while True:
                data = self._read_available(_POLL_INTERVAL_SEC)
                if data is None:
                    break
                if data:
                    self._emit(data)
                    continue
                if self._proc.poll() is not None:
                    # 进程已退出：排空残余输出（孙进程可能仍持有 slave，所以不等待 EOF）
                    while True:
                        rest = self._read_available(0)
                        if not rest:
                            break
                        self._emit(rest)
                    break
        finally:
            self._finish()

    def _finish(self) -> None:
        """回收子进程、关闭 master fd 并通知 exit 订阅者。"""

        try:
            code: Optional[int] = self._proc.wait()
        except Exception:
            logger.warning("Failed to reap run process pid=%s", self.pid, exc_info=True)
            code = self._proc.returncode

        with self._fd_lock:
            fd, self._master_fd = self._master_fd, None
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass

        with self._emit_lock:
            self._exit_code = code
            self._exited.set()
            listeners, self._exit_listeners = self._exit_listeners, []
        logger.debug("Run process exited pid=%s code=%s", self.pid, code)
        for listener in listeners:
            self._call_exit_listener(listener, code)


class PtySpawner:
    """
    默认的 PTY 进程启动器。

    参数：
    - shell：执行命令使用的 shell（默认 `bash`，不存在时为 `/bin/sh`）
    - cwd：默认工作目录（None 表示当前目录）
    - env：追加到父进程环境之上的变量
    - term：注入的 `TERM` 值
    """

    def __init__(
        self,
        *,
        shell: Optional[str] = None,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        term: str = "xterm-256color",
    ) -> None:
        self.shell = shell or shutil.which("bash") or "/bin/sh"
        self.cwd = Path(cwd) if cwd is not None else None
        self.env = {str(k): str(v) for k, v in (env or {}).items()}
        self.term = term

    def spawn(
        self,
        command: str,
        *,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> PtyRunHandle:
        """
        在新的 PTY 中启动 `shell -c command`。

        参数：
        - command：原样传给 shell（包括换行、引号与元字符）
        - cwd/env：覆盖 spawner 级默认值

        异常：
        - SpawnError：PTY 分配或进程启动失败（fd 已全部关闭）
        """

        work_dir = Path(cwd) if cwd is not None else (self.cwd or Path.cwd())
        merged_env = dict(os.environ)
        merged_env["TERM"] = self.term
        merged_env.update(self.env)
        if env:
            merged_env.update({str(k): str(v) for k, v in env.items()})

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(f"Failed to allocate pty: {e}", command=command) from e

        try:
            proc = subprocess.Popen(  # noqa: S603
                [self.shell, "-c", command],
                cwd=str(work_dir),
                env=merged_env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                close_fds=True,
                start_new_session=True,
            )
        except Exception as e:
            for fd in (master_fd, slave_fd):
                try:
                    os.close(fd)
                except OSError:
                    pass
            raise SpawnError(
                f"Failed to spawn process: {e}",
                command=command,
                details={"shell": self.shell, "cwd": str(work_dir)},
            ) from e
        os.close(slave_fd)

        handle = PtyRunHandle(proc=proc, master_fd=master_fd, command=command)
        handle.start()
        logger.debug("Spawned run process pid=%s shell=%s", handle.pid, self.shell)
        return handle
