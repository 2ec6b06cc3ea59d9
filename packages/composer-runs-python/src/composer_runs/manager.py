"""
Run Session Manager。

职责：
- 组合 PTY spawner、log sink、registry（含锁）与 liveness 检测，对外提供 create/list/kill；
- registry 的每一次修改都经过 `RunRegistry.mutate`（单一临界区）；
- 退出的进程只在 `list_runs()` 时惰性回收（exit 事件只用于关闭本实例持有的日志句柄）。

状态机（每个 run）：
- Created → Running → (Killed | Exited)
- Created/Running 与 registry 插入在同一临界区内完成；Killed 只来自 `kill_run`；
  Exited 在下一次 `list_runs()` 的 liveness 检查时才被观察到。
"""

from __future__ import annotations

import logging
import os
import re
import signal
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Mapping, Optional, Union

from pydantic import ValidationError

from composer_runs.config.loader import RunsConfig
from composer_runs.core import liveness
from composer_runs.core.contracts import RunRecord
from composer_runs.core.errors import (
    RunAlreadyExistsError,
    RunNotAttachedError,
    RunNotFoundError,
    SpawnError,
    UserError,
)
from composer_runs.core.log_sink import LogSink
from composer_runs.core.pty_spawner import ProcessSpawner, PtySpawner, RunHandle
from composer_runs.core.validation import validate_command, validate_run_name
from composer_runs.runtime.paths import RunPaths, get_run_paths
from composer_runs.state.run_registry import RunRegistry

logger = logging.getLogger(__name__)


@dataclass
class _HeldRun:
    """本实例启动并持有 PTY 的 run（内存态）。"""

    record: RunRecord
    handle: RunHandle
    sink: LogSink
    exited: threading.Event = field(default_factory=threading.Event)
    exit_code: Optional[int] = None


def _find_latest(records: List[RunRecord], run_name: str) -> Optional[RunRecord]:
    """返回同名条目中最后插入的一条。"""

    for rec in reversed(records):
        if rec.run_name == run_name:
            return rec
    return None


def _signal_pid(pid: int, sig: int = signal.SIGTERM) -> None:
    """
    对不由本实例持有的 run 发送终止信号（best-effort）。

    说明：
    - 优先按进程组发送（PtySpawner 启动的进程是 session leader）；
    - 进程已不存在视为成功；其它失败只记录日志。
    """

    if os.name != "nt":
        try:
            os.killpg(pid, sig)
            return
        except ProcessLookupError:
            # 不是进程组 leader 时 killpg 同样返回 ESRCH，继续尝试单进程
            pass
        except OSError:
            logger.debug("killpg failed for pid=%s", pid, exc_info=True)
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return
    except OSError:
        logger.warning("Failed to signal run process pid=%s", pid, exc_info=True)


def _select_log_lines(contents: str, *, lines: Optional[int], search: Optional[str]) -> str:
    """按“最后 N 行”或“匹配行”截取日志内容（两者都未给出时返回全文）。"""

    if lines is None and search is None:
        return contents
    if not contents:
        return ""
    all_lines = re.split(r"\r?\n", contents)
    if lines is not None:
        limit = max(0, int(lines))
        if limit == 0:
            return ""
        if all_lines and all_lines[-1] == "":
            all_lines = all_lines[:-1]
        selected = all_lines[-limit:]
    else:
        pattern = str(search)
        try:
            matcher: Optional[re.Pattern[str]] = re.compile(pattern)
        except re.error:
            matcher = None
        selected = [ln for ln in all_lines if (matcher.search(ln) if matcher else pattern in ln)]
    if not selected:
        return ""
    return "\n".join(selected) + "\n"


class RunSessionManager:
    """
    run 会话管理器（可被任意多个进程独立构造，共享同一 run_dir）。

    参数：
    - config：已校验的 `RunsConfig`
    - spawner：进程启动能力（默认 `PtySpawner`，测试可注入 fake）
    - is_alive：pid 存活检测（默认 `liveness.is_alive`）
    """

    def __init__(
        self,
        config: RunsConfig,
        *,
        spawner: Optional[ProcessSpawner] = None,
        is_alive: Optional[Callable[[int], bool]] = None,
    ) -> None:
        self._config = config
        self._paths = get_run_paths(run_dir=config.run_dir, log_dir=config.log_dir)
        self._registry = RunRegistry(
            path=self._paths.registry_path,
            lock_path=self._paths.lock_path,
            lock_timeout_ms=config.lock.timeout_ms,
            lock_poll_interval_ms=config.lock.poll_interval_ms,
        )
        if spawner is None:
            spawner = PtySpawner(
                shell=config.spawn.shell,
                cwd=config.spawn.cwd,
                env=config.spawn.env,
                term=config.spawn.term,
            )
        self._spawner = spawner
        self._is_alive = is_alive or liveness.is_alive
        self._held: Dict[str, _HeldRun] = {}
        self._held_lock = threading.Lock()

    @property
    def config(self) -> RunsConfig:
        """当前配置。"""

        return self._config

    @property
    def paths(self) -> RunPaths:
        """registry / 锁 / 日志目录路径。"""

        return self._paths

    @property
    def registry(self) -> RunRegistry:
        """底层 registry（只读场景可直接 `load()`）。"""

        return self._registry

    def new_run(self, run_name: str, command: str) -> RunRecord:
        """
        启动一个新的 run 并登记到 registry。

        流程（全部在 registry 锁内）：
        - 同名且仍存活的条目 → `RunAlreadyExistsError`；同名但已退出的条目直接移除；
        - 打开 log sink（先于 pid 产生创建日志文件）→ spawn → 订阅输出 → 追加记录。

        异常：
        - UserError：名称/命令校验失败
        - RunAlreadyExistsError：同名 run 仍在运行
        - SpawnError：启动失败（registry 不变）
        - LockTimeoutError：锁等待超时
        """

        name = validate_run_name(run_name)
        cmd = validate_command(command)
        spawned: List[_HeldRun] = []

        def _create(records: List[RunRecord]) -> RunRecord:
            for existing in [r for r in records if r.run_name == name]:
                if self._is_alive(existing.pid):
                    raise RunAlreadyExistsError(name, pid=existing.pid)
                logger.info("Dropping stale run entry %s (pid=%s)", name, existing.pid)
                records.remove(existing)

            log_file = self._paths.log_file_for(name, created_at_ms=int(time.time() * 1000))
            sink = LogSink(
                log_file,
                max_bytes=self._config.log.max_bytes,
                max_backups=self._config.log.max_backups,
            )
            try:
                handle = self._spawner.spawn(cmd)
            except SpawnError:
                sink.close()
                raise
            except Exception as e:
                sink.close()
                raise SpawnError(f"Failed to spawn process: {e}", command=cmd) from e

            pid = int(getattr(handle, "pid", 0) or 0)
            if pid <= 0:
                handle.kill()
                sink.close()
                raise SpawnError(f"Invalid PID received for command {cmd!r}", command=cmd)

            record = RunRecord(run_name=name, pid=pid, command=cmd, log_file=str(log_file))
            held = _HeldRun(record=record, handle=handle, sink=sink)
            spawned.append(held)
            with self._held_lock:
                self._held[name] = held
            handle.on_data(sink.write)
            handle.on_exit(lambda code: self._on_run_exit(held, code))
            records.append(record)
            return record

        try:
            record = self._registry.mutate(_create)
        except BaseException:
            for held in spawned:
                held.handle.kill()
                held.sink.close()
                self._forget(held)
            raise
        logger.info("Started run %s (pid=%s) log=%s", record.run_name, record.pid, record.log_file)
        return record

    def list_runs(self) -> List[RunRecord]:
        """
        返回当前存活的 run（插入顺序）。

        说明：
        - 已退出的条目会在一次 `mutate` 中从 registry 移除，本实例持有的对应 handle 一并释放；
        - 只移除 (run_name, pid) 同时匹配的条目，不会误删并发新建的同名 run。

        异常：
        - LockTimeoutError：需要清理但锁等待超时
        """

        records = self._registry.load()
        dead_keys = {(r.run_name, r.pid) for r in records if not self._is_alive(r.pid)}
        if dead_keys:

            def _prune(current: List[RunRecord]) -> None:
                current[:] = [r for r in current if (r.run_name, r.pid) not in dead_keys]

            self._registry.mutate(_prune)
            with self._held_lock:
                for name, pid in dead_keys:
                    held = self._held.get(name)
                    if held is not None and held.record.pid == pid:
                        held.sink.close()
                        self._held.pop(name, None)
            logger.info("Pruned %d exited run(s): %s", len(dead_keys), sorted(n for n, _ in dead_keys))
        return [r for r in records if (r.run_name, r.pid) not in dead_keys]

    def kill_run(self, run_name: str) -> None:
        """
        终止 run 并从 registry 移除（不等待进程真正退出）。

        异常：
        - RunNotFoundError：registry 中没有该名称（registry 不变）
        - LockTimeoutError：锁等待超时
        """

        name = validate_run_name(run_name)

        def _kill(records: List[RunRecord]) -> RunRecord:
            rec = _find_latest(records, name)
            if rec is None:
                raise RunNotFoundError(name)
            with self._held_lock:
                held = self._held.get(name)
            if held is not None and held.record.pid == rec.pid:
                held.handle.kill()
            else:
                _signal_pid(rec.pid)
            records[:] = [r for r in records if r.run_name != name]
            return rec

        rec = self._registry.mutate(_kill)
        with self._held_lock:
            held = self._held.get(name)
            if held is not None and held.record.pid == rec.pid:
                self._held.pop(name, None)
        logger.info("Killed run %s (pid=%s)", rec.run_name, rec.pid)

    def get_run(self, run_name: str) -> RunRecord:
        """按名称返回 registry 中最新的条目（不做 liveness 清理）。"""

        name = validate_run_name(run_name)
        rec = _find_latest(self._registry.load(), name)
        if rec is None:
            raise RunNotFoundError(name)
        return rec

    def read_log(self, run_name: str, *, lines: Optional[int] = None, search: Optional[str] = None) -> str:
        """
        读取 run 的日志快照。

        参数：
        - lines：只返回最后 N 行
        - search：只返回匹配的行（正则；非法正则时按子串匹配）

        说明：
        - 日志文件尚不存在时返回空字符串。
        """

        rec = self.get_run(run_name)
        try:
            with open(rec.log_file, "rb") as f:
                contents = f.read().decode("utf-8", errors="replace")
        except FileNotFoundError:
            return ""
        return _select_log_lines(contents, lines=lines, search=search)

    def follow_log(
        self,
        run_name: str,
        *,
        poll_interval: float = 0.2,
        stop: Optional[threading.Event] = None,
    ) -> Iterator[bytes]:
        """
        跟随 run 日志：先产出已有内容，再持续产出新追加的字节块。

        参数：
        - poll_interval：两次检查之间的间隔（秒）
        - stop：外部停止信号（例如 Ctrl-C 处理线程）；None 表示只在进程退出后停止

        说明：
        - 不要求 PTY 由本实例持有：只读 `logFile`，因此可跟随其它进程启动的 run；
        - 轮转（原路径换成新文件或被截短）时，先读完旧句柄的剩余内容再切换到新文件；
        - 进程不再存活时读完剩余内容后结束；已退出但仍在 registry 中的 run 直接产出全文后结束。

        异常：
        - RunNotFoundError：registry 中没有该名称
        """

        rec = self.get_run(run_name)
        path = Path(rec.log_file)
        fh: Optional[BinaryIO] = None
        inode: Optional[int] = None
        pos = 0
        final_pass = False
        try:
            while True:
                alive = self._is_alive(rec.pid)
                try:
                    st: Optional[os.stat_result] = path.stat()
                except FileNotFoundError:
                    st = None
                if fh is not None and st is not None and (st.st_ino != inode or st.st_size < pos):
                    rest = fh.read()
                    if rest:
                        yield rest
                    fh.close()
                    fh = None
                if fh is None and st is not None:
                    try:
                        fh = path.open("rb")
                    except FileNotFoundError:
                        fh = None
                    else:
                        inode = os.fstat(fh.fileno()).st_ino
                        pos = 0
                if fh is not None:
                    chunk = fh.read()
                    if chunk:
                        pos += len(chunk)
                        yield chunk
                if not alive:
                    # 进程刚退出时 reader 可能还在落盘最后几块：再读一轮再结束
                    if final_pass:
                        return
                    final_pass = True
                if stop is not None:
                    if stop.wait(poll_interval):
                        return
                else:
                    time.sleep(poll_interval)
        finally:
            if fh is not None:
                fh.close()

    def _attached(self, run_name: str) -> _HeldRun:
        """返回本实例持有的 run；否则区分“不存在”与“不由本实例持有”。"""

        name = validate_run_name(run_name)
        with self._held_lock:
            held = self._held.get(name)
        if held is not None:
            return held
        self.get_run(name)
        raise RunNotAttachedError(name)

    def send_input(self, run_name: str, data: Union[bytes, str]) -> None:
        """
        向本实例持有的 run 写入输入。

        异常：
        - RunNotFoundError / RunNotAttachedError
        - BrokenPipeError：进程已退出
        """

        self._attached(run_name).handle.write(data)

    def wait_run(self, run_name: str, timeout: Optional[float] = None) -> Optional[int]:
        """等待本实例持有的 run 退出，返回 exit code；超时返回 None。"""

        held = self._attached(run_name)
        if not held.exited.wait(timeout):
            return None
        return held.exit_code

    def close(self, *, kill_runs: bool = False) -> None:
        """
        释放本实例持有的资源。

        参数：
        - kill_runs：为 True 时先终止仍在运行的 run 并从 registry 移除；
          为 False 时 run 继续运行，但本实例不再向其日志写入
        """

        with self._held_lock:
            held_runs = list(self._held.values())
        for held in held_runs:
            if kill_runs and not held.exited.is_set():
                try:
                    self.kill_run(held.record.run_name)
                except RunNotFoundError:
                    held.handle.kill()
            held.sink.close()
        with self._held_lock:
            for held in held_runs:
                if self._held.get(held.record.run_name) is held:
                    self._held.pop(held.record.run_name, None)

    def _on_run_exit(self, held: _HeldRun, code: Optional[int]) -> None:
        """exit 事件：关闭日志句柄；registry 条目留给 `list_runs()` 惰性回收。"""

        held.exit_code = code
        held.sink.close()
        held.exited.set()
        logger.info("Run %s exited (pid=%s code=%s)", held.record.run_name, held.record.pid, code)

    def _forget(self, held: _HeldRun) -> None:
        with self._held_lock:
            if self._held.get(held.record.run_name) is held:
                self._held.pop(held.record.run_name, None)


def make(
    config: Union[RunsConfig, Mapping[str, Any]],
    *,
    spawner: Optional[ProcessSpawner] = None,
    is_alive: Optional[Callable[[int], bool]] = None,
) -> RunSessionManager:
    """
    构造 manager（只校验配置形状，不做任何 I/O）。

    参数：
    - config：`RunsConfig`，或包含 `runDir`/`logDir`（也接受 `run_dir`/`log_dir`）的 mapping

    异常：
    - UserError（code=CONFIG_INVALID）：配置形状不合法
    """

    if isinstance(config, RunsConfig):
        cfg = config
    else:
        try:
            cfg = RunsConfig.model_validate(dict(config))
        except (ValidationError, TypeError, ValueError) as e:
            raise UserError("Run manager config is invalid.", code="CONFIG_INVALID", details={"reason": str(e)}) from e
    return RunSessionManager(cfg, spawner=spawner, is_alive=is_alive)
