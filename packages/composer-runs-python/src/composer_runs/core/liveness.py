"""
进程存活检测（Liveness Monitor）。

语义：
- 只用于把 registry 与“实际仍在运行的进程”对齐；
- 无法给出确定答案时返回 True（宁可保留可能过期的条目，也不丢失对仍在写日志的 run 的访问）。
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def _linux_is_zombie(pid: int) -> bool:
    """读取 `/proc/<pid>/stat` 判断是否为 zombie（已退出但未被回收）；读不到时返回 False。"""

    try:
        raw = Path(f"/proc/{int(pid)}/stat").read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    # comm 字段可能包含空格与括号：state 位于最后一个 ')' 之后
    _, sep, rest = raw.rpartition(")")
    if not sep:
        return False
    fields = rest.split()
    return bool(fields) and fields[0] == "Z"


def _posix_is_alive(pid: int) -> bool:
    """POSIX：signal 0 探测，不投递任何实际信号。"""

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        logger.debug("Liveness check indeterminate for pid=%s", pid, exc_info=True)
        return True
    if sys.platform.startswith("linux") and _linux_is_zombie(pid):
        return False
    return True


def _windows_is_alive(pid: int) -> bool:
    """Windows：查询 tasklist；查询失败时保守返回 True。"""

    try:
        cp = subprocess.run(  # noqa: S603
            ["tasklist", "/FI", f"PID eq {pid}", "/NH"],
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        logger.debug("tasklist failed for pid=%s", pid, exc_info=True)
        return True
    if cp.returncode != 0:
        return True
    return str(pid) in (cp.stdout or "")


def is_alive(pid: int) -> bool:
    """
    判断 pid 是否仍指向一个运行中的进程。

    参数：
    - pid：registry 中记录的进程号；非正数直接视为不存活
    """

    pid = int(pid)
    if pid <= 0:
        return False
    if os.name == "nt":
        return _windows_is_alive(pid)
    return _posix_is_alive(pid)
