"""
Run registry（`runs.json`）。

实现约定：
- 文件内容为 JSON array，元素为 `RunRecord` 的 wire 形式；数组顺序即插入顺序；
- `load()` 对缺失/空文件/损坏/非 array 一律返回 `[]`，不抛异常（损坏与缺失等价于“尚无 run”）；
- 首次 `load()` / `mutate()` 惰性创建缺失的上级目录（失败同样吸收）；load 从不写 registry 文件本身；
- `save()` 原子替换（同目录临时文件 + fsync + `os.replace`），并发读者看不到半写状态；
- `mutate()` 是修改 registry 的唯一入口：锁 → load → fn → save → 解锁。
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple, TypeVar

from pydantic import ValidationError

from composer_runs.core.contracts import RunRecord
from composer_runs.state.registry_lock import (
    DEFAULT_LOCK_POLL_INTERVAL_MS,
    DEFAULT_LOCK_TIMEOUT_MS,
    RegistryLock,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _dedupe_latest(records: Sequence[RunRecord]) -> List[RunRecord]:
    """同名条目只保留最后一条（保留其所在位置的相对顺序）。"""

    seen: set[str] = set()
    out: List[RunRecord] = []
    for rec in reversed(records):
        if rec.run_name in seen:
            continue
        seen.add(rec.run_name)
        out.append(rec)
    out.reverse()
    return out


def _parse_records(raw: str, *, source: Path) -> Tuple[List[RunRecord], bool]:
    """
    解析 registry 文本。

    返回：
    - (records, corrupted)：corrupted 表示“非空但无法解析为 array”
    """

    if not raw.strip():
        return [], False
    try:
        obj = json.loads(raw)
    except ValueError:
        logger.warning("Corrupted run registry, treating as empty: %s", source)
        return [], True
    if not isinstance(obj, list):
        logger.warning("Run registry root is not an array, treating as empty: %s", source)
        return [], True

    records: List[RunRecord] = []
    for item in obj:
        try:
            records.append(RunRecord.model_validate(item))
        except ValidationError:
            logger.warning("Skipping invalid run entry in %s: %r", source, item)
    return _dedupe_latest(records), False


@dataclass
class RunRegistry:
    """
    基于单个 JSON 文件的 run registry（可被任意多个进程共享）。

    参数：
    - path：registry 文件路径（`<run_dir>/runs.json`）
    - lock_path：锁文件路径（`<run_dir>/runs.lock`）
    - lock_timeout_ms / lock_poll_interval_ms：锁等待策略
    """

    path: Path
    lock_path: Path
    lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS
    lock_poll_interval_ms: int = DEFAULT_LOCK_POLL_INTERVAL_MS

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        self.lock_path = Path(self.lock_path)

    def _ensure_dir(self) -> None:
        """惰性创建 registry 所在目录（幂等）。"""

        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _read_state(self) -> Tuple[List[RunRecord], Optional[bytes]]:
        """
        读取 registry。

        返回：
        - (records, corrupt_raw)：当文件非空却无法解析时，corrupt_raw 为原始字节（供 mutate 备份）
        """

        try:
            self._ensure_dir()
            data = self.path.read_bytes()
        except FileNotFoundError:
            return [], None
        except OSError:
            logger.warning("Failed to read run registry, treating as empty: %s", self.path, exc_info=True)
            return [], None

        raw = data.decode("utf-8", errors="replace")
        records, corrupted = _parse_records(raw, source=self.path)
        return records, (data if corrupted else None)

    def load(self) -> List[RunRecord]:
        """返回当前有序的 RunRecord 列表（任何读取/解析问题都返回空列表）。"""

        records, _ = self._read_state()
        return records

    def save(self, records: Sequence[RunRecord]) -> None:
        """
        原子替换 registry 内容。

        说明：
        - 临时文件名包含 pid 与线程 id，避免不同写者互相覆盖临时文件；
        - 写入后 fsync，再 `os.replace` 到目标路径。
        """

        self._ensure_dir()
        payload = [r.to_wire() for r in records]
        text = json.dumps(payload, ensure_ascii=False, indent=2)
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.{id(self):x}.tmp")
        try:
            with tmp.open("w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                tmp.unlink()
            except OSError:
                pass
            raise

    def _backup_corrupted(self, raw: bytes) -> None:
        """把无法解析的 registry 原始内容另存为 `runs.json.corrupted.<ms>`（best-effort）。"""

        backup = self.path.with_name(f"{self.path.name}.corrupted.{int(time.time() * 1000)}")
        try:
            backup.write_bytes(raw)
            logger.warning("Backed up corrupted run registry to %s", backup)
        except OSError:
            logger.warning("Failed to back up corrupted run registry: %s", self.path, exc_info=True)

    def mutate(self, fn: Callable[[List[RunRecord]], T]) -> T:
        """
        在锁内执行一次 read-modify-write。

        参数：
        - fn：接收当前记录列表（可原地修改），返回值作为 mutate 的返回值

        语义：
        - fn 抛异常：不落盘，异常原样传播（锁仍会释放）；
        - fn 正常返回：列表的最终状态被原子写回。

        异常：
        - LockTimeoutError：锁等待超时
        """

        with RegistryLock(
            self.lock_path,
            timeout_ms=self.lock_timeout_ms,
            poll_interval_ms=self.lock_poll_interval_ms,
        ):
            records, corrupt_raw = self._read_state()
            working: List[Any] = list(records)
            result = fn(working)
            if corrupt_raw is not None:
                self._backup_corrupted(corrupt_raw)
            self.save(working)
            return result
