"""
核心契约（RunRecord）。

wire 格式：
- `runs.json` 为 JSON array，元素为 `{runName, pid, command, logFile}`；
- Python 侧字段使用 snake_case，序列化时 `by_alias=True` 输出 camelCase。
"""

from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr


class RunRecord(BaseModel):
    """
    一个活跃 run 的 registry 条目。

    字段语义：
    - run_name：调用方给出的名称（在当前已注册条目中唯一）
    - pid：spawn 返回的进程号（正整数）
    - command：原样执行的命令行（逐字节保留，包括换行与 shell 元字符）
    - log_file：run 日志的绝对路径（位于 log_dir 下，文件名包含 run_name）
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    run_name: StrictStr = Field(alias="runName", min_length=1)
    pid: StrictInt = Field(gt=0)
    command: StrictStr = Field(min_length=1)
    log_file: StrictStr = Field(alias="logFile", min_length=1)

    def to_wire(self) -> Dict[str, Any]:
        """返回落盘用的 dict（camelCase key）。"""

        return self.model_dump(by_alias=True)
