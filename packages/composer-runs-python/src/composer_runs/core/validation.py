"""run 名称与命令的入参校验。"""

from __future__ import annotations

import re

from composer_runs.core.errors import UserError

RUN_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
MAX_RUN_NAME_LENGTH = 100
MAX_COMMAND_LENGTH = 10_000


def validate_run_name(run_name: str) -> str:
    """
    校验 run 名称并原样返回。

    规则：
    - 非空字符串，长度不超过 `MAX_RUN_NAME_LENGTH`
    - 仅允许字母、数字、`-`、`_`（名称会进入日志文件名）
    """

    if not isinstance(run_name, str) or not run_name:
        raise UserError("Run name must be a non-empty string.", code="RUN_NAME_INVALID", details={"run_name": run_name})
    if len(run_name) > MAX_RUN_NAME_LENGTH:
        raise UserError(
            f"Run name too long (max {MAX_RUN_NAME_LENGTH} characters).",
            code="RUN_NAME_INVALID",
            details={"length": len(run_name)},
        )
    if not RUN_NAME_PATTERN.match(run_name):
        raise UserError(
            "Run name can only contain letters, numbers, hyphens, and underscores.",
            code="RUN_NAME_INVALID",
            details={"run_name": run_name},
        )
    return run_name


def validate_command(command: str) -> str:
    """
    校验命令字符串并原样返回（不做任何改写）。

    规则：
    - 非空字符串，长度不超过 `MAX_COMMAND_LENGTH`
    - 不允许 NUL 字节；引号、换行与 shell 元字符均保留
    """

    if not isinstance(command, str) or not command:
        raise UserError("Command must be a non-empty string.", code="COMMAND_INVALID")
    if len(command) > MAX_COMMAND_LENGTH:
        raise UserError(
            f"Command too long (max {MAX_COMMAND_LENGTH} characters).",
            code="COMMAND_INVALID",
            details={"length": len(command)},
        )
    if "\x00" in command:
        raise UserError("Command contains invalid characters.", code="COMMAND_INVALID")
    return command
