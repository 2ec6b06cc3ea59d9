"""
配置加载器（YAML overlays + pydantic 校验）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；
- 默认拒绝未知字段（避免拼写错误被静默吞掉）；
- 目录字段同时接受 snake_case（`run_dir`）与 camelCase（`runDir`）。
"""

from __future__ import annotations

from copy import deepcopy
import os
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

ENV_RUN_DIR = "COMPOSER_RUNS_RUN_DIR"
ENV_LOG_DIR = "COMPOSER_RUNS_LOG_DIR"


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（包括 list）：overlay 直接覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class RunsLockConfig(BaseModel):
    """registry 锁等待策略。"""

    model_config = ConfigDict(extra="forbid")

    timeout_ms: int = Field(default=20_000, ge=0)
    poll_interval_ms: int = Field(default=50, ge=1)


class RunsLogConfig(BaseModel):
    """
    run 日志轮转策略。

    说明：
    - `max_bytes=0` 表示不轮转。
    """

    model_config = ConfigDict(extra="forbid")

    max_bytes: int = Field(default=10 * 1024 * 1024, ge=0)
    max_backups: int = Field(default=5, ge=1)


class RunsSpawnConfig(BaseModel):
    """PTY 启动参数。"""

    model_config = ConfigDict(extra="forbid")

    shell: Optional[str] = None
    cwd: Optional[Path] = None
    env: Dict[str, str] = Field(default_factory=dict)
    term: str = "xterm-256color"


class RunsConfig(BaseModel):
    """run session manager 配置根对象。"""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    config_version: int = Field(default=1, ge=1)
    run_dir: Path = Field(alias="runDir")
    log_dir: Path = Field(alias="logDir")
    lock: RunsLockConfig = Field(default_factory=RunsLockConfig)
    log: RunsLogConfig = Field(default_factory=RunsLogConfig)
    spawn: RunsSpawnConfig = Field(default_factory=RunsSpawnConfig)


def env_overlay(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    从环境变量生成 overlay（只包含已设置且非空的项）。

    参数：
    - environ：环境变量映射；None 时读取 `os.environ`
    """

    env = os.environ if environ is None else environ
    out: Dict[str, Any] = {}
    run_dir = str(env.get(ENV_RUN_DIR) or "").strip()
    log_dir = str(env.get(ENV_LOG_DIR) or "").strip()
    if run_dir:
        out["run_dir"] = run_dir
    if log_dir:
        out["log_dir"] = log_dir
    return out


def _normalize_dir_keys(obj: Mapping[str, Any]) -> Dict[str, Any]:
    """把 camelCase 目录 key 统一为 snake_case，避免两种写法在合并时并存。"""

    out = dict(obj)
    for camel, snake in (("runDir", "run_dir"), ("logDir", "log_dir")):
        if camel in out:
            out[snake] = out.pop(camel)
    return out


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> RunsConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `RunsConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）

    异常：
    - pydantic.ValidationError：合并结果不符合 schema
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, _normalize_dir_keys(overlay))
    return RunsConfig.model_validate(merged)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config(
    config_paths: list[Path],
    *,
    environ: Optional[Mapping[str, str]] = None,
    include_defaults: bool = True,
) -> RunsConfig:
    """
    加载默认配置 + YAML overlays + 环境变量，返回校验后的 `RunsConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    - environ：环境变量映射（测试注入用）；None 时读取 `os.environ`
    - include_defaults：是否以内置 `default.yaml` 作为最底层
    """

    overlays: list[Dict[str, Any]] = []
    if include_defaults:
        from composer_runs.config.defaults import load_default_config_dict

        overlays.append(load_default_config_dict())
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    overlays.append(env_overlay(environ))
    return load_config_dicts(overlays)
