"""
composer-runs CLI（new/list/kill/logs）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出单个机器可读 JSON；失败时也输出 JSON（只包含 code/message，不暴露内部路径）
- `logs --follow` 例外：把日志原样流式写到 stdout，直到进程退出或 Ctrl-C
- `main()` 返回 exit code，不直接 sys.exit（便于测试）

`new --detach`：
- PTY master 必须由一个活着的进程持有，否则 shell 会随 master 关闭而退出；
- 因此 CLI 先拉起一个独立 session 的 supervisor（同一命令 + 隐藏参数 `--supervise`），
  supervisor 创建 run、把首行 JSON 回报给 CLI，然后继续持有 PTY 与日志直到 run 退出；
- CLI 读到回报即返回，后续的 list/kill/logs 可以来自任意进程。
"""

from __future__ import annotations

import argparse
import codecs
import json
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from pydantic import ValidationError

from composer_runs.config.loader import RunsConfig, load_config
from composer_runs.core.errors import FrameworkError, SpawnError, UserError
from composer_runs.core.validation import validate_command, validate_run_name
from composer_runs.manager import RunSessionManager, make

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_VALIDATION = 20
EXIT_NOT_FOUND = 22
EXIT_ALREADY_EXISTS = 23
EXIT_LOCK_TIMEOUT = 24
EXIT_SPAWN_FAILED = 25
EXIT_NOT_ATTACHED = 26

_EXIT_CODES: Dict[str, int] = {
    "RUN_NOT_FOUND": EXIT_NOT_FOUND,
    "RUN_ALREADY_EXISTS": EXIT_ALREADY_EXISTS,
    "REGISTRY_LOCK_TIMEOUT": EXIT_LOCK_TIMEOUT,
    "RUN_SPAWN_FAILED": EXIT_SPAWN_FAILED,
    "RUN_NOT_ATTACHED": EXIT_NOT_ATTACHED,
}

_SUPERVISOR_REPORT_TIMEOUT_SEC = 60.0


def _ensure_utf8_stdio() -> None:
    """`C` locale 下 stdout 可能是 ASCII：尽量改为 UTF-8，失败不阻断启动。"""

    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if not callable(reconfigure):
            continue
        try:
            reconfigure(encoding="utf-8", errors="replace")
        except (ValueError, OSError):
            continue


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """将 dict 输出为单行（或 pretty）JSON 到 stdout。"""

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _error_payload(err: FrameworkError) -> Dict[str, Any]:
    return {"ok": False, "error": {"code": err.code, "message": err.message}}


def _exit_code_for_error(err: FrameworkError) -> int:
    if isinstance(err, UserError):
        return EXIT_VALIDATION
    return _EXIT_CODES.get(err.code, 1)


def _build_parser() -> argparse.ArgumentParser:
    """构造 argparse parser（子命令：new/list/kill/logs）。"""

    parser = argparse.ArgumentParser(prog="composer-runs", description="Manage PTY-backed runs.")
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--run-dir", default=None, help="Directory holding runs.json (overrides config).")
        p.add_argument("--log-dir", default=None, help="Directory holding run logs (overrides config).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    new_p = root_sub.add_parser("new", help="Start a new run")
    _add_common_flags(new_p)
    new_p.add_argument("run_name", help="Run name (letters, digits, '-' and '_').")
    new_p.add_argument("run_command", help="Command line, passed to the shell as-is.")
    new_p.add_argument(
        "--detach",
        action="store_true",
        help="Return once the run is registered; a background supervisor keeps it attached and logged.",
    )
    new_p.add_argument("--supervise", action="store_true", help=argparse.SUPPRESS)

    list_p = root_sub.add_parser("list", help="List active runs (prunes exited ones)")
    _add_common_flags(list_p)

    kill_p = root_sub.add_parser("kill", help="Kill a run and remove it from the registry")
    _add_common_flags(kill_p)
    kill_p.add_argument("run_name", help="Run name.")

    logs_p = root_sub.add_parser("logs", help="Print a snapshot of a run log, or follow it")
    _add_common_flags(logs_p)
    logs_p.add_argument("run_name", help="Run name.")
    group = logs_p.add_mutually_exclusive_group()
    group.add_argument("--lines", type=int, default=None, help="Only the last N lines.")
    group.add_argument("--search", default=None, help="Only lines matching this regex.")
    group.add_argument(
        "--follow",
        action="store_true",
        help="Stream the log until the run exits (Ctrl-C to stop). Output is raw text, not JSON.",
    )

    return parser


def _load_manager(args: argparse.Namespace) -> RunSessionManager:
    """
    根据 CLI 参数加载配置并构造 manager。

    异常：
    - UserError（CONFIG_INVALID）：overlay 不存在/不可解析/不符合 schema
    """

    paths = [Path(str(p)).expanduser().resolve() for p in list(args.config or [])]
    try:
        cfg = load_config(paths)
    except (FileNotFoundError, ValueError, yaml.YAMLError, ValidationError) as e:
        raise UserError("Config is invalid.", code="CONFIG_INVALID", details={"reason": str(e)}) from e

    updates: Dict[str, Any] = {}
    if args.run_dir:
        updates["run_dir"] = Path(str(args.run_dir))
    if args.log_dir:
        updates["log_dir"] = Path(str(args.log_dir))
    if updates:
        cfg = RunsConfig.model_validate({**cfg.model_dump(), **updates})
    return make(cfg)


def _supervisor_argv(args: argparse.Namespace) -> List[str]:
    """supervisor 命令行：配置与目录参数全部转为绝对路径（supervisor 与 CLI 同 cwd，但不依赖它）。"""

    argv = [sys.executable, "-m", "composer_runs.cli.main", "new", str(args.run_name), str(args.run_command), "--supervise"]
    for p in list(args.config or []):
        argv += ["--config", str(Path(str(p)).expanduser().resolve())]
    if args.run_dir:
        argv += ["--run-dir", str(Path(str(args.run_dir)).expanduser().resolve())]
    if args.log_dir:
        argv += ["--log-dir", str(Path(str(args.log_dir)).expanduser().resolve())]
    return argv


def _supervisor_env() -> Dict[str, str]:
    """保证 supervisor 能 import 到与当前 CLI 相同的 composer_runs（开发态未安装时也可用）。"""

    env = dict(os.environ)
    src_root = str(Path(__file__).resolve().parents[2])
    existing = env.get("PYTHONPATH", "")
    env["PYTHONPATH"] = os.pathsep.join([src_root, existing]) if existing else src_root
    return env


def _launch_supervisor(args: argparse.Namespace) -> Dict[str, Any]:
    """
    拉起 detached supervisor，并返回它回报的首行 JSON。

    异常：
    - FrameworkError：supervisor 回报的错误（按原 code 重建，以保持 exit code 一致）
    - SpawnError：supervisor 未回报就退出，或回报不可解析
    """

    command = str(args.run_command)
    try:
        proc = subprocess.Popen(  # noqa: S603
            _supervisor_argv(args),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            env=_supervisor_env(),
            close_fds=True,
            start_new_session=True,
        )
    except OSError as e:
        raise SpawnError(f"Failed to start run supervisor: {e}", command=command) from e

    assert proc.stdout is not None
    try:
        line = proc.stdout.readline()
    finally:
        proc.stdout.close()

    try:
        report = json.loads(line.decode("utf-8", errors="replace")) if line.strip() else None
    except ValueError:
        report = None
    if not isinstance(report, dict):
        try:
            code = proc.wait(timeout=_SUPERVISOR_REPORT_TIMEOUT_SEC)
        except subprocess.TimeoutExpired:
            code = None
        raise SpawnError("Run supervisor exited without reporting.", command=command, details={"exit_code": code})

    if report.get("ok") is True:
        logger.debug("Run supervisor pid=%s owns run %s", proc.pid, args.run_name)
        return report

    error = report.get("error") or {}
    code_str = str(error.get("code") or "RUN_SPAWN_FAILED")
    message = str(error.get("message") or "Run supervisor failed.")
    proc.wait(timeout=_SUPERVISOR_REPORT_TIMEOUT_SEC)
    if code_str in _EXIT_CODES:
        raise FrameworkError(code=code_str, message=message)
    raise UserError(message, code=code_str)


def _release_stdio() -> None:
    """supervisor 回报完成后把 stdout/stderr 指向 devnull，让 CLI 一侧的管道尽快关闭。"""

    sys.stdout.flush()
    sys.stderr.flush()
    devnull = os.open(os.devnull, os.O_WRONLY)
    try:
        os.dup2(devnull, 1)
        os.dup2(devnull, 2)
    finally:
        os.close(devnull)


def _handle_new(args: argparse.Namespace, mgr: RunSessionManager) -> Optional[Dict[str, Any]]:
    if args.detach and not args.supervise:
        validate_run_name(str(args.run_name))
        validate_command(str(args.run_command))
        return _launch_supervisor(args)

    record = mgr.new_run(str(args.run_name), str(args.run_command))
    payload: Dict[str, Any] = {"ok": True, "run": record.to_wire()}
    if args.supervise:
        _dump_json_to_stdout(payload, pretty=False)
        _release_stdio()
        mgr.wait_run(record.run_name)
        mgr.close()
        return None

    killed = False
    try:
        exit_code = mgr.wait_run(record.run_name)
    except KeyboardInterrupt:
        mgr.kill_run(record.run_name)
        killed = True
        exit_code = None
    mgr.close()
    payload["exit_code"] = exit_code
    payload["killed"] = killed
    return payload


def _handle_list(args: argparse.Namespace, mgr: RunSessionManager) -> Dict[str, Any]:
    runs: List[Dict[str, Any]] = [r.to_wire() for r in mgr.list_runs()]
    return {"ok": True, "runs": runs}


def _handle_kill(args: argparse.Namespace, mgr: RunSessionManager) -> Dict[str, Any]:
    mgr.kill_run(str(args.run_name))
    return {"ok": True, "run_name": str(args.run_name)}


def _handle_logs(args: argparse.Namespace, mgr: RunSessionManager) -> Optional[Dict[str, Any]]:
    if args.follow:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            for chunk in mgr.follow_log(str(args.run_name)):
                sys.stdout.write(decoder.decode(chunk))
                sys.stdout.flush()
        except KeyboardInterrupt:
            pass
        tail = decoder.decode(b"", final=True)
        if tail:
            sys.stdout.write(tail)
        sys.stdout.flush()
        return None

    text = mgr.read_log(str(args.run_name), lines=args.lines, search=args.search)
    return {"ok": True, "run_name": str(args.run_name), "text": text}


_HANDLERS = {
    "new": _handle_new,
    "list": _handle_list,
    "kill": _handle_kill,
    "logs": _handle_logs,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]

    返回：
    - int：exit code
    """

    _ensure_utf8_stdio()

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse：`--help` 为 0，参数错误为 2
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    pretty = bool(getattr(args, "pretty", False))
    try:
        mgr = _load_manager(args)
        payload = _HANDLERS[args.command](args, mgr)
    except FrameworkError as err:
        logger.debug("composer-runs %s failed", args.command, exc_info=True)
        _dump_json_to_stdout(_error_payload(err), pretty=pretty)
        return _exit_code_for_error(err)

    # 已自行输出（supervisor 回报 / follow 流式输出）
    if payload is None:
        return EXIT_OK
    _dump_json_to_stdout(payload, pretty=pretty)
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
