from __future__ import annotations

import json
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, List

import pytest

from composer_runs.cli.main import main
from composer_runs.core import liveness


def _parse_last_json(stdout: str) -> Dict[str, Any]:
    """解析 stdout 最后一行 JSON。"""

    text = (stdout or "").strip().splitlines()[-1]
    obj = json.loads(text)
    assert isinstance(obj, dict)
    return obj


def _dirs(tmp_path: Path) -> List[str]:
    return ["--run-dir", str(tmp_path / "state"), "--log-dir", str(tmp_path / "logs")]


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.delenv("COMPOSER_RUNS_RUN_DIR", raising=False)
    monkeypatch.delenv("COMPOSER_RUNS_LOG_DIR", raising=False)


def test_cli_list_empty(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    code = main(["list", *_dirs(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert code == 0
    assert payload == {"ok": True, "runs": []}


def test_cli_kill_unknown_is_not_found(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    code = main(["kill", "ghost", *_dirs(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert code == 22
    assert payload["ok"] is False
    assert payload["error"]["code"] == "RUN_NOT_FOUND"


def test_cli_new_rejects_invalid_name(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    code = main(["new", "bad/name", "echo x", *_dirs(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert code == 20
    assert payload["error"]["code"] == "RUN_NAME_INVALID"


def test_cli_invalid_config_overlay(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    overlay = tmp_path / "bad.yaml"
    overlay.write_text("lock:\n  timeout_ms: -5\n", encoding="utf-8")
    code = main(["list", "--config", str(overlay), *_dirs(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert code == 20
    assert payload["error"]["code"] == "CONFIG_INVALID"


def test_cli_config_overlay_sets_dirs(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    overlay = tmp_path / "dirs.yaml"
    overlay.write_text(
        f'runDir: "{tmp_path / "from-config"}"\nlogDir: "{tmp_path / "from-config" / "logs"}"\n',
        encoding="utf-8",
    )
    code = main(["list", "--config", str(overlay), "--pretty"])
    out = capsys.readouterr().out
    assert code == 0
    assert json.loads(out) == {"ok": True, "runs": []}
    assert not (tmp_path / "from-config" / "runs.json").exists()


def test_cli_argparse_errors_return_exit_code(capsys) -> None:  # type: ignore[no-untyped-def]
    assert main(["unknown-subcommand"]) == 2
    assert main(["logs", "x", "--lines", "1", "--search", "y"]) == 2
    capsys.readouterr()


@pytest.mark.skipif(os.name == "nt", reason="PtySpawner requires the POSIX pty module")
def test_cli_foreground_run_then_logs(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    code = main(["new", "hello", "printf 'line-1\\nline-2\\n'", *_dirs(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert code == 0
    assert payload["ok"] is True
    assert payload["exit_code"] == 0
    assert payload["killed"] is False
    assert payload["run"]["runName"] == "hello"
    assert payload["run"]["command"] == "printf 'line-1\\nline-2\\n'"

    code = main(["logs", "hello", "--lines", "1", *_dirs(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert code == 0
    assert payload["text"].strip() == "line-2"

    code = main(["list", *_dirs(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert payload["runs"] == []


@pytest.mark.skipif(os.name == "nt", reason="PtySpawner requires the POSIX pty module")
def test_cli_detached_run_list_and_kill(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    code = main(["new", "sleeper", "sleep 30", "--detach", *_dirs(tmp_path)])
    payload = _parse_last_json(capsys.readouterr().out)
    assert code == 0
    pid = payload["run"]["pid"]
    assert "exit_code" not in payload

    try:
        code = main(["new", "sleeper", "sleep 30", "--detach", *_dirs(tmp_path)])
        payload = _parse_last_json(capsys.readouterr().out)
        assert code == 23
        assert payload["error"]["code"] == "RUN_ALREADY_EXISTS"

        code = main(["list", *_dirs(tmp_path)])
        payload = _parse_last_json(capsys.readouterr().out)
        assert [(r["runName"], r["pid"]) for r in payload["runs"]] == [("sleeper", pid)]
    finally:
        code = main(["kill", "sleeper", *_dirs(tmp_path)])
        payload = _parse_last_json(capsys.readouterr().out)

    assert code == 0
    assert payload == {"ok": True, "run_name": "sleeper"}
    code = main(["kill", "sleeper", *_dirs(tmp_path)])
    assert code == 22
    capsys.readouterr()


def _cli_env() -> Dict[str, str]:
    env = dict(os.environ)
    env.pop("COMPOSER_RUNS_RUN_DIR", None)
    env.pop("COMPOSER_RUNS_LOG_DIR", None)
    src_dir = Path(__file__).resolve().parents[1] / "src"
    env["PYTHONPATH"] = os.pathsep.join([str(src_dir), env.get("PYTHONPATH", "")]).rstrip(os.pathsep)
    return env


def _run_cli_process(argv: List[str]) -> "subprocess.CompletedProcess[str]":
    """以独立 OS 进程运行 CLI（与用户在不同终端里先后执行命令等价）。"""

    return subprocess.run(
        [sys.executable, "-m", "composer_runs.cli.main", *argv],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=_cli_env(),
        timeout=60,
        check=False,
    )


def _wait_until_dead(pid: int, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while liveness.is_alive(pid) and time.monotonic() < deadline:
        time.sleep(0.05)
    return not liveness.is_alive(pid)


@pytest.mark.skipif(os.name == "nt", reason="PtySpawner requires the POSIX pty module")
def test_detached_run_survives_cli_exit_across_processes(tmp_path: Path) -> None:
    """`new --detach` 返回后 run 仍在运行并持续写日志；后续独立进程可 list/logs/kill。"""

    dirs = _dirs(tmp_path)
    cp = _run_cli_process(["new", "quiet", "sleep 1; echo late-output; sleep 30", "--detach", *dirs])
    assert cp.returncode == 0, cp.stderr
    pid = _parse_last_json(cp.stdout)["run"]["pid"]

    try:
        time.sleep(2.5)
        assert liveness.is_alive(pid) is True

        cp = _run_cli_process(["list", *dirs])
        assert cp.returncode == 0
        assert [(r["runName"], r["pid"]) for r in _parse_last_json(cp.stdout)["runs"]] == [("quiet", pid)]

        cp = _run_cli_process(["logs", "quiet", "--search", "late", *dirs])
        assert cp.returncode == 0
        assert "late-output" in _parse_last_json(cp.stdout)["text"]
    finally:
        cp = _run_cli_process(["kill", "quiet", *dirs])

    assert cp.returncode == 0
    assert _parse_last_json(cp.stdout) == {"ok": True, "run_name": "quiet"}
    assert _wait_until_dead(pid)

    cp = _run_cli_process(["list", *dirs])
    assert _parse_last_json(cp.stdout)["runs"] == []
    cp = _run_cli_process(["kill", "quiet", *dirs])
    assert cp.returncode == 22


@pytest.mark.skipif(os.name == "nt", reason="PtySpawner requires the POSIX pty module")
def test_detached_duplicate_name_reported_across_processes(tmp_path: Path) -> None:
    dirs = _dirs(tmp_path)
    cp = _run_cli_process(["new", "svc", "sleep 30", "--detach", *dirs])
    assert cp.returncode == 0, cp.stderr
    pid = _parse_last_json(cp.stdout)["run"]["pid"]
    try:
        cp = _run_cli_process(["new", "svc", "sleep 30", "--detach", *dirs])
        assert cp.returncode == 23
        assert _parse_last_json(cp.stdout)["error"]["code"] == "RUN_ALREADY_EXISTS"
    finally:
        _run_cli_process(["kill", "svc", *dirs])
    assert _wait_until_dead(pid)


@pytest.mark.skipif(os.name == "nt", reason="PtySpawner requires the POSIX pty module")
def test_cli_follow_streams_log_of_finished_run(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    code = main(["new", "echoer", "printf 'first\\nsecond\\n'", *_dirs(tmp_path)])
    assert code == 0
    capsys.readouterr()

    code = main(["logs", "echoer", "--follow", *_dirs(tmp_path)])
    out = capsys.readouterr().out
    assert code == 0
    assert "first" in out
    assert "second" in out
    assert not out.lstrip().startswith("{")


@pytest.mark.skipif(os.name == "nt", reason="PtySpawner requires the POSIX pty module")
def test_cli_follow_tracks_detached_run_until_exit(tmp_path: Path) -> None:
    dirs = _dirs(tmp_path)
    cp = _run_cli_process(["new", "ticker", "for i in 1 2 3; do echo tick-$i; sleep 0.3; done", "--detach", *dirs])
    assert cp.returncode == 0, cp.stderr

    cp = _run_cli_process(["logs", "ticker", "--follow", *dirs])
    assert cp.returncode == 0
    assert [ln for ln in cp.stdout.splitlines() if ln.startswith("tick-")] == ["tick-1", "tick-2", "tick-3"]
