from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import List, Optional

import pytest

from composer_runs.core.errors import SpawnError
from composer_runs.core.pty_spawner import ProcessSpawner, PtyRunHandle, PtySpawner, RunHandle

pytestmark = pytest.mark.skipif(os.name == "nt", reason="PtySpawner requires the POSIX pty module")


class _Collector:
    def __init__(self) -> None:
        self.chunks: List[bytes] = []
        self.exit_codes: List[Optional[int]] = []
        self.exited = threading.Event()
        self._lock = threading.Lock()

    def on_data(self, chunk: bytes) -> None:
        with self._lock:
            self.chunks.append(chunk)

    def on_exit(self, code: Optional[int]) -> None:
        self.exit_codes.append(code)
        self.exited.set()

    @property
    def output(self) -> bytes:
        with self._lock:
            return b"".join(self.chunks)


def _spawn(command: str, tmp_path: Path) -> "tuple[PtyRunHandle, _Collector]":
    handle = PtySpawner(cwd=tmp_path).spawn(command)
    col = _Collector()
    handle.on_data(col.on_data)
    handle.on_exit(col.on_exit)
    return handle, col


def test_spawner_satisfies_protocols(tmp_path: Path) -> None:
    spawner = PtySpawner(cwd=tmp_path)
    assert isinstance(spawner, ProcessSpawner)
    handle, col = _spawn("exit 0", tmp_path)
    assert isinstance(handle, RunHandle)
    assert col.exited.wait(10)


def test_output_before_first_subscriber_is_not_lost(tmp_path: Path) -> None:
    handle = PtySpawner(cwd=tmp_path).spawn("printf 'early-output\\n'")
    assert handle.wait(10) == 0
    col = _Collector()
    handle.on_data(col.on_data)
    assert b"early-output" in col.output


def test_exit_fires_once_with_exit_code(tmp_path: Path) -> None:
    handle, col = _spawn("printf 'bye\\n'; exit 3", tmp_path)
    assert col.exited.wait(10)
    assert handle.exit_code == 3
    assert col.exit_codes == [3]
    assert b"bye" in col.output

    late: List[Optional[int]] = []
    handle.on_exit(late.append)
    assert late == [3]
    assert col.exit_codes == [3]


def test_command_is_passed_to_shell_verbatim(tmp_path: Path) -> None:
    handle, col = _spawn("echo 'a  b' | tr a-z A-Z\necho \"second $((1 + 2))\"", tmp_path)
    assert col.exited.wait(10)
    assert b"A  B" in col.output
    assert b"second 3" in col.output


def test_env_and_term_are_injected(tmp_path: Path) -> None:
    handle = PtySpawner(cwd=tmp_path, env={"RUN_MARKER": "m-42"}, term="dumb").spawn('printf "%s %s\\n" "$RUN_MARKER" "$TERM"')
    col = _Collector()
    handle.on_data(col.on_data)
    assert handle.wait(10) == 0
    assert b"m-42 dumb" in col.output


def test_write_reaches_process_stdin(tmp_path: Path) -> None:
    handle, col = _spawn('read -r line; echo "got:$line"', tmp_path)
    handle.write("hello\n")
    assert col.exited.wait(10)
    assert b"got:hello" in col.output


def test_write_after_exit_raises_broken_pipe(tmp_path: Path) -> None:
    handle, col = _spawn("exit 0", tmp_path)
    assert col.exited.wait(10)
    with pytest.raises(BrokenPipeError):
        handle.write(b"late\n")


def test_kill_terminates_process_group(tmp_path: Path) -> None:
    handle, col = _spawn("sleep 30 & sleep 30; wait", tmp_path)
    handle.kill()
    assert col.exited.wait(10)
    assert col.exit_codes[0] is not None
    assert col.exit_codes[0] != 0
    handle.kill()


def test_spawn_closes_fds_when_popen_fails(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    closed_fds: list[int] = []

    def _fake_openpty() -> tuple[int, int]:
        return (111, 222)

    def _fake_close(fd: int) -> None:
        closed_fds.append(fd)

    def _fake_popen(*args, **kwargs):  # type: ignore[no-untyped-def]
        _ = args, kwargs
        raise RuntimeError("boom")

    monkeypatch.setattr("composer_runs.core.pty_spawner.pty.openpty", _fake_openpty)
    monkeypatch.setattr("composer_runs.core.pty_spawner.os.close", _fake_close)
    monkeypatch.setattr("composer_runs.core.pty_spawner.subprocess.Popen", _fake_popen)

    with pytest.raises(SpawnError) as ei:
        PtySpawner(cwd=tmp_path).spawn("echo x")

    assert ei.value.code == "RUN_SPAWN_FAILED"
    assert 111 in closed_fds
    assert 222 in closed_fds


def test_spawn_reports_missing_cwd(tmp_path: Path) -> None:
    with pytest.raises(SpawnError):
        PtySpawner(cwd=tmp_path / "does-not-exist").spawn("echo x")
