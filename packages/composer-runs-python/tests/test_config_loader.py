from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from composer_runs.config.defaults import load_default_config_dict
from composer_runs.config.loader import ENV_LOG_DIR, ENV_RUN_DIR, load_config, load_config_dicts


def test_embedded_defaults_are_complete() -> None:
    cfg = load_config_dicts([load_default_config_dict()])
    assert cfg.config_version == 1
    assert cfg.run_dir.name == ".open-composer"
    assert cfg.log_dir.name == "logs"
    assert cfg.lock.timeout_ms == 20_000
    assert cfg.lock.poll_interval_ms == 50
    assert cfg.log.max_bytes == 10 * 1024 * 1024
    assert cfg.log.max_backups == 5
    assert cfg.spawn.shell is None
    assert cfg.spawn.term == "xterm-256color"


def test_overlay_accepts_camel_case_dirs_and_deep_merges(tmp_path: Path) -> None:
    overlay = tmp_path / "overlay.yaml"
    overlay.write_text(
        "\n".join(
            [
                f'runDir: "{tmp_path / "state"}"',
                "lock:",
                "  timeout_ms: 500",
                "spawn:",
                "  env:",
                "    FOO: bar",
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    cfg = load_config([overlay], environ={})

    assert cfg.run_dir == tmp_path / "state"
    assert cfg.lock.timeout_ms == 500
    assert cfg.lock.poll_interval_ms == 50
    assert cfg.spawn.env == {"FOO": "bar"}
    assert cfg.log_dir.name == "logs"


def test_later_overlays_win(tmp_path: Path) -> None:
    a = tmp_path / "a.yaml"
    b = tmp_path / "b.yaml"
    a.write_text("run_dir: /tmp/a\nlog:\n  max_backups: 2\n", encoding="utf-8")
    b.write_text("run_dir: /tmp/b\n", encoding="utf-8")

    cfg = load_config([a, b], environ={})

    assert cfg.run_dir == Path("/tmp/b")
    assert cfg.log.max_backups == 2


def test_env_overrides_yaml(tmp_path: Path) -> None:
    overlay = tmp_path / "overlay.yaml"
    overlay.write_text("run_dir: /tmp/from-yaml\n", encoding="utf-8")

    cfg = load_config(
        [overlay],
        environ={ENV_RUN_DIR: str(tmp_path / "env-runs"), ENV_LOG_DIR: "  "},
    )

    assert cfg.run_dir == tmp_path / "env-runs"
    assert cfg.log_dir.name == "logs"


def test_empty_overlay_is_allowed(tmp_path: Path) -> None:
    overlay = tmp_path / "empty.yaml"
    overlay.write_text("", encoding="utf-8")
    assert load_config([overlay], environ={}).config_version == 1


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    overlay = tmp_path / "typo.yaml"
    overlay.write_text("lock:\n  timeout: 10\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_config([overlay], environ={})


def test_non_mapping_overlay_is_rejected(tmp_path: Path) -> None:
    overlay = tmp_path / "list.yaml"
    overlay.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError, match="mapping"):
        load_config([overlay], environ={})


def test_missing_overlay_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config([tmp_path / "absent.yaml"], environ={})


def test_without_defaults_dirs_are_required() -> None:
    with pytest.raises(ValidationError):
        load_config([], environ={}, include_defaults=False)
