from __future__ import annotations

from pathlib import Path
import runpy
import sys

import pytest


def _run_module(monkeypatch: pytest.MonkeyPatch, *argv: str) -> None:
    monkeypatch.setattr(sys, "argv", ["labpilot", *argv])
    runpy.run_module("labpilot.__main__", run_name="__main__")


def test_module_entrypoint_rejects_malformed_config(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = tmp_path / "labpilot.toml"
    config_path.write_text("[runtime\n", encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        _run_module(monkeypatch, "sessions", "--config", str(config_path), "list")

    assert excinfo.value.code == 2
    assert f"Failed to load config {config_path}: invalid TOML" in capsys.readouterr().err


def test_module_entrypoint_lists_sessions(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = tmp_path / "labpilot.toml"
    config_path.write_text(f'[runtime]\nbase_dir = "{tmp_path / "state"}"\n', encoding="utf-8")

    _run_module(monkeypatch, "sessions", "--config", str(config_path), "list")

    assert capsys.readouterr().out == "No sessions.\n"
