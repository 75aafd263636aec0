from __future__ import annotations

from pathlib import Path
import subprocess
import sys

import pytest

from labpilot.observability import configure_logging
from labpilot.shell import CommandError, CommandTimeoutError, _preview, run, stream


def test_run_success(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    called: dict[str, object] = {}

    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        called["args"] = args
        called["kwargs"] = kwargs
        return subprocess.CompletedProcess(args=["echo"], returncode=0, stdout="ok", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    out = run(["echo", "hello"], cwd=tmp_path, input_text="hi", timeout=3, env={"A": "1"})

    assert out == "ok"
    kwargs = called["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["input"] == "hi"
    assert kwargs["check"] is False
    assert kwargs["timeout"] == 3
    assert kwargs["env"] == {"A": "1"}


def test_run_failure_raises(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(args=["bad"], returncode=2, stdout="out", stderr="err")

    monkeypatch.setattr(subprocess, "run", fake_run)
    configure_logging(verbose=True)

    with pytest.raises(CommandError, match="Command failed"):
        run(["bad"])
    stderr = capsys.readouterr().err
    assert "event=command_failed command=bad exit_code=2" in stderr
    assert "stderr=err" in stderr
    assert "stdout=out" in stderr


def test_run_without_check_returns_stdout(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(args=["bad"], returncode=1, stdout="partial", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert run(["bad"], check=False) == "partial"


def test_run_timeout_raises_timeout_error(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args
        raise subprocess.TimeoutExpired(cmd="slow", timeout=float(str(kwargs["timeout"])))

    monkeypatch.setattr(subprocess, "run", fake_run)
    configure_logging(verbose=True)

    with pytest.raises(CommandTimeoutError, match="timed out after 5s"):
        run(["slow", "--probe"], timeout=5)
    assert "event=command_timeout" in capsys.readouterr().err


def test_run_spawn_failure_raises_command_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        raise FileNotFoundError("no such binary")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(CommandError, match="could not be started"):
        run(["missing-binary"])


def test_stream_forwards_lines_in_order() -> None:
    seen: list[str] = []
    script = "import sys\nprint('one')\nprint('two')\nsys.stderr.write('warn\\n')\n"

    result = stream([sys.executable, "-c", script], on_stdout=seen.append)

    assert result.returncode == 0
    assert seen == ["one\n", "two\n"]
    assert result.stdout == "one\ntwo\n"
    assert result.stderr == "warn\n"


def test_stream_returns_nonzero_exit_without_raising() -> None:
    result = stream(
        [sys.executable, "-c", "import sys; sys.stdin.read(); sys.exit(3)"],
        on_stdout=lambda line: None,
        input_text="payload",
    )

    assert result.returncode == 3


def test_stream_spawn_failure_raises(tmp_path: Path) -> None:
    with pytest.raises(CommandError, match="could not be started"):
        stream([str(tmp_path / "does-not-exist")], on_stdout=lambda line: None)


def test_preview_handles_empty_and_truncation() -> None:
    assert _preview("") == "<empty>"
    assert _preview("x" * 10, limit=4) == "xxxx..."
    assert _preview("a\nb") == "a\\nb"
