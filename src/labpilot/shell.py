from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
import logging
import subprocess
import threading


class CommandError(RuntimeError):
    pass


class CommandTimeoutError(CommandError):
    """Raised when a subprocess exceeds its wall-clock timeout and was killed."""


LOGGER = logging.getLogger("labpilot.shell")


@dataclass(frozen=True)
class StreamResult:
    returncode: int
    stdout: str
    stderr: str


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout,
            env=dict(env) if env is not None else None,
        )
    except subprocess.TimeoutExpired as exc:
        LOGGER.error(
            "event=command_timeout command=%s timeout_seconds=%s",
            " ".join(argv),
            timeout,
        )
        raise CommandTimeoutError(
            f"Command timed out after {timeout}s\ncmd: {' '.join(argv)}"
        ) from exc
    except OSError as exc:
        LOGGER.error(
            "event=command_spawn_failed command=%s error=%s",
            " ".join(argv),
            _preview(str(exc)),
        )
        raise CommandError(f"Command could not be started\ncmd: {' '.join(argv)}\nerror: {exc}") from exc
    if check and proc.returncode != 0:
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            " ".join(argv),
            proc.returncode,
            _preview(proc.stderr),
            _preview(proc.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {' '.join(argv)}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n"
            f"stderr:\n{proc.stderr}"
        )
    return proc.stdout


def stream(
    argv: list[str],
    *,
    on_stdout: Callable[[str], None],
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
) -> StreamResult:
    """Run a subprocess, handing each stdout line to ``on_stdout`` as it arrives.

    stdout is consumed on the calling thread so callbacks never race each other.
    stderr is drained on a helper thread to keep the pipe from filling up.
    A non-zero exit code is returned, not raised; callers decide what it means.
    """
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
        )
    except OSError as exc:
        LOGGER.error(
            "event=command_spawn_failed command=%s error=%s",
            " ".join(argv),
            _preview(str(exc)),
        )
        raise CommandError(f"Command could not be started\ncmd: {' '.join(argv)}\nerror: {exc}") from exc

    stderr_chunks: list[str] = []

    def drain_stderr() -> None:
        assert proc.stderr is not None
        for line in proc.stderr:
            stderr_chunks.append(line)

    stderr_thread = threading.Thread(target=drain_stderr, name="stderr-drain", daemon=True)
    stderr_thread.start()

    if input_text is not None:
        assert proc.stdin is not None
        try:
            proc.stdin.write(input_text)
        except BrokenPipeError:
            pass
        finally:
            proc.stdin.close()

    stdout_chunks: list[str] = []
    assert proc.stdout is not None
    try:
        for line in proc.stdout:
            stdout_chunks.append(line)
            on_stdout(line)
    except BaseException:
        proc.kill()
        raise
    finally:
        proc.stdout.close()
        returncode = proc.wait()
        stderr_thread.join()

    return StreamResult(
        returncode=returncode,
        stdout="".join(stdout_chunks),
        stderr="".join(stderr_chunks),
    )
