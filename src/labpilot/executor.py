from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import time
from typing import TYPE_CHECKING

from labpilot.models import FileChange, ProviderId
from labpilot.observability import log_event, log_warning_event
from labpilot.prompts import build_prompt_payload
from labpilot.provider_adapter import (
    AdapterRegistry,
    ExecutionContext,
    ExecutionOptions,
    ParsedExecutionResult,
    ProviderAdapter,
)
from labpilot.shell import CommandError, run, stream

if TYPE_CHECKING:
    from labpilot.workspace import GitWorkspaceManager


LOGGER = logging.getLogger("labpilot.executor")

PROGRESS_FLUSH_SECONDS = 2.0
PROGRESS_FLUSH_CHARS = 500
_RECOVERABLE_SESSION_ERRORS = (
    "no conversation found",
    "session not found",
    "conversation not found",
)
_ERROR_HINTS = ("error", "failed", "exception")


class ProgressCallback(ABC):
    @abstractmethod
    def on_progress(self, message: str, *, is_complete: bool = False) -> None:
        """Receive one human-readable progress line."""

    @abstractmethod
    def on_error(self, message: str) -> None:
        """Receive the terminal error for a failed execution."""


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    output: str = ""
    session_id: str | None = None
    changes: tuple[FileChange, ...] = ()
    error: str | None = None


class ExecutionFailed(RuntimeError):
    pass


def is_recoverable_session_error(error: str | None) -> bool:
    if not error:
        return False
    lowered = error.lower()
    return any(marker in lowered for marker in _RECOVERABLE_SESSION_ERRORS)


def derive_error_message(output: str, returncode: int) -> str:
    """Pick the most telling part of stdout when a CLI failed without stderr."""
    if not output:
        return f"Command exited with code {returncode}. No output captured."
    relevant = [
        line for line in output.split("\n") if any(hint in line.lower() for hint in _ERROR_HINTS)
    ]
    if relevant:
        return "\n".join(relevant).strip()
    return output[-200:].strip() or f"Command exited with code {returncode}"


class StreamingExecutor:
    def __init__(
        self,
        registry: AdapterRegistry,
        workspace: GitWorkspaceManager,
        *,
        health_check_timeout_seconds: float = 10,
        prompt_dir: Path | None = None,
        base_env: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._workspace = workspace
        self._health_check_timeout_seconds = health_check_timeout_seconds
        self._prompt_dir = prompt_dir
        self._base_env = base_env
        self._clock = clock

    def display_name(self, provider: ProviderId) -> str:
        return self._registry.get(provider).display_name

    def execute_with_streaming(
        self,
        command: str,
        work_dir: Path,
        context: ExecutionContext,
        callback: ProgressCallback,
    ) -> ExecutionResult:
        return self._execute(command, work_dir, context, callback, options=None)

    def execute_with_session(
        self,
        command: str,
        work_dir: Path,
        context: ExecutionContext,
        callback: ProgressCallback,
        options: ExecutionOptions,
    ) -> ExecutionResult:
        return self._execute(command, work_dir, context, callback, options=options)

    def check_availability(self, adapter: ProviderAdapter) -> None:
        try:
            run([adapter.binary, "--version"], timeout=self._health_check_timeout_seconds)
        except CommandError as exc:
            raise ExecutionFailed(f"{adapter.display_name} CLI is not available: {exc}") from exc

    def _execute(
        self,
        command: str,
        work_dir: Path,
        context: ExecutionContext,
        callback: ProgressCallback,
        *,
        options: ExecutionOptions | None,
    ) -> ExecutionResult:
        adapter = self._registry.get(context.provider)
        name = adapter.display_name
        effective_options = options or ExecutionOptions(output_format="text")
        log_event(
            LOGGER,
            "provider_execution_started",
            provider=adapter.provider_id,
            scenario=context.scenario,
            session_id=effective_options.session_id,
            is_new_session=effective_options.is_new_session,
            work_dir=str(work_dir),
        )
        try:
            self.check_availability(adapter)
            session_info = ""
            if options is not None and options.session_id:
                session_info = f" (Session: {options.session_id[:8]}...)"
            callback.on_progress(f"🚀 {name} is analyzing your request{session_info}...")

            parsed = self._run_cli(
                command=command,
                work_dir=work_dir,
                context=context,
                callback=callback,
                adapter=adapter,
                options=effective_options,
            )
            changes = self._changed_files(work_dir)
            if changes:
                callback.on_progress(f"📝 {name} made changes to {len(changes)} file(s)")
            callback.on_progress(f"✅ {name} completed successfully!", is_complete=True)
        except Exception as exc:  # noqa: BLE001
            error = str(exc)
            log_warning_event(
                LOGGER,
                "provider_execution_finished",
                provider=adapter.provider_id,
                success=False,
                error_type=type(exc).__name__,
                error=error,
            )
            callback.on_error(f"❌ {name} execution failed: {error}")
            return ExecutionResult(success=False, error=error)

        session_id = parsed.session_id or effective_options.session_id
        log_event(
            LOGGER,
            "provider_execution_finished",
            provider=adapter.provider_id,
            success=True,
            session_id=session_id,
            changed_files=len(changes),
        )
        return ExecutionResult(
            success=True,
            output=parsed.text,
            session_id=session_id,
            changes=changes,
        )

    def _run_cli(
        self,
        *,
        command: str,
        work_dir: Path,
        context: ExecutionContext,
        callback: ProgressCallback,
        adapter: ProviderAdapter,
        options: ExecutionOptions,
    ) -> ParsedExecutionResult:
        payload = build_prompt_payload(
            provider=adapter.provider_id,
            command=command,
            context=context.context,
            scenario=context.scenario,
            prompt_dir=self._prompt_dir,
        )
        config = adapter.create_execution_config(payload=payload, context=context, options=options)
        env = adapter.build_env(self._base_env if self._base_env is not None else os.environ)

        progress_buffer: list[str] = []
        last_flush = self._clock()

        def flush() -> None:
            nonlocal last_flush
            buffered = "".join(progress_buffer)
            progress_buffer.clear()
            last_flush = self._clock()
            if not buffered.strip():
                return
            message = adapter.extract_progress_message(buffered)
            if message:
                callback.on_progress(message)

        def on_stdout(line: str) -> None:
            progress_buffer.append(line)
            buffered_chars = sum(len(chunk) for chunk in progress_buffer)
            if self._clock() - last_flush > PROGRESS_FLUSH_SECONDS or buffered_chars > PROGRESS_FLUSH_CHARS:
                flush()

        result = stream(
            [adapter.binary, *config.args],
            cwd=work_dir,
            env=env,
            input_text=config.input_text,
            on_stdout=on_stdout,
        )
        flush()

        output = result.stdout.strip()
        if result.returncode != 0:
            error = result.stderr.strip() or derive_error_message(output, result.returncode)
            log_warning_event(
                LOGGER,
                "provider_cli_failed",
                provider=adapter.provider_id,
                exit_code=result.returncode,
                error=error,
            )
            raise ExecutionFailed(f"{adapter.display_name} execution failed (code {result.returncode}): {error}")
        return adapter.parse_result(output)

    def _changed_files(self, work_dir: Path) -> tuple[FileChange, ...]:
        try:
            return self._workspace.get_changed_files(work_dir)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "changed_files_lookup_failed",
                work_dir=str(work_dir),
                error_type=type(exc).__name__,
            )
            return ()
