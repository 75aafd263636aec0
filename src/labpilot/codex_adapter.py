from __future__ import annotations

from collections.abc import Mapping
import json
import logging
from typing import cast

from labpilot.config import CodexConfig
from labpilot.observability import log_event
from labpilot.prompts import PromptPayload
from labpilot.provider_adapter import (
    ExecutionConfig,
    ExecutionContext,
    ExecutionOptions,
    ParsedExecutionResult,
    ProviderAdapter,
)


LOGGER = logging.getLogger("labpilot.codex_adapter")

_MAX_COMMAND_OUTPUT = 400


class CodexAdapter(ProviderAdapter):
    provider_id = "codex"
    display_name = "Codex"

    def __init__(self, config: CodexConfig | None = None) -> None:
        self._config = config or CodexConfig()

    @property
    def binary(self) -> str:
        return self._config.binary

    def build_env(self, base: Mapping[str, str]) -> dict[str, str]:
        return dict(base)

    def create_execution_config(
        self,
        *,
        payload: PromptPayload,
        context: ExecutionContext,
        options: ExecutionOptions,
    ) -> ExecutionConfig:
        cmd = ["exec"]
        if options.resumes:
            cmd.append("resume")
        cmd.extend(
            [
                "--json",
                "--skip-git-repo-check",
                "--dangerously-bypass-approvals-and-sandbox",
                "--color",
                "never",
            ]
        )
        self._append_common_options(cmd)
        if options.resumes:
            assert options.session_id is not None
            cmd.append(options.session_id)
        cmd.append("-")
        return ExecutionConfig(args=tuple(cmd), input_text=payload.prompt)

    def parse_result(self, raw_output: str) -> ParsedExecutionResult:
        raw = raw_output.strip()
        if not raw:
            return ParsedExecutionResult(text="", raw="")

        text = _extract_streamed_text(raw) or _extract_final_agent_message(raw)
        session_id = _extract_thread_id(raw)
        if text:
            log_event(LOGGER, "codex_result_parsed", chars=len(text), has_session=session_id is not None)
        return ParsedExecutionResult(text=text or raw, raw=raw, session_id=session_id)

    def extract_progress_message(self, buffer: str) -> str:
        lines = [line.strip() for line in buffer.split("\n") if line.strip()]
        message = ""
        for line in lines:
            payload = _parse_event_line(line)
            if payload is None:
                continue
            formatted = _format_progress_event(payload)
            if formatted:
                message = formatted
        if message:
            return message

        if lines and not lines[-1].startswith("{") and 5 < len(lines[-1]) < 300:
            return f"🤖 {lines[-1]}"
        return ""

    def _append_common_options(self, cmd: list[str]) -> None:
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        if self._config.profile:
            cmd.extend(["--profile", self._config.profile])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)


def _extract_thread_id(raw_events: str) -> str | None:
    for line in raw_events.splitlines():
        payload = _parse_event_line(line.strip())
        if payload is None:
            continue
        event_type = payload.get("type")
        if event_type == "thread.started":
            thread_id = payload.get("thread_id")
            if isinstance(thread_id, str) and thread_id:
                return thread_id
        for key in ("session_id", "sessionId"):
            candidate = payload.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        session_obj = _as_object_dict(payload.get("session"))
        if session_obj is not None:
            candidate = session_obj.get("id")
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
    return None


def _extract_streamed_text(raw_events: str) -> str | None:
    deltas: list[str] = []
    for line in raw_events.splitlines():
        payload = _parse_event_line(line.strip())
        if payload is None or payload.get("type") != "response.output_text.delta":
            continue
        delta = payload.get("delta")
        if isinstance(delta, str):
            deltas.append(delta)
    text = _normalize_text("".join(deltas))
    return text or None


def _extract_final_agent_message(raw_events: str) -> str | None:
    last_message: str | None = None
    for line in raw_events.splitlines():
        payload = _parse_event_line(line.strip())
        if payload is None:
            continue
        if payload.get("type") != "item.completed":
            continue
        item_obj = _as_object_dict(payload.get("item"))
        if item_obj is None:
            continue
        item_type = _item_type(item_obj)
        message_text = item_obj.get("text")
        if item_type in {"agent_message", "assistant_message"} and isinstance(message_text, str):
            normalized = _normalize_text(message_text)
            if normalized:
                last_message = normalized
    return last_message


def _format_progress_event(payload: dict[str, object]) -> str | None:
    event_type = payload.get("type")

    if event_type in {"item.started", "item.completed"}:
        item_obj = _as_object_dict(payload.get("item"))
        if item_obj is None:
            return None
        item_type = _item_type(item_obj)
        text = item_obj.get("text")

        if item_type == "reasoning" and isinstance(text, str):
            return f"🧠 {_normalize_text(text)}"
        if item_type in {"plan", "todo_list"}:
            if isinstance(text, str):
                return f"🗺️ {_normalize_text(text)}"
            return _format_todo_items(item_obj.get("items"))
        if item_type == "command_execution":
            return _format_command_event(event_type=str(event_type), item=item_obj)
        if item_type in {"agent_message", "assistant_message"} and isinstance(text, str):
            normalized = _normalize_text(text)
            return f"🤖 {normalized}" if normalized else None
        return None

    if event_type == "error":
        message = payload.get("message") or payload.get("error")
        if isinstance(message, str) and message.strip():
            return f"❌ {message.strip()}"
        return None

    message = payload.get("message")
    if isinstance(message, str) and message.strip():
        return f"🤖 {message.strip()}"
    return None


def _format_command_event(*, event_type: str, item: dict[str, object]) -> str:
    command = item.get("command")
    command_text = command if isinstance(command, str) and command else None
    if event_type == "item.started":
        return f"⚙️ Running: {command_text}" if command_text else "⚙️ Running command"

    output = item.get("aggregated_output")
    output_text = _truncate(_normalize_text(output if isinstance(output, str) else ""))
    failed = item.get("status") == "failed" or _nonzero_exit(item.get("exit_code"))
    if failed:
        head = f"❌ Command failed: {command_text}" if command_text else "❌ Command failed"
    else:
        head = f"⚙️ {command_text}" if command_text else "⚙️ Command finished"
    return f"{head}\n{output_text}" if output_text else head


def _format_todo_items(value: object) -> str | None:
    if not isinstance(value, list):
        return None
    entries: list[str] = []
    for entry in value:
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        text = entry_obj.get("text")
        if not isinstance(text, str) or not text.strip():
            continue
        mark = "x" if entry_obj.get("completed") is True else " "
        entries.append(f"[{mark}] {text.strip()}")
    if not entries:
        return None
    return "🗺️ " + "; ".join(entries)


def _nonzero_exit(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value != 0


def _item_type(item: dict[str, object]) -> str | None:
    for key in ("type", "item_type"):
        value = item.get(key)
        if isinstance(value, str):
            return value
    return None


def _normalize_text(text: str) -> str:
    return text.replace("\r", "").replace("  \n", "\n").strip()


def _truncate(text: str) -> str:
    if len(text) <= _MAX_COMMAND_OUTPUT:
        return text
    return f"{text[:_MAX_COMMAND_OUTPUT]}..."


def _parse_event_line(line: str) -> dict[str, object] | None:
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    return _as_object_dict(payload)


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)
