from __future__ import annotations

from collections.abc import Mapping
import json
import os
import re

from labpilot.config import ClaudeConfig
from labpilot.prompts import PromptPayload
from labpilot.provider_adapter import (
    ExecutionConfig,
    ExecutionContext,
    ExecutionOptions,
    ParsedExecutionResult,
    ProviderAdapter,
)


_SESSION_ID_PATTERN = re.compile(r'"session_id"\s*:\s*"([^"]+)"')
_SLASH_COMMAND_PATTERN = re.compile(r"^/(\S+)")
_BARE_ERROR_LINES = frozenset({"execution error", "error", "failed"})


class ClaudeAdapter(ProviderAdapter):
    provider_id = "claude"
    display_name = "Claude"

    def __init__(self, config: ClaudeConfig | None = None) -> None:
        self._config = config or ClaudeConfig()

    @property
    def binary(self) -> str:
        return self._config.binary

    def build_env(self, base: Mapping[str, str]) -> dict[str, str]:
        env = dict(base)
        if self._config.base_url:
            env["ANTHROPIC_BASE_URL"] = self._config.base_url
        token = os.environ.get(self._config.auth_token_env)
        if token:
            env["ANTHROPIC_AUTH_TOKEN"] = token
        return env

    def create_execution_config(
        self,
        *,
        payload: PromptPayload,
        context: ExecutionContext,
        options: ExecutionOptions,
    ) -> ExecutionConfig:
        is_spec_scenario = context.scenario == "spec-doc"
        cmd = [
            "--print",
            "--model",
            self._config.model,
            "--output-format",
            options.output_format,
        ]
        if is_spec_scenario:
            cmd.extend(["--permission-mode", "acceptEdits"])
        else:
            cmd.append("--dangerously-skip-permissions")
        if options.resumes:
            assert options.session_id is not None
            cmd.extend(["--resume", options.session_id])
        if payload.system_prompt:
            cmd.extend(["--append-system-prompt", payload.system_prompt])

        if is_spec_scenario:
            slash_command = _extract_slash_command(payload.prompt) or "/speckit.specify"
            allowed_tools = [f"SlashCommand:{slash_command}", "Read", "Bash", "Git"]
        else:
            allowed_tools = list(self._config.allowed_tools)
        cmd.append(f"--allowedTools={','.join(allowed_tools)}")
        cmd.extend(self._config.extra_args)
        cmd.append(payload.prompt)
        return ExecutionConfig(args=tuple(cmd))

    def parse_result(self, raw_output: str) -> ParsedExecutionResult:
        raw = raw_output.strip()
        if not raw:
            return ParsedExecutionResult(text="", raw="")
        text = _extract_result_text(raw)
        return ParsedExecutionResult(
            text=text if text is not None else raw,
            raw=raw,
            session_id=_extract_session_id(raw),
        )

    def extract_progress_message(self, buffer: str) -> str:
        lines = [line for line in buffer.split("\n") if line.strip()]
        if not lines:
            return ""
        last_line = lines[-1].strip()
        if "DEBUG" in last_line or "INFO" in last_line:
            return ""
        if not 10 < len(last_line) < 200:
            return ""
        lowered = last_line.lower()
        if lowered in _BARE_ERROR_LINES:
            return ""
        if "error" in lowered or "failed" in lowered or "exception" in lowered:
            return f"❌ {last_line}"
        return f"🤖 {last_line}"


def _extract_slash_command(prompt: str) -> str | None:
    match = _SLASH_COMMAND_PATTERN.match(prompt.strip())
    if match is None:
        return None
    return "/" + match.group(1).rstrip(", ")


def _extract_result_text(raw: str) -> str | None:
    candidates = [raw]
    candidates.extend(line.strip() for line in reversed(raw.splitlines()) if line.strip().startswith("{"))
    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            result = payload.get("result")
            if isinstance(result, str):
                return result.strip()
    return None


def _extract_session_id(raw: str) -> str | None:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        session_id = payload.get("session_id")
        if isinstance(session_id, str) and session_id:
            return session_id
    match = _SESSION_ID_PATTERN.search(raw)
    if match is not None:
        return match.group(1)
    return None
