from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
import tomllib
from typing import cast

from labpilot.models import PROVIDER_IDS, ProviderId


_DEFAULT_CLAUDE_ALLOWED_TOOLS: tuple[str, ...] = (
    "Bash",
    "Read",
    "Write",
    "Edit",
    "MultiEdit",
    "Glob",
    "Grep",
    "LS",
    "TodoWrite",
)
_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([dhms]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    worker_count: int = 4
    ai_dispatch_delay_ms: int = 100
    prompt_dir: Path | None = None
    review_guidelines_path: str = "CODE_REVIEW_GUIDELINES.md"

    @property
    def workspaces_dir(self) -> Path:
        return self.base_dir / "workspaces"


@dataclass(frozen=True)
class GitLabConfig:
    host: str | None = None
    token_env: str = "GITLAB_TOKEN"
    code_review_target_branch: str = "develop"
    bot_username: str | None = None


@dataclass(frozen=True)
class ClaudeConfig:
    binary: str = "claude"
    model: str = "sonnet"
    base_url: str | None = None
    auth_token_env: str = "ANTHROPIC_AUTH_TOKEN"
    allowed_tools: tuple[str, ...] = _DEFAULT_CLAUDE_ALLOWED_TOOLS
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class CodexConfig:
    binary: str = "codex"
    model: str | None = None
    profile: str | None = None
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class AiConfig:
    executor: ProviderId = "claude"
    code_review_executor: ProviderId = "codex"
    health_check_timeout_seconds: int = 10
    claude: ClaudeConfig = ClaudeConfig()
    codex: CodexConfig = CodexConfig()


@dataclass(frozen=True)
class SessionConfig:
    enabled: bool = True
    max_idle_time_seconds: int = 7 * 86400
    max_sessions: int = 1000
    cleanup_interval_seconds: int = 3600
    storage_path: Path | None = None


@dataclass(frozen=True)
class SpecKitConfig:
    binary: str = "specify"
    init_timeout_seconds: int = 300


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    gitlab: GitLabConfig = GitLabConfig()
    ai: AiConfig = AiConfig()
    session: SessionConfig = SessionConfig()
    spec_kit: SpecKitConfig = SpecKitConfig()

    @property
    def session_storage_path(self) -> Path:
        if self.session.storage_path is None:
            return self.runtime.base_dir / "sessions.json"
        if self.session.storage_path.is_absolute():
            return self.session.storage_path
        return self.runtime.base_dir / self.session.storage_path


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        try:
            data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"invalid TOML: {exc}") from exc
    return parse_config(cast(dict[str, object], data))


def parse_config(data: dict[str, object]) -> AppConfig:
    runtime_data = _require_table(data, "runtime")
    gitlab_data = _optional_table(data, "gitlab") or {}
    ai_data = _optional_table(data, "ai") or {}
    session_data = _optional_table(data, "session") or {}
    spec_kit_data = _optional_table(data, "spec_kit") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        worker_count=_int_with_default(runtime_data, "worker_count", 4),
        ai_dispatch_delay_ms=_int_with_default(runtime_data, "ai_dispatch_delay_ms", 100),
        prompt_dir=_optional_path(runtime_data, "prompt_dir"),
        review_guidelines_path=_str_with_default(
            runtime_data, "review_guidelines_path", "CODE_REVIEW_GUIDELINES.md"
        ),
    )
    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if runtime.ai_dispatch_delay_ms < 0:
        raise ConfigError("runtime.ai_dispatch_delay_ms must be >= 0")

    gitlab = GitLabConfig(
        host=_optional_str(gitlab_data, "host"),
        token_env=_str_with_default(gitlab_data, "token_env", "GITLAB_TOKEN"),
        code_review_target_branch=_str_with_default(
            gitlab_data, "code_review_target_branch", "develop"
        ),
        bot_username=_optional_str(gitlab_data, "bot_username"),
    )

    ai = _parse_ai_config(ai_data)

    session = SessionConfig(
        enabled=_bool_with_default(session_data, "enabled", True),
        max_idle_time_seconds=_duration_with_default(
            session_data, "max_idle_time", 7 * 86400, key_prefix="session"
        ),
        max_sessions=_int_with_default(session_data, "max_sessions", 1000),
        cleanup_interval_seconds=_duration_with_default(
            session_data, "cleanup_interval", 3600, key_prefix="session"
        ),
        storage_path=_optional_path(session_data, "storage_path"),
    )
    if session.max_sessions < 1:
        raise ConfigError("session.max_sessions must be >= 1")
    if session.max_idle_time_seconds < 1:
        raise ConfigError("session.max_idle_time must be at least one second")
    if session.cleanup_interval_seconds < 1:
        raise ConfigError("session.cleanup_interval must be at least one second")

    spec_kit = SpecKitConfig(
        binary=_str_with_default(spec_kit_data, "binary", "specify"),
        init_timeout_seconds=_int_with_default(spec_kit_data, "init_timeout_seconds", 300),
    )
    if spec_kit.init_timeout_seconds < 1:
        raise ConfigError("spec_kit.init_timeout_seconds must be >= 1")

    return AppConfig(
        runtime=runtime,
        gitlab=gitlab,
        ai=ai,
        session=session,
        spec_kit=spec_kit,
    )


def parse_duration(text: str | int) -> int:
    """Parse ``7d``/``24h``/``60m``/``3600s`` or a bare number of seconds."""
    if isinstance(text, bool):
        raise ConfigError(f"Invalid duration: {text!r}")
    if isinstance(text, int):
        if text < 0:
            raise ConfigError(f"Invalid duration: {text!r}")
        return text
    match = _DURATION_PATTERN.match(text)
    if match is None:
        raise ConfigError(f"Invalid duration: {text!r}")
    amount = int(match.group(1))
    unit = match.group(2).lower()
    return amount * _DURATION_UNITS[unit]


def _parse_ai_config(ai_data: dict[str, object]) -> AiConfig:
    claude_data = _optional_table(ai_data, "claude", key_prefix="ai") or {}
    codex_data = _optional_table(ai_data, "codex", key_prefix="ai") or {}

    ai = AiConfig(
        executor=_provider_with_default(ai_data, "executor", "claude"),
        code_review_executor=_provider_with_default(ai_data, "code_review_executor", "codex"),
        health_check_timeout_seconds=_int_with_default(ai_data, "health_check_timeout_seconds", 10),
        claude=ClaudeConfig(
            binary=_str_with_default(claude_data, "binary", "claude"),
            model=_str_with_default(claude_data, "model", "sonnet"),
            base_url=_optional_str(claude_data, "base_url"),
            auth_token_env=_str_with_default(claude_data, "auth_token_env", "ANTHROPIC_AUTH_TOKEN"),
            allowed_tools=_tuple_of_str_with_default(
                claude_data, "allowed_tools", _DEFAULT_CLAUDE_ALLOWED_TOOLS
            ),
            extra_args=_tuple_of_str_with_default(claude_data, "extra_args", ()),
        ),
        codex=CodexConfig(
            binary=_str_with_default(codex_data, "binary", "codex"),
            model=_optional_str(codex_data, "model"),
            profile=_optional_str(codex_data, "profile"),
            extra_args=_tuple_of_str_with_default(codex_data, "extra_args", ()),
        ),
    )
    if ai.health_check_timeout_seconds < 1:
        raise ConfigError("ai.health_check_timeout_seconds must be >= 1")
    return ai


def _provider_with_default(data: dict[str, object], key: str, default: ProviderId) -> ProviderId:
    value = data.get(key, default)
    if not isinstance(value, str) or value.strip().lower() not in PROVIDER_IDS:
        raise ConfigError(f"ai.{key} must be one of: {', '.join(PROVIDER_IDS)}")
    return cast(ProviderId, value.strip().lower())


def _duration_with_default(
    data: dict[str, object], key: str, default: int, *, key_prefix: str
) -> int:
    value = data.get(key, default)
    if not isinstance(value, str | int):
        raise ConfigError(f"{key_prefix}.{key} must be a duration string or integer seconds")
    try:
        return parse_duration(value)
    except ConfigError as exc:
        raise ConfigError(f"{key_prefix}.{key}: {exc}") from exc


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(
    data: dict[str, object], key: str, *, key_prefix: str | None = None
) -> dict[str, object] | None:
    table_name = f"{key_prefix}.{key}" if key_prefix else key
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{table_name}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{table_name}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    return _tuple_of_str(data, key)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()
