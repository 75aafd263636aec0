from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from labpilot.models import OutputFormat, ProviderId, Scenario
from labpilot.prompts import PromptPayload


@dataclass(frozen=True)
class ExecutionContext:
    context: str
    project_url: str
    branch: str
    provider: ProviderId
    scenario: Scenario
    is_issue_scenario: bool = False
    full_context: str | None = None


@dataclass(frozen=True)
class ExecutionOptions:
    session_id: str | None = None
    is_new_session: bool = True
    output_format: OutputFormat = "json"

    @property
    def resumes(self) -> bool:
        return self.session_id is not None and not self.is_new_session


@dataclass(frozen=True)
class ExecutionConfig:
    args: tuple[str, ...]
    input_text: str | None = None


@dataclass(frozen=True)
class ParsedExecutionResult:
    text: str
    raw: str
    session_id: str | None = None


class ProviderAdapter(ABC):
    provider_id: ProviderId
    display_name: str

    @property
    @abstractmethod
    def binary(self) -> str:
        """Executable used for both the health probe and the real execution."""

    @abstractmethod
    def build_env(self, base: Mapping[str, str]) -> dict[str, str]:
        """Return the subprocess environment derived from ``base``."""

    @abstractmethod
    def create_execution_config(
        self,
        *,
        payload: PromptPayload,
        context: ExecutionContext,
        options: ExecutionOptions,
    ) -> ExecutionConfig:
        """Build the argument vector (and optional stdin) for one execution."""

    @abstractmethod
    def parse_result(self, raw_output: str) -> ParsedExecutionResult:
        """Normalize the full stdout of a finished execution."""

    @abstractmethod
    def extract_progress_message(self, buffer: str) -> str:
        """Return a progress line for a partial stdout buffer, or an empty string."""


class AdapterRegistry:
    def __init__(self, adapters: Iterable[ProviderAdapter]) -> None:
        self._adapters: dict[ProviderId, ProviderAdapter] = {}
        for adapter in adapters:
            self._adapters[adapter.provider_id] = adapter

    def get(self, provider: ProviderId) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise KeyError(f"No adapter registered for provider: {provider}")
        return adapter

    def providers(self) -> tuple[ProviderId, ...]:
        return tuple(self._adapters.keys())
