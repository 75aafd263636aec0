from __future__ import annotations

import argparse
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
import json
from pathlib import Path
import sys
from typing import cast

from labpilot.claude_adapter import ClaudeAdapter
from labpilot.code_review import CodeReviewService
from labpilot.codex_adapter import CodexAdapter
from labpilot.config import AppConfig, ConfigError, load_config, parse_duration
from labpilot.event_processor import EventProcessor
from labpilot.executor import ExecutionFailed, StreamingExecutor
from labpilot.gitlab_gateway import GitLabGateway
from labpilot.issue_locks import IssueLockTable
from labpilot.models import PROVIDER_IDS, ProcessEventResult, ProviderId, Tenant
from labpilot.observability import configure_logging
from labpilot.provider_adapter import AdapterRegistry
from labpilot.session_manager import SessionCleanupService, SessionManager, generate_session_key
from labpilot.session_store import FileSessionStore
from labpilot.webhook import parse_webhook_event
from labpilot.workspace import GitWorkspaceManager


@dataclass(frozen=True)
class EventOutcome:
    source: str
    result: ProcessEventResult


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="labpilot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    process_parser = subparsers.add_parser(
        "process", help="Process one or more GitLab webhook payloads from JSON files"
    )
    process_parser.add_argument("events", nargs="+", type=Path, help="Webhook payload JSON files")
    _add_common_arguments(process_parser)
    process_parser.add_argument(
        "--owner",
        type=str,
        default=None,
        help="Tenant user id used to scope conversation sessions",
    )
    process_parser.add_argument(
        "--json",
        action="store_true",
        help="Print results as JSON",
    )

    sessions_parser = subparsers.add_parser("sessions", help="Inspect and manage stored sessions")
    _add_common_arguments(sessions_parser)
    sessions_subparsers = sessions_parser.add_subparsers(dest="sessions_command", required=True)

    list_parser = sessions_subparsers.add_parser("list", help="List stored sessions")
    list_parser.add_argument("--json", action="store_true", help="Print sessions as JSON")

    sessions_subparsers.add_parser("stats", help="Show session statistics")

    clean_parser = sessions_subparsers.add_parser("clean", help="Remove idle sessions")
    clean_parser.add_argument(
        "--max-age",
        type=str,
        default=None,
        help="Idle threshold such as 7d, 24h or 3600 (defaults to session.max_idle_time)",
    )

    remove_parser = sessions_subparsers.add_parser("remove", help="Remove one session")
    remove_parser.add_argument("--project", type=int, required=True, help="GitLab project id")
    remove_parser.add_argument("--iid", type=int, required=True, help="Issue or merge request iid")
    remove_parser.add_argument("--owner", type=str, default=None, help="Tenant user id")
    remove_parser.add_argument(
        "--provider",
        choices=PROVIDER_IDS,
        default=None,
        help="Only drop this provider's conversation",
    )

    check_parser = subparsers.add_parser(
        "check", help="Validate configuration and provider CLI availability"
    )
    _add_common_arguments(check_parser)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("labpilot.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="low",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (low by default, high for every event)",
    )


def main() -> None:
    args = build_parser().parse_args()
    try:
        config = load_config(args.config)
    except (OSError, ConfigError) as exc:
        print(f"Failed to load config {args.config}: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    configure_logging(getattr(args, "verbose", None), state_dir=config.runtime.base_dir)

    if args.command == "process":
        _cmd_process(config, args)
        return
    if args.command == "sessions":
        _cmd_sessions(config, args)
        return
    if args.command == "check":
        _cmd_check(config)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_process(config: AppConfig, args: argparse.Namespace) -> None:
    sessions = _build_session_manager(config) if config.session.enabled else None
    processor = _build_processor(config, sessions)
    tenant = Tenant(user_id=args.owner) if args.owner else None

    cleanup: SessionCleanupService | None = None
    if sessions is not None:
        cleanup = SessionCleanupService(
            sessions,
            interval_seconds=config.session.cleanup_interval_seconds,
            max_age_seconds=config.session.max_idle_time_seconds,
        )
        cleanup.start()

    try:
        outcomes = process_event_files(
            processor, list(args.events), tenant=tenant, worker_count=config.runtime.worker_count
        )
    finally:
        if cleanup is not None:
            cleanup.stop()

    _print_outcomes(outcomes, as_json=bool(args.json))
    if any(outcome.result.status == "error" for outcome in outcomes):
        raise SystemExit(1)


def process_event_files(
    processor: EventProcessor,
    paths: list[Path],
    *,
    tenant: Tenant | None,
    worker_count: int,
) -> list[EventOutcome]:
    """Process payload files concurrently and return outcomes in input order."""

    def handle(path: Path) -> EventOutcome:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("webhook payload must be a JSON object")
            event = parse_webhook_event(cast(dict[str, object], payload))
        except (OSError, ValueError) as exc:
            return EventOutcome(
                source=str(path),
                result=ProcessEventResult(status="error", execution_time_ms=0, error=str(exc)),
            )
        return EventOutcome(source=str(path), result=processor.process_event(event, tenant))

    with ThreadPoolExecutor(max_workers=max(1, worker_count)) as pool:
        return list(pool.map(handle, paths))


def _print_outcomes(outcomes: list[EventOutcome], *, as_json: bool) -> None:
    if as_json:
        payload = [
            {
                "source": outcome.source,
                "status": outcome.result.status,
                "execution_time_ms": outcome.result.execution_time_ms,
                "error": outcome.result.error,
            }
            for outcome in outcomes
        ]
        print(json.dumps(payload, indent=2))
        return
    for outcome in outcomes:
        line = (
            f"{outcome.source}: status={outcome.result.status} "
            f"execution_time_ms={outcome.result.execution_time_ms}"
        )
        if outcome.result.error:
            line = f"{line} error={outcome.result.error}"
        print(line)


def _cmd_sessions(config: AppConfig, args: argparse.Namespace) -> None:
    manager = _build_session_manager(config)
    if args.sessions_command == "list":
        _cmd_sessions_list(manager, as_json=bool(args.json))
        return
    if args.sessions_command == "stats":
        stats = manager.get_stats()
        print(f"total_sessions={stats.total_sessions}")
        print(f"active_sessions={stats.active_sessions}")
        print(f"expired_sessions={stats.expired_sessions}")
        print(f"oldest_session={_format_optional(stats.oldest_session)}")
        print(f"newest_session={_format_optional(stats.newest_session)}")
        return
    if args.sessions_command == "clean":
        max_age = parse_duration(args.max_age) if args.max_age else None
        removed = manager.clean_expired_sessions(max_age)
        print(f"Removed {removed} expired session(s).")
        return
    if args.sessions_command == "remove":
        key = generate_session_key(args.project, args.iid, args.owner)
        provider = cast(ProviderId | None, args.provider)
        if manager.remove_session(key, provider):
            print(f"Removed session {key}.")
        else:
            print(f"No session found for {key}.")
        return

    raise RuntimeError(f"Unknown sessions command: {args.sessions_command}")


def _cmd_sessions_list(manager: SessionManager, *, as_json: bool) -> None:
    sessions = manager.list_sessions()
    if as_json:
        payload = [
            {
                "issue_key": session.issue_key,
                "project_id": session.project_id,
                "issue_iid": session.issue_iid,
                "last_provider": session.last_provider,
                "providers": sorted(session.provider_sessions),
                "last_used": session.last_used.isoformat(),
                "branch_name": session.branch_name,
                "merge_request_url": session.merge_request_url,
                "spec_kit_stage": session.spec_kit_stage,
            }
            for session in sessions
        ]
        print(json.dumps(payload, indent=2))
        return

    if not sessions:
        print("No sessions.")
        return
    for session in sessions:
        providers = ",".join(sorted(session.provider_sessions))
        print(
            f"{session.issue_key} provider={session.last_provider} providers={providers} "
            f"last_used={session.last_used.isoformat()}"
        )
        if session.branch_name:
            print(f"branch={session.branch_name}")
        if session.merge_request_url:
            print(f"merge_request={session.merge_request_url}")
        print()


def _cmd_check(config: AppConfig) -> None:
    registry = _build_registry(config)
    executor = StreamingExecutor(
        registry,
        GitWorkspaceManager(config),
        health_check_timeout_seconds=config.ai.health_check_timeout_seconds,
    )
    failures: list[str] = []
    for provider in registry.providers():
        adapter = registry.get(provider)
        try:
            executor.check_availability(adapter)
        except ExecutionFailed as exc:
            failures.append(str(exc))
            print(f"{provider}: unavailable ({exc})")
        else:
            print(f"{provider}: ok ({adapter.binary})")
    print(f"base_dir={config.runtime.base_dir}")
    print(f"default_executor={config.ai.executor}")
    print(f"code_review_executor={config.ai.code_review_executor}")
    print(f"sessions_enabled={config.session.enabled}")
    if failures:
        raise SystemExit(1)


def _build_registry(config: AppConfig) -> AdapterRegistry:
    return AdapterRegistry([ClaudeAdapter(config.ai.claude), CodexAdapter(config.ai.codex)])


def _build_session_manager(config: AppConfig) -> SessionManager:
    return SessionManager(
        FileSessionStore(config.session_storage_path),
        max_idle_seconds=config.session.max_idle_time_seconds,
        max_sessions=config.session.max_sessions,
    )


def _build_processor(config: AppConfig, sessions: SessionManager | None) -> EventProcessor:
    gitlab = GitLabGateway(host=config.gitlab.host)
    workspace = GitWorkspaceManager(config)
    executor = StreamingExecutor(
        _build_registry(config),
        workspace,
        health_check_timeout_seconds=config.ai.health_check_timeout_seconds,
        prompt_dir=config.runtime.prompt_dir,
    )
    return EventProcessor(
        config,
        gitlab=gitlab,
        workspace=workspace,
        executor=executor,
        sessions=sessions,
        code_review=CodeReviewService(gitlab),
        locks=IssueLockTable(),
    )


def _format_optional(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"
