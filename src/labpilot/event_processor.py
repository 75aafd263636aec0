from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import partial
import logging
from pathlib import Path
import time

from labpilot.code_review import CodeReviewService, build_code_review_context, parse_code_review_output
from labpilot.comments import (
    StageDocument,
    SuccessSummary,
    append_progress_message,
    build_change_summary,
    render_failure_comment,
    render_progress_report,
    render_success_comment,
    summarize_output,
    truncate_text,
)
from labpilot.config import AppConfig
from labpilot.diff_parser import (
    count_line_changes,
    filter_lines_needing_review,
    get_reviewable_lines,
    map_diffs_to_file_changes,
    parse_merge_request_diffs,
)
from labpilot.executor import (
    ExecutionResult,
    ProgressCallback,
    StreamingExecutor,
    is_recoverable_session_error,
)
from labpilot.gitlab_gateway import GitLabGateway, find_note_in_discussions
from labpilot.issue_locks import IssueLockTable
from labpilot.merge_requests import (
    MergeRequestText,
    append_summary_to_description,
    build_code_change_summary_text,
    build_merge_request_title,
    generate_branch_name,
    generate_merge_request_text,
)
from labpilot.models import (
    FileChange,
    Instruction,
    MergeRequestRef,
    ProcessEventResult,
    ProviderId,
    Scenario,
    Session,
    SessionMetadata,
    SpecStage,
    Tenant,
    WebhookEvent,
)
from labpilot.observability import log_event, log_warning_event
from labpilot.prompts import (
    build_code_review_prompt,
    build_conflict_resolution_prompt,
    load_review_guidelines,
)
from labpilot.provider_adapter import ExecutionContext, ExecutionOptions
from labpilot.session_manager import (
    SessionManager,
    generate_session_key,
    owner_from_session_key,
)
from labpilot.webhook import (
    DEFAULT_MENTION_COMMAND,
    extract_ai_instruction,
    is_self_authored,
    should_trigger_default_code_review,
)
from labpilot.workspace import GitWorkspaceManager


LOGGER = logging.getLogger("labpilot.event_processor")

MAX_CONFLICT_RESOLUTION_ATTEMPTS = 1
SNIPPET_RADIUS = 5
_MR_DESCRIPTION_EXCERPT = 200
_TASK_PREVIEW = 100
_SPECS_PREFIX = "specs/"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EventContext:
    """Mutable state for one event, created per call and never shared."""

    event: WebhookEvent
    current_comment_id: int | None = None
    progress_discussion_id: str | None = None
    discussion_id: str | None = None
    discussion_note_id: int | None = None
    discussion_resolvable: bool = False
    discussion_reply_succeeded: bool = False
    executor_name: str = "AI"
    progress_messages: list[str] = field(default_factory=list)
    thread_context: str | None = None
    thread_context_loaded: bool = False

    def clear_discussion(self) -> None:
        self.discussion_id = None
        self.discussion_note_id = None
        self.discussion_resolvable = False
        self.discussion_reply_succeeded = False
        self.thread_context = None


@dataclass(frozen=True)
class _SessionHandle:
    key: str
    manager: SessionManager


@dataclass(frozen=True)
class _SessionRun:
    handle: _SessionHandle
    provider: ProviderId
    session_id: str | None
    existing: Session | None
    has_existing_session: bool


@dataclass(frozen=True)
class _PublishedChanges:
    branch_name: str | None
    merge_request_iid: int | None
    merge_request_url: str | None


class _CommentProgressCallback(ProgressCallback):
    def __init__(self, update: Callable[[str, bool, bool], None]) -> None:
        self._update = update

    def on_progress(self, message: str, *, is_complete: bool = False) -> None:
        self._update(message, is_complete, False)

    def on_error(self, message: str) -> None:
        self._update(message, True, True)


def is_issue_scenario(event: WebhookEvent) -> bool:
    if event.kind == "issue":
        return True
    return event.kind == "note" and event.noteable_kind == "issue"


def read_file_snippet(
    workspace: Path, relative_path: str, line_number: int | None, *, radius: int = SNIPPET_RADIUS
) -> str | None:
    """Return numbered lines around ``line_number``, or the head of the file."""
    root = workspace.resolve()
    path = (workspace / relative_path).resolve()
    if root != path and root not in path.parents:
        return None
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as exc:
        log_warning_event(
            LOGGER,
            "code_snippet_read_failed",
            relative_path=relative_path,
            error_type=type(exc).__name__,
        )
        return None
    if not lines:
        return None
    if line_number is None or line_number <= 0 or line_number > len(lines):
        start, end = 0, min(len(lines), radius * 2 + 1)
    else:
        start = max(0, line_number - 1 - radius)
        end = min(len(lines), line_number + radius)
    return "\n".join(f"{index + 1}: {lines[index]}" for index in range(start, end))


class EventProcessor:
    def __init__(
        self,
        config: AppConfig,
        *,
        gitlab: GitLabGateway,
        workspace: GitWorkspaceManager,
        executor: StreamingExecutor,
        sessions: SessionManager | None,
        code_review: CodeReviewService,
        locks: IssueLockTable | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._gitlab = gitlab
        self._workspace = workspace
        self._executor = executor
        self._sessions = sessions
        self._code_review = code_review
        self._locks = locks or IssueLockTable()
        self._sleep = sleep
        self._clock = clock
        self._monotonic = monotonic

    @property
    def locks(self) -> IssueLockTable:
        return self._locks

    def process_event(self, event: WebhookEvent, tenant: Tenant | None = None) -> ProcessEventResult:
        started = self._monotonic()
        ctx = EventContext(event=event)
        try:
            if is_self_authored(event, bot_username=self._config.gitlab.bot_username):
                log_event(LOGGER, "event_ignored", reason="self_authored", kind=event.kind)
                return ProcessEventResult(status="ignored", execution_time_ms=self._elapsed_ms(started))

            issue_key = self._issue_key(event, tenant)
            existing = (
                self._sessions.peek_session(issue_key)
                if self._sessions is not None and issue_key is not None
                else None
            )
            instruction = self._extract_instruction(ctx, existing)
            if instruction is None:
                log_event(
                    LOGGER,
                    "event_ignored",
                    reason="no_instruction",
                    kind=event.kind,
                    project_id=event.project.project_id,
                )
                return ProcessEventResult(status="ignored", execution_time_ms=self._elapsed_ms(started))

            log_event(
                LOGGER,
                "instruction_extracted",
                kind=event.kind,
                project_id=event.project.project_id,
                iid=event.target_iid,
                provider=instruction.provider,
                scenario=instruction.scenario,
                spec_kit_command=instruction.spec_kit_command,
                command=instruction.command[:80],
            )
            handle = (
                _SessionHandle(key=issue_key, manager=self._sessions)
                if self._sessions is not None and issue_key is not None
                else None
            )
            if issue_key is None:
                self._dispatch(ctx, instruction, handle)
            else:
                with self._locks.hold(issue_key):
                    self._dispatch(ctx, instruction, handle)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "event_processing_failed",
                kind=event.kind,
                project_id=event.project.project_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._report_error(ctx, exc)
            return ProcessEventResult(
                status="error",
                execution_time_ms=self._elapsed_ms(started),
                error=str(exc),
            )

        elapsed = self._elapsed_ms(started)
        log_event(LOGGER, "event_processed", kind=event.kind, execution_time_ms=elapsed)
        return ProcessEventResult(status="processed", execution_time_ms=elapsed)

    def _issue_key(self, event: WebhookEvent, tenant: Tenant | None) -> str | None:
        iid = event.target_iid
        if iid is None:
            return None
        return generate_session_key(
            event.project.project_id, iid, tenant.user_id if tenant is not None else None
        )

    def _extract_instruction(self, ctx: EventContext, existing: Session | None) -> Instruction | None:
        event = ctx.event
        project = event.project
        if event.kind == "issue" and event.issue is not None:
            content = event.issue.description
            context = f"Issue #{event.issue.iid}: {event.issue.title}"
            branch = project.default_branch
        elif event.kind == "merge_request" and event.merge_request is not None:
            content = event.merge_request.description
            context = self._merge_request_context(project.project_id, event.merge_request)
            branch = event.merge_request.source_branch
        elif event.kind == "note" and event.note is not None:
            content = event.note.body
            ctx.discussion_id = event.note.discussion_id
            ctx.discussion_note_id = event.note.note_id
            if event.note.noteable_type == "issue" and event.issue is not None:
                context = content.strip() or content
                branch = project.default_branch
            elif event.merge_request is not None:
                context = self._merge_request_context(project.project_id, event.merge_request)
                branch = event.merge_request.source_branch
            else:
                return None
            if ctx.discussion_id:
                thread_context = self._thread_context(ctx)
                if thread_context:
                    context = f"{context}\n\n{thread_context}"
        else:
            return None

        resolved_branch = (
            existing.base_branch if existing is not None and existing.base_branch else None
        ) or branch or project.default_branch
        default_scenario: Scenario = "issue-session" if is_issue_scenario(event) else "mr-fix"
        extracted = extract_ai_instruction(content, default_provider=self._config.ai.executor)

        if extracted is None:
            if existing is not None and event.kind == "note" and is_issue_scenario(event):
                fallback = content.strip()
                if not fallback:
                    return None
                return Instruction(
                    command=fallback,
                    context=context,
                    branch=resolved_branch,
                    provider=existing.last_provider,
                    scenario=default_scenario,
                    full_context=content,
                )
            if event.kind == "merge_request" and should_trigger_default_code_review(
                event.merge_request, target_branch=self._config.gitlab.code_review_target_branch
            ):
                return Instruction(
                    command=DEFAULT_MENTION_COMMAND,
                    context=context,
                    branch=resolved_branch,
                    provider=self._config.ai.code_review_executor,
                    scenario="code-review",
                    full_context=content,
                )
            return None

        return Instruction(
            command=extracted.command,
            context=context,
            branch=resolved_branch,
            provider=extracted.provider,
            scenario=extracted.scenario or default_scenario,
            full_context=extracted.full_context,
            spec_kit_command=extracted.spec_kit_command,
        )

    def _thread_context(self, ctx: EventContext) -> str | None:
        if ctx.thread_context_loaded:
            return ctx.thread_context
        ctx.thread_context_loaded = True
        event = ctx.event
        target = event.note_target
        if target is None or event.note is None:
            return None
        try:
            discussions = self._gitlab.list_discussions(event.project.project_id, target)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "thread_context_failed",
                project_id=event.project.project_id,
                iid=target.iid,
                error_type=type(exc).__name__,
            )
            return None
        location = find_note_in_discussions(discussions, event.note.note_id)
        if location is None:
            ctx.discussion_resolvable = False
            ctx.discussion_reply_succeeded = False
            ctx.thread_context = None
            return None
        ctx.discussion_id = location.discussion.discussion_id
        ctx.discussion_resolvable = location.discussion.resolvable and not location.discussion.resolved
        ctx.discussion_note_id = location.note.note_id
        ctx.thread_context = location.thread_context
        return ctx.thread_context

    def _merge_request_context(self, project_id: int, merge_request: MergeRequestRef) -> str:
        lines = [f"MR #{merge_request.iid}: {merge_request.title}", ""]
        description = merge_request.description.strip()
        if description:
            if len(merge_request.description) > _MR_DESCRIPTION_EXCERPT:
                excerpt = f"{merge_request.description[:_MR_DESCRIPTION_EXCERPT]}..."
            else:
                excerpt = merge_request.description
            lines.extend([f"**Description:** {excerpt}", ""])
        lines.append(f"**Source Branch:** {merge_request.source_branch}")
        lines.append(f"**Target Branch:** {merge_request.target_branch}")
        try:
            snapshot = self._gitlab.get_merge_request(project_id, merge_request.iid)
            if snapshot.changes_count:
                lines.append(f"**Changes:** {snapshot.changes_count} files modified")
            additions, deletions = count_line_changes(
                self._gitlab.get_merge_request_diffs(project_id, merge_request.iid)
            )
            if additions or deletions:
                lines.append(f"**Additions:** +{additions}, **Deletions:** -{deletions}")
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "merge_request_details_unavailable",
                project_id=project_id,
                merge_request_iid=merge_request.iid,
                error_type=type(exc).__name__,
            )
        return "\n".join(lines).strip()

    def _dispatch(
        self, ctx: EventContext, instruction: Instruction, handle: _SessionHandle | None
    ) -> None:
        event = ctx.event
        ctx.executor_name = self._executor.display_name(instruction.provider)
        if event.kind == "merge_request":
            merge_request = event.merge_request
            if merge_request is not None and should_trigger_default_code_review(
                merge_request, target_branch=self._config.gitlab.code_review_target_branch
            ):
                self._handle_code_review(ctx, instruction, handle)
                return
            log_event(
                LOGGER,
                "merge_request_event_skipped",
                action=merge_request.action if merge_request is not None else None,
                target_branch=merge_request.target_branch if merge_request is not None else None,
            )
            return
        if event.kind == "note" and event.noteable_kind == "merge_request":
            self._handle_merge_request_comment(ctx, instruction, handle, retry_attempted=False)
            return
        if handle is None:
            self._handle_one_off_execution(ctx, instruction)
            return
        existing = handle.manager.get_session(handle.key)
        self._handle_session_execution(
            ctx, instruction, handle, existing=existing, retry_attempted=False
        )

    def _handle_session_execution(
        self,
        ctx: EventContext,
        instruction: Instruction,
        handle: _SessionHandle,
        *,
        existing: Session | None,
        retry_attempted: bool,
    ) -> None:
        event = ctx.event
        provider = instruction.provider
        ctx.executor_name = self._executor.display_name(provider)

        existing_session_id = self._resumable_session_id(handle, existing, provider)
        requires_new_session = existing_session_id is None
        session_text = (
            "new session" if existing_session_id is None else f"session {existing_session_id[:8]}..."
        )
        if ctx.current_comment_id is None:
            ctx.current_comment_id = self._create_progress_comment(
                ctx,
                f"🚀 {ctx.executor_name} is starting to work on your request ({session_text})...\n\n"
                f"**Task:** {truncate_text(instruction.command, _TASK_PREVIEW)}\n\n---\n\n⏳ Processing...",
            )
        else:
            self._update_progress(ctx, "Retrying with a new session...")

        base_branch = (
            existing.base_branch if existing is not None and existing.base_branch else None
        ) or instruction.branch or event.project.default_branch
        checkout_branch = (
            existing.branch_name if existing is not None and existing.branch_name else base_branch
        )
        iid = event.target_iid
        metadata = SessionMetadata(
            project_id=event.project.project_id,
            issue_iid=iid or 0,
            discussion_id=ctx.discussion_id,
            branch_name=existing.branch_name if existing is not None else None,
            base_branch=base_branch,
            merge_request_iid=existing.merge_request_iid if existing is not None else None,
            merge_request_url=existing.merge_request_url if existing is not None else None,
            owner_id=owner_from_session_key(handle.key),
        )

        work_dir = self._workspace.prepare_project(
            event.project,
            base_branch,
            workspace_id=handle.key,
            checkout_branch=checkout_branch,
        )
        if instruction.scenario == "spec-doc":
            self._prepare_spec_kit(ctx, work_dir)
        self._log_dispatch(ctx, instruction, action="session-execution")
        self._delay_before_dispatch()
        result = self._executor.execute_with_session(
            instruction.command,
            work_dir,
            self._execution_context(ctx, instruction, branch=checkout_branch),
            self._callback(ctx),
            ExecutionOptions(
                session_id=existing_session_id,
                is_new_session=requires_new_session,
                output_format="json",
            ),
        )

        if not result.success:
            if (
                existing_session_id is not None
                and not retry_attempted
                and is_recoverable_session_error(result.error)
            ):
                log_warning_event(
                    LOGGER,
                    "session_retry_scheduled",
                    issue_key=handle.key,
                    provider=provider,
                    session_id=existing_session_id,
                )
                handle.manager.remove_session(handle.key, provider)
                self._handle_session_execution(
                    ctx, instruction, handle, existing=existing, retry_attempted=True
                )
                return
            self._handle_failure(ctx, instruction, result)
            return

        if requires_new_session and result.session_id and iid is not None:
            handle.manager.set_session(handle.key, result.session_id, metadata, provider)

        self._handle_success(
            ctx,
            instruction,
            result,
            work_dir,
            base_branch=base_branch,
            run=_SessionRun(
                handle=handle,
                provider=provider,
                session_id=result.session_id or existing_session_id,
                existing=existing,
                has_existing_session=not requires_new_session,
            ),
        )

    def _handle_one_off_execution(self, ctx: EventContext, instruction: Instruction) -> None:
        event = ctx.event
        ctx.current_comment_id = self._create_progress_comment(
            ctx,
            f"🚀 {ctx.executor_name} is starting to work on your request...\n\n"
            f"**Task:** {truncate_text(instruction.command, _TASK_PREVIEW)}\n\n---\n\n⏳ Processing...",
        )
        base_branch = instruction.branch or event.project.default_branch
        work_dir = self._workspace.prepare_project(event.project, base_branch)
        try:
            if instruction.scenario == "spec-doc":
                self._prepare_spec_kit(ctx, work_dir)
            self._log_dispatch(ctx, instruction, action="one-off-execution")
            self._delay_before_dispatch()
            result = self._executor.execute_with_streaming(
                instruction.command,
                work_dir,
                self._execution_context(ctx, instruction, branch=base_branch),
                self._callback(ctx),
            )
            if result.success:
                self._handle_success(ctx, instruction, result, work_dir, base_branch=base_branch, run=None)
            else:
                self._handle_failure(ctx, instruction, result)
        finally:
            self._workspace.remove_workspace(work_dir)

    def _handle_success(
        self,
        ctx: EventContext,
        instruction: Instruction,
        result: ExecutionResult,
        work_dir: Path,
        *,
        base_branch: str,
        run: _SessionRun | None,
    ) -> None:
        existing = run.existing if run is not None else None
        active_stage: SpecStage | None = instruction.spec_kit_command or (
            existing.spec_kit_stage if existing is not None else None
        )
        branch_prefix = active_stage or (run.provider if run is not None else instruction.provider)
        warnings: list[str] = []
        published = _PublishedChanges(
            branch_name=existing.branch_name if existing is not None else None,
            merge_request_iid=existing.merge_request_iid if existing is not None else None,
            merge_request_url=existing.merge_request_url if existing is not None else None,
        )
        if run is None:
            session_mode = "none"
        elif run.has_existing_session:
            session_mode = "continuation"
        else:
            session_mode = "new"

        if result.changes:
            text = generate_merge_request_text(
                instruction=instruction.command,
                context=instruction.context,
                changes=result.changes,
                now=self._clock(),
            )
            if published.branch_name:
                published = self._push_existing_branch(
                    ctx, work_dir, text, published, base_branch=base_branch, warnings=warnings
                )
            else:
                published = self._push_new_branch(
                    ctx, work_dir, text, branch_prefix, base_branch=base_branch, warnings=warnings
                )
            iid = ctx.event.target_iid
            if run is not None and run.session_id and iid is not None:
                run.handle.manager.set_session(
                    run.handle.key,
                    run.session_id,
                    SessionMetadata(
                        project_id=ctx.event.project.project_id,
                        issue_iid=iid,
                        discussion_id=ctx.discussion_id,
                        branch_name=published.branch_name,
                        base_branch=base_branch,
                        merge_request_iid=published.merge_request_iid,
                        merge_request_url=published.merge_request_url,
                        owner_id=owner_from_session_key(run.handle.key),
                    ),
                    run.provider,
                )

        stage_documents: list[StageDocument] = []
        if active_stage is not None:
            candidates = [
                change.path
                for change in result.changes
                if change.change_type != "deleted" and _is_spec_document(change.path)
            ]
            stage_documents = self._read_stage_documents(work_dir, candidates)
            if not stage_documents and existing is not None:
                stored = existing.spec_kit_documents.get(active_stage, ())
                stage_documents = self._read_stage_documents(
                    work_dir, [path for path in stored if _is_spec_document(path)]
                )
            if run is not None:
                run.handle.manager.update_spec_kit_state(
                    run.handle.key, active_stage, [document.path for document in stage_documents]
                )

        body = render_success_comment(
            SuccessSummary(
                command=instruction.command,
                changes=result.changes,
                session_mode=session_mode,
                base_branch=base_branch,
                output=result.output,
                branch_name=published.branch_name,
                merge_request_url=published.merge_request_url,
                merge_request_iid=published.merge_request_iid,
                warnings=tuple(warnings),
                spec_kit_stage=active_stage,
                stage_documents=tuple(stage_documents),
            )
        )
        self._post_comment(ctx, body)
        self._resolve_discussion_if_needed(ctx)

    def _push_new_branch(
        self,
        ctx: EventContext,
        work_dir: Path,
        text: MergeRequestText,
        branch_prefix: str,
        *,
        base_branch: str,
        warnings: list[str],
    ) -> _PublishedChanges:
        project_id = ctx.event.project.project_id
        branch = generate_branch_name(branch_prefix, now=self._clock())
        try:
            self._gitlab.create_branch(project_id, branch, base_branch)
            self._update_progress(ctx, f"Created branch: {branch}")
            self._workspace.switch_to_and_push_branch(work_dir, branch, text.commit_message)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "branch_publish_failed",
                project_id=project_id,
                branch=branch,
                error_type=type(exc).__name__,
            )
            warnings.append(f"Pushing to a new branch failed: {exc}")
            return _PublishedChanges(branch_name=None, merge_request_iid=None, merge_request_url=None)
        return self._open_merge_request(
            ctx, text, branch=branch, base_branch=base_branch, warnings=warnings
        )

    def _push_existing_branch(
        self,
        ctx: EventContext,
        work_dir: Path,
        text: MergeRequestText,
        published: _PublishedChanges,
        *,
        base_branch: str,
        warnings: list[str],
    ) -> _PublishedChanges:
        branch = published.branch_name or base_branch
        self._update_progress(ctx, f"Updating branch: {branch}")
        try:
            self._workspace.commit_and_push(work_dir, text.commit_message, branch)
        except Exception as exc:  # noqa: BLE001
            warnings.append(f"Pushing to the existing branch failed: {exc}")
        if published.merge_request_iid is not None:
            return published
        return self._open_merge_request(
            ctx, text, branch=branch, base_branch=base_branch, warnings=warnings
        )

    def _open_merge_request(
        self,
        ctx: EventContext,
        text: MergeRequestText,
        *,
        branch: str,
        base_branch: str,
        warnings: list[str],
    ) -> _PublishedChanges:
        project = ctx.event.project
        try:
            created = self._gitlab.create_merge_request(
                project.project_id,
                source_branch=branch,
                target_branch=base_branch,
                title=text.title,
                description=text.description,
            )
        except Exception as exc:  # noqa: BLE001
            warnings.append(f"Merge request creation failed: {exc}")
            return _PublishedChanges(branch_name=branch, merge_request_iid=None, merge_request_url=None)
        url = created.web_url or f"{project.web_url}/-/merge_requests/{created.iid}"
        self._update_progress(ctx, f"Created merge request: {url}")
        return _PublishedChanges(branch_name=branch, merge_request_iid=created.iid, merge_request_url=url)

    def _handle_merge_request_comment(
        self,
        ctx: EventContext,
        instruction: Instruction,
        handle: _SessionHandle | None,
        *,
        retry_attempted: bool,
    ) -> None:
        event = ctx.event
        merge_request = event.merge_request
        if merge_request is None:
            log_warning_event(LOGGER, "merge_request_comment_without_merge_request")
            return
        source_branch = merge_request.source_branch
        provider = instruction.provider
        ctx.executor_name = self._executor.display_name(provider)
        if ctx.current_comment_id is None:
            ctx.current_comment_id = self._create_progress_comment(
                ctx,
                f"🔧 {ctx.executor_name} is working on your code changes in branch `{source_branch}`...\n\n"
                f"**Task:** {truncate_text(instruction.command, _TASK_PREVIEW)}\n\n---\n\n⏳ Processing...",
            )
        else:
            self._update_progress(ctx, "Retrying with a new session...")

        existing = handle.manager.get_session(handle.key) if handle is not None else None
        existing_session_id = (
            self._resumable_session_id(handle, existing, provider) if handle is not None else None
        )
        work_dir = self._workspace.prepare_project(
            event.project,
            source_branch,
            workspace_id=_merge_request_workspace_id(event.project.project_id, merge_request.iid),
            checkout_branch=source_branch,
        )
        requested = instruction
        enriched = self._merge_request_comment_context(ctx, instruction.context, work_dir)
        if enriched:
            instruction = replace(
                instruction,
                context=enriched,
                full_context=(
                    f"{instruction.full_context}\n\n{enriched}" if instruction.full_context else enriched
                ),
            )

        execution_context = self._execution_context(ctx, instruction, branch=source_branch, scenario="mr-fix")
        self._log_dispatch(ctx, instruction, action="mr-comment")
        self._delay_before_dispatch()
        if handle is not None:
            result = self._executor.execute_with_session(
                instruction.command,
                work_dir,
                execution_context,
                self._callback(ctx),
                ExecutionOptions(
                    session_id=existing_session_id,
                    is_new_session=existing_session_id is None,
                    output_format="json",
                ),
            )
        else:
            result = self._executor.execute_with_streaming(
                instruction.command, work_dir, execution_context, self._callback(ctx)
            )

        if not result.success:
            if (
                handle is not None
                and existing_session_id is not None
                and not retry_attempted
                and is_recoverable_session_error(result.error)
            ):
                log_warning_event(
                    LOGGER,
                    "session_retry_scheduled",
                    issue_key=handle.key,
                    provider=provider,
                    session_id=existing_session_id,
                )
                handle.manager.remove_session(handle.key, provider)
                self._handle_merge_request_comment(ctx, requested, handle, retry_attempted=True)
                return
            self._handle_failure(ctx, instruction, result)
            return

        session_id = result.session_id or existing_session_id
        if handle is not None and session_id:
            handle.manager.set_session(
                handle.key,
                session_id,
                SessionMetadata(
                    project_id=event.project.project_id,
                    issue_iid=merge_request.iid,
                    discussion_id=ctx.discussion_id,
                    branch_name=source_branch,
                    base_branch=source_branch,
                    merge_request_iid=merge_request.iid,
                    merge_request_url=merge_request.url
                    or f"{event.project.web_url}/-/merge_requests/{merge_request.iid}",
                    owner_id=owner_from_session_key(handle.key),
                ),
                provider,
            )

        lines = [f"✅ {ctx.executor_name} completed the changes in branch `{source_branch}`.", ""]
        summary_lines = build_change_summary(result.changes)
        output_summary = summarize_output(result.output)
        if output_summary:
            summary_lines.append(f"- {output_summary}")
        if summary_lines:
            lines.extend(["**Summary:**", *summary_lines, ""])
        if result.changes:
            lines.append(f"**Changed branch: `{source_branch}`**")
            lines.extend(f"- {change.change_type}: `{change.path}`" for change in result.changes)
            lines.append("")
            lines.extend(
                self._push_merge_request_changes(
                    ctx,
                    instruction,
                    work_dir,
                    source_branch,
                    handle=handle,
                    session_id=session_id,
                    provider=provider,
                )
            )
        else:
            lines.append("📋 No file changes were made.")
        self._post_comment(ctx, "\n".join(lines).rstrip())
        self._resolve_discussion_if_needed(ctx)

    def _push_merge_request_changes(
        self,
        ctx: EventContext,
        instruction: Instruction,
        work_dir: Path,
        source_branch: str,
        *,
        handle: _SessionHandle | None,
        session_id: str | None,
        provider: ProviderId,
    ) -> list[str]:
        self._update_progress(ctx, f"Committing changes to `{source_branch}`...")
        commit_message = truncate_text(instruction.command.strip(), 72) or "Apply requested changes"
        try:
            outcome = self._workspace.commit_and_push_changes(work_dir, commit_message)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "merge_request_push_failed",
                branch=source_branch,
                error_type=type(exc).__name__,
            )
            return [f"⚠️ **Note:** Changes were made but could not be pushed to `{source_branch}`: {exc}"]

        if outcome.success:
            if outcome.rebased:
                self._update_progress(
                    ctx,
                    f"Successfully pushed changes to `{source_branch}` after rebasing onto the latest upstream.",
                )
            else:
                self._update_progress(ctx, f"Successfully pushed changes to `{source_branch}`.")
            lines = [f"🔄 **Changes have been pushed to `{source_branch}`**"]
            if outcome.rebased:
                lines.append("`git pull --rebase` ran automatically to pick up the latest remote commits.")
            lines.append("The merge request will update automatically with your changes.")
            return lines

        if outcome.conflicts:
            self._update_progress(
                ctx,
                f"⚠️ Push failed: `git pull --rebase` stopped with conflicts in "
                f"{len(outcome.conflicts)} file(s).",
            )
            resolved = self._resolve_push_conflicts(
                ctx,
                instruction,
                work_dir,
                source_branch,
                outcome.conflicts,
                handle=handle,
                session_id=session_id,
                provider=provider,
            )
            if resolved:
                return [
                    "🛠️ **Remote updates were merged automatically**",
                    "The rebase conflicts were resolved and the branch was pushed.",
                ]
            return [
                "⚠️ **Note:** The remote branch has new commits and automatic conflict resolution "
                "failed. Please resolve these files manually:",
                *(f"- {path}" for path in outcome.conflicts),
            ]

        error = outcome.error or "Unknown git error"
        return [f"⚠️ **Note:** Changes were made but pushing to `{source_branch}` failed: {error}"]

    def _resolve_push_conflicts(
        self,
        ctx: EventContext,
        instruction: Instruction,
        work_dir: Path,
        source_branch: str,
        conflicts: Sequence[str],
        *,
        handle: _SessionHandle | None,
        session_id: str | None,
        provider: ProviderId,
    ) -> bool:
        if handle is None:
            log_warning_event(LOGGER, "conflict_resolution_skipped", reason="no_session")
            return False
        if session_id is None:
            entry = handle.manager.get_provider_session(handle.key, provider)
            if entry is not None:
                session_id = entry.session_id

        remaining = tuple(conflicts)
        for attempt in range(1, MAX_CONFLICT_RESOLUTION_ATTEMPTS + 1):
            conflict_list = "\n".join(f"- {path}" for path in remaining)
            self._update_progress(
                ctx, f"⚙️ Attempting to resolve conflicts automatically.\nConflicting files:\n{conflict_list}"
            )
            prompt = build_conflict_resolution_prompt(branch=source_branch, conflicts=remaining)
            conflict_instruction = replace(
                instruction, context=f"{instruction.context}\n\nConflicting files:\n{conflict_list}"
            )
            self._log_dispatch(ctx, conflict_instruction, action="conflict-resolution")
            self._delay_before_dispatch()
            result = self._executor.execute_with_session(
                prompt,
                work_dir,
                self._execution_context(ctx, conflict_instruction, branch=source_branch, scenario="mr-fix"),
                self._callback(ctx),
                ExecutionOptions(
                    session_id=session_id,
                    is_new_session=session_id is None,
                    output_format="json",
                ),
            )
            if not result.success:
                self._update_progress(
                    ctx, "❌ Automatic conflict resolution failed. Resolve the conflicts manually and try again."
                )
                log_warning_event(
                    LOGGER, "conflict_resolution_failed", branch=source_branch, attempt=attempt
                )
                return False
            session_id = result.session_id or session_id

            outcome = self._workspace.push_after_conflict_resolution(work_dir)
            if outcome.success:
                self._update_progress(ctx, f"✅ Conflicts resolved and pushed to `{source_branch}`.")
                log_event(
                    LOGGER, "conflict_resolution_succeeded", branch=source_branch, attempt=attempt
                )
                return True
            if outcome.conflicts:
                remaining = outcome.conflicts
                still = "\n".join(f"- {path}" for path in remaining)
                self._update_progress(
                    ctx, f"⚠️ Automatic conflict resolution left conflicting files:\n{still}"
                )
            else:
                self._update_progress(
                    ctx,
                    f"⚠️ Push still failed after resolving conflicts: {outcome.error or 'unknown error'}",
                )
        log_warning_event(
            LOGGER,
            "conflict_resolution_failed",
            branch=source_branch,
            attempt=MAX_CONFLICT_RESOLUTION_ATTEMPTS,
        )
        return False

    def _merge_request_comment_context(
        self, ctx: EventContext, base_context: str, work_dir: Path
    ) -> str:
        note = ctx.event.note
        sections: list[str] = []
        if base_context.strip():
            sections.append(base_context.strip())
        if note is None:
            return "\n\n".join(sections)

        file_path = note.position.new_path if note.position is not None else None
        line_number = note.position.new_line if note.position is not None else None
        comment_lines: list[str] = []
        if file_path:
            location = f"{file_path}:{line_number}" if line_number else file_path
            comment_lines.append(f"File: {location}")
        if note.url:
            comment_lines.append(f"Comment link: {note.url}")
        if note.body.strip():
            comment_lines.append(f"Comment: {note.body.strip()}")
        if comment_lines:
            sections.append("**Comment Context:**\n" + "\n".join(comment_lines))
        if ctx.thread_context and ctx.thread_context.strip() not in base_context:
            sections.append(ctx.thread_context.strip())
        if file_path:
            snippet = read_file_snippet(work_dir, file_path, line_number)
            if snippet:
                header = f"{file_path}:{line_number}" if line_number else file_path
                sections.append(f"**Code snippet ({header})**\n\n```\n{snippet}\n```")
        return "\n\n".join(sections)

    def _handle_code_review(
        self, ctx: EventContext, instruction: Instruction, handle: _SessionHandle | None
    ) -> None:
        event = ctx.event
        merge_request = event.merge_request
        if merge_request is None:
            log_warning_event(LOGGER, "code_review_without_merge_request")
            return
        project_id = event.project.project_id
        provider = instruction.provider
        ctx.executor_name = self._executor.display_name(provider)

        existing = handle.manager.get_session(handle.key) if handle is not None else None
        existing_session_id = (
            self._resumable_session_id(handle, existing, provider) if handle is not None else None
        )
        session_text = (
            "new session" if existing_session_id is None else f"session {existing_session_id[:8]}..."
        )
        ctx.current_comment_id = self._create_progress_comment(
            ctx,
            f"🔍 {ctx.executor_name} is starting code review ({session_text})...\n\n"
            f"**Task:** {instruction.command}\n\n---\n\n⏳ Analyzing changes...",
        )

        try:
            self._update_progress(ctx, "Fetching merge request diffs...")
            diffs = self._gitlab.get_merge_request_diffs(project_id, merge_request.iid)
            snapshot = self._gitlab.get_merge_request(project_id, merge_request.iid)
            summary_changes = map_diffs_to_file_changes(diffs)
            base_branch = instruction.branch or merge_request.source_branch
            work_dir = self._workspace.prepare_project(
                event.project,
                base_branch,
                workspace_id=_merge_request_workspace_id(project_id, merge_request.iid),
                checkout_branch=base_branch,
            )
            self._update_progress(ctx, f"Found {len(diffs)} changed files")

            parsed_diff = parse_merge_request_diffs(diffs, snapshot.diff_refs)
            lines = filter_lines_needing_review(get_reviewable_lines(parsed_diff))
            self._update_progress(ctx, f"Identified {len(lines)} lines for review")

            if not lines:
                self._update_progress(ctx, "No significant changes found to review", is_complete=True)
                self._post_comment(
                    ctx, "✅ Code review completed. No significant issues found in the changes."
                )
                self._ensure_merge_request_title(
                    ctx, merge_request.iid, snapshot.title, instruction, summary_changes, None
                )
                self._append_review_summary(
                    ctx, merge_request.iid, summary_changes, build_code_change_summary_text(summary_changes)
                )
                return

            review_context = build_code_review_context(parsed_diff, lines)
            self._update_progress(ctx, f"Sending code to {ctx.executor_name} for analysis...")
            prompt = build_code_review_prompt(
                command=instruction.command,
                review_context=review_context,
                guidelines=load_review_guidelines(work_dir, self._config.runtime.review_guidelines_path),
                full_context=instruction.full_context,
                merge_request_title=snapshot.title,
                source_branch=merge_request.source_branch,
            )

            metadata = SessionMetadata(
                project_id=project_id,
                issue_iid=merge_request.iid,
                discussion_id=ctx.discussion_id,
                branch_name=base_branch,
                base_branch=base_branch,
                merge_request_iid=merge_request.iid,
                merge_request_url=merge_request.url or snapshot.web_url or None,
                owner_id=owner_from_session_key(handle.key) if handle is not None else None,
            )
            execution_context = self._execution_context(
                ctx, instruction, branch=base_branch, scenario="code-review"
            )
            self._log_dispatch(ctx, instruction, action="code-review")
            self._delay_before_dispatch()
            if handle is not None:
                result = self._executor.execute_with_session(
                    prompt,
                    work_dir,
                    execution_context,
                    self._callback(ctx),
                    ExecutionOptions(
                        session_id=existing_session_id,
                        is_new_session=existing_session_id is None,
                        output_format="json",
                    ),
                )
            else:
                result = self._executor.execute_with_streaming(
                    prompt, work_dir, execution_context, self._callback(ctx)
                )

            if not (result.success and result.output):
                self._ensure_merge_request_title(
                    ctx, merge_request.iid, snapshot.title, instruction, summary_changes, None
                )
                self._handle_failure(ctx, instruction, result)
                return

            if handle is not None:
                session_id = result.session_id or existing_session_id
                if session_id:
                    handle.manager.set_session(handle.key, session_id, metadata, provider)

            self._update_progress(ctx, "Processing review comments...")
            review = parse_code_review_output(result.output)
            summary_text = review.summary_text or build_code_change_summary_text(summary_changes)
            self._ensure_merge_request_title(
                ctx,
                merge_request.iid,
                snapshot.title,
                instruction,
                summary_changes,
                review.summary.title if review.summary is not None else None,
            )
            if review.comments:
                self._update_progress(ctx, f"Creating {len(review.comments)} inline comments...")
                outcome = self._code_review.perform_inline_review(
                    project_id=project_id,
                    merge_request_iid=merge_request.iid,
                    parsed_diff=parsed_diff,
                    comments=review.comments,
                )
                self._update_progress(ctx, "Code review completed!", is_complete=True)
                message = (
                    f"✅ Code review completed! Created {outcome.placed} inline comments. "
                    "Please review the suggestions."
                )
                if outcome.rerouted:
                    message += f"\n\n{outcome.rerouted} comment(s) could not be placed on the diff and were posted as a general comment."
                self._post_comment(ctx, message)
            else:
                self._update_progress(ctx, "No specific issues found", is_complete=True)
                self._post_comment(ctx, "✅ Code review completed. No specific issues found in the changes.")
            self._append_review_summary(ctx, merge_request.iid, summary_changes, summary_text)
            log_event(
                LOGGER,
                "code_review_completed",
                project_id=project_id,
                merge_request_iid=merge_request.iid,
                comment_count=len(review.comments),
                has_summary=review.summary is not None,
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "code_review_failed",
                project_id=project_id,
                merge_request_iid=merge_request.iid,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._update_progress(ctx, f"Error: {exc}", is_complete=True, is_error=True)
            self._report_error(ctx, exc)

    def _ensure_merge_request_title(
        self,
        ctx: EventContext,
        merge_request_iid: int,
        current_title: str,
        instruction: Instruction,
        changes: Sequence[FileChange],
        suggested_title: str | None,
    ) -> None:
        desired = (suggested_title or "").strip() or build_merge_request_title(
            command=instruction.command, context=instruction.context, changes=changes
        )
        if not desired or desired == current_title.strip():
            log_event(LOGGER, "merge_request_title_unchanged", merge_request_iid=merge_request_iid)
            return
        try:
            self._gitlab.update_merge_request(
                ctx.event.project.project_id, merge_request_iid, title=desired
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "merge_request_title_update_failed",
                merge_request_iid=merge_request_iid,
                error_type=type(exc).__name__,
            )

    def _append_review_summary(
        self,
        ctx: EventContext,
        merge_request_iid: int,
        changes: Sequence[FileChange],
        summary_text: str | None,
    ) -> None:
        if not changes or not summary_text:
            return
        project_id = ctx.event.project.project_id
        try:
            current = self._gitlab.get_merge_request(project_id, merge_request_iid)
            self._gitlab.update_merge_request(
                project_id,
                merge_request_iid,
                description=append_summary_to_description(current.description, summary_text),
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "merge_request_summary_update_failed",
                merge_request_iid=merge_request_iid,
                error_type=type(exc).__name__,
            )

    def _prepare_spec_kit(self, ctx: EventContext, work_dir: Path) -> None:
        preparation = self._workspace.prepare_spec_kit_workspace(work_dir)
        if preparation.initialized:
            self._update_progress(ctx, "🧰 Spec Kit initialized in the workspace")
        if preparation.warning:
            self._update_progress(ctx, f"⚠️ {preparation.warning}")

    def _read_stage_documents(self, work_dir: Path, paths: Sequence[str]) -> list[StageDocument]:
        documents: list[StageDocument] = []
        seen: set[str] = set()
        for relative_path in paths:
            if not relative_path or relative_path in seen:
                continue
            seen.add(relative_path)
            try:
                content = (work_dir / relative_path).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                log_warning_event(
                    LOGGER,
                    "stage_document_read_failed",
                    relative_path=relative_path,
                    error_type=type(exc).__name__,
                )
                continue
            documents.append(StageDocument(path=relative_path, content=content))
        return documents

    def _handle_failure(self, ctx: EventContext, instruction: Instruction, result: ExecutionResult) -> None:
        log_warning_event(
            LOGGER,
            "instruction_failed",
            project_id=ctx.event.project.project_id,
            provider=instruction.provider,
            error=result.error,
        )
        self._post_comment(ctx, render_failure_comment(command=instruction.command, error=result.error))

    def _report_error(self, ctx: EventContext, error: Exception) -> None:
        body = render_failure_comment(
            command=f"{ctx.executor_name} internal error",
            error=f"{type(error).__name__}: {error}",
        )
        try:
            self._post_comment(ctx, body)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "error_report_failed",
                project_id=ctx.event.project.project_id,
                error_type=type(exc).__name__,
            )

    def _create_progress_comment(self, ctx: EventContext, message: str) -> int | None:
        event = ctx.event
        target = event.note_target
        if target is None:
            return None
        project_id = event.project.project_id
        if ctx.discussion_id:
            try:
                note_id = self._gitlab.reply_to_discussion(project_id, target, ctx.discussion_id, message)
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "discussion_reply_failed",
                    purpose="progress",
                    discussion_id=ctx.discussion_id,
                    error_type=type(exc).__name__,
                )
                ctx.clear_discussion()
            else:
                ctx.discussion_note_id = note_id
                ctx.progress_discussion_id = ctx.discussion_id
                return note_id
        try:
            note_id = self._gitlab.create_note(project_id, target, message)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "progress_comment_failed",
                project_id=project_id,
                error_type=type(exc).__name__,
            )
            return None
        ctx.progress_discussion_id = None
        return note_id

    def _update_progress(
        self,
        ctx: EventContext,
        message: str,
        is_complete: bool = False,
        is_error: bool = False,
    ) -> None:
        if ctx.current_comment_id is None:
            return
        target = ctx.event.note_target
        if target is None:
            return
        now = self._clock()
        append_progress_message(ctx.progress_messages, message, now=now)
        body = render_progress_report(
            executor_name=ctx.executor_name,
            messages=ctx.progress_messages,
            now=now,
            is_complete=is_complete,
            is_error=is_error,
        )
        project_id = ctx.event.project.project_id
        try:
            if ctx.progress_discussion_id is not None:
                self._gitlab.update_discussion_note(
                    project_id, target, ctx.progress_discussion_id, ctx.current_comment_id, body
                )
            else:
                self._gitlab.update_note(project_id, target, ctx.current_comment_id, body)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "progress_update_failed",
                note_id=ctx.current_comment_id,
                error_type=type(exc).__name__,
            )

    def _post_comment(self, ctx: EventContext, message: str) -> None:
        """Reply in the current discussion, else post a top-level note."""
        event = ctx.event
        target = event.note_target
        if target is None:
            log_warning_event(LOGGER, "comment_target_missing", kind=event.kind)
            return
        project_id = event.project.project_id
        if ctx.discussion_id:
            try:
                note_id = self._gitlab.reply_to_discussion(project_id, target, ctx.discussion_id, message)
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "discussion_reply_failed",
                    purpose="reply",
                    discussion_id=ctx.discussion_id,
                    error_type=type(exc).__name__,
                )
                ctx.clear_discussion()
            else:
                ctx.discussion_reply_succeeded = True
                ctx.discussion_note_id = note_id
                return
        self._gitlab.create_note(project_id, target, message)

    def _resolve_discussion_if_needed(self, ctx: EventContext) -> None:
        if not (ctx.discussion_id and ctx.discussion_resolvable and ctx.discussion_reply_succeeded):
            return
        target = ctx.event.note_target
        try:
            if target is not None and target.kind == "merge_request":
                self._gitlab.resolve_discussion(ctx.event.project.project_id, target, ctx.discussion_id)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "discussion_resolve_failed",
                discussion_id=ctx.discussion_id,
                error_type=type(exc).__name__,
            )
        finally:
            ctx.discussion_resolvable = False
            ctx.discussion_reply_succeeded = False

    def _resumable_session_id(
        self, handle: _SessionHandle, existing: Session | None, provider: ProviderId
    ) -> str | None:
        if existing is None or provider not in existing.provider_sessions:
            return None
        entry = handle.manager.get_provider_session(handle.key, provider)
        if entry is None:
            return None
        return entry.session_id

    def _execution_context(
        self,
        ctx: EventContext,
        instruction: Instruction,
        *,
        branch: str,
        scenario: Scenario | None = None,
    ) -> ExecutionContext:
        return ExecutionContext(
            context=instruction.context,
            project_url=ctx.event.project.web_url,
            branch=branch,
            provider=instruction.provider,
            scenario=scenario or instruction.scenario,
            is_issue_scenario=is_issue_scenario(ctx.event),
            full_context=instruction.full_context,
        )

    def _callback(self, ctx: EventContext) -> ProgressCallback:
        return _CommentProgressCallback(partial(self._update_progress, ctx))

    def _log_dispatch(self, ctx: EventContext, instruction: Instruction, *, action: str) -> None:
        log_event(
            LOGGER,
            "ai_dispatch",
            action=action,
            provider=instruction.provider,
            scenario=instruction.scenario,
            project_id=ctx.event.project.project_id,
            iid=ctx.event.target_iid,
        )

    def _delay_before_dispatch(self) -> None:
        delay_ms = self._config.runtime.ai_dispatch_delay_ms
        if delay_ms > 0:
            self._sleep(delay_ms / 1000)

    def _elapsed_ms(self, started: float) -> int:
        return int((self._monotonic() - started) * 1000)


def _merge_request_workspace_id(project_id: int, merge_request_iid: int) -> str:
    return f"mr-{project_id}-{merge_request_iid}"


def _is_spec_document(path: str) -> bool:
    lowered = path.lower()
    return lowered.startswith(_SPECS_PREFIX) and lowered.endswith(".md")
