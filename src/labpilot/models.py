from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal


ProviderId = Literal["claude", "codex"]
Scenario = Literal["issue-session", "mr-fix", "code-review", "spec-doc"]
SpecStage = Literal["spec", "plan", "tasks"]
EventKind = Literal["issue", "merge_request", "note"]
NoteableKind = Literal["issue", "merge_request"]
ChangeType = Literal["created", "modified", "deleted"]
OutputFormat = Literal["json", "text"]
ProcessStatus = Literal["processed", "ignored", "error"]
Severity = Literal["info", "warning", "error"]
ReviewCategory = Literal["style", "security", "performance", "logic", "maintainability"]
DiffLineType = Literal["add", "delete", "context"]

PROVIDER_IDS: tuple[ProviderId, ...] = ("claude", "codex")
SPEC_STAGES: tuple[SpecStage, ...] = ("spec", "plan", "tasks")


@dataclass(frozen=True)
class ProjectRef:
    project_id: int
    name: str
    web_url: str
    http_url: str
    default_branch: str
    path_with_namespace: str = ""


@dataclass(frozen=True)
class IssueRef:
    iid: int
    title: str
    description: str
    action: str | None = None


@dataclass(frozen=True)
class MergeRequestRef:
    iid: int
    title: str
    description: str
    source_branch: str
    target_branch: str
    action: str | None = None
    url: str | None = None


@dataclass(frozen=True)
class NotePosition:
    new_path: str | None
    new_line: int | None
    old_path: str | None = None
    old_line: int | None = None


@dataclass(frozen=True)
class NoteRef:
    note_id: int
    body: str
    noteable_type: NoteableKind
    discussion_id: str | None = None
    url: str | None = None
    position: NotePosition | None = None


@dataclass(frozen=True)
class NoteTarget:
    kind: NoteableKind
    iid: int

    @property
    def api_segment(self) -> str:
        return "merge_requests" if self.kind == "merge_request" else "issues"


@dataclass(frozen=True)
class WebhookEvent:
    kind: EventKind
    project: ProjectRef
    author_username: str = ""
    issue: IssueRef | None = None
    merge_request: MergeRequestRef | None = None
    note: NoteRef | None = None

    @property
    def noteable_kind(self) -> NoteableKind:
        if self.kind == "note" and self.note is not None:
            return self.note.noteable_type
        if self.kind == "merge_request":
            return "merge_request"
        return "issue"

    @property
    def target_iid(self) -> int | None:
        if self.noteable_kind == "merge_request":
            return self.merge_request.iid if self.merge_request is not None else None
        return self.issue.iid if self.issue is not None else None

    @property
    def note_target(self) -> NoteTarget | None:
        iid = self.target_iid
        if iid is None:
            return None
        return NoteTarget(kind=self.noteable_kind, iid=iid)


@dataclass(frozen=True)
class Tenant:
    user_id: str


@dataclass(frozen=True)
class Instruction:
    command: str
    context: str
    branch: str
    provider: ProviderId
    scenario: Scenario
    full_context: str | None = None
    spec_kit_command: SpecStage | None = None


@dataclass(frozen=True)
class FileChange:
    path: str
    change_type: ChangeType


@dataclass(frozen=True)
class ProviderSession:
    session_id: str
    last_used: datetime


@dataclass(frozen=True)
class Session:
    issue_key: str
    project_id: int
    issue_iid: int
    created_at: datetime
    last_used: datetime
    last_provider: ProviderId
    provider_sessions: Mapping[ProviderId, ProviderSession]
    discussion_id: str | None = None
    branch_name: str | None = None
    base_branch: str | None = None
    merge_request_iid: int | None = None
    merge_request_url: str | None = None
    owner_id: str | None = None
    spec_kit_stage: SpecStage | None = None
    spec_kit_documents: Mapping[SpecStage, tuple[str, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionMetadata:
    project_id: int
    issue_iid: int
    discussion_id: str | None = None
    branch_name: str | None = None
    base_branch: str | None = None
    merge_request_iid: int | None = None
    merge_request_url: str | None = None
    owner_id: str | None = None


@dataclass(frozen=True)
class SessionStats:
    total_sessions: int
    active_sessions: int
    expired_sessions: int
    oldest_session: datetime | None
    newest_session: datetime | None


@dataclass(frozen=True)
class ProcessEventResult:
    status: ProcessStatus
    execution_time_ms: int
    error: str | None = None
