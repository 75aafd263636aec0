from __future__ import annotations

from dataclasses import dataclass
import re
from typing import cast

from labpilot.comments import has_response_marker
from labpilot.models import (
    IssueRef,
    MergeRequestRef,
    NotePosition,
    NoteRef,
    NoteableKind,
    ProjectRef,
    ProviderId,
    Scenario,
    SpecStage,
    WebhookEvent,
)


DEFAULT_MENTION_COMMAND = "Please perform a code review"

_SLASH_SPEC_PATTERN = re.compile(r"(?<!\S)/(spec|plan|tasks)\b(.*)", re.IGNORECASE | re.DOTALL | re.ASCII)
_MENTION_PATTERN = re.compile(r"@(claude|codex|ai)\b\s*(.*?)(?=@\w+|$)", re.IGNORECASE | re.DOTALL | re.ASCII)
_SPEC_KIT_COMMANDS: dict[SpecStage, str] = {
    "spec": "/speckit.specify",
    "plan": "/speckit.plan",
    "tasks": "/speckit.tasks",
}
_DEFAULT_REVIEW_ACTIONS = frozenset({"open", "reopen"})


@dataclass(frozen=True)
class ExtractedInstruction:
    command: str
    provider: ProviderId
    full_context: str
    scenario: Scenario | None = None
    spec_kit_command: SpecStage | None = None


def extract_ai_instruction(
    text: str, *, default_provider: ProviderId = "claude"
) -> ExtractedInstruction | None:
    """Find the trigger in a description or note body.

    Slash spec commands win over mentions. ``@ai`` resolves to ``default_provider``.
    """
    if not text or not text.strip():
        return None

    slash_match = _SLASH_SPEC_PATTERN.search(text)
    if slash_match is not None:
        stage = cast(SpecStage, slash_match.group(1).lower())
        content = slash_match.group(2).strip()
        base_command = _SPEC_KIT_COMMANDS[stage]
        if not content:
            command = base_command
        elif content.lower().startswith("/speckit."):
            command = content
        else:
            command = f"{base_command} {content}"
        return ExtractedInstruction(
            command=command,
            provider="claude",
            full_context=text.strip(),
            scenario="spec-doc",
            spec_kit_command=stage,
        )

    mention_match = _MENTION_PATTERN.search(text)
    if mention_match is None:
        return None
    handle = mention_match.group(1).lower()
    provider: ProviderId
    if handle == "codex":
        provider = "codex"
    elif handle == "claude":
        provider = "claude"
    else:
        provider = default_provider
    command = mention_match.group(2).strip() or DEFAULT_MENTION_COMMAND
    return ExtractedInstruction(command=command, provider=provider, full_context=text.strip())


def is_self_authored(event: WebhookEvent, *, bot_username: str | None = None) -> bool:
    if event.kind != "note" or event.note is None:
        return False
    if has_response_marker(event.note.body):
        return True
    if bot_username and event.author_username.strip().lower() == bot_username.strip().lower():
        return True
    return False


def should_trigger_default_code_review(
    merge_request: MergeRequestRef | None, *, target_branch: str
) -> bool:
    if merge_request is None:
        return False
    action = merge_request.action
    if action is not None and action not in _DEFAULT_REVIEW_ACTIONS:
        return False
    return merge_request.target_branch == target_branch


def parse_webhook_event(payload: dict[str, object]) -> WebhookEvent:
    """Map a GitLab webhook payload onto a ``WebhookEvent``.

    Raises ``ValueError`` for payloads that are not issue, merge request, or note hooks.
    """
    kind = _as_string(payload.get("object_kind") or payload.get("event_type")).strip()
    project = _parse_project(_require_dict(payload, "project"))
    attributes = _require_dict(payload, "object_attributes")
    user = _as_object_dict(payload.get("user")) or {}
    author = _as_string(user.get("username"))

    if kind == "issue":
        return WebhookEvent(
            kind="issue",
            project=project,
            author_username=author,
            issue=_parse_issue(attributes),
        )
    if kind == "merge_request":
        return WebhookEvent(
            kind="merge_request",
            project=project,
            author_username=author,
            merge_request=_parse_merge_request(attributes),
        )
    if kind == "note":
        noteable_type = _as_string(attributes.get("noteable_type"))
        noteable: NoteableKind
        if noteable_type == "Issue":
            noteable = "issue"
        elif noteable_type == "MergeRequest":
            noteable = "merge_request"
        else:
            raise ValueError(f"Unsupported note target: {noteable_type or '<empty>'}")
        note = NoteRef(
            note_id=_as_int(attributes.get("id"), field="object_attributes.id"),
            body=_as_string(attributes.get("note")),
            noteable_type=noteable,
            discussion_id=_as_optional_str(attributes.get("discussion_id")),
            url=_as_optional_str(attributes.get("url")),
            position=_parse_position(attributes.get("position")),
        )
        issue_data = _as_object_dict(payload.get("issue"))
        mr_data = _as_object_dict(payload.get("merge_request"))
        if noteable == "issue" and issue_data is None:
            raise ValueError("Issue note payload is missing the issue object")
        if noteable == "merge_request" and mr_data is None:
            raise ValueError("Merge request note payload is missing the merge_request object")
        return WebhookEvent(
            kind="note",
            project=project,
            author_username=author,
            issue=_parse_issue(issue_data) if issue_data is not None else None,
            merge_request=_parse_merge_request(mr_data) if mr_data is not None else None,
            note=note,
        )
    raise ValueError(f"Unsupported webhook event kind: {kind or '<empty>'}")


def _parse_project(data: dict[str, object]) -> ProjectRef:
    web_url = _as_string(data.get("web_url"))
    http_url = _as_string(data.get("git_http_url") or data.get("http_url"))
    if not http_url and web_url:
        http_url = f"{web_url}.git"
    return ProjectRef(
        project_id=_as_int(data.get("id"), field="project.id"),
        name=_as_string(data.get("name")),
        web_url=web_url,
        http_url=http_url,
        default_branch=_as_string(data.get("default_branch")) or "main",
        path_with_namespace=_as_string(data.get("path_with_namespace")),
    )


def _parse_issue(data: dict[str, object]) -> IssueRef:
    return IssueRef(
        iid=_as_int(data.get("iid"), field="issue.iid"),
        title=_as_string(data.get("title")),
        description=_as_string(data.get("description")),
        action=_as_optional_str(data.get("action")),
    )


def _parse_merge_request(data: dict[str, object]) -> MergeRequestRef:
    return MergeRequestRef(
        iid=_as_int(data.get("iid"), field="merge_request.iid"),
        title=_as_string(data.get("title")),
        description=_as_string(data.get("description")),
        source_branch=_as_string(data.get("source_branch")),
        target_branch=_as_string(data.get("target_branch")),
        action=_as_optional_str(data.get("action")),
        url=_as_optional_str(data.get("url")),
    )


def _parse_position(value: object) -> NotePosition | None:
    data = _as_object_dict(value)
    if data is None:
        return None
    return NotePosition(
        new_path=_as_optional_str(data.get("new_path")),
        new_line=_as_optional_int(data.get("new_line")),
        old_path=_as_optional_str(data.get("old_path")),
        old_line=_as_optional_int(data.get("old_line")),
    )


def _require_dict(payload: dict[str, object], key: str) -> dict[str, object]:
    value = _as_object_dict(payload.get(key))
    if value is None:
        raise ValueError(f"Webhook payload is missing object: {key}")
    return value


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Unexpected webhook value type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"Unexpected webhook value for {field}: {value}") from exc
    raise ValueError(f"Unexpected webhook value type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None
