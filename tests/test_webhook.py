from __future__ import annotations

from hypothesis import given, strategies as st
import pytest

from labpilot.comments import format_comment_body
from labpilot.models import MergeRequestRef, NoteRef, ProjectRef, WebhookEvent
from labpilot.webhook import (
    DEFAULT_MENTION_COMMAND,
    extract_ai_instruction,
    is_self_authored,
    parse_webhook_event,
    should_trigger_default_code_review,
)


def _project_payload() -> dict[str, object]:
    return {
        "id": 42,
        "name": "demo",
        "web_url": "https://gitlab.example.com/group/demo",
        "git_http_url": "https://gitlab.example.com/group/demo.git",
        "default_branch": "main",
        "path_with_namespace": "group/demo",
    }


def _project() -> ProjectRef:
    return ProjectRef(
        project_id=42,
        name="demo",
        web_url="https://gitlab.example.com/group/demo",
        http_url="https://gitlab.example.com/group/demo.git",
        default_branch="main",
    )


def _merge_request(*, action: str | None = "open", target_branch: str = "develop") -> MergeRequestRef:
    return MergeRequestRef(
        iid=7,
        title="Add cache",
        description="",
        source_branch="feature/cache",
        target_branch=target_branch,
        action=action,
    )


def test_extract_mention_with_provider() -> None:
    extracted = extract_ai_instruction("Hi @codex fix the failing test\nthanks")

    assert extracted is not None
    assert extracted.provider == "codex"
    assert extracted.command == "fix the failing test\nthanks"
    assert extracted.scenario is None
    assert extracted.full_context == "Hi @codex fix the failing test\nthanks"


def test_extract_mention_stops_at_next_mention() -> None:
    extracted = extract_ai_instruction("@claude add logging @alice please review")

    assert extracted is not None
    assert extracted.provider == "claude"
    assert extracted.command == "add logging"


def test_extract_generic_mention_uses_default_provider() -> None:
    extracted = extract_ai_instruction("@ai tidy imports", default_provider="codex")

    assert extracted is not None
    assert extracted.provider == "codex"
    assert extracted.command == "tidy imports"


def test_bare_mention_falls_back_to_default_command() -> None:
    extracted = extract_ai_instruction("@Claude")

    assert extracted is not None
    assert extracted.provider == "claude"
    assert extracted.command == DEFAULT_MENTION_COMMAND


@pytest.mark.parametrize(
    ("text", "stage", "command"),
    [
        ("/spec login page", "spec", "/speckit.specify login page"),
        ("please /plan", "plan", "/speckit.plan"),
        ("/tasks /speckit.tasks --fast", "tasks", "/speckit.tasks --fast"),
    ],
)
def test_extract_slash_spec_commands(text: str, stage: str, command: str) -> None:
    extracted = extract_ai_instruction(text, default_provider="codex")

    assert extracted is not None
    assert extracted.provider == "claude"
    assert extracted.scenario == "spec-doc"
    assert extracted.spec_kit_command == stage
    assert extracted.command == command


def test_slash_command_wins_over_mention() -> None:
    extracted = extract_ai_instruction("@codex do things\n/plan the rollout")

    assert extracted is not None
    assert extracted.spec_kit_command == "plan"
    assert extracted.provider == "claude"


@pytest.mark.parametrize("text", ["", "   ", "no trigger here", "path/spec/file.md"])
def test_extract_returns_none_without_trigger(text: str) -> None:
    assert extract_ai_instruction(text) is None


@given(st.text())
def test_extract_never_raises(text: str) -> None:
    extracted = extract_ai_instruction(text)
    if extracted is not None:
        assert extracted.command
        assert extracted.provider in ("claude", "codex")


def test_is_self_authored_detects_marker_and_bot_user() -> None:
    marked = WebhookEvent(
        kind="note",
        project=_project(),
        author_username="alice",
        note=NoteRef(note_id=1, body=format_comment_body("done"), noteable_type="issue"),
    )
    from_bot = WebhookEvent(
        kind="note",
        project=_project(),
        author_username="LabPilot-Bot",
        note=NoteRef(note_id=2, body="@claude again", noteable_type="issue"),
    )
    human = WebhookEvent(
        kind="note",
        project=_project(),
        author_username="alice",
        note=NoteRef(note_id=3, body="@claude again", noteable_type="issue"),
    )

    assert is_self_authored(marked) is True
    assert is_self_authored(from_bot, bot_username="labpilot-bot") is True
    assert is_self_authored(human, bot_username="labpilot-bot") is False
    assert is_self_authored(WebhookEvent(kind="issue", project=_project())) is False


@pytest.mark.parametrize(
    ("action", "target", "expected"),
    [
        ("open", "develop", True),
        ("reopen", "develop", True),
        (None, "develop", True),
        ("update", "develop", False),
        ("open", "main", False),
    ],
)
def test_should_trigger_default_code_review(action: str | None, target: str, expected: bool) -> None:
    merge_request = _merge_request(action=action, target_branch=target)

    assert should_trigger_default_code_review(merge_request, target_branch="develop") is expected


def test_should_trigger_default_code_review_without_merge_request() -> None:
    assert should_trigger_default_code_review(None, target_branch="develop") is False


def test_parse_issue_event() -> None:
    event = parse_webhook_event(
        {
            "object_kind": "issue",
            "user": {"username": "alice"},
            "project": _project_payload(),
            "object_attributes": {
                "iid": 5,
                "title": "Broken login",
                "description": "@claude fix it",
                "action": "open",
            },
        }
    )

    assert event.kind == "issue"
    assert event.author_username == "alice"
    assert event.project.project_id == 42
    assert event.project.http_url == "https://gitlab.example.com/group/demo.git"
    assert event.issue is not None
    assert event.issue.iid == 5
    assert event.issue.action == "open"
    assert event.target_iid == 5
    assert event.note_target is not None
    assert event.note_target.api_segment == "issues"


def test_parse_merge_request_event() -> None:
    event = parse_webhook_event(
        {
            "object_kind": "merge_request",
            "project": {**_project_payload(), "git_http_url": None},
            "object_attributes": {
                "iid": "9",
                "title": "Add cache",
                "description": None,
                "source_branch": "feature/cache",
                "target_branch": "develop",
                "action": "open",
                "url": "https://gitlab.example.com/group/demo/-/merge_requests/9",
            },
        }
    )

    assert event.kind == "merge_request"
    assert event.project.http_url == "https://gitlab.example.com/group/demo.git"
    assert event.merge_request is not None
    assert event.merge_request.iid == 9
    assert event.merge_request.description == ""
    assert event.noteable_kind == "merge_request"
    assert event.note_target is not None
    assert event.note_target.api_segment == "merge_requests"


def test_parse_merge_request_note_with_position() -> None:
    event = parse_webhook_event(
        {
            "object_kind": "note",
            "user": {"username": "bob"},
            "project": _project_payload(),
            "object_attributes": {
                "id": 301,
                "note": "@codex rename this",
                "noteable_type": "MergeRequest",
                "discussion_id": "abc123",
                "url": "https://gitlab.example.com/group/demo/-/merge_requests/9#note_301",
                "position": {"new_path": "app/cache.py", "new_line": 12, "old_path": "app/cache.py"},
            },
            "merge_request": {
                "iid": 9,
                "title": "Add cache",
                "description": "",
                "source_branch": "feature/cache",
                "target_branch": "develop",
            },
        }
    )

    assert event.kind == "note"
    assert event.note is not None
    assert event.note.noteable_type == "merge_request"
    assert event.note.discussion_id == "abc123"
    assert event.note.position is not None
    assert event.note.position.new_path == "app/cache.py"
    assert event.note.position.new_line == 12
    assert event.note.position.old_line is None
    assert event.target_iid == 9


def test_parse_issue_note() -> None:
    event = parse_webhook_event(
        {
            "object_kind": "note",
            "project": _project_payload(),
            "object_attributes": {"id": 11, "note": "follow up", "noteable_type": "Issue"},
            "issue": {"iid": 5, "title": "Broken login", "description": ""},
        }
    )

    assert event.noteable_kind == "issue"
    assert event.target_iid == 5
    assert event.note is not None
    assert event.note.discussion_id is None


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"object_kind": "pipeline", "project": {"id": 1}, "object_attributes": {}}, "Unsupported webhook event kind"),
        ({"object_kind": "issue", "object_attributes": {}}, "missing object: project"),
        (
            {
                "object_kind": "note",
                "project": {"id": 1},
                "object_attributes": {"id": 1, "noteable_type": "Snippet"},
            },
            "Unsupported note target: Snippet",
        ),
        (
            {
                "object_kind": "note",
                "project": {"id": 1},
                "object_attributes": {"id": 1, "noteable_type": "Issue"},
            },
            "missing the issue object",
        ),
        (
            {"object_kind": "issue", "project": {"id": "x"}, "object_attributes": {"iid": 1}},
            "Unexpected webhook value for project.id",
        ),
    ],
)
def test_parse_webhook_event_rejects_invalid_payloads(payload: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        parse_webhook_event(payload)
