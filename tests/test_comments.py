from __future__ import annotations

from datetime import datetime, timezone

from hypothesis import given, strategies as st

from labpilot.comments import (
    MAX_NOTE_LENGTH,
    RESPONSE_MARKER,
    StageDocument,
    SuccessSummary,
    append_progress_message,
    build_change_summary,
    format_comment_body,
    has_response_marker,
    render_failure_comment,
    render_progress_report,
    render_success_comment,
    summarize_output,
    truncate_text,
)
from labpilot.models import FileChange


NOW = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)


def test_format_comment_body_appends_single_marker() -> None:
    body = format_comment_body("Hello")

    assert body == f"Hello\n\n{RESPONSE_MARKER}"
    assert format_comment_body(body) == body
    assert has_response_marker(body)
    assert format_comment_body("") == RESPONSE_MARKER


@given(st.text())
def test_format_comment_body_is_idempotent(text: str) -> None:
    once = format_comment_body(text)

    assert format_comment_body(once) == once
    assert once.count(RESPONSE_MARKER) == 1
    assert once.endswith(RESPONSE_MARKER)


def test_format_comment_body_truncates_oversized_messages() -> None:
    body = format_comment_body("x" * (MAX_NOTE_LENGTH + 50))

    assert len(body) <= MAX_NOTE_LENGTH
    assert "truncated" in body
    assert body.endswith(RESPONSE_MARKER)


def test_truncate_text() -> None:
    assert truncate_text("", 5) == ""
    assert truncate_text("short", 10) == "short"
    assert truncate_text("abcdefghij", 6) == "abc..."


def test_append_progress_message_dedupes_ignoring_timestamps() -> None:
    messages: list[str] = []
    append_progress_message(messages, "Cloning repository", now=NOW)
    append_progress_message(messages, "Cloning repository", now=NOW.replace(minute=9))
    append_progress_message(messages, "Running tests", now=NOW)

    assert messages == ["[05:06:07] Cloning repository", "[05:06:07] Running tests"]


def test_render_progress_report_keeps_last_ten_messages() -> None:
    messages = [f"[00:00:{index:02d}] step {index}" for index in range(12)]

    report = render_progress_report(executor_name="Claude", messages=messages, now=NOW)

    assert report.startswith("🤖 **Claude Progress Report**")
    assert "step 0" not in report
    assert "step 1\n" not in report
    assert "- [00:00:11] step 11" in report
    assert "⏳ *Processing...*" in report
    assert report.endswith("*Last updated: 2026-03-04 05:06:07 UTC*")


def test_render_progress_report_completion_states() -> None:
    done = render_progress_report(executor_name="Codex", messages=[], now=NOW, is_complete=True)
    failed = render_progress_report(
        executor_name="Codex", messages=[], now=NOW, is_complete=True, is_error=True
    )

    assert "✅ **Task completed successfully!**" in done
    assert "❌ **Task completed with errors**" in failed
    assert "Processing" not in failed


def test_build_change_summary_limits_entries() -> None:
    changes = [FileChange(path=f"src/f{index}.py", change_type="modified") for index in range(7)]
    changes[0] = FileChange(path="src/new.py", change_type="created")
    changes[1] = FileChange(path="src/old.py", change_type="deleted")

    lines = build_change_summary(changes)

    assert lines[0] == "- Added `src/new.py`"
    assert lines[1] == "- Deleted `src/old.py`"
    assert lines[2] == "- Modified `src/f2.py`"
    assert lines[-1] == "- ... and 2 more file(s)"
    assert len(lines) == 6


def test_summarize_output_prefers_summary_section() -> None:
    raw = "Lots of chatter\n\nSummary: Fixed the cache key.\nAlso updated tests.\n\nDetails follow"

    assert summarize_output(raw) == "Fixed the cache key. Also updated tests."
    assert summarize_output("  ") is None
    assert summarize_output(None) is None
    assert summarize_output("x" * 300, max_length=10) == "xxxxxxxxxx..."


def test_render_success_comment_with_merge_request() -> None:
    body = render_success_comment(
        SuccessSummary(
            command="Add retry to the client",
            changes=(FileChange(path="client.py", change_type="modified"),),
            session_mode="new",
            base_branch="main",
            output="Summary: added retries",
            branch_name="claude-20260304T050607-abc123",
            merge_request_url="https://gitlab.example.com/g/p/-/merge_requests/3",
            merge_request_iid=3,
        )
    )

    assert body.startswith("### ✅ Work completed")
    assert "- Modified `client.py`" in body
    assert "- added retries" in body
    assert "- Mode: new session" in body
    assert "- Code changes: 1 file(s)" in body
    assert "updated [!3](https://gitlab.example.com/g/p/-/merge_requests/3)" in body
    assert "| Modified | `client.py` |" in body
    assert "`claude-20260304T050607-abc123` → `main`" in body
    assert "**Raw AI reply**" in body


def test_render_success_comment_reports_merge_request_failure() -> None:
    body = render_success_comment(
        SuccessSummary(
            command="Update docs",
            changes=(),
            session_mode="continuation",
            base_branch="main",
            warnings=("Merge request creation failed: 409 conflict",),
        )
    )

    assert "- Mode: continued session" in body
    assert "- Merge request status: creation failed (see warnings)" in body
    assert "- Warning: Merge request creation failed: 409 conflict" in body
    assert "No files in the repository were modified" in body
    assert "ran directly on `main`" in body
    assert "- (no summary)" in body


def test_render_success_comment_includes_stage_documents() -> None:
    body = render_success_comment(
        SuccessSummary(
            command="/speckit.plan",
            changes=(FileChange(path="specs/001-login/plan.md", change_type="created"),),
            session_mode="none",
            base_branch="main",
            output="raw output should not be shown",
            spec_kit_stage="plan",
            stage_documents=(StageDocument(path="specs/001-login/plan.md", content="# Plan\n"),),
        )
    )

    assert "- Mode: one-off execution" in body
    assert "managed by Spec Kit" in body
    assert "**Plan document**" in body
    assert "> File: `specs/001-login/plan.md`" in body
    assert "# Plan" in body
    assert "**Raw AI reply**" not in body


def test_render_failure_comment() -> None:
    body = render_failure_comment(command="Fix it", error="boom\ntraceback line")

    assert body.startswith("### ❌ Work failed")
    assert "> Fix it" in body
    assert "- Execution failed: boom" in body
    assert "- See the diagnostics below for details" in body
    assert "```\nboom\ntraceback line\n```" in body


def test_render_failure_comment_without_error() -> None:
    body = render_failure_comment(command="  ", error=None)

    assert "> (empty instruction)" in body
    assert "without a specific error message" in body
    assert "- None" in body
