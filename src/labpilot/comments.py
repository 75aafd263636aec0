from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
import re
from typing import Literal

from labpilot.models import FileChange, SpecStage


RESPONSE_MARKER = "<!-- labpilot-response -->"
MAX_NOTE_LENGTH = 1_000_000
TRUNCATION_NOTICE = (
    "\n\n> ⚠️ The rest of this message was truncated because it exceeded "
    "the GitLab note size limit."
)
MAX_PROGRESS_MESSAGES = 10

SessionMode = Literal["new", "continuation", "none"]

_TIMESTAMP_PREFIX = re.compile(r"^\[\d{2}:\d{2}:\d{2}\]\s*")
_SUMMARY_PATTERN = re.compile(r"(?:Summary|Overview|Result|Outcome)[:：]\s*(.+)", re.IGNORECASE | re.DOTALL)
_SESSION_MODE_LABELS: dict[SessionMode, str] = {
    "new": "new session",
    "continuation": "continued session",
    "none": "one-off execution",
}
_STAGE_LABELS: dict[SpecStage, str] = {
    "spec": "Specification document",
    "plan": "Plan document",
    "tasks": "Tasks document",
}


@dataclass(frozen=True)
class StageDocument:
    path: str
    content: str


@dataclass(frozen=True)
class SuccessSummary:
    command: str
    changes: tuple[FileChange, ...]
    session_mode: SessionMode
    base_branch: str
    output: str | None = None
    branch_name: str | None = None
    merge_request_url: str | None = None
    merge_request_iid: int | None = None
    warnings: tuple[str, ...] = ()
    spec_kit_stage: SpecStage | None = None
    stage_documents: tuple[StageDocument, ...] = field(default_factory=tuple)


def has_response_marker(text: str) -> bool:
    return RESPONSE_MARKER in text


def format_comment_body(message: str) -> str:
    """Return ``message`` with exactly one trailing response marker, within the note cap."""
    stripped = message
    while RESPONSE_MARKER in stripped:
        stripped = stripped.replace(RESPONSE_MARKER, "")
    stripped = stripped.rstrip()
    body = f"{stripped}\n\n{RESPONSE_MARKER}" if stripped else RESPONSE_MARKER
    if len(body) <= MAX_NOTE_LENGTH:
        return body

    suffix = f"{TRUNCATION_NOTICE}\n\n{RESPONSE_MARKER}"
    available = max(MAX_NOTE_LENGTH - len(suffix), 0)
    truncated = stripped[:available].rstrip()
    return f"{truncated}{suffix}"


def truncate_text(text: str, max_length: int) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return f"{text[: max_length - 3]}..."


def strip_timestamp_prefix(message: str) -> str:
    return _TIMESTAMP_PREFIX.sub("", message)


def append_progress_message(messages: list[str], message: str, *, now: datetime) -> None:
    """Append a timestamped progress line unless the same text is already present."""
    content = strip_timestamp_prefix(message)
    if any(strip_timestamp_prefix(existing) == content for existing in messages):
        return
    messages.append(f"[{now.astimezone(timezone.utc):%H:%M:%S}] {message}")


def render_progress_report(
    *,
    executor_name: str,
    messages: Sequence[str],
    now: datetime,
    is_complete: bool = False,
    is_error: bool = False,
) -> str:
    lines = [f"🤖 **{executor_name} Progress Report**", ""]
    for message in list(messages)[-MAX_PROGRESS_MESSAGES:]:
        lines.append(f"- {message}")
    lines.append("")
    if is_complete:
        lines.append("---")
        lines.append("")
        if is_error:
            lines.append("❌ **Task completed with errors**")
        else:
            lines.append("✅ **Task completed successfully!**")
    else:
        lines.append("⏳ *Processing...*")
    lines.append("")
    lines.append("---")
    lines.append(f"*Last updated: {now.astimezone(timezone.utc):%Y-%m-%d %H:%M:%S} UTC*")
    return "\n".join(lines)


def build_change_summary(changes: Sequence[FileChange], *, limit: int = 5) -> list[str]:
    lines: list[str] = []
    for change in list(changes)[:limit]:
        if change.change_type == "created":
            action = "Added"
        elif change.change_type == "deleted":
            action = "Deleted"
        else:
            action = "Modified"
        lines.append(f"- {action} `{change.path}`")
    if len(changes) > limit:
        lines.append(f"- ... and {len(changes) - limit} more file(s)")
    return lines


def summarize_output(raw: str | None, *, max_length: int = 220) -> str | None:
    if not raw:
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None
    match = _SUMMARY_PATTERN.search(trimmed)
    summary = match.group(1) if match else trimmed
    summary = re.split(r"\n{2,}", summary)[0]
    summary = re.sub(r"\n+", " ", summary).strip()
    if not summary:
        return None
    if len(summary) > max_length:
        return f"{summary[:max_length].rstrip()}..."
    return summary


def build_file_changes_section(changes: Sequence[FileChange]) -> str:
    if not changes:
        return "**Code changes**\n- No files in the repository were modified"
    rows = [f"| {change.change_type.capitalize()} | `{change.path}` |" for change in changes]
    return "\n".join(["**Code changes**", "", "| Type | File |", "| --- | --- |", *rows])


def render_success_comment(summary: SuccessSummary) -> str:
    command_summary = truncate_text(summary.command.strip(), 200) or "(empty instruction)"
    has_mr_warning = any("merge request" in warning.lower() for warning in summary.warnings)
    mr_status = _merge_request_status(summary, has_mr_warning=has_mr_warning)

    lines = ["### ✅ Work completed", "", "**Summary**"]
    change_lines = build_change_summary(summary.changes)
    concise_output = summarize_output(summary.output)
    lines.extend(change_lines)
    if concise_output:
        lines.append(f"- {concise_output}")
    if not change_lines and not concise_output:
        lines.append("- (no summary)")
    lines.append("")

    lines.append("**Execution summary**")
    lines.append(f"- Instruction: {command_summary}")
    lines.append(f"- Mode: {_SESSION_MODE_LABELS[summary.session_mode]}")
    lines.append(f"- Code changes: {len(summary.changes)} file(s)")
    lines.append(f"- Merge request status: {mr_status}")
    for warning in summary.warnings:
        lines.append(f"- Warning: {warning}")
    lines.append("")

    lines.append(build_file_changes_section(summary.changes))
    lines.append("")

    lines.extend(["**Branch & MR**", ""])
    if summary.spec_kit_stage is not None:
        lines.append("- Working branch: managed by Spec Kit")
    elif summary.branch_name:
        lines.append(f"- Working branch: `{summary.branch_name}` → `{summary.base_branch}`")
    else:
        lines.append(f"- Working branch: ran directly on `{summary.base_branch}`")
    lines.append(f"- Merge request: {mr_status}")
    lines.append("")

    if summary.stage_documents and summary.spec_kit_stage is not None:
        lines.extend([f"**{_STAGE_LABELS[summary.spec_kit_stage]}**", ""])
        for document in summary.stage_documents:
            lines.append(f"> File: `{document.path}`")
            lines.append("")
            lines.append(document.content.rstrip())
            lines.append("")
    elif summary.output and summary.output.strip():
        lines.extend(["**Raw AI reply**", "", summary.output.strip(), ""])

    return "\n".join(lines).rstrip()


def render_failure_comment(*, command: str, error: str | None) -> str:
    command_summary = truncate_text(command.strip(), 200) or "(empty instruction)"
    sanitized = (error or "").strip()
    first_line = next((line for line in sanitized.split("\n") if line), "")

    lines = ["### ❌ Work failed", "", "**Instruction**", f"> {command_summary}", ""]
    lines.append("**Execution summary**")
    if first_line:
        lines.append(f"- Execution failed: {first_line}")
        if sanitized != first_line:
            lines.append("- See the diagnostics below for details")
    else:
        lines.append("- Execution failed without a specific error message")
    lines.append("- No code changes were produced")
    lines.append("")
    lines.extend(["**Diagnostics**", ""])
    if sanitized:
        lines.extend(["```", sanitized, "```"])
    else:
        lines.append("- None")
    return "\n".join(lines)


def _merge_request_status(summary: SuccessSummary, *, has_mr_warning: bool) -> str:
    if summary.merge_request_url:
        if summary.merge_request_iid is not None:
            return f"updated [!{summary.merge_request_iid}]({summary.merge_request_url})"
        return f"updated [view]({summary.merge_request_url})"
    if has_mr_warning:
        return "creation failed (see warnings)"
    return "not created yet"
