from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import json
import logging
import re
from typing import TYPE_CHECKING, cast

from labpilot.diff_parser import (
    DiffLine,
    ParsedDiff,
    ParsedDiffFile,
    ReviewableLine,
    create_position,
    reviewable_lines_for_file,
)
from labpilot.merge_requests import (
    MergeRequestSummary,
    format_merge_request_summary,
    parse_merge_request_summary,
)
from labpilot.models import NoteTarget, ReviewCategory, Severity
from labpilot.observability import log_event

if TYPE_CHECKING:
    from labpilot.gitlab_gateway import GitLabGateway


LOGGER = logging.getLogger("labpilot.code_review")

SUMMARY_DELIMITER = "===MR_SUMMARY_START==="
SNAP_WINDOW = 2

_SEVERITIES: tuple[Severity, ...] = ("error", "warning", "info")
_CATEGORIES: tuple[ReviewCategory, ...] = (
    "style",
    "security",
    "performance",
    "logic",
    "maintainability",
)
_SEVERITY_EMOJI: dict[Severity, str] = {"error": "🚨", "warning": "⚠️", "info": "💡"}
_CATEGORY_LABELS: dict[ReviewCategory, str] = {
    "style": "Code Style",
    "security": "Security",
    "performance": "Performance",
    "logic": "Logic",
    "maintainability": "Maintainability",
}
_PLACEHOLDER_PATHS = ("path/to/file", "[file path]", "example")
_PLACEHOLDER_COMMENTS = (
    "[your review comment]",
    "issue description and suggestion",
    "specific problem description and suggestion",
)


@dataclass(frozen=True)
class ReviewComment:
    file_path: str
    line_number: int
    content: str
    severity: Severity = "info"
    category: ReviewCategory = "logic"


@dataclass(frozen=True)
class CodeReviewOutput:
    comments: tuple[ReviewComment, ...]
    summary: MergeRequestSummary | None
    summary_text: str | None


@dataclass(frozen=True)
class InlineReviewOutcome:
    placed: int
    snapped: int
    rerouted: int
    failed: int


def parse_ai_review_response(response: str) -> list[ReviewComment]:
    """Parse review comments from a JSON array or ``File:/Line:/Comment:`` blocks."""
    from_json = _parse_json_review(response)
    if from_json is not None:
        return from_json

    comments: list[ReviewComment] = []
    current_file = ""
    current_line: int | None = None
    current_comment = ""
    severity: Severity = "info"
    category: ReviewCategory = "logic"
    collecting = False

    def save_current() -> None:
        nonlocal current_comment, collecting
        text = current_comment.strip()
        if current_file and current_line is not None and text and not _is_placeholder(current_file, text):
            comments.append(
                ReviewComment(
                    file_path=current_file,
                    line_number=current_line,
                    content=text,
                    severity=severity,
                    category=category,
                )
            )
        current_comment = ""
        collecting = False

    for raw_line in response.split("\n"):
        file_value = _match_field(raw_line, ("File",))
        if file_value:
            save_current()
            current_file = file_value.strip("`")
            current_line = None
            severity = "info"
            category = "logic"
            continue

        line_value = _match_field(raw_line, ("Line", "Lines"))
        if line_value:
            number = re.search(r"\d+", line_value)
            current_line = int(number.group(0)) if number else None
            collecting = False
            continue

        comment_value = _match_field(raw_line, ("Comment", "Review", "Issue"))
        if comment_value is not None:
            current_comment = comment_value
            collecting = True
            continue

        severity_value = _match_field(raw_line, ("Severity", "Level"))
        if severity_value:
            normalized = severity_value.lower()
            if normalized in _SEVERITIES:
                severity = cast(Severity, normalized)
            collecting = False
            continue

        category_value = _match_field(raw_line, ("Category", "Type"))
        if category_value:
            normalized = category_value.lower()
            if normalized in _CATEGORIES:
                category = cast(ReviewCategory, normalized)
            collecting = False
            continue

        if collecting:
            content = raw_line.strip()
            if not content:
                if current_comment:
                    current_comment += "\n"
            else:
                current_comment += ("\n" if current_comment else "") + content

    save_current()
    return comments


def parse_code_review_output(raw_output: str) -> CodeReviewOutput:
    """Split review output on the summary delimiter and parse both halves independently."""
    review_part, delimiter, summary_part = raw_output.partition(SUMMARY_DELIMITER)
    comments = tuple(parse_ai_review_response(review_part))
    summary = parse_merge_request_summary(summary_part) if delimiter else None
    summary_text = format_merge_request_summary(summary) if summary is not None else None
    return CodeReviewOutput(comments=comments, summary=summary, summary_text=summary_text)


def build_code_review_context(parsed_diff: ParsedDiff, lines: Sequence[ReviewableLine]) -> str:
    parts = ["**Code Review Context:**", ""]
    parts.append(f"Files changed: {len(parsed_diff.files)}")
    parts.append(f"Lines to review: {len(lines)}")
    parts.extend(["", "**Changed Files and Lines:**", ""])
    by_file: dict[str, list[ReviewableLine]] = {}
    for item in lines:
        by_file.setdefault(item.file.new_path, []).append(item)
    for path, file_lines in by_file.items():
        parts.append(f"**File: {path}**")
        for item in file_lines:
            reason = f" ({item.review_reason})" if item.review_reason else ""
            parts.append(f"- Line {item.line_number}: `{item.line.content.strip()}`{reason}")
        parts.append("")
    return "\n".join(parts).rstrip()


def format_review_comment(comment: ReviewComment) -> str:
    emoji = _SEVERITY_EMOJI[comment.severity]
    label = _CATEGORY_LABELS[comment.category]
    return f"{emoji} **{label}** ({comment.severity})\n\n{comment.content}"


def render_general_review_comment(comments: Sequence[ReviewComment]) -> str:
    lines = [
        "## 📋 Code review suggestions (related files)",
        "",
        "*These suggestions could not be attached to a line of this merge request's diff:*",
        "",
    ]
    by_file: dict[str, list[ReviewComment]] = {}
    for comment in comments:
        by_file.setdefault(comment.file_path, []).append(comment)
    for path, file_comments in by_file.items():
        lines.extend([f"### 📄 `{path}`", ""])
        for index, comment in enumerate(file_comments, start=1):
            emoji = _SEVERITY_EMOJI[comment.severity]
            label = _CATEGORY_LABELS[comment.category]
            lines.append(
                f"{index}. {emoji} **{label}** ({comment.severity}) - line {comment.line_number}"
            )
            lines.append(f"   {comment.content}")
            lines.append("")
    lines.extend(["---", "*🤖 Generated by AI code review*"])
    return "\n".join(lines)


def resolve_comment_line(
    parsed_file: ParsedDiffFile, line_number: int
) -> tuple[DiffLine, int] | None:
    """Find the diff line for ``line_number`` or the nearest reviewable line within the window."""
    candidates = reviewable_lines_for_file(parsed_file)
    for candidate in candidates:
        if candidate.line_number == line_number:
            return candidate.line, candidate.line_number
    nearby = [
        candidate
        for candidate in candidates
        if abs(candidate.line_number - line_number) <= SNAP_WINDOW
    ]
    if not nearby:
        return None
    best = min(nearby, key=lambda item: (abs(item.line_number - line_number), item.line_number))
    return best.line, best.line_number


class CodeReviewService:
    def __init__(self, gitlab: GitLabGateway) -> None:
        self._gitlab = gitlab

    def perform_inline_review(
        self,
        *,
        project_id: int,
        merge_request_iid: int,
        parsed_diff: ParsedDiff,
        comments: Sequence[ReviewComment],
    ) -> InlineReviewOutcome:
        placed = 0
        snapped = 0
        failed = 0
        general: list[ReviewComment] = []

        for comment in comments:
            parsed_file = parsed_diff.find_file(comment.file_path)
            if parsed_file is None or not parsed_file.has_diff:
                general.append(comment)
                continue
            resolved = resolve_comment_line(parsed_file, comment.line_number)
            if resolved is None:
                general.append(comment)
                continue
            line, line_number = resolved
            if line_number != comment.line_number:
                snapped += 1
                log_event(
                    LOGGER,
                    "review_comment_snapped",
                    file_path=comment.file_path,
                    requested_line=comment.line_number,
                    actual_line=line_number,
                )
            position = create_position(parsed_diff, parsed_file, line, line_number)
            try:
                self._gitlab.create_inline_discussion(
                    project_id, merge_request_iid, format_review_comment(comment), position
                )
            except Exception as exc:  # noqa: BLE001
                failed += 1
                log_event(
                    LOGGER,
                    "review_comment_failed",
                    file_path=comment.file_path,
                    line_number=comment.line_number,
                    severity=comment.severity,
                    category=comment.category,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            placed += 1

        if general:
            log_event(
                LOGGER,
                "review_comments_rerouted",
                rerouted_count=len(general),
                files=",".join(sorted({comment.file_path for comment in general})),
            )
            try:
                self._gitlab.create_note(
                    project_id,
                    NoteTarget(kind="merge_request", iid=merge_request_iid),
                    render_general_review_comment(general),
                )
            except Exception as exc:  # noqa: BLE001
                failed += len(general)
                log_event(
                    LOGGER,
                    "review_general_comment_failed",
                    comments_count=len(general),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        outcome = InlineReviewOutcome(
            placed=placed,
            snapped=snapped,
            rerouted=len(general),
            failed=failed,
        )
        log_event(
            LOGGER,
            "inline_review_finished",
            project_id=project_id,
            merge_request_iid=merge_request_iid,
            placed=outcome.placed,
            snapped=outcome.snapped,
            rerouted=outcome.rerouted,
            failed=outcome.failed,
        )
        return outcome


def _parse_json_review(response: str) -> list[ReviewComment] | None:
    stripped = response.strip()
    if not stripped.startswith("["):
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, list):
        return None
    comments: list[ReviewComment] = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        file_path = item.get("filePath") or item.get("file")
        line_number = item.get("lineNumber") or item.get("line")
        content = item.get("content") or item.get("comment")
        if not isinstance(file_path, str) or not file_path or not isinstance(content, str) or not content:
            continue
        try:
            number = int(line_number) if not isinstance(line_number, bool) else None
        except (TypeError, ValueError):
            number = None
        if number is None:
            continue
        severity = str(item.get("severity") or "info").lower()
        category = str(item.get("category") or "logic").lower()
        comments.append(
            ReviewComment(
                file_path=file_path,
                line_number=number,
                content=content.strip(),
                severity=cast(Severity, severity) if severity in _SEVERITIES else "info",
                category=cast(ReviewCategory, category) if category in _CATEGORIES else "logic",
            )
        )
    return comments


def _match_field(raw_line: str, field_names: tuple[str, ...]) -> str | None:
    trimmed = raw_line.strip().lstrip("-").strip()
    if not trimmed:
        return None
    for name in field_names:
        escaped = re.escape(name)
        for pattern in (
            rf"^\*\*{escaped}:\*\*[\s ]*(.+)$",
            rf"^\*\*{escaped}\*\*:[\s ]*(.+)$",
            rf"^\*\*{escaped}:\*[\s ]*(.+)$",
            rf"^{escaped}:[\s ]*(.+)$",
        ):
            match = re.match(pattern, trimmed, re.IGNORECASE)
            if match is not None:
                return match.group(1).strip()
    return None


def _is_placeholder(file_path: str, comment: str) -> bool:
    lowered_path = file_path.lower()
    if any(marker in lowered_path for marker in _PLACEHOLDER_PATHS):
        return True
    lowered_comment = comment.lower()
    return any(marker in lowered_comment for marker in _PLACEHOLDER_COMMENTS)
