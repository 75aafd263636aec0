from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
import re

from labpilot.models import ChangeType, DiffLineType, FileChange
from labpilot.observability import log_event


LOGGER = logging.getLogger("labpilot.diff_parser")

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,\d+)? \+(\d+)(?:,\d+)? @@")
_EXCLUDED_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\.pb\.go$"),
    re.compile(r"(swagger|openapi)\.(json|ya?ml)$", re.IGNORECASE),
    re.compile(r"\.(md|txt|rst)$", re.IGNORECASE),
    re.compile(r"(^|/)docs/", re.IGNORECASE),
    re.compile(r"(^|/)api-docs/", re.IGNORECASE),
    re.compile(r"swagger-ui", re.IGNORECASE),
)
_IMPORT_LINE = re.compile(r"^(import|require|from|using|#include)\s")
_TRIVIAL_ASSIGNMENT = re.compile(
    r"""^(?:(?:const|let|var)\s+)?\w+\s*(:\s*\w+\s*)?=\s*(true|false|True|False|None|null|undefined|\d+|"[^"]*"|'[^']*');?\s*$"""
)
_CONTROL_FLOW = re.compile(r"\b(if|elif|else|for|while|switch|match|try|catch|except|finally)\b")
_FUNCTION_DEFINITION = re.compile(
    r"^(def |async def |class |function |async\s+function|func |fn |\w+\s*=\s*(async\s+)?\(.*\)\s*=>)"
)
_ASYNC_OR_API = re.compile(r"(fetch|axios|http|api|client|requests)\.|\.then\(|\.catch\(|\bawait\s", re.IGNORECASE)
_SECURITY_SENSITIVE = re.compile(r"password|token|secret|\bkey\b|auth|session|cookie|jwt", re.IGNORECASE)
_DATA_MANIPULATION = re.compile(
    r"\b(sql|query|insert|update|delete|select)\b|\.(save|create|update|delete|find)\(", re.IGNORECASE
)
_BRACKETS = re.compile(r"[(){}\[\]]")


@dataclass(frozen=True)
class MergeRequestDiff:
    old_path: str
    new_path: str
    diff: str
    new_file: bool = False
    deleted_file: bool = False
    renamed_file: bool = False


@dataclass(frozen=True)
class DiffRefs:
    base_sha: str
    head_sha: str
    start_sha: str


@dataclass(frozen=True)
class DiffLine:
    line_type: DiffLineType
    content: str
    old_line: int | None
    new_line: int | None


@dataclass(frozen=True)
class ParsedDiffFile:
    old_path: str
    new_path: str
    lines: tuple[DiffLine, ...]
    is_new: bool
    is_deleted: bool
    is_renamed: bool

    @property
    def has_diff(self) -> bool:
        return bool(self.lines)

    def matches(self, path: str) -> bool:
        return path in (self.new_path, self.old_path)


@dataclass(frozen=True)
class ParsedDiff:
    base_sha: str
    head_sha: str
    start_sha: str
    files: tuple[ParsedDiffFile, ...]

    def find_file(self, path: str) -> ParsedDiffFile | None:
        for parsed in self.files:
            if parsed.new_path == path:
                return parsed
        for parsed in self.files:
            if parsed.old_path == path:
                return parsed
        return None


@dataclass(frozen=True)
class ReviewableLine:
    file: ParsedDiffFile
    line: DiffLine
    line_number: int
    review_reason: str | None = None


@dataclass(frozen=True)
class DiffPosition:
    base_sha: str
    head_sha: str
    start_sha: str
    old_path: str
    new_path: str
    old_line: int | None
    new_line: int | None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "position_type": "text",
            "base_sha": self.base_sha,
            "head_sha": self.head_sha,
            "start_sha": self.start_sha,
            "old_path": self.old_path,
            "new_path": self.new_path,
        }
        if self.old_line is not None:
            payload["old_line"] = self.old_line
        if self.new_line is not None:
            payload["new_line"] = self.new_line
        return payload


def should_exclude_from_review(path: str) -> bool:
    return any(pattern.search(path) for pattern in _EXCLUDED_PATTERNS)


def parse_merge_request_diffs(
    diffs: Sequence[MergeRequestDiff], diff_refs: DiffRefs | None
) -> ParsedDiff:
    files: list[ParsedDiffFile] = []
    excluded = 0
    for diff in diffs:
        path = diff.new_path or diff.old_path
        if should_exclude_from_review(path):
            excluded += 1
            continue
        files.append(
            ParsedDiffFile(
                old_path=diff.old_path or diff.new_path,
                new_path=diff.new_path or diff.old_path,
                lines=parse_diff_content(diff.diff),
                is_new=diff.new_file,
                is_deleted=diff.deleted_file,
                is_renamed=diff.renamed_file,
            )
        )
    if excluded:
        log_event(
            LOGGER,
            "diff_files_excluded",
            excluded_count=excluded,
            total_files=len(diffs),
            reviewable_files=len(files),
        )
    refs = diff_refs or DiffRefs(base_sha="", head_sha="", start_sha="")
    return ParsedDiff(
        base_sha=refs.base_sha,
        head_sha=refs.head_sha,
        start_sha=refs.start_sha,
        files=tuple(files),
    )


def parse_diff_content(diff_text: str) -> tuple[DiffLine, ...]:
    """Number each line of a unified diff body.

    Lines before the first hunk header, file headers and ``\\ No newline`` markers
    are skipped. A bare empty line inside a hunk counts as context.
    """
    lines: list[DiffLine] = []
    old_line = 0
    new_line = 0
    in_hunk = False
    raw_lines = diff_text.split("\n")
    if raw_lines and raw_lines[-1] == "":
        raw_lines.pop()
    for raw in raw_lines:
        raw = raw.removesuffix("\r")
        if raw.startswith("diff --git"):
            in_hunk = False
            continue
        if raw.startswith("@@"):
            match = _HUNK_HEADER.match(raw)
            if match is not None:
                old_line = int(match.group(1)) - 1
                new_line = int(match.group(2)) - 1
                in_hunk = True
            continue
        if not in_hunk or raw.startswith("\\"):
            continue
        if raw.startswith("+"):
            new_line += 1
            lines.append(DiffLine(line_type="add", content=raw[1:], old_line=None, new_line=new_line))
        elif raw.startswith("-"):
            old_line += 1
            lines.append(
                DiffLine(line_type="delete", content=raw[1:], old_line=old_line, new_line=None)
            )
        elif raw.startswith(" ") or raw == "":
            old_line += 1
            new_line += 1
            lines.append(
                DiffLine(line_type="context", content=raw[1:], old_line=old_line, new_line=new_line)
            )
    return tuple(lines)


def get_reviewable_lines(parsed_diff: ParsedDiff) -> list[ReviewableLine]:
    reviewable: list[ReviewableLine] = []
    for parsed_file in parsed_diff.files:
        reviewable.extend(reviewable_lines_for_file(parsed_file))
    return reviewable


def reviewable_lines_for_file(parsed_file: ParsedDiffFile) -> list[ReviewableLine]:
    return [
        ReviewableLine(file=parsed_file, line=line, line_number=line.new_line)
        for line in parsed_file.lines
        if line.line_type in ("add", "context") and line.new_line is not None
    ]


def filter_lines_needing_review(lines: Sequence[ReviewableLine]) -> list[ReviewableLine]:
    """Drop blank, import and literal-assignment lines; tag the rest with a review reason."""
    kept: list[ReviewableLine] = []
    for item in lines:
        content = item.line.content.strip()
        if not content:
            continue
        if _IMPORT_LINE.match(content) or _TRIVIAL_ASSIGNMENT.match(content):
            continue
        reason = _review_reason(content)
        if reason is None and item.line.line_type == "context":
            continue
        kept.append(
            ReviewableLine(
                file=item.file,
                line=item.line,
                line_number=item.line_number,
                review_reason=reason,
            )
        )
    return kept


def create_position(
    parsed_diff: ParsedDiff, parsed_file: ParsedDiffFile, line: DiffLine, line_number: int
) -> DiffPosition:
    if line.line_type == "add":
        old_line, new_line = None, line_number
    elif line.line_type == "delete":
        old_line, new_line = line_number, None
    else:
        old_line, new_line = line.old_line, line.new_line
    return DiffPosition(
        base_sha=parsed_diff.base_sha,
        head_sha=parsed_diff.head_sha,
        start_sha=parsed_diff.start_sha,
        old_path=parsed_file.old_path,
        new_path=parsed_file.new_path,
        old_line=old_line,
        new_line=new_line,
    )


def map_diffs_to_file_changes(diffs: Sequence[MergeRequestDiff]) -> tuple[FileChange, ...]:
    changes: list[FileChange] = []
    for diff in diffs:
        change_type: ChangeType
        if diff.new_file:
            change_type = "created"
        elif diff.deleted_file:
            change_type = "deleted"
        else:
            change_type = "modified"
        if change_type == "deleted":
            path = diff.old_path or diff.new_path
        else:
            path = diff.new_path or diff.old_path
        if path:
            changes.append(FileChange(path=path, change_type=change_type))
    return tuple(changes)


def count_line_changes(diffs: Sequence[MergeRequestDiff]) -> tuple[int, int]:
    """Return ``(additions, deletions)`` across every diff body."""
    additions = 0
    deletions = 0
    for diff in diffs:
        for line in parse_diff_content(diff.diff):
            if line.line_type == "add":
                additions += 1
            elif line.line_type == "delete":
                deletions += 1
    return additions, deletions


def _review_reason(content: str) -> str | None:
    if _CONTROL_FLOW.search(content):
        return "Control flow logic"
    if _FUNCTION_DEFINITION.match(content):
        return "Function definition"
    if _ASYNC_OR_API.search(content):
        return "API call or async operation"
    if _SECURITY_SENSITIVE.search(content):
        return "Security-sensitive code"
    if _DATA_MANIPULATION.search(content):
        return "Data manipulation"
    if len(content) > 80 or len(_BRACKETS.findall(content)) > 4:
        return "Complex expression"
    return None
