from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import posixpath
import re
import secrets
import string

from labpilot.comments import build_change_summary, truncate_text
from labpilot.models import ChangeType, FileChange


MAX_TITLE_LENGTH = 72
_BRANCH_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_PROJECT_GROUP = "project"

_TYPE_PATTERNS: tuple[tuple[str, tuple[re.Pattern[str], ...]], ...] = (
    (
        "feat",
        (
            re.compile(r"add|implement|create|build|develop", re.IGNORECASE),
            re.compile(r"new feature|feature", re.IGNORECASE),
            re.compile(r"component|function|endpoint|api", re.IGNORECASE),
        ),
    ),
    (
        "fix",
        (
            re.compile(r"fix|resolve|correct|repair", re.IGNORECASE),
            re.compile(r"bug|issue|error|problem", re.IGNORECASE),
            re.compile(r"broken|failing|not working", re.IGNORECASE),
        ),
    ),
    (
        "refactor",
        (
            re.compile(r"refactor|restructure|reorganize", re.IGNORECASE),
            re.compile(r"clean up|cleanup|improve structure", re.IGNORECASE),
            re.compile(r"optimi[sz]e|performance", re.IGNORECASE),
        ),
    ),
    (
        "docs",
        (
            re.compile(r"document|documentation|readme", re.IGNORECASE),
            re.compile(r"comment|comments|explain", re.IGNORECASE),
            re.compile(r"guide|tutorial", re.IGNORECASE),
        ),
    ),
    (
        "style",
        (
            re.compile(r"format|formatting|style", re.IGNORECASE),
            re.compile(r"lint|ruff|black|prettier", re.IGNORECASE),
        ),
    ),
    ("test", (re.compile(r"test|testing|unit test|coverage", re.IGNORECASE),)),
    (
        "chore",
        (
            re.compile(r"update|upgrade|bump", re.IGNORECASE),
            re.compile(r"dependency|dependencies|package", re.IGNORECASE),
            re.compile(r"config|configuration|setup|install", re.IGNORECASE),
        ),
    ),
)
_TYPE_CHECKLISTS: dict[str, tuple[str, ...]] = {
    "feat": (
        "## New Features",
        "- [ ] New functionality implemented as requested",
        "- [ ] Feature integrates well with the existing codebase",
    ),
    "fix": (
        "## Bug Fix Details",
        "- [ ] Issue has been resolved",
        "- [ ] Fix does not introduce new issues",
    ),
    "refactor": (
        "## Refactoring Details",
        "- [ ] Code structure improved while maintaining functionality",
        "- [ ] No breaking changes introduced",
    ),
    "docs": (
        "## Documentation Changes",
        "- [ ] Documentation is accurate and up to date",
    ),
}
_CHANGE_HEADINGS: dict[ChangeType, str] = {
    "created": "📝 Files Created",
    "modified": "✏️ Files Modified",
    "deleted": "🗑️ Files Deleted",
}
_CHANGE_VERBS: dict[ChangeType, str] = {
    "created": "Add",
    "modified": "Improve",
    "deleted": "Remove",
}
_BUG_KEYWORDS = ("fix", "bug", "issue", "error", "fault", "repair", "patch")


@dataclass(frozen=True)
class MergeRequestText:
    title: str
    description: str
    commit_message: str


@dataclass(frozen=True)
class ChangeGroup:
    prefix: str
    files: tuple[str, ...]


@dataclass(frozen=True)
class MergeRequestSummary:
    title: str | None
    overview: str | None
    major_changes: tuple[str, ...]
    technical_highlights: tuple[str, ...]
    risks: tuple[str, ...]
    tests: tuple[str, ...]


def generate_merge_request_text(
    *, instruction: str, context: str, changes: Sequence[FileChange], now: datetime | None = None
) -> MergeRequestText:
    change_type = _determine_change_type(instruction, changes)
    scope = _determine_scope(changes)
    title = _generate_title(change_type, instruction, scope)
    description = _generate_description(
        instruction=instruction,
        context=context,
        changes=changes,
        change_type=change_type,
        now=now or datetime.now(timezone.utc),
    )
    return MergeRequestText(
        title=title,
        description=description,
        commit_message=_generate_commit_message(title, instruction),
    )


def generate_branch_name(prefix: str, *, now: datetime | None = None) -> str:
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%S")
    suffix = "".join(secrets.choice(_BRANCH_SUFFIX_ALPHABET) for _ in range(6))
    return f"{prefix}-{timestamp}-{suffix}"


def build_merge_request_title(
    *, command: str, context: str, changes: Sequence[FileChange]
) -> str | None:
    """Build a ``bugfix: ...``/``feature: ...`` title from the dominant change group."""
    normalized_command = command.strip()
    focus = _detect_primary_change_focus(changes)
    if focus is not None:
        change_type, group = focus
        label = format_group_label(group.prefix, group.files)
        examples = format_file_examples(group.files, limit=2)
        subject = f"{_CHANGE_VERBS[change_type]} {label}"
        if examples:
            subject = f"{subject} ({examples})"
    else:
        subject = truncate_text(normalized_command or context, 60)
    if not subject:
        return None
    return f"{_detect_change_category(f'{normalized_command} {context}')}: {subject}"


def group_changes_by_prefix(changes: Sequence[FileChange]) -> list[ChangeGroup]:
    grouped: dict[str, list[str]] = {}
    for change in changes:
        grouped.setdefault(_extract_change_group(change.path), []).append(change.path)
    return [ChangeGroup(prefix=prefix, files=tuple(files)) for prefix, files in grouped.items()]


def format_group_label(prefix: str, files: Sequence[str] = ()) -> str:
    if not prefix or prefix == _PROJECT_GROUP:
        sample_dir = posixpath.dirname(files[0]) if files else ""
        if not sample_dir or sample_dir == ".":
            return "the project"
        prefix = sample_dir
    normalized = prefix.replace("\\", "/")
    if normalized in {"", "."}:
        return "the project"
    return f"`{normalized}` module"


def format_file_examples(files: Sequence[str], *, limit: int = 3) -> str | None:
    if not files:
        return None
    examples = [f"`{posixpath.basename(path)}`" for path in files[:limit]]
    if len(files) > limit:
        examples.append(f"... {len(files)} files in total")
    return ", ".join(examples)


def build_logic_change_highlights(changes: Sequence[FileChange]) -> list[str]:
    highlights = [
        *_describe_change_groups(changes, "created", limit=2),
        *_describe_change_groups(changes, "modified", limit=2),
        *_describe_change_groups(changes, "deleted", limit=1),
    ]
    return highlights[:5]


def build_code_change_summary_text(changes: Sequence[FileChange]) -> str | None:
    highlights = build_logic_change_highlights(changes)
    if highlights:
        return "\n".join(["Key logic changes in this merge request:", *highlights])
    fallback = build_change_summary(changes, limit=8)
    if not fallback:
        return None
    return "\n".join(["This merge request contains the following key changes:", *fallback])


def parse_merge_request_summary(raw: str) -> MergeRequestSummary | None:
    """Parse the JSON summary block an AI review appends after its comments."""
    block = _extract_json_block(raw)
    if block is None:
        return None
    try:
        parsed = json.loads(block)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    title = parsed.get("title")
    overview = parsed.get("overview")
    return MergeRequestSummary(
        title=title.strip() or None if isinstance(title, str) else None,
        overview=overview.strip() or None if isinstance(overview, str) else None,
        major_changes=_normalize_summary_list(parsed.get("majorChanges")),
        technical_highlights=_normalize_summary_list(parsed.get("technicalHighlights")),
        risks=_normalize_summary_list(parsed.get("risks")),
        tests=_normalize_summary_list(parsed.get("tests")),
    )


def format_merge_request_summary(summary: MergeRequestSummary) -> str | None:
    sections: list[str] = []
    if summary.overview:
        sections.append(summary.overview)
    for heading, items in (
        ("Major changes", summary.major_changes),
        ("Technical highlights", summary.technical_highlights),
        ("Risks", summary.risks),
        ("Tests", summary.tests),
    ):
        if items:
            sections.append("\n".join([f"**{heading}:**", *(f"- {item}" for item in items)]))
    if not sections:
        return None
    return "\n\n".join(sections)


def append_summary_to_description(description: str, summary_text: str) -> str:
    base = description.rstrip()
    section = f"---\n\n**Summary:** {summary_text.strip()}"
    if not base:
        return section
    return f"{base}\n\n{section}"


def _determine_change_type(instruction: str, changes: Sequence[FileChange]) -> str:
    for change_type, patterns in _TYPE_PATTERNS:
        if any(pattern.search(instruction) for pattern in patterns):
            return change_type
    if any("test" in change.path or "spec" in change.path for change in changes):
        return "test"
    if any(change.path.endswith(".md") or "README" in change.path for change in changes):
        return "docs"
    if any(change.change_type == "deleted" for change in changes) and not any(
        change.change_type == "created" for change in changes
    ):
        return "refactor"
    return "feat"


def _determine_scope(changes: Sequence[FileChange]) -> str | None:
    if not changes:
        return None
    counts: dict[str, int] = {}
    for change in changes:
        parts = change.path.split("/")
        if len(parts) < 2:
            continue
        directory = parts[1] if parts[0] == "src" else parts[0]
        counts[directory] = counts.get(directory, 0) + 1
    if counts:
        top_dir, top_count = max(counts.items(), key=lambda item: item[1])
        if top_count > len(changes) * 0.6:
            return top_dir
    paths = [change.path for change in changes]
    if any("api" in path or "service" in path for path in paths):
        return "api"
    if any("component" in path or "ui" in path for path in paths):
        return "ui"
    if any("config" in path or "settings" in path for path in paths):
        return "config"
    return None


def _generate_title(change_type: str, instruction: str, scope: str | None) -> str:
    summary = _extract_summary(instruction)
    prefix = f"{change_type}({scope})" if scope else change_type
    title = f"{prefix}: {summary}"
    if len(title) <= MAX_TITLE_LENGTH:
        return title
    max_summary = MAX_TITLE_LENGTH - len(prefix) - 2
    return f"{prefix}: {summary[: max_summary - 3]}..."


def _extract_summary(instruction: str) -> str:
    cleaned = re.sub(r"^@\w+\s*", "", instruction.strip())
    cleaned = re.sub(r"^(can you |could you |would you |please )", "", cleaned, flags=re.IGNORECASE)
    cleaned = cleaned.rstrip("?").strip()
    summary = re.split(r"[.!?]+", cleaned)[0].strip()
    if not summary:
        summary = "Apply requested changes"
    summary = summary[0].upper() + summary[1:]
    if len(summary) > 50:
        summary = f"{summary[:47]}..."
    return summary


def _generate_description(
    *,
    instruction: str,
    context: str,
    changes: Sequence[FileChange],
    change_type: str,
    now: datetime,
) -> str:
    lines = ["## Summary", "", re.sub(r"^@\w+\s*", "", instruction.strip()), ""]
    if context and "comment" not in context.lower():
        lines.extend([f"**Source:** {context}", ""])
    if changes:
        lines.extend(["## Changes Made", ""])
        for kind, heading in _CHANGE_HEADINGS.items():
            files = [change.path for change in changes if change.change_type == kind]
            if files:
                lines.append(f"### {heading}")
                lines.extend(f"- `{path}`" for path in files)
                lines.append("")
    checklist = _TYPE_CHECKLISTS.get(change_type)
    if checklist:
        lines.extend([checklist[0], "", *checklist[1:], ""])
    if change_type != "docs" and any(not change.path.endswith(".md") for change in changes):
        lines.extend(
            [
                "## Testing",
                "",
                "- [ ] Code changes have been tested locally",
                "- [ ] All existing tests pass",
                "",
            ]
        )
    lines.extend(
        [
            "---",
            "",
            "*🤖 This merge request was generated automatically by labpilot*",
            f"*Generated at: {now.astimezone(timezone.utc).isoformat()}*",
        ]
    )
    return "\n".join(lines)


def _generate_commit_message(title: str, instruction: str) -> str:
    cleaned = re.sub(r"^@\w+\s*", "", instruction.strip())
    if len(cleaned) <= 60:
        return title
    return f"{title}\n\n{_wrap_text(cleaned, 72)}"


def _wrap_text(text: str, width: int) -> str:
    lines: list[str] = []
    current = ""
    for word in text.split():
        if not current:
            current = word
        elif len(current) + len(word) + 1 <= width:
            current = f"{current} {word}"
        else:
            lines.append(current)
            current = word
    if current:
        lines.append(current)
    return "\n".join(lines)


def _extract_change_group(path: str) -> str:
    cleaned = re.sub(r"^[./]+", "", path)
    if not cleaned:
        return _PROJECT_GROUP
    segments = cleaned.split("/")
    if len(segments) == 1:
        return segments[0] or _PROJECT_GROUP
    if segments[0] == "src" and len(segments) >= 3:
        return f"src/{segments[1]}/{segments[2]}" if len(segments) > 3 else f"src/{segments[1]}"
    return "/".join(segments[: min(2, len(segments) - 1)])


def _describe_change_groups(
    changes: Sequence[FileChange], change_type: ChangeType, *, limit: int
) -> list[str]:
    filtered = [change for change in changes if change.change_type == change_type]
    if not filtered:
        return []
    groups = sorted(group_changes_by_prefix(filtered), key=lambda group: -len(group.files))
    lines: list[str] = []
    for group in groups[:limit]:
        label = format_group_label(group.prefix, group.files)
        examples = format_file_examples(group.files)
        verb = _CHANGE_VERBS[change_type]
        lines.append(f"- {verb} {label} (e.g. {examples})" if examples else f"- {verb} {label}")
    return lines


def _detect_primary_change_focus(
    changes: Sequence[FileChange],
) -> tuple[ChangeType, ChangeGroup] | None:
    order: tuple[ChangeType, ...] = ("created", "modified", "deleted")
    for change_type in order:
        filtered = [change for change in changes if change.change_type == change_type]
        groups = group_changes_by_prefix(filtered)
        if groups:
            top = max(groups, key=lambda group: len(group.files))
            return change_type, top
    return None


def _detect_change_category(text: str) -> str:
    lowered = text.lower()
    if any(keyword in lowered for keyword in _BUG_KEYWORDS):
        return "bugfix"
    return "feature"


def _normalize_summary_list(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        stripped = value.strip()
        return (stripped,) if stripped else ()
    if not isinstance(value, list):
        return ()
    return tuple(item.strip() for item in value if isinstance(item, str) and item.strip())


def _extract_json_block(text: str) -> str | None:
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    if fenced is not None:
        return fenced.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]
