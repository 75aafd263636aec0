from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
from pathlib import Path

from labpilot.code_review import SUMMARY_DELIMITER
from labpilot.models import ProviderId, Scenario
from labpilot.observability import log_event


LOGGER = logging.getLogger("labpilot.prompts")

DEFAULT_REVIEW_GUIDELINES = (
    "Use standard code review practices focusing on security, performance, and maintainability."
)

_DEFAULT_SYSTEM_PROMPTS: dict[Scenario, str] = {
    "issue-session": """
You are working in an automated webhook environment for GitLab issues.
You can inspect the repository, create or edit files, and describe your changes clearly.
Keep the conversation going across turns, remember previous context, and provide actionable
updates each time you reply.
""".strip(),
    "mr-fix": """
You are working in an automated webhook environment responding to merge request feedback.
Make the requested code changes directly without asking for confirmation.
Use git commands when needed and summarize the modifications once complete.
""".strip(),
    "code-review": """
You are performing an automated code review for a GitLab merge request.
Review only the provided diff context, call out issues with clear explanations, and suggest
actionable improvements. Focus on correctness, security, and maintainability.
""".strip(),
    "spec-doc": """
You are in documentation mode responding to a GitLab issue using Spec Kit.
Focus on capturing product requirements, success criteria, and constraints clearly.
Use the /speckit.* commands to produce high-quality documentation.
Avoid modifying application source code unless explicitly instructed.
""".strip(),
}


@dataclass(frozen=True)
class PromptPayload:
    prompt: str
    system_prompt: str | None


def resolve_scenario(scenario: Scenario | None, *, is_issue_scenario: bool) -> Scenario:
    if scenario is not None:
        return scenario
    return "issue-session" if is_issue_scenario else "mr-fix"


def load_system_prompt(scenario: Scenario, *, prompt_dir: Path | None) -> str:
    if prompt_dir is not None:
        path = prompt_dir / f"{scenario}.md"
        try:
            content = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            content = ""
        except OSError as exc:
            log_event(
                LOGGER,
                "system_prompt_read_failed",
                path=str(path),
                error_type=type(exc).__name__,
            )
            content = ""
        if content:
            return content
    return _DEFAULT_SYSTEM_PROMPTS[scenario]


def build_prompt_payload(
    *,
    provider: ProviderId,
    command: str,
    context: str,
    scenario: Scenario,
    prompt_dir: Path | None = None,
) -> PromptPayload:
    """Assemble the user prompt and the system prompt for one provider call.

    Spec-kit commands are passed through untouched. Codex has no system prompt flag,
    so its system instructions are inlined at the top of the prompt.
    """
    if scenario == "spec-doc":
        return PromptPayload(prompt=command.strip(), system_prompt=None)

    system_prompt = load_system_prompt(scenario, prompt_dir=prompt_dir)
    segments: list[str] = []
    if provider == "codex":
        segments.append(f"### System instructions\n{system_prompt}")
    if context.strip():
        segments.append(f"**Context:** {context}")
    if "MR #" in context:
        segments.append(
            "**MR Analysis:** This is a merge request context. You can use git commands "
            "(`git log`, `git diff`, `git show`) to examine which files have been modified."
        )
    segments.append(f"**Request:** {command}")
    return PromptPayload(
        prompt="\n\n".join(segments),
        system_prompt=system_prompt if provider == "claude" else None,
    )


def load_review_guidelines(workspace: Path, relative_path: str) -> str:
    path = workspace / relative_path
    try:
        content = path.read_text(encoding="utf-8").strip()
    except OSError:
        log_event(LOGGER, "review_guidelines_missing", path=str(path))
        return DEFAULT_REVIEW_GUIDELINES
    return content or DEFAULT_REVIEW_GUIDELINES


def build_code_review_prompt(
    *,
    command: str,
    review_context: str,
    guidelines: str,
    full_context: str | None = None,
    merge_request_title: str | None = None,
    source_branch: str | None = None,
) -> str:
    sections = [f'Perform a detailed code review based on the following request: "{command}"']
    sections.append(review_context)
    if full_context and full_context.strip() and full_context.strip() != command.strip():
        sections.append(
            "**Full Context from Original Message:**\n"
            f"{full_context}\n\n"
            "Please consider the complete context when performing the review."
        )
    if merge_request_title or source_branch:
        mr_lines = ["**Merge Request Context:**"]
        if merge_request_title:
            mr_lines.append(f"- **Original MR Title:** {merge_request_title}")
        if source_branch:
            mr_lines.append(f"- **Source Branch:** {source_branch}")
        sections.append("\n".join(mr_lines))

    sections.append(
        f"""
**Project-Specific Code Review Guidelines:**
{guidelines}

**CRITICAL CONSTRAINT**: Only review and comment on files listed in the "Changed Files and
Lines" section above. Do not create File/Line comments for files that are not shown there;
mention related concerns in general terms instead.

For every issue you find, use EXACTLY this format (including the **bold** markers):

**File:** [file path from the "Changed Files and Lines" section]
**Line:** [line number from the "Changed Files and Lines" section]
**Comment:** [your review comment]
**Severity:** [error|warning|info]
**Category:** [style|security|performance|logic|maintainability]

Once you finish listing all issues, output the following delimiter on its own line:
{SUMMARY_DELIMITER}

After the delimiter, produce a single JSON block summarizing the merge request:
{{
  "title": "type: concise title, reusing keywords from the original MR title",
  "overview": "one sentence describing the core change",
  "majorChanges": ["at most 3 main changes"],
  "technicalHighlights": ["at most 2 technical highlights"],
  "risks": ["at most 2 potential risks"],
  "tests": ["at most 2 testing suggestions"]
}}

Rules for the summary JSON:
1. The title must follow conventional commit style, e.g. "feat: add user authentication".
2. Derive the title type from the original MR title first, then from the branch name.
3. Keep every array to 2-3 short entries; use "module: behavior change" for majorChanges.
4. Output only the JSON after the delimiter, with no extra commentary.
""".strip()
    )
    return "\n\n".join(sections)


def build_conflict_resolution_prompt(*, branch: str, conflicts: Sequence[str]) -> str:
    conflict_lines = "\n".join(f"- {path}" for path in conflicts) or "- (git did not report paths)"
    return f"""
Rebasing branch `{branch}` onto its remote counterpart stopped with merge conflicts.

Conflicting files:
{conflict_lines}

Resolve the conflicts now:
- Edit each conflicting file, keeping both the remote changes and the intent of our changes.
- Remove every conflict marker (<<<<<<<, =======, >>>>>>>).
- Stage the resolved files with `git add`.
- Continue the rebase with `git rebase --continue` (set GIT_EDITOR=true to skip the editor).
- Do not push; pushing is handled after you finish.

Finish with a short summary of how each conflict was resolved.
""".strip()
