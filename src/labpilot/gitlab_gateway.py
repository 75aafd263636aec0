from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import json
import logging
from typing import cast
from urllib.parse import urlencode

from labpilot.comments import format_comment_body
from labpilot.diff_parser import DiffPosition, DiffRefs, MergeRequestDiff
from labpilot.models import NoteTarget
from labpilot.observability import log_event, log_warning_event
from labpilot.shell import run


LOGGER = logging.getLogger("labpilot.gitlab_gateway")

_PAGE_SIZE = 100
_MAX_PAGES = 50


class GitLabApiError(RuntimeError):
    pass


@dataclass(frozen=True)
class MergeRequestSnapshot:
    iid: int
    title: str
    description: str
    source_branch: str
    target_branch: str
    web_url: str
    changes_count: int | None
    diff_refs: DiffRefs | None


@dataclass(frozen=True)
class DiscussionNote:
    note_id: int
    body: str
    author: str
    created_at: str
    system: bool = False


@dataclass(frozen=True)
class Discussion:
    discussion_id: str
    resolvable: bool
    resolved: bool
    notes: tuple[DiscussionNote, ...]


@dataclass(frozen=True)
class CreatedMergeRequest:
    iid: int
    web_url: str


@dataclass(frozen=True)
class NoteLocation:
    discussion: Discussion
    note: DiscussionNote
    thread_context: str | None


@dataclass(frozen=True)
class GitLabGateway:
    """GitLab REST calls made through ``glab api``.

    Every note body posted here is normalized with ``format_comment_body`` so it
    carries the response marker.
    """

    host: str | None = None

    def get_merge_request(self, project_id: int, merge_request_iid: int) -> MergeRequestSnapshot:
        path = f"projects/{project_id}/merge_requests/{merge_request_iid}"
        payload_obj = _require_object(self._api_json("GET", path), what="merge request")
        diff_refs_obj = _as_object_dict(payload_obj.get("diff_refs"))
        diff_refs = None
        if diff_refs_obj is not None:
            diff_refs = DiffRefs(
                base_sha=_as_string(diff_refs_obj.get("base_sha")),
                head_sha=_as_string(diff_refs_obj.get("head_sha")),
                start_sha=_as_string(diff_refs_obj.get("start_sha")),
            )
        snapshot = MergeRequestSnapshot(
            iid=_as_int(payload_obj.get("iid"), field="iid"),
            title=_as_string(payload_obj.get("title")),
            description=_as_string(payload_obj.get("description")),
            source_branch=_as_string(payload_obj.get("source_branch")),
            target_branch=_as_string(payload_obj.get("target_branch")),
            web_url=_as_string(payload_obj.get("web_url")),
            changes_count=_as_optional_count(payload_obj.get("changes_count")),
            diff_refs=diff_refs,
        )
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="merge_request",
            project_id=project_id,
            merge_request_iid=merge_request_iid,
        )
        return snapshot

    def get_merge_request_diffs(
        self, project_id: int, merge_request_iid: int
    ) -> tuple[MergeRequestDiff, ...]:
        path = f"projects/{project_id}/merge_requests/{merge_request_iid}/diffs"
        diffs: list[MergeRequestDiff] = []
        for item in self._paginate(path):
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            diffs.append(
                MergeRequestDiff(
                    old_path=_as_string(item_obj.get("old_path")),
                    new_path=_as_string(item_obj.get("new_path")),
                    diff=_as_string(item_obj.get("diff")),
                    new_file=item_obj.get("new_file") is True,
                    deleted_file=item_obj.get("deleted_file") is True,
                    renamed_file=item_obj.get("renamed_file") is True,
                )
            )
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="merge_request_diffs",
            project_id=project_id,
            merge_request_iid=merge_request_iid,
            count=len(diffs),
        )
        return tuple(diffs)

    def list_discussions(self, project_id: int, target: NoteTarget) -> tuple[Discussion, ...]:
        path = f"projects/{project_id}/{target.api_segment}/{target.iid}/discussions"
        discussions: list[Discussion] = []
        for item in self._paginate(path):
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            notes: list[DiscussionNote] = []
            resolvable = False
            resolved = False
            notes_obj = item_obj.get("notes")
            if isinstance(notes_obj, list):
                for entry in notes_obj:
                    entry_obj = _as_object_dict(entry)
                    if entry_obj is None:
                        continue
                    resolvable = resolvable or entry_obj.get("resolvable") is True
                    if entry_obj.get("resolvable") is True:
                        resolved = entry_obj.get("resolved") is True
                    author_obj = _as_object_dict(entry_obj.get("author")) or {}
                    notes.append(
                        DiscussionNote(
                            note_id=_as_int(entry_obj.get("id"), field="note.id"),
                            body=_as_string(entry_obj.get("body")),
                            author=_as_string(author_obj.get("name") or author_obj.get("username"))
                            or "Unknown",
                            created_at=_as_string(entry_obj.get("created_at")),
                            system=entry_obj.get("system") is True,
                        )
                    )
            discussions.append(
                Discussion(
                    discussion_id=_as_string(item_obj.get("id")),
                    resolvable=resolvable,
                    resolved=resolved,
                    notes=tuple(notes),
                )
            )
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="discussions",
            project_id=project_id,
            target=target.api_segment,
            iid=target.iid,
            count=len(discussions),
        )
        return tuple(discussions)

    def create_note(self, project_id: int, target: NoteTarget, body: str) -> int:
        path = f"projects/{project_id}/{target.api_segment}/{target.iid}/notes"
        try:
            payload = self._api_json("POST", path, payload={"body": format_comment_body(body)})
            note_id = _as_int(_require_object(payload, what="note").get("id"), field="id")
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "gitlab_note_failed",
                project_id=project_id,
                target=target.api_segment,
                iid=target.iid,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "gitlab_note_created", project_id=project_id, iid=target.iid, note_id=note_id)
        return note_id

    def update_note(self, project_id: int, target: NoteTarget, note_id: int, body: str) -> None:
        path = f"projects/{project_id}/{target.api_segment}/{target.iid}/notes/{note_id}"
        self._api_json("PUT", path, payload={"body": format_comment_body(body)})

    def reply_to_discussion(
        self, project_id: int, target: NoteTarget, discussion_id: str, body: str
    ) -> int:
        path = (
            f"projects/{project_id}/{target.api_segment}/{target.iid}"
            f"/discussions/{discussion_id}/notes"
        )
        payload = self._api_json("POST", path, payload={"body": format_comment_body(body)})
        note_id = _as_int(_require_object(payload, what="discussion note").get("id"), field="id")
        log_event(
            LOGGER,
            "gitlab_discussion_reply_created",
            project_id=project_id,
            iid=target.iid,
            discussion_id=discussion_id,
            note_id=note_id,
        )
        return note_id

    def update_discussion_note(
        self,
        project_id: int,
        target: NoteTarget,
        discussion_id: str,
        note_id: int,
        body: str,
    ) -> None:
        path = (
            f"projects/{project_id}/{target.api_segment}/{target.iid}"
            f"/discussions/{discussion_id}/notes/{note_id}"
        )
        self._api_json("PUT", path, payload={"body": format_comment_body(body)})

    def resolve_discussion(self, project_id: int, target: NoteTarget, discussion_id: str) -> None:
        if target.kind != "merge_request":
            raise GitLabApiError("Only merge request discussions can be resolved")
        path = f"projects/{project_id}/merge_requests/{target.iid}/discussions/{discussion_id}"
        self._api_json("PUT", path, payload={"resolved": True})
        log_event(
            LOGGER,
            "gitlab_discussion_resolved",
            project_id=project_id,
            iid=target.iid,
            discussion_id=discussion_id,
        )

    def create_branch(self, project_id: int, branch: str, ref: str) -> None:
        path = f"projects/{project_id}/repository/branches"
        self._api_json("POST", path, payload={"branch": branch, "ref": ref})
        log_event(LOGGER, "gitlab_branch_created", project_id=project_id, branch=branch, ref=ref)

    def create_merge_request(
        self,
        project_id: int,
        *,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str,
    ) -> CreatedMergeRequest:
        path = f"projects/{project_id}/merge_requests"
        try:
            payload_obj = _require_object(
                self._api_json(
                    "POST",
                    path,
                    payload={
                        "source_branch": source_branch,
                        "target_branch": target_branch,
                        "title": title,
                        "description": description,
                        "remove_source_branch": True,
                    },
                ),
                what="merge request",
            )
            created = CreatedMergeRequest(
                iid=_as_int(payload_obj.get("iid"), field="iid"),
                web_url=_as_string(payload_obj.get("web_url")),
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "gitlab_merge_request_create_failed",
                project_id=project_id,
                source_branch=source_branch,
                target_branch=target_branch,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "merge_request_created",
            project_id=project_id,
            merge_request_iid=created.iid,
            merge_request_url=created.web_url,
            source_branch=source_branch,
            target_branch=target_branch,
        )
        return created

    def update_merge_request(
        self,
        project_id: int,
        merge_request_iid: int,
        *,
        title: str | None = None,
        description: str | None = None,
    ) -> None:
        payload: dict[str, object] = {}
        if title is not None:
            payload["title"] = title
        if description is not None:
            payload["description"] = description
        if not payload:
            return
        path = f"projects/{project_id}/merge_requests/{merge_request_iid}"
        self._api_json("PUT", path, payload=payload)
        log_event(
            LOGGER,
            "gitlab_merge_request_updated",
            project_id=project_id,
            merge_request_iid=merge_request_iid,
            fields=",".join(sorted(payload)),
        )

    def create_inline_discussion(
        self, project_id: int, merge_request_iid: int, body: str, position: DiffPosition
    ) -> str:
        path = f"projects/{project_id}/merge_requests/{merge_request_iid}/discussions"
        payload = self._api_json(
            "POST",
            path,
            payload={"body": format_comment_body(body), "position": position.to_payload()},
        )
        return _as_string(_require_object(payload, what="discussion").get("id"))

    def _paginate(self, path: str) -> list[object]:
        items: list[object] = []
        for page in range(1, _MAX_PAGES + 1):
            query = urlencode({"per_page": str(_PAGE_SIZE), "page": str(page)})
            payload = self._api_json("GET", f"{path}?{query}")
            if not isinstance(payload, list):
                raise GitLabApiError(f"Unexpected GitLab response: expected list for {path}")
            items.extend(payload)
            if len(payload) < _PAGE_SIZE:
                break
        return items

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        cmd = ["glab", "api", "--method", method.upper()]
        if self.host:
            cmd.extend(["--hostname", self.host])
        cmd.append(path)
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-", "--header", "Content-Type: application/json"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload)
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GitLabApiError(f"GitLab API returned non-JSON output for {path}") from exc


def find_note_in_discussions(
    discussions: Sequence[Discussion], note_id: int
) -> NoteLocation | None:
    for discussion in discussions:
        for note in discussion.notes:
            if note.note_id == note_id:
                return NoteLocation(
                    discussion=discussion,
                    note=note,
                    thread_context=build_thread_context(discussion.notes, note_id),
                )
    return None


def build_thread_context(notes: Sequence[DiscussionNote], current_note_id: int) -> str | None:
    """Render the notes that precede ``current_note_id`` in its thread."""
    if len(notes) <= 1:
        return None
    lines = ["**Thread Context:**", ""]
    has_notes = False
    for note in sorted(notes, key=lambda item: item.created_at):
        if note.note_id == current_note_id:
            break
        if note.system:
            continue
        lines.append(f"**{note.author}** ({note.created_at}):")
        lines.append(note.body)
        lines.append("")
        has_notes = True
    if not has_notes:
        return None
    return "\n".join(lines).strip()


def _require_object(payload: object, *, what: str) -> dict[str, object]:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise GitLabApiError(f"Unexpected GitLab response: expected object for {what}")
    return payload_obj


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


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitLabApiError(f"Unexpected GitLab response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitLabApiError(f"Unexpected GitLab response value for {field}: {value}") from exc
    raise GitLabApiError(f"Unexpected GitLab response type for {field}")


def _as_optional_count(value: object) -> int | None:
    # changes_count is a string and may be "1000+" for very large merge requests.
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        digits = value.rstrip("+").strip()
        if digits.isdigit():
            return int(digits)
    return None
