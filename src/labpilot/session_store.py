from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
from typing import cast

from labpilot.models import (
    PROVIDER_IDS,
    SPEC_STAGES,
    ProviderId,
    ProviderSession,
    Session,
    SpecStage,
)
from labpilot.observability import log_event


LOGGER = logging.getLogger("labpilot.session_store")


class SessionStoreError(RuntimeError):
    pass


class SessionStore(ABC):
    @abstractmethod
    def load(self) -> list[Session]:
        """Return every stored session."""

    @abstractmethod
    def persist(self, sessions: Sequence[Session]) -> None:
        """Replace the stored sessions with ``sessions``."""

    def has_legacy_format(self) -> bool:
        return False


class MemorySessionStore(SessionStore):
    def __init__(self, sessions: Sequence[Session] = ()) -> None:
        self.sessions: list[Session] = list(sessions)
        self.persist_count = 0

    def load(self) -> list[Session]:
        return list(self.sessions)

    def persist(self, sessions: Sequence[Session]) -> None:
        self.sessions = list(sessions)
        self.persist_count += 1


class FileSessionStore(SessionStore):
    """JSON array of session records, replaced atomically on every write.

    Records written by older releases carry a single ``sessionId``/``provider``
    pair; they are upgraded into ``providerSessions`` while loading.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._legacy_format_detected = False

    @property
    def path(self) -> Path:
        return self._path

    def has_legacy_format(self) -> bool:
        return self._legacy_format_detected

    def load(self) -> list[Session]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise SessionStoreError(f"Unable to read session store {self._path}: {exc}") from exc
        if not raw.strip():
            return []
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SessionStoreError(f"Session store {self._path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, list):
            raise SessionStoreError(f"Session store {self._path} must contain a JSON array")

        sessions: list[Session] = []
        legacy = False
        for item in payload:
            record = _as_object_dict(item)
            if record is None:
                raise SessionStoreError(f"Session store {self._path} has a non-object record")
            if "sessionId" in record or "provider" in record:
                legacy = True
            session = _session_from_record(record)
            if session is not None:
                sessions.append(session)
        self._legacy_format_detected = legacy
        log_event(
            LOGGER,
            "session_store_loaded",
            path=str(self._path),
            session_count=len(sessions),
            legacy_format=legacy,
        )
        return sessions

    def persist(self, sessions: Sequence[Session]) -> None:
        records = [_session_to_record(session) for session in sessions]
        data = json.dumps(records, indent=2, sort_keys=True) + "\n"
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise SessionStoreError(f"Unable to write session store {self._path}: {exc}") from exc
        self._legacy_format_detected = False


def _session_to_record(session: Session) -> dict[str, object]:
    record: dict[str, object] = {
        "issueKey": session.issue_key,
        "projectId": session.project_id,
        "issueIid": session.issue_iid,
        "createdAt": _format_timestamp(session.created_at),
        "lastUsed": _format_timestamp(session.last_used),
        "lastProvider": session.last_provider,
        "providerSessions": {
            provider: {
                "sessionId": entry.session_id,
                "lastUsed": _format_timestamp(entry.last_used),
            }
            for provider, entry in session.provider_sessions.items()
        },
    }
    optional: dict[str, object | None] = {
        "discussionId": session.discussion_id,
        "branchName": session.branch_name,
        "baseBranch": session.base_branch,
        "mergeRequestIid": session.merge_request_iid,
        "mergeRequestUrl": session.merge_request_url,
        "ownerId": session.owner_id,
        "specKitStage": session.spec_kit_stage,
    }
    for key, value in optional.items():
        if value is not None:
            record[key] = value
    if session.spec_kit_documents:
        record["specKitDocuments"] = {
            stage: list(paths) for stage, paths in session.spec_kit_documents.items()
        }
    return record


def _session_from_record(record: dict[str, object]) -> Session | None:
    issue_key = record.get("issueKey")
    if not isinstance(issue_key, str) or not issue_key:
        raise SessionStoreError("Session record is missing issueKey")

    last_used = _parse_timestamp(record.get("lastUsed"), field="lastUsed")
    created_at = _parse_timestamp(record.get("createdAt", record.get("lastUsed")), field="createdAt")

    provider_sessions: dict[ProviderId, ProviderSession] = {}
    stored = _as_object_dict(record.get("providerSessions"))
    if stored is not None:
        for provider, entry in stored.items():
            entry_obj = _as_object_dict(entry)
            if provider not in PROVIDER_IDS or entry_obj is None:
                continue
            session_id = entry_obj.get("sessionId")
            if not isinstance(session_id, str) or not session_id:
                continue
            provider_sessions[cast(ProviderId, provider)] = ProviderSession(
                session_id=session_id,
                last_used=_parse_timestamp(entry_obj.get("lastUsed"), field="providerSessions.lastUsed"),
            )

    legacy_session_id = record.get("sessionId")
    legacy_provider = record.get("provider")
    if (
        isinstance(legacy_session_id, str)
        and legacy_session_id
        and isinstance(legacy_provider, str)
        and legacy_provider in PROVIDER_IDS
    ):
        provider_sessions[cast(ProviderId, legacy_provider)] = ProviderSession(
            session_id=legacy_session_id,
            last_used=last_used,
        )

    if not provider_sessions:
        return None

    last_provider_raw = record.get("lastProvider", legacy_provider)
    if isinstance(last_provider_raw, str) and last_provider_raw in provider_sessions:
        last_provider = cast(ProviderId, last_provider_raw)
    else:
        last_provider = max(provider_sessions.items(), key=lambda item: item[1].last_used)[0]

    spec_kit_stage = record.get("specKitStage")
    return Session(
        issue_key=issue_key,
        project_id=_as_int(record.get("projectId"), field="projectId"),
        issue_iid=_as_int(record.get("issueIid"), field="issueIid"),
        created_at=created_at,
        last_used=last_used,
        last_provider=last_provider,
        provider_sessions=provider_sessions,
        discussion_id=_as_optional_str(record.get("discussionId")),
        branch_name=_as_optional_str(record.get("branchName")),
        base_branch=_as_optional_str(record.get("baseBranch")),
        merge_request_iid=_as_optional_int(record.get("mergeRequestIid")),
        merge_request_url=_as_optional_str(record.get("mergeRequestUrl")),
        owner_id=_as_optional_str(record.get("ownerId")),
        spec_kit_stage=(
            cast(SpecStage, spec_kit_stage) if spec_kit_stage in SPEC_STAGES else None
        ),
        spec_kit_documents=_parse_spec_kit_documents(record.get("specKitDocuments")),
    )


def _parse_spec_kit_documents(value: object) -> dict[SpecStage, tuple[str, ...]]:
    documents: dict[SpecStage, tuple[str, ...]] = {}
    stored = _as_object_dict(value)
    if stored is None:
        return documents
    for stage, paths in stored.items():
        if stage not in SPEC_STAGES or not isinstance(paths, list):
            continue
        documents[cast(SpecStage, stage)] = tuple(path for path in paths if isinstance(path, str))
    return documents


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_timestamp(value: object, *, field: str) -> datetime:
    if not isinstance(value, str) or not value:
        raise SessionStoreError(f"Session record has invalid {field}")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise SessionStoreError(f"Session record has invalid {field}: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise SessionStoreError(f"Session record has invalid {field}")
    return value


def _as_optional_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _as_optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None
