from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import logging
import threading
from typing import TypeVar

from labpilot.models import (
    ProviderId,
    ProviderSession,
    Session,
    SessionMetadata,
    SessionStats,
    SpecStage,
)
from labpilot.observability import log_event, log_warning_event
from labpilot.session_store import SessionStore, SessionStoreError


LOGGER = logging.getLogger("labpilot.session_manager")

EVICTION_RATIO = 0.1

_T = TypeVar("_T")


def generate_session_key(project_id: int, issue_iid: int, owner_id: str | None = None) -> str:
    base = f"{project_id}:{issue_iid}"
    return f"{owner_id}:{base}" if owner_id else base


def owner_from_session_key(issue_key: str) -> str | None:
    parts = issue_key.split(":")
    if len(parts) == 3:
        return parts[0]
    return None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Per-issue AI conversation state, one provider session per provider.

    Every provider entry expires on its own after ``max_idle_seconds`` of
    inactivity. A session lives while at least one entry is live, and the full
    store is persisted after each change.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        max_idle_seconds: int,
        max_sessions: int,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._max_idle = timedelta(seconds=max_idle_seconds)
        self._max_sessions = max_sessions
        self._clock = clock
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}

        try:
            loaded = store.load()
        except SessionStoreError as exc:
            log_warning_event(
                LOGGER,
                "session_store_load_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            loaded = []
        migrated = 0
        for session in loaded:
            key = generate_session_key(session.project_id, session.issue_iid, session.owner_id)
            if key != session.issue_key:
                migrated += 1
                session = replace(session, issue_key=key)
            self._sessions[key] = session
        if migrated or store.has_legacy_format():
            self._persist()
        log_event(
            LOGGER,
            "session_manager_initialized",
            loaded_sessions=len(loaded),
            migrated_sessions=migrated,
            legacy_format=store.has_legacy_format(),
            max_idle_seconds=max_idle_seconds,
            max_sessions=max_sessions,
        )

    def get_session(self, issue_key: str) -> Session | None:
        with self._lock:
            session = self._refresh(issue_key)
            if session is None:
                return None
            now = self._clock()
            entry = session.provider_sessions[session.last_provider]
            session = _with_provider(session, session.last_provider, replace(entry, last_used=now))
            self._sessions[issue_key] = session
            self._persist()
            return session

    def peek_session(self, issue_key: str) -> Session | None:
        with self._lock:
            return self._refresh(issue_key)

    def has_active_session(self, issue_key: str, provider: ProviderId | None = None) -> bool:
        session = self.peek_session(issue_key)
        if session is None:
            return False
        if provider is None:
            return True
        return provider in session.provider_sessions

    def get_provider_session(self, issue_key: str, provider: ProviderId) -> ProviderSession | None:
        with self._lock:
            session = self._refresh(issue_key)
            if session is None:
                return None
            entry = session.provider_sessions.get(provider)
            if entry is None:
                return None
            entry = replace(entry, last_used=self._clock())
            self._sessions[issue_key] = _with_provider(session, provider, entry)
            self._persist()
            return entry

    def set_session(
        self,
        issue_key: str,
        session_id: str,
        metadata: SessionMetadata,
        provider: ProviderId,
    ) -> Session:
        with self._lock:
            now = self._clock()
            existing = self._sessions.get(issue_key)
            provider_sessions = dict(existing.provider_sessions) if existing is not None else {}
            provider_sessions[provider] = ProviderSession(session_id=session_id, last_used=now)
            session = Session(
                issue_key=issue_key,
                project_id=metadata.project_id,
                issue_iid=metadata.issue_iid,
                created_at=existing.created_at if existing is not None else now,
                last_used=now,
                last_provider=provider,
                provider_sessions=provider_sessions,
                discussion_id=_merge(metadata.discussion_id, existing.discussion_id if existing else None),
                branch_name=_merge(metadata.branch_name, existing.branch_name if existing else None),
                base_branch=_merge(metadata.base_branch, existing.base_branch if existing else None),
                merge_request_iid=_merge(
                    metadata.merge_request_iid, existing.merge_request_iid if existing else None
                ),
                merge_request_url=_merge(
                    metadata.merge_request_url, existing.merge_request_url if existing else None
                ),
                owner_id=_merge(
                    metadata.owner_id,
                    _merge(existing.owner_id if existing else None, owner_from_session_key(issue_key)),
                ),
                spec_kit_stage=existing.spec_kit_stage if existing is not None else None,
                spec_kit_documents=dict(existing.spec_kit_documents) if existing is not None else {},
            )
            self._sessions[issue_key] = _recompute_aggregate(session)
            if len(self._sessions) > self._max_sessions:
                self._evict_oldest(max(1, int(self._max_sessions * EVICTION_RATIO)))
            self._persist()
            log_event(
                LOGGER,
                "session_stored",
                issue_key=issue_key,
                provider=provider,
                session_id=session_id,
            )
            return self._sessions.get(issue_key, session)

    def update_spec_kit_state(
        self, issue_key: str, stage: SpecStage, document_paths: Sequence[str]
    ) -> Session | None:
        with self._lock:
            session = self._sessions.get(issue_key)
            if session is None:
                return None
            normalized: list[str] = []
            for path in document_paths:
                cleaned = path.strip()
                if cleaned and cleaned not in normalized:
                    normalized.append(cleaned)
            documents = dict(session.spec_kit_documents)
            if normalized or stage not in documents:
                documents[stage] = tuple(normalized)
            entry = replace(session.provider_sessions[session.last_provider], last_used=self._clock())
            session = _with_provider(session, session.last_provider, entry)
            session = replace(session, spec_kit_stage=stage, spec_kit_documents=documents)
            self._sessions[issue_key] = session
            self._persist()
            log_event(
                LOGGER,
                "spec_kit_state_updated",
                issue_key=issue_key,
                stage=stage,
                document_count=len(documents[stage]),
            )
            return session

    def remove_session(self, issue_key: str, provider: ProviderId | None = None) -> bool:
        with self._lock:
            session = self._sessions.get(issue_key)
            if session is None:
                return False
            if provider is None:
                del self._sessions[issue_key]
                self._persist()
                log_event(LOGGER, "session_removed", issue_key=issue_key)
                return True
            if provider not in session.provider_sessions:
                return False
            remaining = {
                key: value for key, value in session.provider_sessions.items() if key != provider
            }
            if remaining:
                self._sessions[issue_key] = _recompute_aggregate(
                    replace(session, provider_sessions=remaining)
                )
            else:
                del self._sessions[issue_key]
            self._persist()
            log_event(
                LOGGER,
                "provider_session_removed",
                issue_key=issue_key,
                provider=provider,
                remaining_providers=",".join(sorted(remaining)) or None,
            )
            return True

    def clean_expired_sessions(self, max_age_seconds: int | None = None) -> int:
        with self._lock:
            threshold = (
                timedelta(seconds=max_age_seconds) if max_age_seconds is not None else self._max_idle
            )
            now = self._clock()
            removed = 0
            changed = False
            for issue_key in list(self._sessions):
                session = self._sessions[issue_key]
                refreshed = _expire_entries(session, now=now, threshold=threshold)
                if refreshed is None:
                    del self._sessions[issue_key]
                    removed += 1
                    changed = True
                elif refreshed != session:
                    self._sessions[issue_key] = refreshed
                    changed = True
            if changed:
                self._persist()
                log_event(
                    LOGGER,
                    "expired_sessions_cleaned",
                    removed_sessions=removed,
                    remaining_sessions=len(self._sessions),
                )
            return removed

    def get_stats(self) -> SessionStats:
        with self._lock:
            self.clean_expired_sessions()
            sessions = list(self._sessions.values())
            active = sum(1 for session in sessions if session.provider_sessions)
            created = [session.created_at for session in sessions]
            return SessionStats(
                total_sessions=len(sessions),
                active_sessions=active,
                expired_sessions=len(sessions) - active,
                oldest_session=min(created) if created else None,
                newest_session=max(created) if created else None,
            )

    def list_sessions(self) -> list[Session]:
        with self._lock:
            self.clean_expired_sessions()
            return sorted(self._sessions.values(), key=lambda session: session.last_used, reverse=True)

    def _refresh(self, issue_key: str) -> Session | None:
        session = self._sessions.get(issue_key)
        if session is None:
            return None
        refreshed = _expire_entries(session, now=self._clock(), threshold=self._max_idle)
        if refreshed is None:
            del self._sessions[issue_key]
            self._persist()
            log_event(LOGGER, "session_expired", issue_key=issue_key)
            return None
        if refreshed != session:
            self._sessions[issue_key] = refreshed
            self._persist()
        return refreshed

    def _evict_oldest(self, count: int) -> None:
        ordered = sorted(self._sessions.items(), key=lambda item: item[1].last_used)
        for issue_key, _ in ordered[:count]:
            del self._sessions[issue_key]
            log_event(LOGGER, "session_evicted", issue_key=issue_key)

    def _persist(self) -> None:
        try:
            self._store.persist(list(self._sessions.values()))
        except SessionStoreError as exc:
            log_warning_event(
                LOGGER,
                "session_persist_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )


def _expire_entries(session: Session, *, now: datetime, threshold: timedelta) -> Session | None:
    live = {
        provider: entry
        for provider, entry in session.provider_sessions.items()
        if entry.session_id and now - entry.last_used <= threshold
    }
    if not live:
        return None
    if len(live) == len(session.provider_sessions):
        return _recompute_aggregate(session)
    return _recompute_aggregate(replace(session, provider_sessions=live))


def _with_provider(session: Session, provider: ProviderId, entry: ProviderSession) -> Session:
    provider_sessions = dict(session.provider_sessions)
    provider_sessions[provider] = entry
    return _recompute_aggregate(replace(session, provider_sessions=provider_sessions))


def _recompute_aggregate(session: Session) -> Session:
    provider, entry = max(
        session.provider_sessions.items(),
        key=lambda item: (item[1].last_used, item[0] == session.last_provider),
    )
    if session.last_provider == provider and session.last_used == entry.last_used:
        return session
    return replace(session, last_provider=provider, last_used=entry.last_used)


def _merge(new: _T | None, old: _T | None) -> _T | None:
    return new if new is not None else old


@dataclass(frozen=True)
class CleanupStatus:
    running: bool
    interval_seconds: int
    max_age_seconds: int
    last_run: datetime | None
    last_removed: int


class SessionCleanupService:
    def __init__(
        self,
        manager: SessionManager,
        *,
        interval_seconds: int,
        max_age_seconds: int,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._manager = manager
        self._interval_seconds = interval_seconds
        self._max_age_seconds = max_age_seconds
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._state_lock = threading.Lock()
        self._last_run: datetime | None = None
        self._last_removed = 0

    def start(self) -> None:
        with self._state_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop, name="labpilot-session-cleanup", daemon=True
            )
            self._thread.start()
        log_event(
            LOGGER,
            "session_cleanup_started",
            interval_seconds=self._interval_seconds,
            max_age_seconds=self._max_age_seconds,
        )

    def stop(self, *, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        with self._state_lock:
            thread = self._thread
            self._thread = None
        if thread is not None:
            thread.join(timeout=timeout)
            log_event(LOGGER, "session_cleanup_stopped")

    def run_manual_cleanup(self) -> int:
        removed = self._manager.clean_expired_sessions(self._max_age_seconds)
        with self._state_lock:
            self._last_run = self._clock()
            self._last_removed = removed
        return removed

    def status(self) -> CleanupStatus:
        with self._state_lock:
            running = self._thread is not None and self._thread.is_alive()
            return CleanupStatus(
                running=running,
                interval_seconds=self._interval_seconds,
                max_age_seconds=self._max_age_seconds,
                last_run=self._last_run,
                last_removed=self._last_removed,
            )

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            try:
                self.run_manual_cleanup()
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "session_cleanup_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
