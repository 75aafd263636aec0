from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import re
import shutil
from urllib.parse import urlsplit, urlunsplit
import uuid

from labpilot.config import AppConfig
from labpilot.models import ChangeType, FileChange, ProjectRef
from labpilot.observability import log_event, log_warning_event
from labpilot.shell import CommandError, run


LOGGER = logging.getLogger("labpilot.workspace")

SPEC_KIT_PROBE_TIMEOUT_SECONDS = 10
_BOT_NAME = "LabPilot Bot"
_BOT_EMAIL = "labpilot-bot@users.noreply.gitlab.com"
_WORKSPACE_ID_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")
_NON_FAST_FORWARD_HINTS = (
    "non-fast-forward",
    "fetch first",
    "fetch the latest changes",
    "failed to push some refs",
    "tip of your current branch",
)


class WorkspaceError(RuntimeError):
    pass


@dataclass(frozen=True)
class PushOutcome:
    success: bool
    rebased: bool = False
    conflicts: tuple[str, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class SpecKitPreparation:
    ready: bool
    initialized: bool = False
    warning: str | None = None


def sanitize_workspace_id(workspace_id: str) -> str:
    cleaned = _WORKSPACE_ID_UNSAFE.sub("_", workspace_id).strip("._")
    return cleaned or uuid.uuid4().hex


def is_non_fast_forward_error(message: str) -> bool:
    lowered = message.lower()
    return any(hint in lowered for hint in _NON_FAST_FORWARD_HINTS)


def parse_porcelain_status(output: str) -> tuple[FileChange, ...]:
    changes: list[FileChange] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        code = line[:2]
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip().strip('"')
        change_type: ChangeType
        if code == "??":
            change_type = "created"
        elif "D" in code:
            change_type = "deleted"
        elif code[0] == "A":
            change_type = "created"
        else:
            change_type = "modified"
        changes.append(FileChange(path=path, change_type=change_type))
    return tuple(changes)


class GitWorkspaceManager:
    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._root = config.runtime.workspaces_dir

    @property
    def root(self) -> Path:
        return self._root

    def workspace_path(self, workspace_id: str | None) -> Path:
        if workspace_id is None:
            return self._root / uuid.uuid4().hex
        return self._root / sanitize_workspace_id(workspace_id)

    def prepare_project(
        self,
        project: ProjectRef,
        base_branch: str,
        *,
        workspace_id: str | None = None,
        checkout_branch: str | None = None,
    ) -> Path:
        target_branch = checkout_branch or base_branch
        path = self.workspace_path(workspace_id)
        if (path / ".git").exists():
            self._refresh(path, base_branch=base_branch, checkout_branch=target_branch)
            log_event(
                LOGGER,
                "workspace_reused",
                path=str(path),
                base_branch=base_branch,
                checkout_branch=target_branch,
            )
            return path

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._clone(project, path, base_branch)
            if target_branch != base_branch:
                self._checkout_feature_branch(path, target_branch)
        except CommandError as exc:
            log_warning_event(
                LOGGER,
                "workspace_prepare_failed",
                project_id=project.project_id,
                path=str(path),
                error_type=type(exc).__name__,
            )
            shutil.rmtree(path, ignore_errors=True)
            raise WorkspaceError(f"Unable to prepare workspace for {project.name}: {exc}") from exc
        log_event(
            LOGGER,
            "workspace_created",
            project_id=project.project_id,
            path=str(path),
            base_branch=base_branch,
            checkout_branch=target_branch,
        )
        return path

    def remove_workspace(self, path: Path) -> None:
        if path.parent != self._root:
            raise WorkspaceError(f"Refusing to remove {path}: not a workspace under {self._root}")
        shutil.rmtree(path, ignore_errors=True)
        log_event(LOGGER, "workspace_removed", path=str(path))

    def switch_to_and_push_branch(self, path: Path, branch: str, message: str) -> bool:
        self._git(path, "checkout", "-B", branch)
        self._git(path, "add", "-A")
        if not self._has_staged_changes(path):
            log_event(LOGGER, "git_nothing_to_commit", path=str(path), branch=branch)
            return False
        self._git(path, "commit", "-m", message)
        self._push(path, branch, "-u", "origin", branch)
        return True

    def commit_and_push(self, path: Path, message: str, branch: str) -> bool:
        self._git(path, "add", "-A")
        if not self._has_staged_changes(path):
            log_event(LOGGER, "git_nothing_to_commit", path=str(path), branch=branch)
            return False
        self._git(path, "commit", "-m", message)
        self._push(path, branch, "origin", branch)
        return True

    def commit_and_push_changes(self, path: Path, message: str) -> PushOutcome:
        """Commit everything and push the current branch, rebasing once on rejection."""
        try:
            self._git(path, "add", "-A")
            if not self._has_staged_changes(path):
                log_event(LOGGER, "git_nothing_to_commit", path=str(path))
                return PushOutcome(success=True)
            self._git(path, "commit", "-m", message)
            branch = self.current_branch(path)
        except CommandError as exc:
            return PushOutcome(success=False, error=str(exc))

        try:
            self._git(path, "push", "origin", branch)
        except CommandError as exc:
            if not is_non_fast_forward_error(str(exc)):
                log_warning_event(
                    LOGGER,
                    "git_push_failed",
                    path=str(path),
                    branch=branch,
                    error_type=type(exc).__name__,
                )
                return PushOutcome(success=False, error=str(exc))
            log_event(LOGGER, "git_push_rejected_rebasing", path=str(path), branch=branch)
        else:
            log_event(LOGGER, "git_pushed", path=str(path), branch=branch, rebased=False)
            return PushOutcome(success=True)

        try:
            self._git(path, "pull", "--rebase", "origin", branch)
        except CommandError as exc:
            conflicts = self.list_conflicts(path)
            if conflicts:
                log_warning_event(
                    LOGGER,
                    "git_rebase_conflicts",
                    path=str(path),
                    branch=branch,
                    conflict_count=len(conflicts),
                )
                return PushOutcome(success=False, rebased=True, conflicts=conflicts)
            return PushOutcome(success=False, rebased=True, error=str(exc))

        try:
            self._git(path, "push", "origin", branch)
        except CommandError as exc:
            conflicts = self.list_conflicts(path)
            return PushOutcome(
                success=False,
                rebased=True,
                conflicts=conflicts,
                error=None if conflicts else str(exc),
            )
        log_event(LOGGER, "git_pushed", path=str(path), branch=branch, rebased=True)
        return PushOutcome(success=True, rebased=True)

    def push_after_conflict_resolution(self, path: Path) -> PushOutcome:
        conflicts = self.list_conflicts(path)
        if conflicts:
            return PushOutcome(success=False, rebased=True, conflicts=conflicts)
        if self.is_rebase_in_progress(path):
            try:
                run(
                    ["git", "-C", str(path), "rebase", "--continue"],
                    env={**os.environ, "GIT_EDITOR": "true"},
                )
            except CommandError as exc:
                return PushOutcome(
                    success=False,
                    rebased=True,
                    conflicts=self.list_conflicts(path),
                    error=str(exc),
                )
        conflicts = self.list_conflicts(path)
        if conflicts:
            return PushOutcome(success=False, rebased=True, conflicts=conflicts)
        if self.get_changed_files(path):
            return PushOutcome(
                success=False,
                rebased=True,
                error="Workspace still has uncommitted changes after conflict resolution",
            )
        try:
            branch = self.current_branch(path)
            self._git(path, "push", "origin", branch)
        except CommandError as exc:
            return PushOutcome(success=False, rebased=True, error=str(exc))
        log_event(LOGGER, "git_pushed_after_conflict_resolution", path=str(path), branch=branch)
        return PushOutcome(success=True, rebased=True)

    def get_changed_files(self, path: Path) -> tuple[FileChange, ...]:
        output = run(["git", "-C", str(path), "status", "--porcelain", "--untracked-files=all"])
        return parse_porcelain_status(output)

    def list_conflicts(self, path: Path) -> tuple[str, ...]:
        try:
            output = self._git(path, "diff", "--name-only", "--diff-filter=U")
        except CommandError:
            return ()
        return tuple(line.strip() for line in output.splitlines() if line.strip())

    def is_rebase_in_progress(self, path: Path) -> bool:
        git_dir = path / ".git"
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

    def current_branch(self, path: Path) -> str:
        return self._git(path, "rev-parse", "--abbrev-ref", "HEAD").strip()

    def prepare_spec_kit_workspace(self, path: Path) -> SpecKitPreparation:
        if (path / ".specify").is_dir():
            return SpecKitPreparation(ready=True)
        binary = self._config.spec_kit.binary
        try:
            run([binary, "--help"], timeout=SPEC_KIT_PROBE_TIMEOUT_SECONDS)
        except CommandError as exc:
            log_warning_event(
                LOGGER,
                "spec_kit_unavailable",
                path=str(path),
                error_type=type(exc).__name__,
            )
            return SpecKitPreparation(
                ready=False,
                warning=f"Spec Kit CLI `{binary}` is not available; continuing without initialization.",
            )
        try:
            run(
                [
                    binary,
                    "init",
                    "--here",
                    "--force",
                    "--no-git",
                    "--ignore-agent-tools",
                    "--ai",
                    "claude",
                    "--script",
                    "sh",
                ],
                cwd=path,
                timeout=self._config.spec_kit.init_timeout_seconds,
                env={**os.environ, "SPECIFY_NON_INTERACTIVE": "1"},
            )
        except CommandError as exc:
            log_warning_event(
                LOGGER,
                "spec_kit_init_failed",
                path=str(path),
                error_type=type(exc).__name__,
            )
            return SpecKitPreparation(
                ready=False,
                warning="Spec Kit initialization failed; continuing with the existing workspace.",
            )
        log_event(LOGGER, "spec_kit_initialized", path=str(path))
        return SpecKitPreparation(ready=True, initialized=True)

    def _clone(self, project: ProjectRef, path: Path, branch: str) -> None:
        clone_url = self._authenticated_url(project.http_url)
        log_event(LOGGER, "git_clone", project_id=project.project_id, branch=branch, path=str(path))
        try:
            run(["git", "clone", "--branch", branch, clone_url, str(path)])
        except CommandError as exc:
            if "not found" not in str(exc).lower():
                raise
            log_warning_event(LOGGER, "git_clone_branch_missing", branch=branch)
            shutil.rmtree(path, ignore_errors=True)
            run(["git", "clone", clone_url, str(path)])
        self._git(path, "config", "user.name", _BOT_NAME)
        self._git(path, "config", "user.email", _BOT_EMAIL)

    def _refresh(self, path: Path, *, base_branch: str, checkout_branch: str) -> None:
        try:
            self._git(path, "fetch", "origin", "--prune")
        except CommandError as exc:
            log_warning_event(
                LOGGER, "git_fetch_failed", path=str(path), error_type=type(exc).__name__
            )
        if self.get_changed_files(path):
            log_warning_event(LOGGER, "workspace_dirty_before_refresh", path=str(path))

        if checkout_branch == base_branch:
            try:
                self._git(path, "checkout", checkout_branch)
                self._git(path, "pull", "origin", checkout_branch)
            except CommandError:
                try:
                    self._git(path, "checkout", "-B", checkout_branch, f"origin/{checkout_branch}")
                except CommandError as exc:
                    raise WorkspaceError(
                        f"Unable to checkout or create branch {checkout_branch}: {exc}"
                    ) from exc
            return

        try:
            self._git(path, "checkout", base_branch)
            self._git(path, "pull", "origin", base_branch)
        except CommandError as exc:
            log_warning_event(
                LOGGER,
                "git_base_refresh_failed",
                path=str(path),
                base_branch=base_branch,
                error_type=type(exc).__name__,
            )
        self._checkout_feature_branch(path, checkout_branch)
        try:
            self._git(path, "pull", "origin", checkout_branch)
        except CommandError as exc:
            log_warning_event(
                LOGGER,
                "git_branch_pull_failed",
                path=str(path),
                branch=checkout_branch,
                error_type=type(exc).__name__,
            )

    def _checkout_feature_branch(self, path: Path, branch: str) -> None:
        try:
            self._git(path, "checkout", branch)
            return
        except CommandError:
            pass
        try:
            self._git(path, "checkout", "-B", branch, f"origin/{branch}")
        except CommandError:
            self._git(path, "checkout", "-b", branch)

    def _authenticated_url(self, http_url: str) -> str:
        if not http_url:
            raise WorkspaceError("Project HTTP URL is not available")
        token = os.environ.get(self._config.gitlab.token_env)
        if not token:
            return http_url
        parts = urlsplit(http_url)
        host = parts.hostname or ""
        if parts.port is not None:
            host = f"{host}:{parts.port}"
        return urlunsplit(
            (parts.scheme, f"oauth2:{token}@{host}", parts.path, parts.query, parts.fragment)
        )

    def _has_staged_changes(self, path: Path) -> bool:
        return bool(self._git(path, "diff", "--cached", "--name-only").strip())

    def _push(self, path: Path, branch: str, *args: str) -> None:
        log_event(LOGGER, "git_push", path=str(path), branch=branch)
        try:
            self._git(path, "push", *args)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "git_push_failed",
                path=str(path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            raise

    def _git(self, path: Path, *args: str) -> str:
        return run(["git", "-C", str(path), *args])
