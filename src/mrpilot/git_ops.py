from __future__ import annotations

from pathlib import Path
import logging
import shutil
from urllib.parse import quote, urlsplit, urlunsplit
import uuid

from mrpilot.config import WorkspaceConfig
from mrpilot.models import ChangeSet, ChangeType, FileChange, ProjectRef
from mrpilot.observability import log_event
from mrpilot.shell import CommandError, redact, run


LOGGER = logging.getLogger("mrpilot.git_ops")


class WorkspacePreparationError(RuntimeError):
    """Clone or checkout failed; the partial workspace has been removed."""


class WorkspaceManager:
    def __init__(self, config: WorkspaceConfig, token: str) -> None:
        self.config = config
        self._token = token

    def prepare(self, project: ProjectRef, branch: str) -> Path:
        workspace = self.config.root / uuid.uuid4().hex
        log_event(
            LOGGER,
            "workspace_prepare_started",
            project=project.name,
            branch=branch,
            workspace=str(workspace),
        )
        try:
            self.config.root.mkdir(parents=True, exist_ok=True)
            self._clone(project, branch, workspace)
            run(["git", "-C", str(workspace), "config", "user.name", self.config.git_user_name])
            run(["git", "-C", str(workspace), "config", "user.email", self.config.git_user_email])
        except (CommandError, OSError) as exc:
            self.cleanup(workspace)
            if isinstance(exc, CommandError):
                exit_code: int | None = exc.returncode
                reason = _last_line(exc.stderr)
            else:
                exit_code = None
                reason = str(exc)
            log_event(
                LOGGER,
                "workspace_prepare_failed",
                project=project.name,
                branch=branch,
                error_type=type(exc).__name__,
                exit_code=exit_code,
            )
            raise WorkspacePreparationError(
                f"Could not prepare a checkout of {project.name} at {branch}: {redact(reason)}"
            ) from exc
        log_event(LOGGER, "workspace_prepared", project=project.name, workspace=str(workspace))
        return workspace

    def current_branch(self, path: Path) -> str:
        return run(["git", "-C", str(path), "rev-parse", "--abbrev-ref", "HEAD"]).strip()

    def head_commit(self, path: Path) -> str:
        return run(["git", "-C", str(path), "rev-parse", "HEAD"]).strip()

    def create_and_push_branch(self, path: Path, branch: str, commit_message: str) -> bool:
        run(["git", "-C", str(path), "checkout", "-b", branch])
        run(["git", "-C", str(path), "add", "-A"])
        staged = run(["git", "-C", str(path), "diff", "--cached", "--name-only"]).strip()
        if not staged:
            log_event(LOGGER, "git_nothing_to_commit", workspace=str(path), branch=branch)
            return False

        log_event(
            LOGGER,
            "git_commit",
            workspace=str(path),
            branch=branch,
            staged_count=len(staged.splitlines()),
        )
        run(["git", "-C", str(path), "commit", "-m", commit_message])
        try:
            run(["git", "-C", str(path), "push", "-u", "origin", branch])
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_push_failed",
                workspace=str(path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "git_pushed", workspace=str(path), branch=branch)
        return True

    def changed_files(self, path: Path) -> ChangeSet:
        raw = run(
            [
                "git",
                "-C",
                str(path),
                "status",
                "--porcelain=v1",
                "-z",
                "--untracked-files=all",
            ]
        )
        return parse_porcelain_status(raw)

    def cleanup(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
        except OSError as exc:
            log_event(
                LOGGER,
                "workspace_cleanup_failed",
                workspace=str(path),
                error_type=type(exc).__name__,
            )
            return
        log_event(LOGGER, "workspace_cleaned", workspace=str(path))

    def _clone(self, project: ProjectRef, branch: str, workspace: Path) -> None:
        clone_url = authenticated_clone_url(project.http_url_to_repo, self._token)
        try:
            run(self._clone_argv(clone_url, workspace, branch=branch))
            return
        except CommandError as exc:
            if not _is_missing_remote_branch(exc.stderr):
                raise

        log_event(
            LOGGER,
            "workspace_branch_missing",
            project=project.name,
            branch=branch,
            fallback="default_ref",
        )
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)
        run(self._clone_argv(clone_url, workspace, branch=None))
        try:
            run(["git", "-C", str(workspace), "checkout", branch])
        except CommandError as exc:
            log_event(
                LOGGER,
                "workspace_branch_checkout_failed",
                branch=branch,
                error_type=type(exc).__name__,
            )

    def _clone_argv(self, clone_url: str, workspace: Path, *, branch: str | None) -> list[str]:
        argv = ["git", "clone"]
        if self.config.clone_depth is not None:
            argv.extend(["--depth", str(self.config.clone_depth)])
        if branch is not None:
            argv.extend(["--branch", branch])
        argv.extend([clone_url, str(workspace)])
        return argv


def authenticated_clone_url(http_url: str, token: str) -> str:
    parts = urlsplit(http_url)
    if parts.scheme not in ("http", "https"):
        # Local and file:// remotes carry no credentials.
        return http_url
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    netloc = f"oauth2:{quote(token, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def parse_porcelain_status(raw: str) -> ChangeSet:
    """Parse ``git status --porcelain=v1 -z`` output into a ChangeSet."""
    fields = raw.split("\0")
    changes: list[FileChange] = []
    index = 0
    while index < len(fields):
        entry = fields[index]
        index += 1
        if len(entry) < 4:
            continue
        status = entry[:2]
        path = entry[3:]
        if status[0] in ("R", "C"):
            # Renames and copies are followed by their source path.
            index += 1
        changes.append(FileChange(path=path, change_type=_classify_status(status)))
    return tuple(changes)


def _classify_status(status: str) -> ChangeType:
    if status == "??" or status[0] == "A":
        return "created"
    if "D" in status:
        return "deleted"
    return "modified"


def _is_missing_remote_branch(stderr: str) -> bool:
    lowered = stderr.lower()
    return "remote branch" in lowered and "not found" in lowered


def _last_line(text: str) -> str:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines:
        return "git reported no error output"
    return lines[-1]
