from __future__ import annotations

import logging
from typing import Any

import gitlab
from gitlab.exceptions import GitlabError

from mrpilot.models import CommentRef, CommentTarget, MergeRequest, MergeRequestDraft
from mrpilot.observability import log_event


LOGGER = logging.getLogger("mrpilot.gitlab_gateway")

_UPDATE_UNSUPPORTED_CODES = frozenset({404, 405})
_REPLY_UNSUPPORTED_CODES = frozenset({400, 404, 405})
_THREAD_CONTEXT_NOTES = 10
_THREAD_NOTE_LIMIT = 500


class GitLabApiError(RuntimeError):
    def __init__(self, operation: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"GitLab {operation} failed: {message}")
        self.operation = operation
        self.status_code = status_code


class CommentDeliveryError(GitLabApiError):
    """A comment could not be created or edited."""


class CommentUpdateUnsupportedError(CommentDeliveryError):
    pass


class ThreadReplyUnsupportedError(CommentDeliveryError):
    pass


class GitLabGateway:
    def __init__(self, base_url: str, token: str, *, client: Any | None = None) -> None:
        self.base_url = base_url
        if client is None:
            client = gitlab.Gitlab(base_url, private_token=token)
        self._client = client

    def create_comment(self, target: CommentTarget, body: str) -> CommentRef:
        try:
            note = self._noteable(target).notes.create({"body": body})
        except GitlabError as exc:
            raise _wrap(CommentDeliveryError, "create_comment", exc) from exc
        log_event(
            LOGGER,
            "gitlab_comment_created",
            project_id=target.project_id,
            target_kind=target.kind,
            iid=target.iid,
            note_id=note.id,
        )
        return CommentRef(target=target, note_id=int(note.id))

    def update_comment(self, ref: CommentRef, body: str) -> None:
        try:
            self._noteable(ref.target).notes.update(ref.note_id, {"body": body})
        except GitlabError as exc:
            if exc.response_code in _UPDATE_UNSUPPORTED_CODES:
                raise _wrap(CommentUpdateUnsupportedError, "update_comment", exc) from exc
            raise _wrap(CommentDeliveryError, "update_comment", exc) from exc
        log_event(LOGGER, "gitlab_comment_updated", iid=ref.target.iid, note_id=ref.note_id)

    def reply_in_thread(self, target: CommentTarget, discussion_id: str, body: str) -> CommentRef:
        try:
            discussion = self._noteable(target).discussions.get(discussion_id, lazy=True)
            note = discussion.notes.create({"body": body})
        except GitlabError as exc:
            if exc.response_code in _REPLY_UNSUPPORTED_CODES:
                raise _wrap(ThreadReplyUnsupportedError, "reply_in_thread", exc) from exc
            raise _wrap(CommentDeliveryError, "reply_in_thread", exc) from exc
        log_event(
            LOGGER,
            "gitlab_thread_reply_created",
            iid=target.iid,
            discussion_id=discussion_id,
            note_id=note.id,
        )
        return CommentRef(target=target, note_id=int(note.id))

    def post_comment(
        self, target: CommentTarget, body: str, *, discussion_id: str | None = None
    ) -> CommentRef:
        """Reply in the discussion when there is one, else post a top-level note."""
        if discussion_id is None:
            return self.create_comment(target, body)
        try:
            return self.reply_in_thread(target, discussion_id, body)
        except ThreadReplyUnsupportedError as exc:
            log_event(
                LOGGER,
                "gitlab_thread_reply_fallback",
                iid=target.iid,
                discussion_id=discussion_id,
                status_code=exc.status_code,
            )
            return self.create_comment(target, body)

    def create_branch(self, project_id: int, branch: str, ref: str) -> None:
        try:
            self._project(project_id).branches.create({"branch": branch, "ref": ref})
        except GitlabError as exc:
            raise _wrap(GitLabApiError, "create_branch", exc) from exc
        log_event(LOGGER, "gitlab_branch_created", project_id=project_id, branch=branch, ref=ref)

    def create_merge_request(self, project_id: int, draft: MergeRequestDraft) -> MergeRequest:
        try:
            created = self._project(project_id).mergerequests.create(
                {
                    "source_branch": draft.source_branch,
                    "target_branch": draft.target_branch,
                    "title": draft.title,
                    "description": draft.description,
                    "remove_source_branch": True,
                }
            )
        except GitlabError as exc:
            raise _wrap(GitLabApiError, "create_merge_request", exc) from exc
        merge_request = MergeRequest(iid=int(created.iid), web_url=str(created.web_url))
        log_event(
            LOGGER,
            "gitlab_merge_request_created",
            project_id=project_id,
            iid=merge_request.iid,
            source_branch=draft.source_branch,
            target_branch=draft.target_branch,
        )
        return merge_request

    def thread_context(
        self, target: CommentTarget, note_id: int, *, discussion_id: str | None = None
    ) -> str | None:
        """Render the human notes that precede ``note_id``, oldest first."""
        try:
            noteable = self._noteable(target)
            if discussion_id is not None:
                discussion = noteable.discussions.get(discussion_id)
                raw_notes = list(discussion.attributes.get("notes", []))
            else:
                raw_notes = [
                    note.attributes
                    for note in noteable.notes.list(
                        sort="asc", order_by="created_at", get_all=True
                    )
                ]
        except GitlabError as exc:
            raise _wrap(GitLabApiError, "thread_context", exc) from exc

        lines: list[str] = []
        for raw in raw_notes:
            if raw.get("id") == note_id:
                break
            if raw.get("system"):
                continue
            author = (raw.get("author") or {}).get("username") or "unknown"
            body = " ".join(str(raw.get("body") or "").split())
            if len(body) > _THREAD_NOTE_LIMIT:
                body = f"{body[:_THREAD_NOTE_LIMIT]}..."
            if body:
                lines.append(f"@{author}: {body}")
        if not lines:
            return None
        return "\n".join(lines[-_THREAD_CONTEXT_NOTES:])

    def check_connection(self) -> str:
        try:
            self._client.auth()
        except GitlabError as exc:
            raise _wrap(GitLabApiError, "check_connection", exc) from exc
        username = str(self._client.user.username)
        log_event(LOGGER, "gitlab_connection_ok", base_url=self.base_url, username=username)
        return username

    def _project(self, project_id: int) -> Any:
        return self._client.projects.get(project_id, lazy=True)

    def _noteable(self, target: CommentTarget) -> Any:
        project = self._project(target.project_id)
        if target.kind == "issue":
            return project.issues.get(target.iid, lazy=True)
        return project.mergerequests.get(target.iid, lazy=True)


def _wrap(error_cls: type[GitLabApiError], operation: str, exc: GitlabError) -> GitLabApiError:
    status = exc.response_code
    log_event(
        LOGGER,
        "gitlab_api_failed",
        operation=operation,
        status_code=status,
        error_type=type(exc).__name__,
    )
    return error_cls(operation, str(exc.error_message or exc), status_code=status)
