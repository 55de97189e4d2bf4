from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
import threading
from typing import Literal, cast


EventKind = Literal["issue", "merge_request", "note"]
Provider = Literal["claude", "codex"]
ChangeType = Literal["created", "modified", "deleted"]
ProgressKind = Literal["status", "turn_completed", "terminal"]
AgentErrorKind = Literal["unavailable", "timeout", "cancelled", "failed"]

SUPPORTED_PROVIDERS: tuple[Provider, ...] = ("claude", "codex")


class UnsupportedEventError(ValueError):
    """Payload is well formed but not an event kind this service acts on."""


@dataclass(frozen=True)
class ProjectRef:
    id: int
    name: str
    web_url: str
    default_branch: str
    http_url_to_repo: str


@dataclass(frozen=True)
class InboundEvent:
    kind: EventKind
    project: ProjectRef
    action: str
    author_username: str
    issue_iid: int | None = None
    merge_request_iid: int | None = None
    title: str = ""
    description: str = ""
    note_id: int | None = None
    note_body: str = ""
    discussion_id: str | None = None
    source_branch: str | None = None
    target_branch: str | None = None


@dataclass(frozen=True)
class Instruction:
    provider: Provider
    command: str
    context: str
    target_branch: str
    model: str | None = None
    timeout_minutes: int | None = None


class CancellationToken:
    """Thread-safe, one-shot cancellation flag with callbacks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


@dataclass(frozen=True)
class RunContext:
    workspace_path: Path
    branch: str
    timeout_seconds: float
    cancellation: CancellationToken = field(default_factory=CancellationToken)


@dataclass(frozen=True)
class FileChange:
    path: str
    change_type: ChangeType


ChangeSet = tuple[FileChange, ...]


@dataclass(frozen=True)
class MergeRequestDraft:
    title: str
    commit_message: str
    description: str
    source_branch: str
    target_branch: str


@dataclass(frozen=True)
class MergeRequest:
    iid: int
    web_url: str


@dataclass(frozen=True)
class CommentTarget:
    project_id: int
    kind: Literal["issue", "merge_request"]
    iid: int


@dataclass(frozen=True)
class CommentRef:
    target: CommentTarget
    note_id: int


@dataclass(frozen=True)
class AgentProgress:
    message: str
    kind: ProgressKind = "status"


@dataclass(frozen=True)
class AgentResult:
    success: bool
    output_text: str
    error_kind: AgentErrorKind | None = None
    error_message: str | None = None


def comment_target_for(event: InboundEvent) -> CommentTarget:
    if event.issue_iid is not None:
        return CommentTarget(project_id=event.project.id, kind="issue", iid=event.issue_iid)
    if event.merge_request_iid is not None:
        return CommentTarget(
            project_id=event.project.id, kind="merge_request", iid=event.merge_request_iid
        )
    raise ValueError(f"{event.kind} event has no issue or merge request to comment on")


def parse_inbound_event(payload: object) -> InboundEvent:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise ValueError("Webhook payload must be a JSON object")

    object_kind = payload_obj.get("object_kind")
    if object_kind not in ("issue", "merge_request", "note"):
        raise UnsupportedEventError(f"Unsupported webhook object_kind: {object_kind!r}")

    project = _parse_project(payload_obj.get("project"))
    attributes = _as_object_dict(payload_obj.get("object_attributes"))
    if attributes is None:
        raise ValueError("Webhook payload is missing object_attributes")
    user = _as_object_dict(payload_obj.get("user"))
    author = _as_string(user.get("username")) if user is not None else ""
    action = _as_string(attributes.get("action"))

    if object_kind == "issue":
        return InboundEvent(
            kind="issue",
            project=project,
            action=action,
            author_username=author,
            issue_iid=_as_int(attributes.get("iid"), field="object_attributes.iid"),
            title=_as_string(attributes.get("title")),
            description=_as_string(attributes.get("description")),
        )

    if object_kind == "merge_request":
        return InboundEvent(
            kind="merge_request",
            project=project,
            action=action,
            author_username=author,
            merge_request_iid=_as_int(attributes.get("iid"), field="object_attributes.iid"),
            title=_as_string(attributes.get("title")),
            description=_as_string(attributes.get("description")),
            source_branch=_as_optional_str(attributes.get("source_branch")),
            target_branch=_as_optional_str(attributes.get("target_branch")),
        )

    return _parse_note_event(
        payload_obj=payload_obj,
        attributes=attributes,
        project=project,
        action=action or "create",
        author=author,
    )


def _parse_note_event(
    *,
    payload_obj: dict[str, object],
    attributes: dict[str, object],
    project: ProjectRef,
    action: str,
    author: str,
) -> InboundEvent:
    note_id = _as_int(attributes.get("id"), field="object_attributes.id")
    note_body = _as_string(attributes.get("note"))
    discussion_id = _as_optional_str(attributes.get("discussion_id"))
    noteable_type = attributes.get("noteable_type")

    issue = _as_object_dict(payload_obj.get("issue"))
    merge_request = _as_object_dict(payload_obj.get("merge_request"))

    if noteable_type == "Issue" and issue is not None:
        return InboundEvent(
            kind="note",
            project=project,
            action=action,
            author_username=author,
            issue_iid=_as_int(issue.get("iid"), field="issue.iid"),
            title=_as_string(issue.get("title")),
            note_id=note_id,
            note_body=note_body,
            discussion_id=discussion_id,
        )
    if noteable_type == "MergeRequest" and merge_request is not None:
        return InboundEvent(
            kind="note",
            project=project,
            action=action,
            author_username=author,
            merge_request_iid=_as_int(merge_request.get("iid"), field="merge_request.iid"),
            title=_as_string(merge_request.get("title")),
            note_id=note_id,
            note_body=note_body,
            discussion_id=discussion_id,
            source_branch=_as_optional_str(merge_request.get("source_branch")),
            target_branch=_as_optional_str(merge_request.get("target_branch")),
        )
    raise UnsupportedEventError(f"Unsupported noteable_type: {noteable_type!r}")


def _parse_project(value: object) -> ProjectRef:
    project = _as_object_dict(value)
    if project is None:
        raise ValueError("Webhook payload is missing project")
    http_url = project.get("git_http_url") or project.get("http_url")
    if not isinstance(http_url, str) or not http_url:
        raise ValueError("Webhook project has no HTTP clone URL")
    default_branch = _as_string(project.get("default_branch")) or "main"
    return ProjectRef(
        id=_as_int(project.get("id"), field="project.id"),
        name=_as_string(project.get("path_with_namespace") or project.get("name")),
        web_url=_as_string(project.get("web_url")),
        default_branch=default_branch,
        http_url_to_repo=http_url,
    )


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


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Unexpected webhook value type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"Unexpected webhook value for {field}: {value}") from exc
    raise ValueError(f"Unexpected webhook value type for {field}")
