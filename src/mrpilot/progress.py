from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import threading
from typing import Literal, Protocol

from mrpilot.gitlab_gateway import CommentUpdateUnsupportedError
from mrpilot.models import AgentProgress, CommentRef, CommentTarget
from mrpilot.observability import log_event


LOGGER = logging.getLogger("mrpilot.progress")

TerminalState = Literal["success", "error"]
RENDERED_ENTRY_LIMIT = 10
UPDATE_FALLBACK_PREFIX = "**Progress update**"


class CommentPoster(Protocol):
    def post_comment(
        self, target: CommentTarget, body: str, *, discussion_id: str | None = None
    ) -> CommentRef: ...

    def update_comment(self, ref: CommentRef, body: str) -> None: ...


@dataclass(frozen=True)
class ProgressEntry:
    timestamp: str
    message: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProgressLog:
    """Ordered, de-duplicated status history for one run."""

    def __init__(self, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock
        self._entries: list[ProgressEntry] = []
        self._seen: set[str] = set()
        self._terminal: TerminalState | None = None

    @property
    def entries(self) -> tuple[ProgressEntry, ...]:
        return tuple(self._entries)

    @property
    def terminal(self) -> TerminalState | None:
        return self._terminal

    def append(self, message: str) -> bool:
        text = message.strip()
        if not text or text in self._seen or self._terminal is not None:
            return False
        self._seen.add(text)
        stamp = self._clock().astimezone(timezone.utc).strftime("%H:%M:%S")
        self._entries.append(ProgressEntry(timestamp=stamp, message=text))
        return True

    def finish(self, state: TerminalState) -> bool:
        if self._terminal is not None:
            return False
        self._terminal = state
        return True

    def render(self, *, title: str, limit: int = RENDERED_ENTRY_LIMIT) -> str:
        lines = [f"**{title}**", ""]
        lines.extend(f"- `[{entry.timestamp}]` {entry.message}" for entry in self._entries[-limit:])
        if self._terminal == "success":
            lines.extend(["", "**Finished successfully.**"])
        elif self._terminal == "error":
            lines.extend(["", "**Finished with errors.**"])
        return "\n".join(lines)


class ProgressReporter:
    """Keep one run's status comment in sync with its ProgressLog.

    The comment is created on first publish and edited in place afterwards.
    When the API refuses edits, each later update is posted as a new comment
    prefixed with ``**Progress update**``, except for a final status that a
    result comment replaces. Delivery failures are logged and never raised.
    """

    def __init__(
        self,
        poster: CommentPoster,
        target: CommentTarget,
        *,
        title: str,
        discussion_id: str | None = None,
        log: ProgressLog | None = None,
    ) -> None:
        self._poster = poster
        self._target = target
        self._title = title
        self._discussion_id = discussion_id
        self.log = log if log is not None else ProgressLog()
        self._comment: CommentRef | None = None
        self._edit_supported = True
        self._lock = threading.Lock()

    @property
    def comment(self) -> CommentRef | None:
        return self._comment

    def update(self, message: str) -> None:
        with self._lock:
            if self.log.append(message):
                self._publish()

    def on_progress(self, progress: AgentProgress) -> None:
        self.update(progress.message)

    def finish(
        self, state: TerminalState, message: str | None = None, *, result_follows: bool = False
    ) -> None:
        """Mark the run terminal and publish the final status.

        With ``result_follows`` the caller posts its own result comment next, so
        no extra fallback comment is added when edits are unsupported.
        """
        with self._lock:
            if message is not None:
                self.log.append(message)
            if self.log.finish(state):
                self._publish(append_allowed=not result_follows)

    def post_result(self, body: str) -> CommentRef | None:
        with self._lock:
            return self._deliver(lambda: self._post(body), operation="post_result")

    def _publish(self, *, append_allowed: bool = True) -> None:
        body = self.log.render(title=self._title)
        if self._comment is None:
            self._comment = self._deliver(lambda: self._post(body), operation="create_progress")
            return
        if self._edit_supported:
            comment = self._comment
            try:
                self._poster.update_comment(comment, body)
                return
            except CommentUpdateUnsupportedError:
                self._edit_supported = False
                log_event(LOGGER, "progress_edit_unsupported", note_id=comment.note_id)
            except Exception as exc:  # noqa: BLE001
                _log_delivery_failure("update_progress", exc)
                return
        if not append_allowed:
            log_event(LOGGER, "progress_append_skipped", reason="result_follows")
            return
        self._deliver(
            lambda: self._post(f"{UPDATE_FALLBACK_PREFIX}\n\n{body}"),
            operation="append_progress",
        )

    def _post(self, body: str) -> CommentRef:
        return self._poster.post_comment(self._target, body, discussion_id=self._discussion_id)

    def _deliver(
        self, action: Callable[[], CommentRef], *, operation: str
    ) -> CommentRef | None:
        try:
            return action()
        except Exception as exc:  # noqa: BLE001
            _log_delivery_failure(operation, exc)
            return None


def _log_delivery_failure(operation: str, exc: Exception) -> None:
    log_event(
        LOGGER,
        "comment_delivery_failed",
        operation=operation,
        error_type=type(exc).__name__,
        error=str(exc),
    )
