from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from mrpilot.gitlab_gateway import CommentDeliveryError, CommentUpdateUnsupportedError
from mrpilot.models import AgentProgress, CommentRef, CommentTarget
from mrpilot.progress import ProgressLog, ProgressReporter


TARGET = CommentTarget(project_id=7, kind="issue", iid=12)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        value = self.now
        self.now = self.now + timedelta(seconds=1)
        return value


class FakePoster:
    def __init__(
        self,
        *,
        update_error: Exception | None = None,
        post_error: Exception | None = None,
    ) -> None:
        self.posts: list[tuple[str, str | None]] = []
        self.updates: list[tuple[int, str]] = []
        self.update_error = update_error
        self.post_error = post_error

    def post_comment(
        self, target: CommentTarget, body: str, *, discussion_id: str | None = None
    ) -> CommentRef:
        if self.post_error is not None:
            raise self.post_error
        self.posts.append((body, discussion_id))
        return CommentRef(target=target, note_id=100 + len(self.posts))

    def update_comment(self, ref: CommentRef, body: str) -> None:
        if self.update_error is not None:
            raise self.update_error
        self.updates.append((ref.note_id, body))


def test_progress_log_dedupes_and_stops_after_terminal() -> None:
    log = ProgressLog(clock=FakeClock())

    assert log.append("Received request") is True
    assert log.append("  Received request  ") is False
    assert log.append("   ") is False
    assert log.finish("success") is True
    assert log.finish("error") is False
    assert log.append("late") is False

    assert [entry.message for entry in log.entries] == ["Received request"]
    assert log.terminal == "success"


def test_progress_log_renders_last_entries_with_banner() -> None:
    log = ProgressLog(clock=FakeClock())
    for index in range(12):
        log.append(f"step {index}")
    log.finish("error")

    rendered = log.render(title="Claude progress")

    lines = rendered.splitlines()
    assert lines[0] == "**Claude progress**"
    assert lines[2] == "- `[03:04:07]` step 2"
    assert lines[11] == "- `[03:04:16]` step 11"
    assert "step 1\n" not in rendered
    assert lines[-1] == "**Finished with errors.**"


def test_reporter_creates_then_edits_one_comment() -> None:
    poster = FakePoster()
    reporter = ProgressReporter(
        poster,
        TARGET,
        title="Claude progress",
        discussion_id="d1",
        log=ProgressLog(clock=FakeClock()),
    )

    reporter.update("Received request")
    reporter.on_progress(AgentProgress("Editing LICENSE"))
    reporter.on_progress(AgentProgress("Editing LICENSE"))
    reporter.finish("success", "Run completed")
    reporter.finish("error", "ignored")

    assert len(poster.posts) == 1
    assert poster.posts[0][1] == "d1"
    assert reporter.comment == CommentRef(target=TARGET, note_id=101)
    assert len(poster.updates) == 2
    final_body = poster.updates[-1][1]
    assert "Run completed" in final_body
    assert final_body.endswith("**Finished successfully.**")
    assert "ignored" not in final_body


def test_reporter_falls_back_to_new_comments_when_edits_unsupported() -> None:
    poster = FakePoster(
        update_error=CommentUpdateUnsupportedError("update_comment", "405", status_code=405)
    )
    reporter = ProgressReporter(poster, TARGET, title="Codex progress")

    reporter.update("one")
    reporter.update("two")
    reporter.update("three")

    assert len(poster.posts) == 3
    assert poster.posts[1][0].startswith("**Progress update**\n\n**Codex progress**")
    assert "three" in poster.posts[2][0]


def test_final_status_is_not_reposted_when_a_result_follows() -> None:
    poster = FakePoster(
        update_error=CommentUpdateUnsupportedError("update_comment", "405", status_code=405)
    )
    reporter = ProgressReporter(poster, TARGET, title="Codex progress")

    reporter.update("Received request")
    reporter.finish("success", "Run completed", result_follows=True)
    reporter.post_result("Codex finished the request.")

    bodies = [body for body, _ in poster.posts]
    assert bodies == [bodies[0], "Codex finished the request."]
    assert not any("Finished successfully" in body for body in bodies)


def test_final_status_is_still_edited_when_a_result_follows() -> None:
    poster = FakePoster()
    reporter = ProgressReporter(poster, TARGET, title="Claude progress")

    reporter.update("Received request")
    reporter.finish("error", "Run failed", result_follows=True)

    assert len(poster.posts) == 1
    assert poster.updates[-1][1].endswith("**Finished with errors.**")


def test_reporter_swallows_delivery_failures(caplog: pytest.LogCaptureFixture) -> None:
    poster = FakePoster(post_error=CommentDeliveryError("create_comment", "boom", status_code=500))
    reporter = ProgressReporter(poster, TARGET, title="Claude progress")
    caplog.set_level("INFO", logger="mrpilot.progress")

    reporter.update("Received request")
    reporter.finish("error", "Run failed")

    assert reporter.post_result("final") is None
    assert reporter.comment is None
    assert "event=comment_delivery_failed" in caplog.text


def test_reporter_keeps_editing_after_transient_update_failure() -> None:
    poster = FakePoster()
    reporter = ProgressReporter(poster, TARGET, title="Claude progress")
    reporter.update("one")

    poster.update_error = CommentDeliveryError("update_comment", "timeout", status_code=502)
    reporter.update("two")
    poster.update_error = None
    reporter.update("three")

    assert len(poster.posts) == 1
    assert len(poster.updates) == 1
    assert "two" in poster.updates[0][1]


def test_post_result_returns_reference() -> None:
    poster = FakePoster()
    reporter = ProgressReporter(poster, TARGET, title="Claude progress", discussion_id="d9")

    ref = reporter.post_result("Claude finished the request.")

    assert ref == CommentRef(target=TARGET, note_id=101)
    assert poster.posts == [("Claude finished the request.", "d9")]
