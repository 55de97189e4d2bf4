from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
import time

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    CLINotFoundError,
    ResultMessage,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
)
import pytest

from mrpilot.claude_adapter import ClaudeMessageTranslator, ClaudeRunner
from mrpilot.config import ClaudeConfig
from mrpilot.models import AgentProgress, RunContext


def _assistant(*blocks: object) -> AssistantMessage:
    return AssistantMessage(content=list(blocks), model="claude-sonnet")


def _result(
    *, subtype: str = "success", is_error: bool = False, result: str | None = "All done"
) -> ResultMessage:
    return ResultMessage(
        subtype=subtype,
        duration_ms=1200,
        duration_api_ms=900,
        is_error=is_error,
        num_turns=3,
        session_id="session-1",
        total_cost_usd=0.0123,
        usage={"input_tokens": 100, "output_tokens": 20},
        result=result,
    )


def _context(tmp_path: Path) -> RunContext:
    return RunContext(workspace_path=tmp_path, branch="main", timeout_seconds=60)


def test_translator_maps_blocks_to_progress() -> None:
    translator = ClaudeMessageTranslator()

    progress = translator.consume(
        _assistant(
            ThinkingBlock(thinking="Need a license file", signature="sig"),
            ToolUseBlock(id="t1", name="Read", input={"file_path": "README.md"}),
            ToolUseBlock(id="t2", name="Write", input={"file_path": "LICENSE", "content": "MIT"}),
            TextBlock(text="  Added the LICENSE file.  "),
            TextBlock(text="   "),
        )
    )

    assert progress == [
        AgentProgress("Thinking: Need a license file"),
        AgentProgress("Using tool: Read"),
        AgentProgress("Editing LICENSE"),
        AgentProgress("Added the LICENSE file."),
    ]
    assert translator.output_text == "Added the LICENSE file."


def test_translator_result_message_completes_turn() -> None:
    translator = ClaudeMessageTranslator()
    translator.consume(_assistant(TextBlock(text="interim")))

    progress = translator.consume(_result())

    assert progress == [
        AgentProgress(
            "Turn completed after 3 turns: 100 input tokens, 20 output tokens, $0.0123",
            kind="turn_completed",
        )
    ]
    outcome = translator.outcome()
    assert outcome.success is True
    assert outcome.output_text == "All done"


def test_translator_outcome_failures() -> None:
    missing = ClaudeMessageTranslator()
    missing.consume(_assistant(TextBlock(text="partial")))
    assert missing.outcome().success is False
    assert missing.outcome().output_text == "partial"
    assert missing.outcome().failure_reason == "claude stream ended without a result message"

    errored = ClaudeMessageTranslator()
    errored.consume(_result(subtype="error_max_turns", is_error=True, result=None))
    outcome = errored.outcome()
    assert outcome.success is False
    assert outcome.failure_reason == "claude finished with status error_max_turns"


def test_run_streams_query_messages(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    seen: list[tuple[str, ClaudeAgentOptions]] = []

    async def fake_query(*, prompt: str, options: ClaudeAgentOptions) -> AsyncIterator[object]:
        seen.append((prompt, options))
        yield _assistant(ToolUseBlock(id="t", name="Edit", input={"file_path": "a.py"}))
        yield _result(result="Edited a.py")

    monkeypatch.setattr("mrpilot.claude_adapter.query", fake_query)
    config = ClaudeConfig(
        model="claude-default",
        base_url="https://proxy.example.com",
        auth_token="tok",
        allowed_tools=("Read", "Edit"),
        system_prompt="Work unattended.",
    )
    events: list[AgentProgress] = []

    result = ClaudeRunner(config).run(
        prompt="edit a.py",
        context=_context(tmp_path),
        model="claude-override",
        on_progress=events.append,
    )

    assert result.success is True
    assert result.output_text == "Edited a.py"
    prompt, options = seen[0]
    assert prompt == "edit a.py"
    assert options.cwd == str(tmp_path)
    assert options.model == "claude-override"
    assert options.permission_mode == "bypassPermissions"
    assert options.allowed_tools == ["Read", "Edit"]
    assert options.system_prompt == {
        "type": "preset",
        "preset": "claude_code",
        "append": "Work unattended.",
    }
    assert options.env == {
        "ANTHROPIC_BASE_URL": "https://proxy.example.com",
        "ANTHROPIC_AUTH_TOKEN": "tok",
    }
    assert events[0] == AgentProgress("Editing a.py")
    assert events[-1] == AgentProgress("Claude finished", kind="terminal")


def test_run_is_unavailable_when_disabled_or_cli_missing(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    async def missing_cli(*, prompt: str, options: ClaudeAgentOptions) -> AsyncIterator[object]:
        _ = prompt, options
        raise CLINotFoundError("claude not on PATH")
        yield  # pragma: no cover

    monkeypatch.setattr("mrpilot.claude_adapter.query", missing_cli)

    disabled = ClaudeRunner(ClaudeConfig(enabled=False)).run(
        prompt="x", context=_context(tmp_path), model=None, on_progress=lambda _: None
    )
    missing = ClaudeRunner(ClaudeConfig()).run(
        prompt="x", context=_context(tmp_path), model=None, on_progress=lambda _: None
    )

    assert disabled.error_kind == "unavailable"
    assert missing.error_kind == "unavailable"
    assert "Claude Code CLI not found" in (missing.error_message or "")


def test_run_timeout_cancels_stream(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    import asyncio

    async def slow_query(*, prompt: str, options: ClaudeAgentOptions) -> AsyncIterator[object]:
        _ = prompt, options
        yield _assistant(TextBlock(text="starting"))
        await asyncio.sleep(30)
        yield _result()

    monkeypatch.setattr("mrpilot.claude_adapter.query", slow_query)
    context = RunContext(workspace_path=tmp_path, branch="main", timeout_seconds=0.3)
    events: list[AgentProgress] = []

    started = time.monotonic()
    result = ClaudeRunner(ClaudeConfig()).run(
        prompt="x", context=context, model=None, on_progress=events.append
    )

    assert time.monotonic() - started < 10
    assert result.error_kind == "timeout"
    assert result.output_text == "starting"
    assert [event.kind for event in events].count("terminal") == 1
    assert events[-1] == AgentProgress("Claude timed out after 0.3 seconds", kind="terminal")
