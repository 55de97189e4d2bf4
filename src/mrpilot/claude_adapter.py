from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging
import threading
import time

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    CLINotFoundError,
    ResultMessage,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    query,
)

from mrpilot.agent_adapter import (
    AgentRunner,
    AgentUnavailableError,
    ProgressCallback,
    TimerFactory,
    TransportOutcome,
    snippet,
)
from mrpilot.config import ClaudeConfig
from mrpilot.models import AgentProgress, RunContext
from mrpilot.observability import log_event


LOGGER = logging.getLogger("mrpilot.claude_adapter")
_FILE_WRITING_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})
_CANCEL_POLL_SECONDS = 0.2


class ClaudeRunner(AgentRunner):
    provider = "claude"

    def __init__(
        self,
        config: ClaudeConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        super().__init__(
            default_timeout_seconds=config.timeout_seconds,
            max_timeout_minutes=config.max_timeout_minutes,
            clock=clock,
            timer_factory=timer_factory,
        )
        self._config = config

    def _check_available(self) -> None:
        if not self._config.enabled:
            raise AgentUnavailableError("claude is disabled in config")

    def _execute(
        self,
        *,
        prompt: str,
        context: RunContext,
        model: str | None,
        emit: ProgressCallback,
    ) -> TransportOutcome:
        options = self._options(context=context, model=model or self._config.model)
        try:
            return asyncio.run(
                self._stream(prompt=prompt, options=options, context=context, emit=emit)
            )
        except CLINotFoundError as exc:
            raise AgentUnavailableError(f"Claude Code CLI not found: {exc}") from exc

    def _options(self, *, context: RunContext, model: str | None) -> ClaudeAgentOptions:
        env: dict[str, str] = {}
        if self._config.base_url:
            env["ANTHROPIC_BASE_URL"] = self._config.base_url
        if self._config.auth_token:
            env["ANTHROPIC_AUTH_TOKEN"] = self._config.auth_token
        return ClaudeAgentOptions(
            cwd=str(context.workspace_path),
            model=model,
            permission_mode="bypassPermissions",
            allowed_tools=list(self._config.allowed_tools),
            system_prompt={
                "type": "preset",
                "preset": "claude_code",
                "append": self._config.system_prompt,
            },
            env=env,
        )

    async def _stream(
        self,
        *,
        prompt: str,
        options: ClaudeAgentOptions,
        context: RunContext,
        emit: ProgressCallback,
    ) -> TransportOutcome:
        translator = ClaudeMessageTranslator()
        consumer = asyncio.ensure_future(self._consume(prompt, options, translator, emit))
        while not consumer.done():
            if context.cancellation.cancelled:
                consumer.cancel()
                break
            await asyncio.wait({consumer}, timeout=_CANCEL_POLL_SECONDS)
        try:
            await consumer
        except asyncio.CancelledError:
            log_event(LOGGER, "claude_stream_cancelled", messages_seen=translator.message_count)
            return TransportOutcome(
                success=False,
                output_text=translator.output_text,
                failure_reason="claude run was cancelled",
            )
        return translator.outcome()

    async def _consume(
        self,
        prompt: str,
        options: ClaudeAgentOptions,
        translator: ClaudeMessageTranslator,
        emit: ProgressCallback,
    ) -> None:
        async for message in query(prompt=prompt, options=options):
            for progress in translator.consume(message):
                emit(progress)


class ClaudeMessageTranslator:
    """Map SDK messages onto progress events and remember the terminal result."""

    def __init__(self) -> None:
        self.message_count = 0
        self._last_text = ""
        self._result: ResultMessage | None = None

    @property
    def output_text(self) -> str:
        if self._result is not None and self._result.result:
            return self._result.result
        return self._last_text

    def consume(self, message: object) -> list[AgentProgress]:
        self.message_count += 1
        if isinstance(message, AssistantMessage):
            return [
                progress
                for progress in (self._block_progress(block) for block in message.content)
                if progress is not None
            ]
        if isinstance(message, ResultMessage):
            self._result = message
            return [AgentProgress(_result_summary(message), kind="turn_completed")]
        return []

    def outcome(self) -> TransportOutcome:
        result = self._result
        if result is None:
            return TransportOutcome(
                success=False,
                output_text=self._last_text,
                failure_reason="claude stream ended without a result message",
            )
        if result.is_error or result.subtype != "success":
            return TransportOutcome(
                success=False,
                output_text=self.output_text,
                failure_reason=f"claude finished with status {result.subtype}",
            )
        return TransportOutcome(success=True, output_text=self.output_text)

    def _block_progress(self, block: object) -> AgentProgress | None:
        if isinstance(block, ToolUseBlock):
            if block.name in _FILE_WRITING_TOOLS:
                path = block.input.get("file_path") or block.input.get("notebook_path")
                if isinstance(path, str) and path:
                    return AgentProgress(f"Editing {path}")
            return AgentProgress(f"Using tool: {block.name}")
        if isinstance(block, ThinkingBlock):
            if not block.thinking.strip():
                return None
            return AgentProgress(f"Thinking: {snippet(block.thinking)}")
        if isinstance(block, TextBlock):
            text = block.text.strip()
            if not text:
                return None
            self._last_text = text
            return AgentProgress(snippet(text))
        return None


def _result_summary(message: ResultMessage) -> str:
    usage = message.usage or {}
    input_tokens = usage.get("input_tokens") or 0
    output_tokens = usage.get("output_tokens") or 0
    summary = (
        f"Turn completed after {message.num_turns} turns: "
        f"{input_tokens} input tokens, {output_tokens} output tokens"
    )
    if message.total_cost_usd is not None:
        summary = f"{summary}, ${message.total_cost_usd:.4f}"
    return summary
