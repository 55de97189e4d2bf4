from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
import contextvars
import logging
import threading
import time
from typing import TYPE_CHECKING

from mrpilot.models import AgentErrorKind, AgentProgress, AgentResult, Provider, RunContext
from mrpilot.observability import log_event

if TYPE_CHECKING:
    from mrpilot.config import AppConfig


LOGGER = logging.getLogger("mrpilot.agent_adapter")

ProgressCallback = Callable[[AgentProgress], None]
TimerFactory = Callable[[float, Callable[[], None]], threading.Timer]

PROGRESS_INTERVAL_SECONDS = 2.0
_SNIPPET_LIMIT = 160


class AgentUnavailableError(RuntimeError):
    """Agent transport is disabled, missing, or misconfigured."""


class AgentTimeoutError(RuntimeError):
    pass


class AgentTransportError(RuntimeError):
    def __init__(self, message: str, *, error_kind: AgentErrorKind = "failed") -> None:
        super().__init__(message)
        self.error_kind = error_kind


@dataclass(frozen=True)
class TransportOutcome:
    success: bool
    output_text: str
    failure_reason: str | None = None


class ProgressThrottle:
    """Rate-limit status updates; turn completions and terminal events always pass."""

    def __init__(
        self,
        *,
        interval_seconds: float = PROGRESS_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._last_emitted_at: float | None = None
        self._lock = threading.Lock()

    def allow(self, progress: AgentProgress) -> bool:
        if progress.kind != "status":
            return True
        with self._lock:
            now = self._clock()
            if (
                self._last_emitted_at is not None
                and now - self._last_emitted_at < self._interval_seconds
            ):
                return False
            self._last_emitted_at = now
            return True


class AgentRunner(ABC):
    """Drive one external coding agent run to a single terminal result.

    Subclasses implement ``_check_available`` and ``_execute``. The base class
    owns the timeout timer, progress throttling, error classification and the
    one terminal progress event every run ends with.
    """

    provider: Provider

    def __init__(
        self,
        *,
        default_timeout_seconds: int,
        max_timeout_minutes: int,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self.default_timeout_seconds = default_timeout_seconds
        self.max_timeout_minutes = max_timeout_minutes
        self._clock = clock
        self._timer_factory = timer_factory

    def timeout_for(self, requested_minutes: int | None) -> float:
        if requested_minutes is None:
            return float(self.default_timeout_seconds)
        return float(min(requested_minutes, self.max_timeout_minutes) * 60)

    def run(
        self,
        *,
        prompt: str,
        context: RunContext,
        model: str | None,
        on_progress: ProgressCallback,
    ) -> AgentResult:
        throttle = ProgressThrottle(clock=self._clock)
        timed_out = threading.Event()

        def emit(progress: AgentProgress) -> None:
            if progress.kind == "terminal":
                return
            if throttle.allow(progress):
                on_progress(progress)

        def expire() -> None:
            timed_out.set()
            context.cancellation.cancel()

        log_event(
            LOGGER,
            "agent_run_started",
            provider=self.provider,
            model=model,
            timeout_seconds=context.timeout_seconds,
            workspace=str(context.workspace_path),
        )
        started_at = self._clock()
        # The timer thread keeps the caller's run id for anything it logs.
        run_context = contextvars.copy_context()
        timer = self._timer_factory(context.timeout_seconds, lambda: run_context.run(expire))
        timer.daemon = True
        timer.start()
        try:
            try:
                self._check_available()
                if context.cancellation.cancelled:
                    raise AgentTransportError(
                        "run was cancelled before start", error_kind="cancelled"
                    )
                outcome = self._execute(prompt=prompt, context=context, model=model, emit=emit)
            finally:
                timer.cancel()
        except AgentUnavailableError as exc:
            result = AgentResult(
                success=False, output_text="", error_kind="unavailable", error_message=str(exc)
            )
        except Exception as exc:  # noqa: BLE001
            # Errors raised by a transport we stopped ourselves belong to the stop reason.
            result = self._interrupted_result(context, timed_out) or AgentResult(
                success=False,
                output_text="",
                error_kind="failed",
                error_message=f"{type(exc).__name__}: {exc}",
            )
        else:
            interrupted = self._interrupted_result(context, timed_out)
            if interrupted is not None:
                result = AgentResult(
                    success=False,
                    output_text=outcome.output_text,
                    error_kind=interrupted.error_kind,
                    error_message=interrupted.error_message,
                )
            elif outcome.success:
                result = AgentResult(success=True, output_text=outcome.output_text)
            else:
                result = AgentResult(
                    success=False,
                    output_text=outcome.output_text,
                    error_kind="failed",
                    error_message=outcome.failure_reason or "agent reported an unsuccessful run",
                )

        on_progress(AgentProgress(message=terminal_message(self.provider, result), kind="terminal"))
        log_event(
            LOGGER,
            "agent_run_finished",
            provider=self.provider,
            success=result.success,
            error_kind=result.error_kind,
            duration_seconds=round(self._clock() - started_at, 1),
        )
        return result

    def _interrupted_result(
        self, context: RunContext, timed_out: threading.Event
    ) -> AgentResult | None:
        if timed_out.is_set():
            return AgentResult(
                success=False,
                output_text="",
                error_kind="timeout",
                error_message=f"timed out after {context.timeout_seconds:g} seconds",
            )
        if context.cancellation.cancelled:
            return AgentResult(
                success=False, output_text="", error_kind="cancelled", error_message="run cancelled"
            )
        return None

    @abstractmethod
    def _check_available(self) -> None:
        """Raise AgentUnavailableError when this transport cannot run."""

    @abstractmethod
    def _execute(
        self,
        *,
        prompt: str,
        context: RunContext,
        model: str | None,
        emit: ProgressCallback,
    ) -> TransportOutcome:
        """Run the agent in ``context.workspace_path`` until it finishes or is cancelled."""


def terminal_message(provider: Provider, result: AgentResult) -> str:
    name = provider.capitalize()
    if result.success:
        return f"{name} finished"
    if result.error_kind == "timeout":
        return f"{name} {result.error_message}"
    if result.error_kind == "cancelled":
        return f"{name} run was cancelled"
    if result.error_kind == "unavailable":
        return f"{name} is unavailable: {result.error_message}"
    return f"{name} failed: {result.error_message}"


def error_for_result(result: AgentResult) -> Exception:
    if result.error_kind == "timeout":
        return AgentTimeoutError(result.error_message or "agent run timed out")
    return AgentTransportError(
        result.error_message or "agent run failed", error_kind=result.error_kind or "failed"
    )


def snippet(text: str, *, limit: int = _SNIPPET_LIMIT) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) <= limit:
        return collapsed
    return f"{collapsed[:limit]}..."


def build_agent_runners(config: AppConfig) -> dict[Provider, AgentRunner]:
    from mrpilot.claude_adapter import ClaudeRunner
    from mrpilot.codex_adapter import CodexRunner

    return {
        "claude": ClaudeRunner(config.claude),
        "codex": CodexRunner(config.codex),
    }
