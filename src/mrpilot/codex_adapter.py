from __future__ import annotations

from collections.abc import Callable
import contextvars
from pathlib import Path
import json
import logging
import os
from queue import Empty, SimpleQueue
import signal
import subprocess
import threading
import time
from typing import IO, cast
from urllib.parse import urlsplit

from mrpilot.agent_adapter import (
    AgentRunner,
    AgentUnavailableError,
    ProgressCallback,
    TimerFactory,
    TransportOutcome,
    snippet,
)
from mrpilot.config import CodexConfig
from mrpilot.models import AgentProgress, RunContext
from mrpilot.observability import log_event
from mrpilot.shell import CommandError, redact, run, spawn


LOGGER = logging.getLogger("mrpilot.codex_adapter")
_TERMINATE_GRACE_SECONDS = 5.0
_CANCEL_POLL_SECONDS = 0.2


class CodexRunner(AgentRunner):
    provider = "codex"

    def __init__(
        self,
        config: CodexConfig,
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
            raise AgentUnavailableError("codex is disabled in config")
        try:
            run([self._config.binary, "--version"])
        except (CommandError, OSError) as exc:
            raise AgentUnavailableError(
                f"{self._config.binary} --version failed: {type(exc).__name__}"
            ) from exc

    def _execute(
        self,
        *,
        prompt: str,
        context: RunContext,
        model: str | None,
        emit: ProgressCallback,
    ) -> TransportOutcome:
        argv = self._command(prompt=prompt, model=model or self._config.model)
        proc = spawn(argv, cwd=context.workspace_path, env=self._environment())
        context.cancellation.add_callback(lambda: _terminate(proc))

        stderr_thread = _start_thread(
            _forward_stderr, cast(IO[str], proc.stderr), emit, name="codex-stderr"
        )
        lines: SimpleQueue[str | None] = SimpleQueue()
        _start_thread(_pump_lines, cast(IO[str], proc.stdout), lines, name="codex-stdout")

        stream = CodexEventStream()
        while not context.cancellation.cancelled:
            try:
                line = lines.get(timeout=_CANCEL_POLL_SECONDS)
            except Empty:
                continue
            if line is None:
                break
            progress = stream.consume(line)
            if progress is not None:
                emit(progress)
        if context.cancellation.cancelled:
            # Descendants may still hold the pipe open; stop reading instead of waiting on EOF.
            log_event(LOGGER, "codex_output_abandoned", pid=proc.pid, thread_id=stream.thread_id)
            return TransportOutcome(
                success=False,
                output_text=stream.last_message,
                failure_reason="codex run was cancelled",
            )
        returncode = proc.wait()
        stderr_thread.join(timeout=_TERMINATE_GRACE_SECONDS)

        log_event(
            LOGGER,
            "codex_process_exited",
            exit_code=returncode,
            thread_id=stream.thread_id,
            failed=stream.failure is not None,
        )
        if stream.failure is not None:
            return TransportOutcome(
                success=False, output_text=stream.last_message, failure_reason=stream.failure
            )
        if returncode != 0:
            return TransportOutcome(
                success=False,
                output_text=stream.last_message,
                failure_reason=f"codex exited with code {returncode}",
            )
        return TransportOutcome(success=True, output_text=stream.last_message)

    def _command(self, *, prompt: str, model: str | None) -> list[str]:
        cmd = [
            self._config.binary,
            "exec",
            "--json",
            "--dangerously-bypass-approvals-and-sandbox",
            "--skip-git-repo-check",
        ]
        if model:
            cmd.extend(["--model", model])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)
        cmd.append(prompt)
        return cmd

    def _environment(self) -> dict[str, str]:
        env = dict(os.environ)
        if self._config.api_key:
            env["OPENAI_API_KEY"] = self._config.api_key
        if self._config.base_url:
            env["OPENAI_BASE_URL"] = self._config.base_url
        if self._config.codex_home is not None:
            env["CODEX_HOME"] = str(self._config.codex_home)
        return env


class CodexEventStream:
    """Fold ``codex exec --json`` lines into progress messages and a final result."""

    def __init__(self) -> None:
        self.thread_id: str | None = None
        self.last_message = ""
        self.failure: str | None = None

    def consume(self, line: str) -> AgentProgress | None:
        payload = _parse_event_line(line.strip())
        if payload is None:
            return None
        event_type = payload.get("type")

        if event_type == "thread.started":
            thread_id = payload.get("thread_id")
            if isinstance(thread_id, str) and thread_id:
                self.thread_id = thread_id
            return AgentProgress("Codex session started")
        if event_type == "turn.started":
            return AgentProgress("Codex is working")
        if event_type in ("item.started", "item.completed"):
            item = _as_object_dict(payload.get("item"))
            if item is None:
                return None
            return self._item_progress(item, completed=event_type == "item.completed")
        if event_type == "turn.completed":
            return AgentProgress(_usage_summary(payload.get("usage")), kind="turn_completed")
        if event_type == "turn.failed":
            error = _as_object_dict(payload.get("error"))
            message = error.get("message") if error is not None else None
            self.failure = _as_text(message) or "codex turn failed"
            return None
        if event_type == "error":
            self.failure = _as_text(payload.get("message")) or "codex reported an error"
            return None
        return None

    def _item_progress(self, item: dict[str, object], *, completed: bool) -> AgentProgress | None:
        item_type = item.get("type")
        if item_type == "reasoning":
            text = _as_text(item.get("text"))
            return AgentProgress(f"Thinking: {snippet(text)}") if completed and text else None
        if item_type == "command_execution":
            command = snippet(_as_text(item.get("command")), limit=100)
            if not completed:
                return AgentProgress(f"Running: {command}")
            exit_code = item.get("exit_code")
            if isinstance(exit_code, int) and exit_code != 0:
                return AgentProgress(f"Command failed ({exit_code}): {command}")
            return AgentProgress(f"Completed: {command}")
        if item_type == "file_change" and completed:
            paths = _file_change_paths(item.get("changes"))
            if not paths:
                return AgentProgress("Editing files")
            return AgentProgress(f"Editing {', '.join(paths)}")
        if item_type == "agent_message" and completed:
            text = _as_text(item.get("text")).strip()
            if not text:
                return None
            self.last_message = text
            return AgentProgress(snippet(text))
        return None


def write_codex_config(config: CodexConfig, codex_home: Path) -> Path:
    if not config.model or not config.base_url:
        raise ValueError("Codex config generation needs both model and base_url")
    provider = provider_from_base_url(config.base_url)
    content = "\n".join(
        [
            "# Generated by mrpilot at service start",
            f"model = {json.dumps(config.model)}",
            f"model_provider = {json.dumps(provider)}",
            f"model_reasoning_effort = {json.dumps(config.reasoning_effort)}",
            "disable_response_storage = true",
            'sandbox_mode = "danger-full-access"',
            'approval_policy = "never"',
            "",
            f"[model_providers.{provider}]",
            f"name = {json.dumps(provider)}",
            f"base_url = {json.dumps(config.base_url)}",
            'wire_api = "responses"',
            'env_key = "OPENAI_API_KEY"',
            "",
            "[notice]",
            "hide_full_access_warning = true",
            "",
        ]
    )
    codex_home.mkdir(parents=True, exist_ok=True)
    path = codex_home / "config.toml"
    path.write_text(content, encoding="utf-8")
    log_event(
        LOGGER,
        "codex_config_written",
        path=str(path),
        provider=provider,
        model=config.model,
    )
    return path


def provider_from_base_url(base_url: str) -> str:
    host = urlsplit(base_url).hostname or ""
    label = host.split(".")[0] if host else ""
    if not label or label == "api":
        return "openai"
    return label


def _forward_stderr(stream: IO[str], emit: ProgressCallback) -> None:
    for line in stream:
        text = line.strip()
        if not text:
            continue
        LOGGER.warning("event=codex_stderr line=%s", snippet(redact(text), limit=200))
        emit(AgentProgress(f"Warning: {snippet(text, limit=120)}"))


def _pump_lines(stream: IO[str], lines: SimpleQueue[str | None]) -> None:
    try:
        for line in stream:
            lines.put(line)
    finally:
        lines.put(None)


def _start_thread(target: Callable[..., None], *args: object, name: str) -> threading.Thread:
    ctx = contextvars.copy_context()
    thread = threading.Thread(target=ctx.run, args=(target, *args), name=name, daemon=True)
    thread.start()
    return thread


def _terminate(proc: subprocess.Popen[str]) -> None:
    """Stop the whole process group; the direct child may already be gone."""
    log_event(LOGGER, "codex_process_terminated", pid=proc.pid)
    _signal_group(proc.pid, signal.SIGTERM)
    try:
        proc.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        log_event(LOGGER, "codex_process_kill", pid=proc.pid)
    # Stragglers that ignored SIGTERM or outlived the leader.
    _signal_group(proc.pid, signal.SIGKILL)


def _signal_group(pgid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(pgid, sig)
    except ProcessLookupError:
        return
    except PermissionError as exc:
        log_event(LOGGER, "codex_signal_failed", pgid=pgid, error_type=type(exc).__name__)


def _usage_summary(value: object) -> str:
    usage = _as_object_dict(value)
    if usage is None:
        return "Turn completed"
    input_tokens = usage.get("input_tokens") or 0
    output_tokens = usage.get("output_tokens") or 0
    return f"Turn completed: {input_tokens} input tokens, {output_tokens} output tokens"


def _file_change_paths(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    paths: list[str] = []
    for entry in value:
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        path = entry_obj.get("path")
        if isinstance(path, str) and path:
            paths.append(path)
    return paths


def _parse_event_line(line: str) -> dict[str, object] | None:
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    return _as_object_dict(payload)


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_text(value: object) -> str:
    if isinstance(value, str):
        return value
    return ""
