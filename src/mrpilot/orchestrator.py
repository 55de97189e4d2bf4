from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import json
import logging
from pathlib import Path
from typing import Literal
import uuid

from mrpilot.agent_adapter import (
    AgentRunner,
    AgentTimeoutError,
    AgentTransportError,
    build_agent_runners,
    error_for_result,
    snippet,
)
from mrpilot.config import AppConfig
from mrpilot.git_ops import WorkspaceManager, WorkspacePreparationError
from mrpilot.gitlab_gateway import GitLabApiError, GitLabGateway
from mrpilot.instructions import extract_instruction, extract_instruction_text, should_process
from mrpilot.merge_request import branch_name, compose_merge_request, random_suffix
from mrpilot.models import (
    AgentResult,
    CancellationToken,
    ChangeSet,
    InboundEvent,
    Instruction,
    MergeRequest,
    Provider,
    RunContext,
    comment_target_for,
    parse_inbound_event,
)
from mrpilot.observability import log_event, logging_run_context
from mrpilot.progress import ProgressReporter
from mrpilot.prompts import build_agent_prompt
from mrpilot.signature import require_valid_signature


LOGGER = logging.getLogger("mrpilot.orchestrator")
_OUTPUT_LIMIT = 3000

RunStatus = Literal["ignored", "succeeded", "failed"]


class RunStage(Enum):
    VERIFYING = "verifying"
    EXTRACTING = "extracting"
    PREPARING_WORKSPACE = "preparing_workspace"
    RUNNING_AGENT = "running_agent"
    COLLECTING_CHANGES = "collecting_changes"
    PUBLISHING = "publishing"
    REPORTING = "reporting"
    DONE = "done"
    FAILED = "failed"


class PublishError(RuntimeError):
    """Branch, push or merge request creation failed after the agent succeeded."""

    def __init__(self, message: str, *, branch: str, pushed: bool) -> None:
        super().__init__(message)
        self.branch = branch
        self.pushed = pushed

    @property
    def recovery(self) -> str:
        if self.pushed:
            return (
                f"The changes were pushed to branch `{self.branch}`. "
                "Open a merge request from it manually."
            )
        return "Nothing was pushed. Mention the agent again to retry the request."


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Services:
    """Collaborators shared by every run; none of them hold per-run state."""

    config: AppConfig
    gateway: GitLabGateway
    workspace: WorkspaceManager
    runners: Mapping[Provider, AgentRunner]
    clock: Callable[[], datetime] = _utc_now
    suffix_factory: Callable[[], str] = random_suffix

    @classmethod
    def from_config(cls, config: AppConfig) -> Services:
        return cls(
            config=config,
            gateway=GitLabGateway(config.gitlab.base_url, config.gitlab.token),
            workspace=WorkspaceManager(config.workspace, config.gitlab.token),
            runners=build_agent_runners(config),
        )


@dataclass(frozen=True)
class RunOutcome:
    status: RunStatus
    stage: RunStage
    run_id: str
    merge_request: MergeRequest | None = None
    branch: str | None = None
    changes: ChangeSet = ()
    error: str | None = None


@dataclass
class _RunRecord:
    instruction: Instruction
    workspace: Path | None = None
    result: AgentResult | None = None
    changes: ChangeSet = ()
    branch: str | None = None
    merge_request: MergeRequest | None = None
    error: Exception | None = None
    failed_stage: RunStage | None = None


class Orchestrator:
    """Sequence one inbound event through extraction, agent run and publishing.

    One instance handles exactly one run and owns that run's progress
    reporter and cancellation token. ``run`` never raises.
    """

    def __init__(
        self, services: Services, event: InboundEvent, *, run_id: str | None = None
    ) -> None:
        self._services = services
        self._event = event
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.stage = RunStage.EXTRACTING
        self.cancellation = CancellationToken()
        self._reporter: ProgressReporter | None = None

    @staticmethod
    def accept(raw_body: bytes, header: str | None, *, secret: str) -> InboundEvent:
        require_valid_signature(raw_body, header, secret)
        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise ValueError("Webhook body is not valid JSON") from exc
        return parse_inbound_event(payload)

    def cancel(self) -> None:
        self.cancellation.cancel()

    def run(self) -> RunOutcome:
        with logging_run_context(self.run_id):
            try:
                return self._run()
            except Exception as exc:  # noqa: BLE001
                # _run reports its own failures; this only guards the reporting path.
                LOGGER.exception("event=run_crashed error_type=%s", type(exc).__name__)
                self.stage = RunStage.FAILED
                return RunOutcome(
                    status="failed",
                    stage=RunStage.FAILED,
                    run_id=self.run_id,
                    error=f"{type(exc).__name__}: {exc}",
                )

    def _run(self) -> RunOutcome:
        event = self._event
        self.stage = RunStage.EXTRACTING
        if not should_process(event, bot_username=self._services.config.server.bot_username):
            return self._ignored("filtered")
        instruction = extract_instruction(event, thread_context=self._thread_context())
        if instruction is None:
            return self._ignored("no_instruction")

        log_event(
            LOGGER,
            "run_started",
            provider=instruction.provider,
            project=event.project.name,
            event_kind=event.kind,
            target_branch=instruction.target_branch,
        )
        reporter = ProgressReporter(
            self._services.gateway,
            comment_target_for(event),
            title=f"{instruction.provider.capitalize()} progress",
            discussion_id=event.discussion_id,
        )
        self._reporter = reporter
        reporter.update(f"Received request: {snippet(instruction.command, limit=100)}")

        record = _RunRecord(instruction=instruction)
        try:
            self._execute(record, reporter)
        except Exception as exc:  # noqa: BLE001
            record.error = exc
            record.failed_stage = self.stage
            log_event(
                LOGGER,
                "run_stage_failed",
                stage=self.stage.value,
                error_type=type(exc).__name__,
            )
        finally:
            self.stage = RunStage.REPORTING
            try:
                self._report(record, reporter)
            finally:
                if record.workspace is not None:
                    self._services.workspace.cleanup(record.workspace)

        self.stage = RunStage.FAILED if record.error is not None else RunStage.DONE
        log_event(
            LOGGER,
            "run_finished",
            provider=instruction.provider,
            status="failed" if record.error is not None else "succeeded",
            failed_stage=record.failed_stage.value if record.failed_stage else None,
            change_count=len(record.changes),
            merge_request_iid=record.merge_request.iid if record.merge_request else None,
        )
        return RunOutcome(
            status="failed" if record.error is not None else "succeeded",
            stage=self.stage,
            run_id=self.run_id,
            merge_request=record.merge_request,
            branch=record.branch,
            changes=record.changes,
            error=str(record.error) if record.error is not None else None,
        )

    def _execute(self, record: _RunRecord, reporter: ProgressReporter) -> None:
        instruction = record.instruction
        project = self._event.project

        self.stage = RunStage.PREPARING_WORKSPACE
        reporter.update(f"Cloning {project.name} at `{instruction.target_branch}`")
        workspace = self._services.workspace.prepare(project, instruction.target_branch)
        record.workspace = workspace

        self.stage = RunStage.RUNNING_AGENT
        record.result = self._run_agent(instruction, workspace, reporter)
        if not record.result.success:
            raise error_for_result(record.result)

        self.stage = RunStage.COLLECTING_CHANGES
        record.changes = self._services.workspace.changed_files(workspace)
        reporter.update(f"Detected {len(record.changes)} changed file(s)")
        if not record.changes:
            return

        self.stage = RunStage.PUBLISHING
        self._publish(record, workspace, reporter)

    def _run_agent(
        self, instruction: Instruction, workspace: Path, reporter: ProgressReporter
    ) -> AgentResult:
        runner = self._services.runners.get(instruction.provider)
        if runner is None:
            raise AgentTransportError(
                f"no runner is configured for {instruction.provider}", error_kind="unavailable"
            )
        context = RunContext(
            workspace_path=workspace,
            branch=instruction.target_branch,
            timeout_seconds=runner.timeout_for(instruction.timeout_minutes),
            cancellation=self.cancellation,
        )
        model_note = f" with model `{instruction.model}`" if instruction.model else ""
        reporter.update(f"Starting {instruction.provider}{model_note}")
        return runner.run(
            prompt=build_agent_prompt(
                instruction=instruction, project_name=self._event.project.name
            ),
            context=context,
            model=instruction.model,
            on_progress=reporter.on_progress,
        )

    def _publish(
        self, record: _RunRecord, workspace: Path, reporter: ProgressReporter
    ) -> None:
        instruction = record.instruction
        project_id = self._event.project.id
        branch = branch_name(
            instruction.provider, self._services.clock(), self._services.suffix_factory()
        )
        record.branch = branch
        draft = compose_merge_request(
            instruction.command,
            record.changes,
            instruction.context,
            source_branch=branch,
            target_branch=instruction.target_branch,
        )

        pushed = False
        try:
            base = self._services.workspace.current_branch(workspace)
            # Branch from the commit the agent worked on; the base branch may have moved.
            commit = self._services.workspace.head_commit(workspace)
            reporter.update(f"Creating branch `{branch}` from `{base}` at `{commit[:8]}`")
            self._services.gateway.create_branch(project_id, branch, commit)
            pushed = self._services.workspace.create_and_push_branch(
                workspace, branch, draft.commit_message
            )
            if not pushed:
                raise PublishError("git staged no changes to commit", branch=branch, pushed=False)
            reporter.update(f"Pushed changes to `{branch}`")
            merge_request = self._services.gateway.create_merge_request(project_id, draft)
        except PublishError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PublishError(
                f"{type(exc).__name__}: {_first_line(str(exc))}", branch=branch, pushed=pushed
            ) from exc
        record.merge_request = merge_request
        reporter.update(f"Opened merge request !{merge_request.iid}")

    def _report(self, record: _RunRecord, reporter: ProgressReporter) -> None:
        provider = record.instruction.provider.capitalize()
        if record.error is None:
            reporter.finish("success", "Run completed", result_follows=True)
            reporter.post_result(_success_body(provider, record))
            return
        reporter.finish(
            "error",
            f"Run failed while {_stage_phrase(record.failed_stage)}",
            result_follows=True,
        )
        reporter.post_result(_failure_body(provider, record))

    def _thread_context(self) -> str | None:
        event = self._event
        if event.kind != "note" or event.note_id is None:
            return None
        if extract_instruction_text(event.note_body) is None:
            return None
        try:
            return self._services.gateway.thread_context(
                comment_target_for(event), event.note_id, discussion_id=event.discussion_id
            )
        except GitLabApiError as exc:
            log_event(
                LOGGER,
                "thread_context_unavailable",
                note_id=event.note_id,
                error_type=type(exc).__name__,
            )
            return None

    def _ignored(self, reason: str) -> RunOutcome:
        log_event(
            LOGGER,
            "run_ignored",
            reason=reason,
            event_kind=self._event.kind,
            project=self._event.project.name,
        )
        self.stage = RunStage.DONE
        return RunOutcome(status="ignored", stage=RunStage.DONE, run_id=self.run_id)


def _success_body(provider: str, record: _RunRecord) -> str:
    output = _output_section(record.result)
    if record.merge_request is None:
        return f"{provider} finished without changing any files.{output}"
    changes = "\n".join(f"- `{change.path}` ({change.change_type})" for change in record.changes)
    return (
        f"{provider} finished the request.\n\n"
        f"Merge request: {record.merge_request.web_url}\n\n"
        f"**Changes**\n\n{changes}{output}"
    )


def _failure_body(provider: str, record: _RunRecord) -> str:
    error = record.error
    if isinstance(error, WorkspacePreparationError):
        message = f"Could not prepare the repository: {error}"
    elif isinstance(error, AgentTimeoutError):
        message = (
            f"{provider} {error}. Mention it again with a longer timeout, "
            f"for example `@{record.instruction.provider}[timeout=30]`."
        )
    elif isinstance(error, AgentTransportError):
        message = f"{provider} could not complete the request ({error.error_kind}): {error}"
    elif isinstance(error, PublishError):
        message = f"{provider} changed files but publishing failed: {error}\n\n{error.recovery}"
    else:
        message = (
            f"Internal error while {_stage_phrase(record.failed_stage)} "
            f"({type(error).__name__}). Check the service logs."
        )
    return f"{message}{_output_section(record.result)}"


def _output_section(result: AgentResult | None) -> str:
    if result is None or not result.output_text.strip():
        return ""
    text = result.output_text.strip()
    if len(text) > _OUTPUT_LIMIT:
        text = f"{text[:_OUTPUT_LIMIT]}..."
    return f"\n\n<details><summary>Agent output</summary>\n\n{text}\n\n</details>"


def _stage_phrase(stage: RunStage | None) -> str:
    if stage is None:
        return "processing the request"
    return stage.value.replace("_", " ")


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return text
