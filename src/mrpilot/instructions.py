from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import cast

from mrpilot.models import InboundEvent, Instruction, Provider
from mrpilot.observability import log_event


LOGGER = logging.getLogger("mrpilot.instructions")

_MENTION_RE = re.compile(r"(?<!\w)@(claude|codex)(?![\w-])", re.IGNORECASE)
_NEXT_MENTION_RE = re.compile(r"(?<!\w)@\w")
_RECOGNIZED_PARAMS = frozenset({"model", "timeout"})
_TRIGGERING_ACTIONS = frozenset({"open", "reopen"})


@dataclass(frozen=True)
class ParsedMention:
    provider: Provider
    command: str
    model: str | None = None
    timeout_minutes: int | None = None


def extract_instruction_text(text: str) -> ParsedMention | None:
    """Parse the first ``@provider[k=v,...] command`` mention out of free text.

    Returns ``None`` when there is no recognized mention or the command body is
    empty. The body ends at the next ``@word`` token.
    """
    match = _MENTION_RE.search(text)
    if match is None:
        return None

    provider = cast(Provider, match.group(1).lower())
    cursor = match.end()
    params: dict[str, str] = {}
    if cursor < len(text) and text[cursor] == "[":
        closing = text.find("]", cursor + 1)
        if closing != -1:
            params = _parse_params(text[cursor + 1 : closing])
            cursor = closing + 1

    remainder = text[cursor:]
    next_mention = _NEXT_MENTION_RE.search(remainder)
    if next_mention is not None:
        remainder = remainder[: next_mention.start()]
    command = remainder.strip()
    if not command:
        return None

    return ParsedMention(
        provider=provider,
        command=command,
        model=params.get("model"),
        timeout_minutes=_parse_timeout(params.get("timeout")),
    )


def extract_instruction(
    event: InboundEvent, *, thread_context: str | None = None
) -> Instruction | None:
    text = event.note_body if event.kind == "note" else event.description
    parsed = extract_instruction_text(text)
    if parsed is None:
        return None

    context = _context_header(event)
    if thread_context:
        context = f"{context}\n\nEarlier discussion:\n{thread_context}"

    instruction = Instruction(
        provider=parsed.provider,
        command=parsed.command,
        context=context,
        target_branch=_target_branch(event),
        model=parsed.model,
        timeout_minutes=parsed.timeout_minutes,
    )
    log_event(
        LOGGER,
        "instruction_extracted",
        provider=instruction.provider,
        event_kind=event.kind,
        target_branch=instruction.target_branch,
        model=instruction.model,
        timeout_minutes=instruction.timeout_minutes,
    )
    return instruction


def should_process(event: InboundEvent, *, bot_username: str | None) -> bool:
    if bot_username and event.author_username.strip().lower() == bot_username.strip().lower():
        log_event(LOGGER, "event_skipped", reason="bot_author", event_kind=event.kind)
        return False
    if event.kind != "note" and event.action not in _TRIGGERING_ACTIONS:
        log_event(
            LOGGER,
            "event_skipped",
            reason="action_not_triggering",
            event_kind=event.kind,
            action=event.action,
        )
        return False
    return True


def _parse_params(raw: str) -> dict[str, str]:
    params: dict[str, str] = {}
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        key = key.strip().lower()
        value = value.strip()
        if not sep or not key or not value:
            continue
        if key in _RECOGNIZED_PARAMS:
            params[key] = value
    return params


def _parse_timeout(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        minutes = int(raw)
    except ValueError:
        return None
    if minutes < 1:
        return None
    return minutes


def _context_header(event: InboundEvent) -> str:
    if event.kind == "issue":
        return f"Issue #{event.issue_iid}: {event.title}"
    if event.kind == "merge_request":
        return f"MR !{event.merge_request_iid}: {event.title}"
    if event.issue_iid is not None:
        return f"Issue #{event.issue_iid} comment"
    return f"MR !{event.merge_request_iid} comment"


def _target_branch(event: InboundEvent) -> str:
    if event.merge_request_iid is not None and event.source_branch:
        return event.source_branch
    return event.project.default_branch
