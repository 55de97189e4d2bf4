"""Conventional-commit titles, commit messages and descriptions for agent changes.

Everything here is a pure function of the instruction text and the ChangeSet so
the same inputs always produce the same merge request.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import PurePosixPath
import re
import secrets
from typing import Literal

from mrpilot.models import ChangeSet, FileChange, MergeRequestDraft, Provider


CommitType = Literal["feat", "fix", "docs", "test", "refactor", "chore"]

MAX_TITLE_LENGTH = 72
_GENERIC_SEGMENTS = frozenset({"src", "lib", "app", "packages"})
_FIX_RE = re.compile(
    r"\b(fix|fixes|fixed|bug|bugs|error|errors|crash|crashes|broken|repair|resolve)\b"
)
_TEST_RE = re.compile(r"\b(test|tests|testing|coverage|unittest|unit tests?)\b")
_REFACTOR_RE = re.compile(
    r"\b(refactor|refactoring|restructure|rename|cleanup|clean up|simplify|reorganize)\b"
)
_FEAT_RE = re.compile(r"\b(add|adds|create|implement|support|introduce|new|feature|enable)\b")
_TEST_DIRS = frozenset({"test", "tests", "__tests__", "spec"})
_TEST_NAME_RE = re.compile(r"(^test_.*|.*_test\.[^.]+$|.*\.(test|spec)\.[^.]+$)")
_DOC_DIRS = frozenset({"docs", "doc"})
_DOC_SUFFIXES = frozenset({".md", ".rst"})

_TESTING_CHECKLISTS: dict[CommitType, tuple[str, ...]] = {
    "feat": (
        "Exercise the new behavior by hand",
        "Add or update tests that cover it",
        "Run the existing test suite",
    ),
    "fix": (
        "Reproduce the original problem and confirm it is gone",
        "Add a regression test",
        "Run the existing test suite",
    ),
    "docs": (
        "Proofread the rendered documentation",
        "Check links and code samples",
    ),
    "test": (
        "Run the new or updated tests",
        "Confirm they fail without the code they cover",
    ),
    "refactor": (
        "Run the full test suite",
        "Confirm behavior is unchanged",
    ),
    "chore": (
        "Run the existing test suite",
        "Check that build and tooling still work",
    ),
}


def classify(instruction_text: str, changes: ChangeSet) -> CommitType:
    text = instruction_text.lower()
    if _FIX_RE.search(text):
        return "fix"
    if _TEST_RE.search(text) or (changes and all(_is_test_path(c.path) for c in changes)):
        return "test"
    if changes and all(_is_doc_path(c.path) for c in changes):
        return "docs"
    if _REFACTOR_RE.search(text):
        return "refactor"
    if _FEAT_RE.search(text) or any(c.change_type == "created" for c in changes):
        return "feat"
    return "chore"


def scope(changes: ChangeSet) -> str | None:
    if not changes:
        return None
    common: tuple[str, ...] | None = None
    for change in changes:
        parts = PurePosixPath(change.path).parent.parts
        if common is None:
            common = parts
            continue
        shared = 0
        for left, right in zip(common, parts):
            if left != right:
                break
            shared += 1
        common = common[:shared]
    for segment in common or ():
        if segment not in _GENERIC_SEGMENTS:
            return segment
    return None


def compose_merge_request(
    instruction_text: str,
    changes: ChangeSet,
    context_text: str,
    *,
    source_branch: str,
    target_branch: str,
) -> MergeRequestDraft:
    commit_type = classify(instruction_text, changes)
    title = build_title(commit_type, scope(changes), _summary(instruction_text))
    return MergeRequestDraft(
        title=title,
        commit_message=_commit_message(title, instruction_text, changes),
        description=_description(commit_type, instruction_text, changes, context_text),
        source_branch=source_branch,
        target_branch=target_branch,
    )


def build_title(commit_type: CommitType, scope_name: str | None, summary: str) -> str:
    prefix = f"{commit_type}({scope_name}): " if scope_name else f"{commit_type}: "
    title = f"{prefix}{summary}"
    if len(title) <= MAX_TITLE_LENGTH:
        return title
    return f"{title[: MAX_TITLE_LENGTH - 3].rstrip()}..."


def branch_name(provider: Provider, now: datetime, suffix: str) -> str:
    stamp = now.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{provider}-{stamp}-{suffix}"


def random_suffix() -> str:
    return secrets.token_hex(3)


def _summary(instruction_text: str) -> str:
    for line in instruction_text.splitlines():
        stripped = " ".join(line.split()).rstrip(".")
        if stripped:
            return stripped
    return "apply requested changes"


def _commit_message(title: str, instruction_text: str, changes: ChangeSet) -> str:
    lines = [title, ""]
    lines.extend(f"- {change.change_type} {change.path}" for change in changes)
    lines.extend(["", f"Requested-by-instruction: {_summary(instruction_text)}"])
    return "\n".join(lines)


def _description(
    commit_type: CommitType,
    instruction_text: str,
    changes: ChangeSet,
    context_text: str,
) -> str:
    request = "\n".join(f"> {line}" if line else ">" for line in instruction_text.splitlines())
    origin = context_text.splitlines()[0] if context_text.strip() else "a webhook event"
    plural = "" if len(changes) == 1 else "s"
    sections = [
        "## Summary",
        "",
        f"Automated change requested from {origin}.",
        "",
        request,
        "",
        f"## Changes ({len(changes)} file{plural})",
        "",
        *(_change_line(change) for change in changes),
        "",
        "## Testing",
        "",
        *(f"- [ ] {item}" for item in _TESTING_CHECKLISTS[commit_type]),
    ]
    return "\n".join(sections)


def _change_line(change: FileChange) -> str:
    return f"- `{change.path}` ({change.change_type})"


def _is_test_path(path: str) -> bool:
    pure = PurePosixPath(path)
    if any(part in _TEST_DIRS for part in pure.parent.parts):
        return True
    return bool(_TEST_NAME_RE.match(pure.name))


def _is_doc_path(path: str) -> bool:
    pure = PurePosixPath(path)
    if pure.parts and pure.parts[0] in _DOC_DIRS:
        return True
    if pure.suffix.lower() in _DOC_SUFFIXES:
        return True
    return pure.name.upper().startswith("README")
