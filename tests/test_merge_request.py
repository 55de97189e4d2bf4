from __future__ import annotations

from datetime import datetime, timedelta, timezone

from hypothesis import given, strategies as st
import pytest

from mrpilot.merge_request import (
    MAX_TITLE_LENGTH,
    branch_name,
    build_title,
    classify,
    compose_merge_request,
    random_suffix,
    scope,
)
from mrpilot.models import ChangeSet, FileChange


def _changes(*entries: tuple[str, str]) -> ChangeSet:
    return tuple(
        FileChange(path=path, change_type=kind)  # type: ignore[arg-type]
        for path, kind in entries
    )


def test_license_request_composes_feat_merge_request() -> None:
    draft = compose_merge_request(
        "add a LICENSE file",
        _changes(("LICENSE", "created")),
        "Issue #12: Need a license",
        source_branch="claude-20260101T000000-abc123",
        target_branch="main",
    )

    assert draft.title == "feat: add a LICENSE file"
    assert draft.source_branch == "claude-20260101T000000-abc123"
    assert draft.target_branch == "main"
    assert draft.commit_message == (
        "feat: add a LICENSE file\n"
        "\n"
        "- created LICENSE\n"
        "\n"
        "Requested-by-instruction: add a LICENSE file"
    )
    assert "Automated change requested from Issue #12: Need a license." in draft.description
    assert "> add a LICENSE file" in draft.description
    assert "## Changes (1 file)" in draft.description
    assert "- `LICENSE` (created)" in draft.description
    assert "- [ ] Exercise the new behavior by hand" in draft.description


@pytest.mark.parametrize(
    ("text", "changes", "expected"),
    [
        ("fix the crash and add tests", _changes(("src/a.py", "modified")), "fix"),
        ("add unit tests", _changes(("src/a.py", "modified")), "test"),
        ("update things", _changes(("tests/test_a.py", "modified")), "test"),
        ("update things", _changes(("web/a.test.ts", "created")), "test"),
        ("update the guide", _changes(("docs/guide.txt", "modified")), "docs"),
        ("tweak wording", _changes(("README", "modified"), ("notes.md", "created")), "docs"),
        ("refactor and add helpers", _changes(("src/a.py", "modified")), "refactor"),
        ("implement pagination", _changes(("src/a.py", "modified")), "feat"),
        ("tweak settings", _changes(("config.yml", "created")), "feat"),
        ("bump the version", _changes(("pyproject.toml", "modified")), "chore"),
        ("bump the version", (), "chore"),
    ],
)
def test_classify_precedence(text: str, changes: ChangeSet, expected: str) -> None:
    assert classify(text, changes) == expected


def test_classify_matches_whole_words_case_insensitively() -> None:
    assert classify("Prefix the names", _changes(("a.py", "modified"))) == "chore"
    assert classify("FIX the parser", ()) == "fix"


@pytest.mark.parametrize(
    ("paths", "expected"),
    [
        (("LICENSE",), None),
        (("src/parser/lexer.py", "src/parser/ast.py"), "parser"),
        (("src/parser/lexer.py", "src/util.py"), None),
        (("packages/api/routes/a.py", "packages/api/b.py"), "api"),
        (("docs/a.md", "src/b.py"), None),
    ],
)
def test_scope_uses_first_meaningful_common_segment(
    paths: tuple[str, ...], expected: str | None
) -> None:
    assert scope(tuple(FileChange(path=p, change_type="modified") for p in paths)) == expected


def test_title_includes_scope_and_truncates() -> None:
    assert build_title("fix", "parser", "handle empty input") == "fix(parser): handle empty input"

    long_title = build_title("feat", None, "word " * 40)
    assert len(long_title) == MAX_TITLE_LENGTH
    assert long_title.endswith("...")


def test_summary_uses_first_non_blank_line() -> None:
    draft = compose_merge_request(
        "\n  rename   the   helper.\nand more details",
        _changes(("src/util/helpers.py", "modified")),
        "",
        source_branch="b",
        target_branch="main",
    )

    assert draft.title == "refactor(util): rename the helper"
    assert "Automated change requested from a webhook event." in draft.description
    assert "> and more details" in draft.description


def test_empty_instruction_has_default_summary() -> None:
    assert compose_merge_request(
        "", (), "ctx", source_branch="b", target_branch="main"
    ).title == "chore: apply requested changes"


@given(
    text=st.text(max_size=200),
    paths=st.lists(st.from_regex(r"[a-z]{1,5}(/[a-z]{1,5}){0,3}\.[a-z]{1,3}", fullmatch=True)),
)
def test_composition_is_deterministic_and_bounded(text: str, paths: list[str]) -> None:
    changes = tuple(FileChange(path=p, change_type="modified") for p in paths)

    first = compose_merge_request(text, changes, "ctx", source_branch="b", target_branch="m")
    second = compose_merge_request(text, changes, "ctx", source_branch="b", target_branch="m")

    assert first == second
    assert len(first.title) <= MAX_TITLE_LENGTH


def test_branch_name_uses_utc_timestamp() -> None:
    now = datetime(2026, 3, 4, 7, 8, 9, tzinfo=timezone(timedelta(hours=2)))

    assert branch_name("claude", now, "a1b2c3") == "claude-20260304T050809-a1b2c3"


def test_random_suffix_is_short_hex() -> None:
    suffix = random_suffix()

    assert len(suffix) == 6
    int(suffix, 16)
