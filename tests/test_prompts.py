from __future__ import annotations

from mrpilot.models import Instruction
from mrpilot.prompts import build_agent_prompt


def test_prompt_contains_repository_context_and_request() -> None:
    instruction = Instruction(
        provider="claude",
        command="add a LICENSE file\nuse MIT",
        context="Issue #12: Need a license",
        target_branch="main",
    )

    prompt = build_agent_prompt(instruction=instruction, project_name="group/app")

    assert prompt.startswith("You are working on repository group/app")
    assert "checked out at branch main" in prompt
    assert "Issue #12: Need a license" in prompt
    assert "Do not commit, push, or create branches" in prompt
    assert prompt.endswith("Request:\nadd a LICENSE file\nuse MIT")
    assert "Merge request analysis" not in prompt


def test_prompt_adds_merge_request_hint() -> None:
    instruction = Instruction(
        provider="codex",
        command="fix the failing test",
        context="MR !3 comment\n\nEarlier discussion:\n@bob: CI is red",
        target_branch="feature/parser",
    )

    prompt = build_agent_prompt(instruction=instruction, project_name="group/app")

    assert "Merge request analysis:" in prompt
    assert "git log, git diff and git show" in prompt
    assert "@bob: CI is red" in prompt
