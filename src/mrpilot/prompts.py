from __future__ import annotations

from mrpilot.models import Instruction


def _merge_request_hint(instruction: Instruction) -> str:
    if not instruction.context.startswith("MR !"):
        return ""
    return (
        "\nMerge request analysis:\n"
        "- This request comes from a merge request.\n"
        "- Use git log, git diff and git show to see what the branch changes.\n"
    )


def build_agent_prompt(*, instruction: Instruction, project_name: str) -> str:
    merge_request_hint = _merge_request_hint(instruction)
    return f"""
You are working on repository {project_name}, checked out at branch {instruction.target_branch}.

Context:
{instruction.context}
{merge_request_hint}
Rules:
- You are running unattended from a webhook; nobody can answer questions.
- Make the requested code changes directly in the working tree.
- Do not commit, push, or create branches; that happens after you finish.
- Avoid broad exploration unless the request needs it.
- Finish with a short summary of what you changed.

Request:
{instruction.command}
""".strip()
