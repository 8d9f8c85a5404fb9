"""
System prompt construction.

The prompt is derived once per run from the agent bound to the
conversation and never changes while the run executes.
"""

from __future__ import annotations

from agent_run_engine.models import AgentIdentity

PURPOSE_PROMPT = """### Purpose
Your purpose is to support the user within the scope defined in your memory.
Update your memory as often as you get more information about your purpose."""

GENERAL_RULES_PROMPT = """### General rules
- Use the tools available to you whenever they help answer the user.
- If a tool call fails, read the error and decide whether to retry with different arguments.
- All the links you provide to the user must be clickable."""


def build_system_prompt(identity: AgentIdentity) -> str:
    """
    Build the system prompt for ``identity``.

    An explicit override on the identity is used verbatim. Otherwise the
    prompt is made of a purpose section, the agent's identity, its memory,
    and the general rules.
    """
    if identity.system_prompt_override:
        return identity.system_prompt_override

    identity_lines = ["### Your agent identity"]
    if identity.id:
        identity_lines.append(f"id: {identity.id}")
    identity_lines.append(f"name: {identity.name}")
    if identity.job_title:
        identity_lines.append(f"job title: {identity.job_title}")

    sections = [
        PURPOSE_PROMPT,
        "\n".join(identity_lines),
        f"### Your memory\n{identity.memory or 'Nothing memorized yet.'}",
        GENERAL_RULES_PROMPT,
    ]
    return "\n\n".join(sections)
