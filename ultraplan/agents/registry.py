"""The fixed participant table, validated once at startup."""

from ultraplan.agents import claude, codex, gemini
from ultraplan.agents.base import InvocationTemplate

AGENTS: dict[str, InvocationTemplate] = {
    "claude": claude.TEMPLATE,
    "codex": codex.TEMPLATE,
    "gemini": gemini.TEMPLATE,
}

# Canonical participant order; rotation and document listings follow it.
PARTICIPANTS: list[str] = ["claude", "codex", "gemini"]


def get_template(name: str) -> InvocationTemplate:
    try:
        return AGENTS[name]
    except KeyError:
        raise ValueError(f"Unknown participant: {name!r}") from None


def validate_templates(agents: dict[str, InvocationTemplate] = AGENTS) -> None:
    """Raise ValueError when the invocation table is inconsistent."""
    problems: list[str] = []
    for key, template in agents.items():
        if key != template.name:
            problems.append(f"{key}: template name is {template.name!r}")
        if not template.executable:
            problems.append(f"{key}: empty executable")
        if not template.content_markers:
            problems.append(f"{key}: no content markers")
        if not callable(template.parser):
            problems.append(f"{key}: parser is not callable")
    for name in PARTICIPANTS:
        if name not in agents:
            problems.append(f"{name}: missing from agent table")
    if problems:
        raise ValueError("Invalid agent table: " + "; ".join(problems))
