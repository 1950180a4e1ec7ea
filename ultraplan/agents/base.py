"""Invocation templates and shared stream-parsing helpers for agent CLIs."""

import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field


class AgentError(Exception):
    """Raised when an agent invocation fails."""

    def __init__(
        self,
        participant: str,
        reason: str,
        stderr: str = "",
        exit_code: int | None = None,
    ) -> None:
        self.participant = participant
        self.reason = reason
        self.stderr = stderr
        self.exit_code = exit_code
        super().__init__(f"[{participant}] {reason}")


@dataclass(frozen=True)
class ParsedOutput:
    text: str
    source: str  # "stream", "final", "thinking", "plain" or "empty"


@dataclass(frozen=True)
class InvocationTemplate:
    """How to run one agent CLI: argv, prompt delivery, output parsing.

    The prompt is always written to stdin; nothing prompt-derived ever
    goes on the command line.
    """

    name: str
    executable: str
    args: tuple[str, ...]
    output_format: str
    parser: Callable[[str], ParsedOutput]
    content_markers: tuple[str, ...]
    model_flag: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name.capitalize()

    def build_argv(self, model: str | None = None) -> list[str]:
        argv = [self.executable, *self.args]
        if model:
            if self.model_flag is None:
                raise ValueError(f"{self.name} does not accept a model override")
            argv += [self.model_flag, model]
        return argv

    def has_content(self, stdout: str) -> bool:
        """Cheap probe: has the agent started emitting answer text?"""
        return any(marker in stdout for marker in self.content_markers)


_ANSI_CSI = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]")
_ANSI_OSC = re.compile(r"\x1b\][^\x07]*\x07")
_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and control chars (keeps \\n \\r \\t)."""
    text = _ANSI_CSI.sub("", text)
    text = _ANSI_OSC.sub("", text)
    return _CONTROL.sub("", text)


def iter_json_events(raw: str) -> Iterator[dict]:
    """Yield each line of raw that parses as a JSON object; skip the rest."""
    for line in raw.split("\n"):
        stripped = line.strip()
        if not stripped.startswith("{"):
            continue
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            yield event


def plain_text_fallback(raw: str) -> ParsedOutput:
    """Non-JSON lines with escape sequences stripped."""
    lines = [
        strip_ansi(line)
        for line in raw.split("\n")
        if line.strip() and not line.strip().startswith("{")
    ]
    text = "\n".join(lines).strip()
    return ParsedOutput(text, "plain" if text else "empty")
