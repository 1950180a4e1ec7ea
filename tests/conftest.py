"""Shared pytest fixtures."""

import dataclasses
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from config.config_loader import AppConfig, load_config
from ultraplan.agents.base import AgentError
from ultraplan.events import ProgressEmitter
from ultraplan.models import TurnResult
from ultraplan.runner import AgentRunner

CONTINUE_NO = '{"shouldContinue": false, "reason": "Consensus forming"}'
CONTINUE_YES = '{"shouldContinue": true, "reason": "Disagreement on storage remains"}'
NO_INPUT = '{"needsInput": false}'


def answer_for(participant: str) -> str:
    return f"{participant} recommends a layered design with a clear migration path."


@dataclass
class FakeCall:
    participant: str
    prompt: str
    model: str | None
    hard_timeout: float


Reply = str | BaseException | Callable[[str], str]


class FakeRunner(AgentRunner):
    """Test double AgentRunner: scripted replies, no subprocesses.

    Discussion turns pop from replies[participant], falling back to
    answer_for(participant). Analysis calls (those with a model override)
    pop from continuation or user_input depending on the prompt.
    """

    def __init__(
        self,
        replies: dict[str, list[Reply]] | None = None,
        continuation: list[Reply] | None = None,
        user_input: list[Reply] | None = None,
    ) -> None:
        super().__init__(Path("."))
        self.replies = {name: list(queue) for name, queue in (replies or {}).items()}
        self.continuation = list(continuation or [])
        self.user_input = list(user_input or [])
        self.calls: list[FakeCall] = []

    @property
    def turn_calls(self) -> list[FakeCall]:
        return [c for c in self.calls if c.model is None]

    @property
    def analysis_calls(self) -> list[FakeCall]:
        return [c for c in self.calls if c.model is not None]

    def _next(self, participant: str, prompt: str, model: str | None) -> Reply:
        if model is not None:
            if "shouldContinue" in prompt:
                return self.continuation.pop(0) if self.continuation else CONTINUE_NO
            return self.user_input.pop(0) if self.user_input else NO_INPUT
        queue = self.replies.get(participant)
        return queue.pop(0) if queue else answer_for(participant)

    async def run(  # type: ignore[override]
        self,
        participant: str,
        prompt: str,
        *,
        idle_timeout: float,
        hard_timeout: float,
        model: str | None = None,
        dump_dir: Path | None = None,
    ) -> TurnResult:
        self.calls.append(FakeCall(participant, prompt, model, hard_timeout))
        reply = self._next(participant, prompt, model)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            reply = reply(prompt)
        return TurnResult(
            participant=participant,
            raw=reply,
            clean=reply,
            stderr="",
            exit_code=0,
            outcome="exited",
            parse_source="stream",
        )


def agent_failure(participant: str, reason: str = "hard timeout (300s)") -> AgentError:
    return AgentError(participant, reason, stderr="boom")


class EventLog:
    """Progress listener that records every event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def __call__(self, name: str, payload: dict) -> None:
        self.events.append((name, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def payloads(self, name: str) -> list[dict]:
        return [payload for event, payload in self.events if event == name]


@pytest.fixture
def app_config() -> AppConfig:
    return load_config()


@pytest.fixture
def make_config(app_config: AppConfig) -> Callable[..., AppConfig]:
    """Build a config with discussion fields replaced."""

    def build(**discussion: object) -> AppConfig:
        return dataclasses.replace(
            app_config,
            discussion=dataclasses.replace(app_config.discussion, **discussion),
        )

    return build


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def event_log() -> EventLog:
    return EventLog()


@pytest.fixture
def emitter(event_log: EventLog) -> ProgressEmitter:
    emitter = ProgressEmitter()
    emitter.subscribe(event_log)
    return emitter


@pytest.fixture
def all_ready() -> dict[str, str]:
    return {"claude": "ready", "codex": "ready", "gemini": "ready"}
