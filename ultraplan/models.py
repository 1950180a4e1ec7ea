"""Pure dataclasses for the Ultra Plan workflow. No logic, no deps."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ReadyState = Literal["pending", "checking", "ready", "failed"]
QuestionState = Literal["pending", "answering", "done", "failed"]
EntryState = Literal["pending", "responding", "done", "failed"]
DiscussionStatus = Literal["pending", "running", "completed", "failed"]
TurnOutcome = Literal["exited", "partial", "idle"]
WorkflowPhase = Literal[
    "readiness",
    "workspace",
    "questioning",
    "discussion_init",
    "initial_views",
    "discussion",
    "consensus",
    "plan_generation",
    "complete",
    "failed",
]


@dataclass(frozen=True)
class TurnResult:
    participant: str
    raw: str                # accumulated stdout, unparsed
    clean: str              # parser output
    stderr: str
    exit_code: int | None   # None when the process was killed by the idle timer
    outcome: TurnOutcome
    parse_source: str       # "stream", "final", "thinking", "plain" or "empty"
    duration_sec: float = 0.0

    @property
    def is_complete(self) -> bool:
        """False when the response was cut off by the idle timer or a non-zero exit."""
        return self.outcome == "exited"


@dataclass
class ReadinessResult:
    participant: str
    state: ReadyState
    error: str | None = None


@dataclass
class DiscussionEntry:
    participant: str
    state: EntryState = "pending"
    clean_output: str = ""
    error: str | None = None


@dataclass
class DiscussionRound:
    round_number: int
    speakers: list[str]
    started_at: str
    entries: dict[str, DiscussionEntry] = field(default_factory=dict)
    completed_at: str | None = None


@dataclass
class DiscussionState:
    max_rounds: int
    participants: list[str]
    discussion_file_path: str | None = None
    current_round: int = 0
    status: DiscussionStatus = "pending"
    rounds: list[DiscussionRound] = field(default_factory=list)


@dataclass
class ContinuationDecision:
    should_continue: bool
    reason: str


@dataclass
class UserInputAnalysis:
    needs_input: bool
    questions: list[str] = field(default_factory=list)


@dataclass
class WorkflowResult:
    status: Literal["complete", "failed"]
    discussion_status: str          # "completed", "failed", "skipped" or "not_started"
    total_rounds: int
    participants: list[str]
    workspace_path: Path | None = None
    document_path: Path | None = None
    plan_path: Path | None = None
