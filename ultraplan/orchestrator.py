"""Workflow orchestration: questioning, initial views, discussion rounds, consensus, plan.

One Workflow instance per run owns all mutable state. Only the questioning
phase fans out; every later phase runs one speaker at a time so each prompt
sees the document as the previous speaker left it.
"""

import asyncio
import logging
from dataclasses import asdict
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from config.config_loader import AppConfig
from ultraplan import events
from ultraplan.agents.base import AgentError
from ultraplan.agents.registry import PARTICIPANTS, get_template
from ultraplan.analysis import analyze_continuation, analyze_user_input
from ultraplan.document import (
    DEFAULT_BACKGROUND,
    DEFAULT_TOPIC_NAME,
    PLACEHOLDER_BACKGROUND,
    PLACEHOLDER_DATE,
    PLACEHOLDER_PARTICIPANTS,
    PLACEHOLDER_TITLE,
    PLACEHOLDER_TOPIC,
    SECTION_CONSENSUS,
    SECTION_INITIAL_VIEWS,
    SECTION_PLAN,
    SECTION_ROUNDS,
    DiscussionDocument,
)
from ultraplan.events import ProgressEmitter
from ultraplan.models import (
    DiscussionEntry,
    DiscussionRound,
    DiscussionState,
    QuestionState,
    ReadyState,
    WorkflowPhase,
    WorkflowResult,
)
from ultraplan.runner import AgentRunner
from ultraplan.validator import validate_output
from ultraplan.workspace import Workspace

logger = logging.getLogger(__name__)

CONSENSUS_PREFERENCE = ["gemini", "claude", "codex"]
PLAN_PREFERENCE = ["claude", "gemini", "codex"]
MAX_ROUNDS_REASON = "Maximum rounds reached"
MIN_DISCUSSION_PARTICIPANTS = 2
MIN_PLAN_CHARS = 20


def rotate_speakers(participants: list[str], round_number: int) -> list[str]:
    """Speaking order for a round: rotated left by (round_number - 1) % n."""
    if not participants:
        return []
    offset = (round_number - 1) % len(participants)
    return participants[offset:] + participants[:offset]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_clarifications(round_number: int, questions: list[str], answers: dict[int, str]) -> str:
    lines = [f"### User Clarifications (After Round {round_number})\n"]
    for i, question in enumerate(questions):
        answer = (answers.get(i) or "").strip() or "(no answer)"
        lines.append(f"**Q{i + 1}: {question}**\nA: {answer}\n")
    return "\n".join(lines)


class Workflow:
    """Drives one Ultra Plan run from the initial question to the execution plan."""

    def __init__(
        self,
        config: AppConfig,
        project_path: Path,
        runner: AgentRunner | None = None,
        emitter: ProgressEmitter | None = None,
        participants: list[str] | None = None,
    ) -> None:
        self.config = config
        self.project_path = project_path
        self.runner = runner or AgentRunner(project_path)
        self.emitter = emitter or ProgressEmitter()
        self.participants = list(participants or PARTICIPANTS)

        self.phase: WorkflowPhase = "readiness"
        self.question_states: dict[str, QuestionState] = {p: "pending" for p in self.participants}
        self.workspace: Workspace | None = None
        self.document: DiscussionDocument | None = None
        self.discussion: DiscussionState | None = None
        self.plan_path: Path | None = None

        self._pending_input: asyncio.Future[dict[int, str] | None] | None = None
        self._pending_questions: list[str] = []

    # ---- Pull accessors -------------------------------------------------

    def document_content(self) -> str:
        return self.document.read() if self.document is not None else ""

    def plan_content(self) -> str:
        if self.plan_path is None:
            return ""
        try:
            return self.plan_path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to read execution plan: %s", exc)
            return ""

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view of the current run for late-joining observers."""
        return {
            "phase": self.phase,
            "question_states": dict(self.question_states),
            "workspace_path": str(self.workspace.path) if self.workspace else None,
            "document_path": str(self.document.path) if self.document else None,
            "plan_path": str(self.plan_path) if self.plan_path else None,
            "discussion": asdict(self.discussion) if self.discussion else None,
            "pending_questions": list(self._pending_questions),
        }

    # ---- User input -----------------------------------------------------

    @property
    def awaiting_user_input(self) -> bool:
        return self._pending_input is not None and not self._pending_input.done()

    def submit_user_input(self, answers: dict[int, str]) -> bool:
        """Resume a paused run. Returns False when nothing is waiting."""
        if not self.awaiting_user_input:
            logger.warning("User input submitted but no pause is pending; ignoring")
            return False
        normalized = {int(k): str(v) for k, v in answers.items()}
        self._pending_input.set_result(normalized)  # type: ignore[union-attr]
        return True

    def cancel_user_input(self) -> bool:
        """Resume a paused run without answers; no clarification block is written."""
        if not self.awaiting_user_input:
            return False
        self._pending_input.set_result(None)  # type: ignore[union-attr]
        return True

    async def _pause_for_user_input(self, round_number: int, questions: list[str]) -> dict[int, str] | None:
        if self.awaiting_user_input:
            raise RuntimeError("A user-input pause is already pending")
        future: asyncio.Future[dict[int, str] | None] = asyncio.get_running_loop().create_future()
        self._pending_input = future
        self._pending_questions = list(questions)
        logger.info("Round %d: pausing for user input (%d questions)", round_number, len(questions))
        self.emitter.emit(events.USER_INPUT_NEEDED, round=round_number, questions=list(questions))
        try:
            return await future
        finally:
            self._pending_input = None
            self._pending_questions = []

    # ---- Helpers --------------------------------------------------------

    def _require_workspace(self) -> Workspace:
        if self.workspace is None:
            raise RuntimeError(f"No workspace in phase {self.phase}")
        return self.workspace

    def _require_document(self) -> DiscussionDocument:
        if self.document is None:
            raise RuntimeError(f"No discussion document in phase {self.phase}")
        return self.document

    def _emit_document(self) -> None:
        if self.document is not None:
            self.emitter.emit(events.DOCUMENT_CONTENT, content=self.document.read())

    def _save_state(self) -> None:
        if self.workspace is not None and self.discussion is not None:
            self.workspace.save_state(self.discussion)

    def _set_question_state(self, participant: str, state: QuestionState, error: str | None = None) -> None:
        self.question_states[participant] = state
        self.emitter.emit(events.QUESTION_STATE, participant=participant, state=state, error=error)

    def _succeeded(self) -> list[str]:
        return [p for p in self.participants if self.question_states[p] == "done"]

    def _pick(self, preference: list[str]) -> str | None:
        succeeded = set(self._succeeded())
        return next((p for p in preference if p in succeeded), None)

    def _finish(self, status: str, discussion_status: str, total_rounds: int) -> WorkflowResult:
        self.phase = "complete" if status == "complete" else "failed"
        logger.info(
            "Workflow %s (discussion %s, %d round(s))", status, discussion_status, total_rounds,
        )
        self.emitter.emit(
            events.WORKFLOW_COMPLETE,
            status=status,
            discussion_status=discussion_status,
            total_rounds=total_rounds,
        )
        return WorkflowResult(
            status=status,  # type: ignore[arg-type]
            discussion_status=discussion_status,
            total_rounds=total_rounds,
            participants=self._succeeded(),
            workspace_path=self.workspace.path if self.workspace else None,
            document_path=self.document.path if self.document else None,
            plan_path=self.plan_path,
        )

    async def _take_turn(
        self,
        participant: str,
        prompt: str,
        *,
        phase: str,
        hard_timeout_ms: int,
        save_as: str | None = None,
    ) -> tuple[str | None, str | None]:
        """Run, log stderr, validate. Returns (clean_text, None) or (None, error)."""
        workspace = self._require_workspace()
        try:
            result = await self.runner.run(
                participant,
                prompt,
                idle_timeout=self.config.timeouts.idle_complete_ms / 1000,
                hard_timeout=hard_timeout_ms / 1000,
                dump_dir=workspace.participant_dir(participant),
            )
        except AgentError as exc:
            workspace.save_stderr(participant, phase, exc.stderr)
            logger.warning("%s %s failed: %s", participant, phase, exc.reason)
            return None, exc.reason

        workspace.save_stderr(participant, phase, result.stderr)
        if not result.is_complete:
            logger.info("%s %s: response settled by %s, may be incomplete", participant, phase, result.outcome)

        error = validate_output(participant, result.clean, phase)
        if error:
            logger.warning("Validation failed: %s", error)
            return None, error

        if save_as:
            workspace.save_response(participant, save_as, result.clean)
        logger.info("%s %s done (%d chars)", participant, phase, len(result.clean))
        return result.clean, None

    # ---- Phases ---------------------------------------------------------

    def _planning_prompt(self, question: str) -> str:
        instructions = self.config.prompts.planning.format(language=self.config.discussion.language)
        system_prompt = self.config.discussion.system_prompt.strip()
        if system_prompt:
            return f"[System Instructions]\n{system_prompt}\n\n{instructions}\n\n[Question]\n{question}"
        return f"{instructions}\n\n[Question]\n{question}"

    async def _ask_question(self, question: str, readiness: dict[str, ReadyState]) -> None:
        self.phase = "questioning"
        prompt = self._planning_prompt(question)

        async def ask(participant: str) -> None:
            if readiness.get(participant) != "ready":
                self._set_question_state(participant, "failed", "not ready")
                return
            self._set_question_state(participant, "answering")
            text, error = await self._take_turn(
                participant,
                prompt,
                phase="initial_answer",
                hard_timeout_ms=self.config.timeouts.question_timeout_ms,
                save_as="initial_answer.md",
            )
            if text is None:
                self._set_question_state(participant, "failed", error)
            else:
                self._set_question_state(participant, "done")

        await asyncio.gather(*(ask(p) for p in self.participants))
        self.emitter.emit(events.ALL_QUESTIONS_COMPLETE, states=dict(self.question_states))

    def _initialize_document(self, question: str) -> bool:
        self.phase = "discussion_init"
        document = DiscussionDocument(self._require_workspace().discussion_path)
        substitutions = {
            PLACEHOLDER_TOPIC: question,
            PLACEHOLDER_DATE: date.today().isoformat(),
            PLACEHOLDER_PARTICIPANTS: ", ".join(get_template(p).display_name for p in self.participants),
            PLACEHOLDER_BACKGROUND: DEFAULT_BACKGROUND,
            PLACEHOLDER_TITLE: DEFAULT_TOPIC_NAME,
        }
        try:
            document.initialize(self.config.template, substitutions)
        except OSError as exc:
            logger.error("Failed to initialize discussion file: %s", exc)
            self.emitter.emit(events.DOCUMENT_INITIALIZED, status="failed", error=str(exc))
            return False

        self.document = document
        self.emitter.emit(events.DOCUMENT_INITIALIZED, status="created", path=str(document.path))
        self._emit_document()
        return True

    async def _collect_initial_views(self, participants: list[str]) -> None:
        document = self._require_document()
        self.phase = "initial_views"
        prompts = self.config.prompts
        self.emitter.emit(events.INITIAL_VIEWS_START, participants=list(participants))
        added = 0
        for participant in participants:
            name = get_template(participant).display_name
            self.emitter.emit(events.INITIAL_VIEW_UPDATE, participant=participant, state="responding")
            prompt = prompts.initial_view.format(
                document=document.read_for_prompt(self.config.discussion.max_prompt_chars),
                language=self.config.discussion.language,
                name=name,
            )
            text, error = await self._take_turn(
                participant,
                prompt,
                phase="initial_view",
                hard_timeout_ms=self.config.timeouts.turn_timeout_ms,
                save_as="initial_view.md",
            )
            if text is None:
                self.emitter.emit(events.INITIAL_VIEW_UPDATE, participant=participant, state="failed", error=error)
                continue
            if document.append(SECTION_INITIAL_VIEWS, f"### Expert: {name}", text):
                added += 1
            self._emit_document()
            self.emitter.emit(events.INITIAL_VIEW_UPDATE, participant=participant, state="done")
        self.emitter.emit(events.INITIAL_VIEWS_COMPLETE, added=added)

    def _discussion_prompt(self, participant: str, round_number: int) -> str:
        document = self._require_document()
        prompts = self.config.prompts
        focus = prompts.first_round_focus if round_number == 1 else prompts.later_round_focus
        return prompts.discussion.format(
            round=round_number,
            document=document.read_for_prompt(self.config.discussion.max_prompt_chars),
            language=self.config.discussion.language,
            focus=focus,
            name=get_template(participant).display_name,
        )

    async def _run_round(self, state: DiscussionState, round_number: int) -> DiscussionRound:
        document = self._require_document()
        speakers = rotate_speakers(state.participants, round_number)
        round_data = DiscussionRound(round_number=round_number, speakers=speakers, started_at=_now())
        state.current_round = round_number
        state.rounds.append(round_data)

        document.backup(round_number)
        logger.info("Round %d (max %d): speakers = %s", round_number, state.max_rounds, " -> ".join(speakers))
        self.emitter.emit(events.ROUND_START, round=round_number, speakers=list(speakers))

        for speaker in speakers:
            entry = DiscussionEntry(participant=speaker, state="responding")
            round_data.entries[speaker] = entry
            self.emitter.emit(events.ENTRY_UPDATE, round=round_number, participant=speaker, state="responding")

            text, error = await self._take_turn(
                speaker,
                self._discussion_prompt(speaker, round_number),
                phase=f"round_{round_number}",
                hard_timeout_ms=self.config.timeouts.turn_timeout_ms,
                save_as=f"round_{round_number}_response.md",
            )
            if text is None:
                entry.state = "failed"
                entry.error = error
                self.emitter.emit(
                    events.ENTRY_UPDATE, round=round_number, participant=speaker, state="failed", error=error,
                )
                continue

            entry.state = "done"
            entry.clean_output = text
            name = get_template(speaker).display_name
            document.append(SECTION_ROUNDS, f"### Discussion Round {round_number}: {name}", text)
            self._emit_document()
            self.emitter.emit(events.ENTRY_UPDATE, round=round_number, participant=speaker, state="done")

        round_data.completed_at = _now()
        self.emitter.emit(events.ROUND_COMPLETE, round=round_number)
        self._save_state()
        return round_data

    async def _gather_user_input(self, round_number: int) -> None:
        document = self._require_document()
        self.emitter.emit(events.USER_INPUT_ANALYZING, round=round_number)
        analysis = await analyze_user_input(
            self.runner,
            self.config.analysis,
            self.config.prompts,
            document.read(),
            round_number,
        )
        if not analysis.needs_input or not analysis.questions:
            return

        answers = await self._pause_for_user_input(round_number, analysis.questions)
        if answers is None:
            logger.info("Round %d: user input cancelled", round_number)
            self.emitter.emit(events.USER_INPUT_RECEIVED, round=round_number, cancelled=True)
            return

        clarifications = format_clarifications(round_number, analysis.questions, answers)
        heading = f"### User Clarifications (After Round {round_number})"
        document.append(SECTION_ROUNDS, heading, clarifications)
        self._emit_document()
        self.emitter.emit(events.USER_INPUT_RECEIVED, round=round_number, cancelled=False)

    async def _discuss(self, participants: list[str]) -> DiscussionState:
        document = self._require_document()
        self.phase = "discussion"
        max_rounds = self.config.discussion.max_rounds
        state = DiscussionState(
            max_rounds=max_rounds,
            participants=list(participants),
            discussion_file_path=str(document.path),
            status="running",
        )
        self.discussion = state
        self._save_state()
        self.emitter.emit(events.DISCUSSION_START, max_rounds=max_rounds, participants=list(participants))

        for round_number in range(1, max_rounds + 1):
            round_data = await self._run_round(state, round_number)

            if all(entry.state == "failed" for entry in round_data.entries.values()):
                logger.error("All speakers failed in round %d, aborting discussion", round_number)
                state.status = "failed"
                self._save_state()
                self.emitter.emit(events.DISCUSSION_COMPLETE, status="failed", total_rounds=round_number)
                return state

            if round_number >= max_rounds:
                self.emitter.emit(
                    events.CONTINUATION_DECISION,
                    round=round_number,
                    should_continue=False,
                    reason=MAX_ROUNDS_REASON,
                )
                break

            self.emitter.emit(events.CONTINUATION_ANALYZING, round=round_number)
            decision = await analyze_continuation(
                self.runner,
                self.config.analysis,
                self.config.prompts,
                document.read(),
                round_number,
                max_rounds,
            )
            logger.info(
                "Round %d: continue=%s (%s)", round_number, decision.should_continue, decision.reason,
            )
            self.emitter.emit(
                events.CONTINUATION_DECISION,
                round=round_number,
                should_continue=decision.should_continue,
                reason=decision.reason,
            )
            if not decision.should_continue:
                break

            await self._gather_user_input(round_number)

        state.status = "completed"
        self._save_state()
        self.emitter.emit(events.DISCUSSION_COMPLETE, status="completed", total_rounds=state.current_round)
        logger.info("Discussion complete: %d round(s) (max %d)", state.current_round, max_rounds)
        return state

    async def _generate_consensus(self) -> None:
        document = self._require_document()
        self.phase = "consensus"
        self.emitter.emit(events.CONSENSUS_START)

        participant = self._pick(CONSENSUS_PREFERENCE)
        if participant is None:
            logger.error("No available participant for the consensus summary")
            self.emitter.emit(events.CONSENSUS_COMPLETE, status="failed", error="No available participant")
            return

        prompt = self.config.prompts.consensus.format(
            document=document.read_for_prompt(self.config.discussion.max_prompt_chars),
            language=self.config.discussion.language,
        )
        text, error = await self._take_turn(
            participant, prompt, phase="consensus", hard_timeout_ms=self.config.timeouts.turn_timeout_ms,
        )
        if text is None:
            self.emitter.emit(events.CONSENSUS_COMPLETE, status="failed", participant=participant, error=error)
            return

        document.append(SECTION_CONSENSUS, "### Consensus Summary", text)
        self._emit_document()
        self.emitter.emit(events.CONSENSUS_COMPLETE, status="completed", participant=participant)

    async def _generate_plan(self) -> None:
        document = self._require_document()
        workspace = self._require_workspace()
        self.phase = "plan_generation"
        self.emitter.emit(events.PLAN_START)

        participant = self._pick(PLAN_PREFERENCE)
        if participant is None:
            logger.error("No available participant for the execution plan")
            self.emitter.emit(events.PLAN_COMPLETE, status="failed", error="No available participant")
            return

        prompt = self.config.prompts.plan.format(
            document=document.read_for_prompt(self.config.discussion.plan_max_prompt_chars),
            language=self.config.discussion.language,
        )
        text, error = await self._take_turn(
            participant, prompt, phase="execution_plan", hard_timeout_ms=self.config.timeouts.turn_timeout_ms,
        )
        if text is None or len(text) <= MIN_PLAN_CHARS:
            self.emitter.emit(
                events.PLAN_COMPLETE, status="failed", participant=participant, error=error or "plan too short",
            )
            return

        self.plan_path = workspace.write_plan(text)
        if self.plan_path is not None:
            self.emitter.emit(events.PLAN_CONTENT, content=text, path=str(self.plan_path))
        document.append(SECTION_PLAN, "### Execution Plan", text)
        self._emit_document()
        self.emitter.emit(events.PLAN_COMPLETE, status="completed", participant=participant)

    # ---- Entry point ----------------------------------------------------

    async def run(self, question: str, readiness: dict[str, ReadyState]) -> WorkflowResult:
        """Run the whole workflow once.

        Args:
            question: The planning question; must not be blank.
            readiness: Terminal readiness state ("ready" or "failed") per participant.

        Returns:
            WorkflowResult. workflow_complete is emitted on every exit path.

        Raises:
            ValueError: If the question is blank.
            RuntimeError: If a participant's readiness is not yet terminal.
        """
        if not question.strip():
            raise ValueError("Question must not be empty")
        pending = [p for p in self.participants if readiness.get(p) not in ("ready", "failed")]
        if pending:
            raise RuntimeError(f"Readiness not settled for: {', '.join(pending)}")

        try:
            return await self._run(question.strip(), readiness)
        except asyncio.CancelledError:
            logger.warning("Workflow cancelled in phase %s", self.phase)
            self._abort()
            raise
        except Exception:
            logger.exception("Workflow aborted in phase %s", self.phase)
            self._abort()
            raise

    def _abort(self) -> None:
        if self.discussion is not None:
            self._finish("failed", self.discussion.status, self.discussion.current_round)
        else:
            self._finish("failed", "not_started", 0)

    async def _run(self, question: str, readiness: dict[str, ReadyState]) -> WorkflowResult:
        self.phase = "workspace"
        try:
            self.workspace = Workspace.create(
                self.project_path,
                self.config.workspace,
                self.participants,
                self.config.template,
            )
        except OSError as exc:
            logger.error("Failed to create workspace: %s", exc)
            return self._finish("failed", "not_started", 0)
        self.emitter.emit(events.WORKSPACE_CREATED, path=str(self.workspace.path))

        await self._ask_question(question, readiness)
        succeeded = self._succeeded()
        if not succeeded:
            logger.error("No participant answered the question")
            return self._finish("failed", "not_started", 0)

        if not self._initialize_document(question):
            return self._finish("failed", "not_started", 0)

        if len(succeeded) < MIN_DISCUSSION_PARTICIPANTS:
            logger.info("Only %d participant(s), skipping discussion", len(succeeded))
            self.emitter.emit(events.DISCUSSION_COMPLETE, status="skipped", total_rounds=0)
            return self._finish("complete", "skipped", 0)

        await self._collect_initial_views(succeeded)

        state = await self._discuss(succeeded)
        if state.status == "failed":
            return self._finish("failed", "failed", state.current_round)

        if self.config.discussion.enable_consensus_summary:
            await self._generate_consensus()
        if self.config.discussion.enable_plan_generation:
            await self._generate_plan()

        return self._finish("complete", state.status, state.current_round)
