"""Tests for ultraplan/orchestrator.py."""

import asyncio
import json

import pytest

from tests.conftest import CONTINUE_YES, FakeRunner, agent_failure, answer_for
from ultraplan import events
from ultraplan.orchestrator import MAX_ROUNDS_REASON, Workflow, format_clarifications, rotate_speakers

QUESTION = "How should we split the billing service?"


def _workflow(config, tmp_path, runner, emitter) -> Workflow:
    return Workflow(config, tmp_path, runner=runner, emitter=emitter)


def _round_speakers(event_log) -> list[list[str]]:
    return [p["speakers"] for p in event_log.payloads(events.ROUND_START)]


@pytest.mark.parametrize(
    ("round_number", "expected"),
    [
        (1, ["claude", "codex", "gemini"]),
        (2, ["codex", "gemini", "claude"]),
        (3, ["gemini", "claude", "codex"]),
        (4, ["claude", "codex", "gemini"]),
    ],
)
def test_rotate_speakers(round_number, expected):
    assert rotate_speakers(["claude", "codex", "gemini"], round_number) == expected


def test_rotate_speakers_two_and_none():
    assert rotate_speakers(["claude", "gemini"], 2) == ["gemini", "claude"]
    assert rotate_speakers([], 3) == []


def test_format_clarifications_defaults_missing_answers():
    block = format_clarifications(2, ["Team size?", "Budget?"], {0: " Four "})
    assert block == (
        "### User Clarifications (After Round 2)\n\n"
        "**Q1: Team size?**\nA: Four\n\n"
        "**Q2: Budget?**\nA: (no answer)\n"
    )


async def test_full_run(make_config, tmp_path, emitter, event_log, all_ready):
    runner = FakeRunner()
    workflow = _workflow(make_config(max_rounds=2), tmp_path, runner, emitter)
    result = await workflow.run(QUESTION, all_ready)

    assert result.status == "complete"
    assert result.discussion_status == "completed"
    assert result.total_rounds == 1
    assert result.participants == ["claude", "codex", "gemini"]
    assert event_log.names()[-1] == events.WORKFLOW_COMPLETE
    assert workflow.phase == "complete"

    content = workflow.document_content()
    assert QUESTION in content
    assert "Claude, Codex, Gemini" in content
    positions = [
        content.index("## 2."),
        content.index("### Expert: Claude"),
        content.index("### Expert: Codex"),
        content.index("### Expert: Gemini"),
        content.index("## 3."),
        content.index("### Discussion Round 1: Claude"),
        content.index("### Discussion Round 1: Codex"),
        content.index("### Discussion Round 1: Gemini"),
        content.index("## 4."),
        content.index("### Consensus Summary"),
        content.index("## 5."),
        content.index("### Execution Plan"),
    ]
    assert positions == sorted(positions)

    assert result.plan_path is not None
    assert result.plan_path.name == "ExecutionPlan.md"
    assert workflow.plan_content() == answer_for("claude")

    consensus = event_log.payloads(events.CONSENSUS_COMPLETE)[0]
    assert consensus == {"status": "completed", "participant": "gemini"}
    assert event_log.payloads(events.PLAN_COMPLETE)[0]["participant"] == "claude"
    # Continuation said stop, so no gap analysis ran
    assert len(runner.analysis_calls) == 1
    assert "shouldContinue" in runner.analysis_calls[0].prompt


async def test_questioning_fans_out_with_question_timeout(app_config, tmp_path, emitter, all_ready):
    runner = FakeRunner()
    await _workflow(app_config, tmp_path, runner, emitter).run(QUESTION, all_ready)
    first_three = runner.turn_calls[:3]
    assert {c.participant for c in first_three} == {"claude", "codex", "gemini"}
    assert all(c.hard_timeout == 300 for c in first_three)
    assert all(c.prompt.endswith(f"[Question]\n{QUESTION}") for c in first_three)
    assert not first_three[0].prompt.startswith("[System Instructions]")


async def test_system_prompt_injected(make_config, tmp_path, emitter, all_ready):
    runner = FakeRunner()
    await _workflow(make_config(system_prompt="Prefer boring tech."), tmp_path, runner, emitter).run(QUESTION, all_ready)
    assert runner.turn_calls[0].prompt.startswith("[System Instructions]\nPrefer boring tech.\n\n")


async def test_cap_takes_precedence_over_continuation(make_config, tmp_path, emitter, event_log, all_ready):
    runner = FakeRunner(continuation=[CONTINUE_YES])
    result = await _workflow(make_config(max_rounds=1), tmp_path, runner, emitter).run(QUESTION, all_ready)

    assert result.total_rounds == 1
    assert runner.analysis_calls == []
    decision = event_log.payloads(events.CONTINUATION_DECISION)
    assert decision == [{"round": 1, "should_continue": False, "reason": MAX_ROUNDS_REASON}]


async def test_rounds_continue_until_cap(make_config, tmp_path, emitter, event_log, all_ready):
    runner = FakeRunner(continuation=[CONTINUE_YES, CONTINUE_YES])
    result = await _workflow(make_config(max_rounds=3), tmp_path, runner, emitter).run(QUESTION, all_ready)

    assert result.total_rounds == 3
    assert _round_speakers(event_log) == [
        ["claude", "codex", "gemini"],
        ["codex", "gemini", "claude"],
        ["gemini", "claude", "codex"],
    ]
    # Two continuation checks plus two gap analyses; none after the capped round
    assert len(runner.analysis_calls) == 4


async def test_each_speaker_sees_previous_entries(make_config, tmp_path, emitter, all_ready):
    claude_round = "Claude round one: adopt event sourcing for the ledger."
    runner = FakeRunner(replies={"claude": [answer_for("claude"), answer_for("claude"), claude_round]})
    await _workflow(make_config(max_rounds=1), tmp_path, runner, emitter).run(QUESTION, all_ready)

    codex_round_prompt = [c for c in runner.turn_calls if c.participant == "codex"][2].prompt
    assert "(Round 1)" in codex_round_prompt
    assert claude_round in codex_round_prompt


async def test_all_speakers_failing_aborts(make_config, tmp_path, emitter, event_log, all_ready):
    ok = "A thorough answer that passes validation."
    runner = FakeRunner(
        replies={name: [ok, ok, agent_failure(name)] for name in ("claude", "codex", "gemini")},
        continuation=[CONTINUE_YES],
    )
    workflow = _workflow(make_config(max_rounds=3), tmp_path, runner, emitter)
    result = await workflow.run(QUESTION, all_ready)

    assert result.status == "failed"
    assert result.discussion_status == "failed"
    assert result.total_rounds == 1
    assert len(event_log.payloads(events.ROUND_START)) == 1
    assert events.CONSENSUS_START not in event_log.names()
    assert events.PLAN_START not in event_log.names()
    assert runner.analysis_calls == []
    assert event_log.payloads(events.WORKFLOW_COMPLETE)[-1]["status"] == "failed"
    assert workflow.phase == "failed"

    state = json.loads(workflow.workspace.state_path.read_text(encoding="utf-8"))
    assert state["status"] == "failed"
    assert state["rounds"][0]["entries"]["codex"]["state"] == "failed"


async def test_one_failed_speaker_does_not_abort(make_config, tmp_path, emitter, all_ready):
    ok = "A thorough answer that passes validation."
    runner = FakeRunner(replies={"codex": [ok, ok, agent_failure("codex")]})
    result = await _workflow(make_config(max_rounds=1), tmp_path, runner, emitter).run(QUESTION, all_ready)
    assert result.status == "complete"
    assert result.discussion_status == "completed"


async def test_two_of_three_participants(make_config, tmp_path, emitter, event_log, all_ready):
    runner = FakeRunner(replies={"gemini": [agent_failure("gemini", "spawn error: not found")]})
    workflow = _workflow(make_config(max_rounds=2), tmp_path, runner, emitter)
    result = await workflow.run(QUESTION, all_ready)

    assert result.status == "complete"
    assert result.participants == ["claude", "codex"]
    assert [c.participant for c in runner.turn_calls].count("gemini") == 1
    assert _round_speakers(event_log)[0] == ["claude", "codex"]
    # Gemini is preferred for consensus but failed, so Claude writes it
    assert event_log.payloads(events.CONSENSUS_COMPLETE)[0]["participant"] == "claude"
    assert "### Expert: Gemini" not in workflow.document_content()


async def test_fewer_than_two_participants_skips_discussion(app_config, tmp_path, emitter, event_log, all_ready):
    runner = FakeRunner(
        replies={"codex": [agent_failure("codex")], "gemini": ["too short"]},
    )
    workflow = _workflow(app_config, tmp_path, runner, emitter)
    result = await workflow.run(QUESTION, all_ready)

    assert result.status == "complete"
    assert result.discussion_status == "skipped"
    assert result.total_rounds == 0
    assert result.document_path is not None and result.document_path.exists()
    assert len(runner.turn_calls) == 3
    assert event_log.payloads(events.DISCUSSION_COMPLETE) == [{"status": "skipped", "total_rounds": 0}]
    assert events.CONSENSUS_START not in event_log.names()
    assert event_log.names()[-1] == events.WORKFLOW_COMPLETE


async def test_no_successful_answers_fails_before_document(app_config, tmp_path, emitter, event_log):
    runner = FakeRunner(replies={"claude": [agent_failure("claude")]})
    readiness = {"claude": "ready", "codex": "failed", "gemini": "failed"}
    workflow = _workflow(app_config, tmp_path, runner, emitter)
    result = await workflow.run(QUESTION, readiness)

    assert result.status == "failed"
    assert result.document_path is None
    assert events.DOCUMENT_INITIALIZED not in event_log.names()
    assert event_log.payloads(events.WORKFLOW_COMPLETE) == [
        {"status": "failed", "discussion_status": "not_started", "total_rounds": 0}
    ]


async def test_not_ready_participants_are_never_spawned(app_config, tmp_path, emitter, event_log):
    runner = FakeRunner()
    readiness = {"claude": "ready", "codex": "failed", "gemini": "ready"}
    await _workflow(app_config, tmp_path, runner, emitter).run(QUESTION, readiness)

    assert "codex" not in {c.participant for c in runner.calls}
    codex_states = [p for p in event_log.payloads(events.QUESTION_STATE) if p["participant"] == "codex"]
    assert codex_states == [{"participant": "codex", "state": "failed", "error": "not ready"}]


async def test_pause_and_resume_with_user_answers(make_config, tmp_path, emitter, event_log, all_ready):
    runner = FakeRunner(
        continuation=[CONTINUE_YES],
        user_input=['{"needsInput": true, "questions": ["Team size?", "Budget?"]}'],
    )
    workflow = _workflow(make_config(max_rounds=2), tmp_path, runner, emitter)

    seen: dict[str, object] = {}

    def answer(name, payload):
        if name == events.USER_INPUT_NEEDED:
            asyncio.get_running_loop().call_soon(workflow.submit_user_input, {0: "Four engineers"})
            seen["awaiting"] = workflow.awaiting_user_input
            seen["pending"] = workflow.snapshot()["pending_questions"]

    emitter.subscribe(answer)
    result = await workflow.run(QUESTION, all_ready)

    assert seen == {"awaiting": True, "pending": ["Team size?", "Budget?"]}
    assert result.total_rounds == 2
    assert event_log.payloads(events.USER_INPUT_NEEDED) == [{"round": 1, "questions": ["Team size?", "Budget?"]}]
    content = workflow.document_content()
    block = content.index("### User Clarifications (After Round 1)")
    assert content.index("### Discussion Round 1: Gemini") < block < content.index("### Discussion Round 2: Codex")
    assert "**Q1: Team size?**\nA: Four engineers" in content
    assert "**Q2: Budget?**\nA: (no answer)" in content
    # The next round's prompts include the clarifications
    round_two_prompt = [c for c in runner.turn_calls if "(Round 2)" in c.prompt][0].prompt
    assert "A: Four engineers" in round_two_prompt
    assert not workflow.awaiting_user_input


async def test_cancelled_pause_appends_nothing(make_config, tmp_path, emitter, event_log, all_ready):
    runner = FakeRunner(
        continuation=[CONTINUE_YES],
        user_input=['{"needsInput": true, "questions": ["Team size?"]}'],
    )
    workflow = _workflow(make_config(max_rounds=2), tmp_path, runner, emitter)

    def cancel(name, payload):
        if name == events.USER_INPUT_NEEDED:
            asyncio.get_running_loop().call_soon(workflow.cancel_user_input)

    emitter.subscribe(cancel)
    result = await workflow.run(QUESTION, all_ready)

    assert result.total_rounds == 2
    assert "User Clarifications" not in workflow.document_content()
    assert event_log.payloads(events.USER_INPUT_RECEIVED) == [{"round": 1, "cancelled": True}]


async def test_gap_analysis_failure_keeps_going(make_config, tmp_path, emitter, event_log, all_ready):
    runner = FakeRunner(continuation=[CONTINUE_YES], user_input=[agent_failure("claude")])
    result = await _workflow(make_config(max_rounds=2), tmp_path, runner, emitter).run(QUESTION, all_ready)
    assert result.total_rounds == 2
    assert events.USER_INPUT_NEEDED not in event_log.names()


async def test_submit_without_pending_pause(app_config, tmp_path):
    workflow = Workflow(app_config, tmp_path, runner=FakeRunner())
    assert workflow.submit_user_input({0: "late"}) is False
    assert workflow.cancel_user_input() is False


async def test_second_concurrent_pause_is_rejected(app_config, tmp_path):
    workflow = Workflow(app_config, tmp_path, runner=FakeRunner())
    first = asyncio.create_task(workflow._pause_for_user_input(1, ["Q?"]))
    await asyncio.sleep(0)
    with pytest.raises(RuntimeError):
        await workflow._pause_for_user_input(1, ["Other?"])
    assert workflow.submit_user_input({"0": "yes"}) is True
    assert await first == {0: "yes"}


async def test_consensus_and_plan_toggles(make_config, tmp_path, emitter, event_log, all_ready):
    config = make_config(max_rounds=1, enable_consensus_summary=False, enable_plan_generation=False)
    runner = FakeRunner()
    result = await _workflow(config, tmp_path, runner, emitter).run(QUESTION, all_ready)

    assert result.plan_path is None
    assert len(runner.turn_calls) == 9
    assert events.CONSENSUS_START not in event_log.names()
    assert events.PLAN_START not in event_log.names()


async def test_plan_failure_is_not_fatal(make_config, tmp_path, emitter, event_log, all_ready):
    ok = "A thorough answer that passes validation."
    runner = FakeRunner(replies={"claude": [ok, ok, ok, agent_failure("claude")]})
    workflow = _workflow(make_config(max_rounds=1), tmp_path, runner, emitter)
    result = await workflow.run(QUESTION, all_ready)

    assert result.status == "complete"
    assert result.plan_path is None
    assert workflow.plan_content() == ""
    assert event_log.payloads(events.PLAN_COMPLETE)[0]["status"] == "failed"
    assert (workflow.workspace.path / "claude" / "execution_plan_stderr.log").read_text() == "boom"


async def test_workspace_artifacts(make_config, tmp_path, emitter, all_ready):
    workflow = _workflow(make_config(max_rounds=1), tmp_path, FakeRunner(), emitter)
    result = await workflow.run(QUESTION, all_ready)

    workspace = result.workspace_path
    assert workspace.parent == tmp_path / ".ultraplan"
    assert workspace.name.startswith("workspace_")
    for name in ("claude", "codex", "gemini"):
        assert (workspace / name / "initial_answer.md").read_text(encoding="utf-8") == answer_for(name)
        assert (workspace / name / "initial_view.md").exists()
        assert (workspace / name / "round_1_response.md").exists()
    assert (workspace / "discussion_template.md").exists()
    assert (workspace / "Discussion_Review.md.bak_round_1").exists()

    state = json.loads((workspace / "discussion_state.json").read_text(encoding="utf-8"))
    assert state["status"] == "completed"
    assert state["current_round"] == 1
    assert state["rounds"][0]["speakers"] == ["claude", "codex", "gemini"]
    assert state["rounds"][0]["completed_at"]

    snapshot = workflow.snapshot()
    assert snapshot["phase"] == "complete"
    assert snapshot["discussion"]["status"] == "completed"


async def test_run_requires_question_and_settled_readiness(app_config, tmp_path):
    workflow = Workflow(app_config, tmp_path, runner=FakeRunner())
    with pytest.raises(ValueError):
        await workflow.run("   ", {"claude": "ready", "codex": "ready", "gemini": "ready"})
    with pytest.raises(RuntimeError, match="codex"):
        await workflow.run(QUESTION, {"claude": "ready", "codex": "checking", "gemini": "ready"})


async def test_round_failing_validation_aborts(make_config, tmp_path, emitter, event_log, all_ready):
    ok = "A thorough answer that passes validation."
    runner = FakeRunner(
        replies={name: [ok, ok, "nope"] for name in ("claude", "codex", "gemini")},
        continuation=[CONTINUE_YES],
    )
    workflow = _workflow(make_config(max_rounds=3), tmp_path, runner, emitter)
    result = await workflow.run(QUESTION, all_ready)

    assert result.status == "failed"
    assert result.discussion_status == "failed"
    assert result.total_rounds == 1
    assert runner.analysis_calls == []
    failed = [p for p in event_log.payloads(events.ENTRY_UPDATE) if p["state"] == "failed"]
    assert len(failed) == 3
    assert all("short output" in p["error"] for p in failed)
    assert "### Discussion Round 1" not in workflow.document_content()


async def test_cancellation_still_reports_completion(make_config, tmp_path, emitter, event_log, all_ready):
    runner = FakeRunner(
        continuation=[CONTINUE_YES],
        user_input=['{"needsInput": true, "questions": ["Team size?"]}'],
    )
    workflow = _workflow(make_config(max_rounds=2), tmp_path, runner, emitter)
    task = asyncio.create_task(workflow.run(QUESTION, all_ready))

    def interrupt(name, payload):
        if name == events.USER_INPUT_NEEDED:
            asyncio.get_running_loop().call_soon(task.cancel)

    emitter.subscribe(interrupt)
    with pytest.raises(asyncio.CancelledError):
        await task

    assert event_log.names()[-1] == events.WORKFLOW_COMPLETE
    assert event_log.payloads(events.WORKFLOW_COMPLETE) == [
        {"status": "failed", "discussion_status": "running", "total_rounds": 1}
    ]
    assert workflow.phase == "failed"
    assert not workflow.awaiting_user_input


async def test_progress_events_for_views_and_analysis(make_config, tmp_path, emitter, event_log, all_ready):
    runner = FakeRunner(continuation=[CONTINUE_YES])
    await _workflow(make_config(max_rounds=2), tmp_path, runner, emitter).run(QUESTION, all_ready)

    names = event_log.names()
    assert names.index(events.INITIAL_VIEWS_START) < names.index(events.INITIAL_VIEW_UPDATE)
    assert names.index(events.INITIAL_VIEWS_COMPLETE) < names.index(events.DISCUSSION_START)
    assert event_log.payloads(events.INITIAL_VIEWS_START) == [{"participants": ["claude", "codex", "gemini"]}]
    assert event_log.payloads(events.INITIAL_VIEWS_COMPLETE) == [{"added": 3}]
    assert event_log.payloads(events.CONTINUATION_ANALYZING) == [{"round": 1}]
    assert event_log.payloads(events.USER_INPUT_ANALYZING) == [{"round": 1}]
    assert names.index(events.CONTINUATION_ANALYZING) < names.index(events.CONTINUATION_DECISION)
    assert names.index(events.USER_INPUT_ANALYZING) < names.index(events.ROUND_START, names.index(events.CONTINUATION_DECISION))


async def test_phases_need_a_document(app_config, tmp_path):
    workflow = Workflow(app_config, tmp_path, runner=FakeRunner())
    with pytest.raises(RuntimeError, match="discussion document"):
        await workflow._collect_initial_views(["claude"])
    with pytest.raises(RuntimeError, match="workspace"):
        await workflow._take_turn("claude", "prompt", phase="round_1", hard_timeout_ms=1000)
