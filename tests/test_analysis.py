"""Tests for ultraplan/analysis.py."""

import dataclasses

import pytest

from tests.conftest import FakeRunner, agent_failure
from ultraplan.analysis import ANALYSIS_FAILED_REASON, _extract_json, analyze_continuation, analyze_user_input

DOC = "# Discussion\n\n## 3. Rounds\n\nSome debate."


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ('{"shouldContinue": true}', {"shouldContinue": True}),
        ('Sure!\n```json\n{"needsInput": false}\n```', {"needsInput": False}),
        ("no json here", None),
        ("{broken", None),
        ("[1, 2]", None),
    ],
)
def test_extract_json(text, expected):
    assert _extract_json(text) == expected


async def test_continuation_true(app_config):
    runner = FakeRunner(continuation=['{"shouldContinue": true, "reason": "Storage still open"}'])
    decision = await analyze_continuation(runner, app_config.analysis, app_config.prompts, DOC, 1, 5)
    assert decision.should_continue is True
    assert decision.reason == "Storage still open"


async def test_continuation_uses_lightweight_agent(app_config):
    runner = FakeRunner()
    await analyze_continuation(runner, app_config.analysis, app_config.prompts, DOC, 2, 4)
    call = runner.calls[0]
    assert call.participant == "claude"
    assert call.model == "claude-haiku-4-5"
    assert call.hard_timeout == 90
    assert "after round 2, max allowed: 4" in call.prompt
    assert DOC in call.prompt


async def test_continuation_requires_literal_true(app_config):
    runner = FakeRunner(continuation=['{"shouldContinue": "yes", "reason": 42}'])
    decision = await analyze_continuation(runner, app_config.analysis, app_config.prompts, DOC, 1, 5)
    assert decision.should_continue is False
    assert decision.reason == ""


async def test_continuation_agent_failure_stops(app_config):
    runner = FakeRunner(continuation=[agent_failure("claude")])
    decision = await analyze_continuation(runner, app_config.analysis, app_config.prompts, DOC, 1, 5)
    assert decision.should_continue is False
    assert decision.reason == ANALYSIS_FAILED_REASON


async def test_continuation_unparseable_reply_stops(app_config):
    runner = FakeRunner(continuation=["I think you should keep going."])
    decision = await analyze_continuation(runner, app_config.analysis, app_config.prompts, DOC, 1, 5)
    assert (decision.should_continue, decision.reason) == (False, ANALYSIS_FAILED_REASON)


async def test_continuation_truncates_document(make_config):
    config = make_config()
    runner = FakeRunner()
    big = "x" * (config.analysis.max_document_chars + 500)
    await analyze_continuation(runner, config.analysis, config.prompts, big, 1, 5)
    assert "[truncated at 50K chars]" in runner.calls[0].prompt


async def test_user_input_questions_capped_at_three(app_config):
    reply = '{"needsInput": true, "questions": ["A?", "B?", "C?", "D?"]}'
    runner = FakeRunner(user_input=[reply])
    analysis = await analyze_user_input(runner, app_config.analysis, app_config.prompts, DOC, 1)
    assert analysis.needs_input is True
    assert analysis.questions == ["A?", "B?", "C?"]


async def test_user_input_not_needed(app_config):
    runner = FakeRunner(user_input=['{"needsInput": false, "questions": ["ignored?"]}'])
    analysis = await analyze_user_input(runner, app_config.analysis, app_config.prompts, DOC, 1)
    assert analysis.needs_input is False
    assert analysis.questions == []


async def test_user_input_failure_is_safe(app_config):
    runner = FakeRunner(user_input=[agent_failure("claude", "spawn error: not found")])
    analysis = await analyze_user_input(runner, app_config.analysis, app_config.prompts, DOC, 1)
    assert analysis.needs_input is False
    assert analysis.questions == []


async def test_user_input_malformed_questions(app_config):
    runner = FakeRunner(user_input=['{"needsInput": true, "questions": "not a list"}'])
    analysis = await analyze_user_input(runner, app_config.analysis, app_config.prompts, DOC, 1)
    assert analysis.needs_input is True
    assert analysis.questions == []


async def test_continuation_bad_prompt_template_stops(app_config):
    prompts = dataclasses.replace(
        app_config.prompts, continuation='Round {round}. Reply {"shouldContinue": false} doc {document}',
    )
    runner = FakeRunner()
    decision = await analyze_continuation(runner, app_config.analysis, prompts, DOC, 1, 5)
    assert (decision.should_continue, decision.reason) == (False, ANALYSIS_FAILED_REASON)
    assert runner.calls == []


async def test_user_input_bad_prompt_template_is_safe(app_config):
    prompts = dataclasses.replace(app_config.prompts, user_input='Reply {"needsInput": false} for {document}')
    runner = FakeRunner()
    analysis = await analyze_user_input(runner, app_config.analysis, prompts, DOC, 1)
    assert analysis.needs_input is False
    assert runner.calls == []
