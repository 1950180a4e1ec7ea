"""Advisory analysis between rounds: keep discussing? ask the user something?

Both calls go to one lightweight agent and fall back to a safe default on any
failure, so an analysis problem can only ever end the discussion early.
"""

import json
import logging
import re
from typing import Any

from config.config_loader import AnalysisConfig, PromptsConfig
from ultraplan.document import truncate_for_prompt
from ultraplan.models import ContinuationDecision, UserInputAnalysis
from ultraplan.runner import AgentRunner

logger = logging.getLogger(__name__)

MAX_USER_QUESTIONS = 3
ANALYSIS_FAILED_REASON = "Analysis failed - stopping"

_JSON_SPAN = re.compile(r"\{.*\}", re.DOTALL)


def _extract_json(text: str) -> dict[str, Any] | None:
    """Parse the outermost {...} span of text, tolerating prose and code fences."""
    match = _JSON_SPAN.search(text)
    if match is None:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


async def _ask(runner: AgentRunner, settings: AnalysisConfig, prompt: str) -> str:
    result = await runner.run(
        settings.agent,
        prompt,
        idle_timeout=settings.idle_ms / 1000,
        hard_timeout=settings.hard_timeout_ms / 1000,
        model=settings.model,
    )
    return result.clean


async def analyze_continuation(
    runner: AgentRunner,
    settings: AnalysisConfig,
    prompts: PromptsConfig,
    document_text: str,
    round_number: int,
    max_rounds: int,
) -> ContinuationDecision:
    try:
        prompt = prompts.continuation.format(
            round=round_number,
            max_rounds=max_rounds,
            document=truncate_for_prompt(document_text, settings.max_document_chars),
        )
        clean = await _ask(runner, settings, prompt)
    except Exception as exc:
        logger.warning("Round %d: continuation analysis failed: %s", round_number, exc)
        return ContinuationDecision(False, ANALYSIS_FAILED_REASON)

    parsed = _extract_json(clean)
    if parsed is None:
        logger.warning("Round %d: continuation analysis returned no JSON: %.200s", round_number, clean)
        return ContinuationDecision(False, ANALYSIS_FAILED_REASON)

    reason = parsed.get("reason")
    return ContinuationDecision(
        should_continue=parsed.get("shouldContinue") is True,
        reason=reason if isinstance(reason, str) else "",
    )


async def analyze_user_input(
    runner: AgentRunner,
    settings: AnalysisConfig,
    prompts: PromptsConfig,
    document_text: str,
    round_number: int,
) -> UserInputAnalysis:
    try:
        prompt = prompts.user_input.format(
            document=truncate_for_prompt(document_text, settings.max_document_chars),
        )
        clean = await _ask(runner, settings, prompt)
    except Exception as exc:
        logger.warning("Round %d: user-input analysis failed: %s", round_number, exc)
        return UserInputAnalysis(False)

    parsed = _extract_json(clean)
    if parsed is None:
        logger.warning("Round %d: user-input analysis returned no JSON: %.200s", round_number, clean)
        return UserInputAnalysis(False)

    questions = parsed.get("questions")
    if not isinstance(questions, list):
        questions = []
    questions = [str(q).strip() for q in questions if str(q).strip()][:MAX_USER_QUESTIONS]
    needs_input = parsed.get("needsInput") is True
    return UserInputAnalysis(needs_input=needs_input, questions=questions if needs_input else [])
