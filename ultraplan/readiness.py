"""Participant readiness checks: executable on PATH, then a keyword probe prompt."""

import asyncio
import logging
import shutil
from collections.abc import Callable

from config.config_loader import ReadinessConfig
from ultraplan.agents.registry import get_template
from ultraplan.models import ReadinessResult, ReadyState
from ultraplan.runner import AgentRunner

logger = logging.getLogger(__name__)

StateCallback = Callable[[str, ReadyState, str | None], None]


async def _check_one(
    runner: AgentRunner,
    name: str,
    settings: ReadinessConfig,
    idle_ms: int,
    on_state: StateCallback | None,
) -> ReadinessResult:
    """Probe a single participant. Never raises."""

    def report(state: ReadyState, error: str | None = None) -> ReadinessResult:
        if on_state is not None:
            on_state(name, state, error)
        return ReadinessResult(participant=name, state=state, error=error)

    report("checking")
    template = get_template(name)
    if shutil.which(template.executable) is None:
        logger.warning("%s not found in PATH", template.executable)
        return report("failed", f"{template.executable} not found in PATH")

    try:
        result = await runner.run(
            name,
            settings.probe_prompt,
            idle_timeout=min(idle_ms, settings.timeout_ms) / 1000,
            hard_timeout=settings.timeout_ms / 1000,
        )
    except Exception as exc:
        logger.warning("Readiness probe failed for %s: %s", name, exc)
        return report("failed", str(exc))

    if settings.keyword not in result.clean:
        preview = result.clean[:120] or "(no output)"
        logger.warning("%s did not answer with %s: %s", name, settings.keyword, preview)
        return report("failed", f"ready keyword not found in reply: {preview}")

    logger.info("%s is ready (%.1fs)", name, result.duration_sec)
    return report("ready")


async def run_readiness_checks(
    runner: AgentRunner,
    participants: list[str],
    settings: ReadinessConfig,
    idle_ms: int,
    on_state: StateCallback | None = None,
) -> dict[str, ReadinessResult]:
    """Probe all participants in parallel.

    Returns:
        Dict mapping participant name -> ReadinessResult (state "ready" or "failed").
    """
    results = await asyncio.gather(
        *(_check_one(runner, name, settings, idle_ms, on_state) for name in participants)
    )
    return {result.participant: result for result in results}
