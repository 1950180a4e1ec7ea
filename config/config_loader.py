"""Load settings.yaml (plus optional user overrides) into typed dataclasses."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

_KEYWORD_RE = re.compile(r"^[A-Za-z0-9_]+$")


class ConfigError(ValueError):
    """Raised when the merged configuration fails validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Invalid configuration: " + "; ".join(errors))


@dataclass(frozen=True)
class ReadinessConfig:
    keyword: str
    probe_prompt: str
    timeout_ms: int


@dataclass(frozen=True)
class TimeoutsConfig:
    idle_complete_ms: int
    question_timeout_ms: int
    turn_timeout_ms: int


@dataclass(frozen=True)
class DiscussionConfig:
    max_rounds: int
    language: str
    enable_consensus_summary: bool
    enable_plan_generation: bool
    system_prompt: str = ""
    max_prompt_chars: int = 50_000
    plan_max_prompt_chars: int = 60_000


@dataclass(frozen=True)
class AnalysisConfig:
    agent: str
    model: str
    idle_ms: int
    hard_timeout_ms: int
    max_document_chars: int


@dataclass(frozen=True)
class WorkspaceConfig:
    root_dir: str = ".ultraplan"
    discussion_filename: str = "Discussion_Review.md"
    plan_filename: str = "ExecutionPlan.md"
    template_filename: str = "discussion_template.md"


@dataclass(frozen=True)
class PromptsConfig:
    planning: str
    initial_view: str
    discussion: str
    first_round_focus: str
    later_round_focus: str
    consensus: str
    plan: str
    continuation: str
    user_input: str


# Placeholders each prompt is formatted with; the focus prompts are inserted
# into the discussion prompt as plain text.
PROMPT_PLACEHOLDERS: dict[str, tuple[str, ...]] = {
    "planning": ("language",),
    "initial_view": ("document", "language", "name"),
    "discussion": ("round", "document", "language", "focus", "name"),
    "consensus": ("document", "language"),
    "plan": ("document", "language"),
    "continuation": ("round", "max_rounds", "document"),
    "user_input": ("document",),
}


@dataclass(frozen=True)
class AppConfig:
    readiness: ReadinessConfig
    timeouts: TimeoutsConfig
    discussion: DiscussionConfig
    analysis: AnalysisConfig
    workspace: WorkspaceConfig
    prompts: PromptsConfig
    template: str


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    return raw or {}


def _int_in_range(errors: list[str], field_name: str, value: Any, low: int, high: int, unit: str = "") -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        errors.append(f"{field_name}: must be an integer between {low} and {high}{unit}")


def _text_length(errors: list[str], field_name: str, value: str, low: int, high: int) -> None:
    if low and not value.strip():
        errors.append(f"{field_name}: must not be empty")
    elif len(value) > high:
        errors.append(f"{field_name}: at most {high} characters")


def _check_prompts(errors: list[str], prompts: PromptsConfig) -> None:
    for name, placeholders in PROMPT_PLACEHOLDERS.items():
        try:
            getattr(prompts, name).format(**{key: "" for key in placeholders})
        except (KeyError, IndexError, AttributeError, ValueError) as exc:
            errors.append(
                f"prompts.{name}: bad placeholder {exc} (allowed: {', '.join(placeholders)}; "
                "write literal braces as {{ and }})"
            )


def validate_config(config: AppConfig) -> list[str]:
    """Return every validation problem; an empty list means valid."""
    errors: list[str] = []

    keyword = config.readiness.keyword
    if not keyword.strip():
        errors.append("readiness.keyword: must not be empty")
    elif not _KEYWORD_RE.match(keyword):
        errors.append("readiness.keyword: only letters, digits and underscore allowed")
    elif len(keyword) > 50:
        errors.append("readiness.keyword: at most 50 characters")

    _text_length(errors, "readiness.probe_prompt", config.readiness.probe_prompt, 1, 500)
    _text_length(errors, "discussion.system_prompt", config.discussion.system_prompt, 0, 10_000)
    _text_length(errors, "template", config.template, 1, 100_000)
    _text_length(errors, "discussion.language", config.discussion.language, 1, 20)

    _int_in_range(errors, "readiness.timeout_ms", config.readiness.timeout_ms, 5_000, 300_000, " ms")
    _int_in_range(errors, "timeouts.idle_complete_ms", config.timeouts.idle_complete_ms, 5_000, 120_000, " ms")
    _int_in_range(errors, "timeouts.question_timeout_ms", config.timeouts.question_timeout_ms, 30_000, 600_000, " ms")
    _int_in_range(errors, "timeouts.turn_timeout_ms", config.timeouts.turn_timeout_ms, 30_000, 600_000, " ms")
    _int_in_range(errors, "discussion.max_rounds", config.discussion.max_rounds, 1, 10)

    for flag in ("enable_consensus_summary", "enable_plan_generation"):
        if not isinstance(getattr(config.discussion, flag), bool):
            errors.append(f"discussion.{flag}: must be a boolean")

    _check_prompts(errors, config.prompts)

    return errors


def load_config(
    settings_path: Path = _SETTINGS_PATH,
    overrides_path: Path | None = None,
) -> AppConfig:
    """Load, merge and validate configuration.

    Values in overrides_path replace the matching keys of settings_path;
    anything the overrides leave out keeps its default. A template_file in
    the overrides is resolved relative to the overrides file.

    Raises:
        FileNotFoundError: If either file is missing.
        ConfigError: If the merged configuration is invalid.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    raw = _read_yaml(settings_path)
    template_base = settings_path.parent

    if overrides_path is not None:
        if not overrides_path.exists():
            raise FileNotFoundError(f"Config overrides file not found: {overrides_path}")
        overrides = _read_yaml(overrides_path)
        if "template_file" in overrides.get("workspace", {}):
            template_base = overrides_path.parent
        raw = _deep_merge(raw, overrides)
        logger.info("Config overrides loaded from %s", overrides_path)

    readiness_raw = raw["readiness"]
    readiness = ReadinessConfig(
        keyword=str(readiness_raw["keyword"]),
        probe_prompt=str(readiness_raw["probe_prompt"]),
        timeout_ms=readiness_raw["timeout_ms"],
    )

    timeouts_raw = raw["timeouts"]
    timeouts = TimeoutsConfig(
        idle_complete_ms=timeouts_raw["idle_complete_ms"],
        question_timeout_ms=timeouts_raw["question_timeout_ms"],
        turn_timeout_ms=timeouts_raw["turn_timeout_ms"],
    )

    discussion_raw = raw["discussion"]
    discussion = DiscussionConfig(
        max_rounds=discussion_raw["max_rounds"],
        language=str(discussion_raw["language"]),
        enable_consensus_summary=discussion_raw["enable_consensus_summary"],
        enable_plan_generation=discussion_raw["enable_plan_generation"],
        system_prompt=str(discussion_raw.get("system_prompt") or ""),
        max_prompt_chars=int(discussion_raw.get("max_prompt_chars", 50_000)),
        plan_max_prompt_chars=int(discussion_raw.get("plan_max_prompt_chars", 60_000)),
    )

    analysis_raw = raw["analysis"]
    analysis = AnalysisConfig(
        agent=str(analysis_raw["agent"]),
        model=str(analysis_raw["model"]),
        idle_ms=int(analysis_raw["idle_ms"]),
        hard_timeout_ms=int(analysis_raw["hard_timeout_ms"]),
        max_document_chars=int(analysis_raw["max_document_chars"]),
    )

    workspace_raw = raw.get("workspace", {})
    workspace = WorkspaceConfig(
        root_dir=str(workspace_raw.get("root_dir", ".ultraplan")),
        discussion_filename=str(workspace_raw.get("discussion_filename", "Discussion_Review.md")),
        plan_filename=str(workspace_raw.get("plan_filename", "ExecutionPlan.md")),
        template_filename=Path(workspace_raw.get("template_file", "discussion_template.md")).name,
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        planning=prompts_raw["planning"],
        initial_view=prompts_raw["initial_view"],
        discussion=prompts_raw["discussion"],
        first_round_focus=prompts_raw["first_round_focus"],
        later_round_focus=prompts_raw["later_round_focus"],
        consensus=prompts_raw["consensus"],
        plan=prompts_raw["plan"],
        continuation=prompts_raw["continuation"],
        user_input=prompts_raw["user_input"],
    )

    template_path = template_base / workspace_raw.get("template_file", "discussion_template.md")
    if not template_path.exists():
        raise FileNotFoundError(f"Discussion template not found: {template_path}")
    template = template_path.read_text(encoding="utf-8")

    config = AppConfig(
        readiness=readiness,
        timeouts=timeouts,
        discussion=discussion,
        analysis=analysis,
        workspace=workspace,
        prompts=prompts,
        template=template,
    )

    errors = validate_config(config)
    if errors:
        raise ConfigError(errors)
    return config
