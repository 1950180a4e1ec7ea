"""Click CLI: config loading, readiness checks, the workflow run, and the summary."""

import asyncio
import dataclasses
import logging
import sys
import threading
from pathlib import Path

import click
import frontmatter
from dotenv import load_dotenv
from rich.logging import RichHandler

from config.config_loader import AppConfig, ConfigError, load_config, validate_config
from ultraplan import events
from ultraplan.agents.registry import PARTICIPANTS, validate_templates
from ultraplan.events import ProgressEmitter
from ultraplan.models import ReadyState, WorkflowResult
from ultraplan.orchestrator import Workflow
from ultraplan.output import ConsoleReporter, console, print_readiness, print_summary
from ultraplan.readiness import run_readiness_checks
from ultraplan.runner import AgentRunner

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def parse_question_file(file_path: Path) -> tuple[str, dict]:
    """Parse a markdown question with optional YAML frontmatter.

    Returns:
        (question, metadata); recognised metadata keys are rounds (int) and
        language (str). Without frontmatter, metadata is {}.
    """
    post = frontmatter.load(str(file_path))
    return post.content.strip(), dict(post.metadata)


def _apply_overrides(
    config: AppConfig,
    rounds: int | None,
    language: str | None,
    no_consensus: bool,
    no_plan: bool,
) -> AppConfig:
    discussion = config.discussion
    if rounds is not None:
        discussion = dataclasses.replace(discussion, max_rounds=rounds)
    if language:
        discussion = dataclasses.replace(discussion, language=language)
    if no_consensus:
        discussion = dataclasses.replace(discussion, enable_consensus_summary=False)
    if no_plan:
        discussion = dataclasses.replace(discussion, enable_plan_generation=False)
    return dataclasses.replace(config, discussion=discussion)


def _check_readiness(runner: AgentRunner, config: AppConfig) -> dict[str, ReadyState]:
    """Probe every participant, print results, and ask what to do on failures.

    Exits if nobody is ready or the user declines to continue.
    """
    console.print("\n[bold]Checking agent CLIs...[/bold]")
    results = asyncio.run(
        run_readiness_checks(runner, PARTICIPANTS, config.readiness, config.timeouts.idle_complete_ms)
    )
    print_readiness(results)

    failed = [name for name, r in results.items() if r.state != "ready"]
    if len(failed) == len(results):
        console.print("\n[bold red]Error:[/bold red] No agent CLI passed the readiness check.")
        sys.exit(1)
    if failed:
        console.print(f"\n[yellow]{len(failed)} agent(s) not ready:[/yellow] {', '.join(sorted(failed))}")
        if not click.confirm("Continue with the ready agents only?", default=True):
            sys.exit(0)

    console.print()
    return {name: r.state for name, r in results.items()}


def _prompt_answers(questions: list[str]) -> dict[int, str] | None:
    answers: dict[int, str] = {}
    try:
        for i, question in enumerate(questions):
            answers[i] = click.prompt(f"Q{i + 1}: {question}", default="", show_default=False)
    except click.Abort:
        return None
    return answers


async def _answer_questions(workflow: Workflow, questions: list[str]) -> None:
    """Ask the user from a daemon thread; a pending stdin read never blocks interpreter exit."""
    loop = asyncio.get_running_loop()
    future: asyncio.Future[dict[int, str] | None] = loop.create_future()

    def resolve(answers: dict[int, str] | None) -> None:
        if not future.done():
            future.set_result(answers)

    def ask() -> None:
        answers = _prompt_answers(questions)
        try:
            loop.call_soon_threadsafe(resolve, answers)
        except RuntimeError:
            logger.debug("Answers arrived after the event loop closed")

    threading.Thread(target=ask, name="ultraplan-answers", daemon=True).start()
    answers = await future
    if answers is None:
        workflow.cancel_user_input()
    else:
        workflow.submit_user_input(answers)


async def _run_workflow(
    config: AppConfig,
    project_path: Path,
    runner: AgentRunner,
    question: str,
    readiness: dict[str, ReadyState],
) -> WorkflowResult:
    emitter = ProgressEmitter()
    workflow = Workflow(config, project_path, runner=runner, emitter=emitter)
    emitter.subscribe(ConsoleReporter())

    prompts: set[asyncio.Task] = set()

    def on_event(name: str, payload: dict) -> None:
        if name == events.USER_INPUT_NEEDED:
            task = asyncio.create_task(_answer_questions(workflow, payload["questions"]))
            prompts.add(task)
            task.add_done_callback(prompts.discard)

    emitter.subscribe(on_event)

    result = await workflow.run(question, readiness)
    print_summary(result, workflow.plan_content())
    return result


@click.command()
@click.argument("project_path", required=False, default=".", type=click.Path(file_okay=False, path_type=Path))
@click.argument("question", required=False)
@click.option("--file", "question_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Read the question from a .md file (frontmatter: rounds, language)")
@click.option("--rounds", default=None, type=click.IntRange(1, 10), help="Maximum discussion rounds (default: from config)")
@click.option("--language", default=None, help="Language the agents answer in (default: from config)")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="YAML file overriding config/settings.yaml")
@click.option("--no-consensus", is_flag=True, help="Skip the consensus summary")
@click.option("--no-plan", is_flag=True, help="Skip execution plan generation")
@click.option("--skip-readiness", is_flag=True, default=False, help="Assume every agent CLI is ready")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(
    project_path: Path,
    question: str | None,
    question_file: Path | None,
    rounds: int | None,
    language: str | None,
    config_path: Path | None,
    no_consensus: bool,
    no_plan: bool,
    skip_readiness: bool,
    verbose: bool,
) -> None:
    """Ultra Plan -- multi-agent planning discussion between Claude, Codex and Gemini.

    \b
    Examples:
      ultraplan . "How should we split the billing service?"
      ultraplan ./my-project --file question.md --rounds 3
      ultraplan ./my-project "Pick a queue" --language German --no-consensus
    """
    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config(overrides_path=config_path) if config_path else load_config()
        validate_templates()
    except (FileNotFoundError, ConfigError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    # CLI flags win; frontmatter only fills in what the flags leave unset
    if question_file:
        question, meta = parse_question_file(question_file)
        if rounds is None and "rounds" in meta:
            rounds = int(meta["rounds"])
        if language is None and meta.get("language"):
            language = str(meta["language"])

    config = _apply_overrides(config, rounds, language, no_consensus, no_plan)
    errors = validate_config(config)
    if errors:
        console.print(f"[bold red]Config error:[/bold red] {'; '.join(errors)}")
        sys.exit(1)

    if not question or not question.strip():
        question = click.prompt("Planning question")
    if not question.strip():
        console.print("[bold red]Error:[/bold red] The question must not be empty.")
        sys.exit(1)

    project_path = project_path.resolve()
    project_path.mkdir(parents=True, exist_ok=True)
    logger.debug("Project path: %s", project_path)
    runner = AgentRunner(project_path)

    if skip_readiness:
        readiness: dict[str, ReadyState] = {name: "ready" for name in PARTICIPANTS}
    else:
        readiness = _check_readiness(runner, config)

    preview = question[:80] + ("..." if len(question) > 80 else "")
    console.print(
        f"[bold cyan]Ultra Plan[/bold cyan] up to {config.discussion.max_rounds} rounds, "
        f"language {config.discussion.language}"
    )
    console.print(f"Question: [italic]{preview}[/italic]\n")

    try:
        result = asyncio.run(_run_workflow(config, project_path, runner, question, readiness))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    if result.status != "complete":
        sys.exit(1)


if __name__ == "__main__":
    main()
