"""Rich console rendering of readiness results, progress events and the final plan."""

from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from ultraplan import events
from ultraplan.agents.registry import get_template
from ultraplan.models import ReadinessResult, WorkflowResult


console = Console(legacy_windows=False)

_STATE_STYLES = {
    "ready": "green",
    "done": "green",
    "completed": "green",
    "created": "green",
    "answering": "cyan",
    "responding": "cyan",
    "checking": "cyan",
    "failed": "red",
    "skipped": "yellow",
}


def _label(participant: str) -> str:
    return get_template(participant).display_name


def _state(state: str) -> str:
    style = _STATE_STYLES.get(state, "dim")
    return f"[{style}]{state}[/{style}]"


def print_readiness(results: dict[str, ReadinessResult]) -> None:
    for name in sorted(results):
        result = results[name]
        if result.state == "ready":
            console.print(f"  [green]OK  [/green] {_label(name)}")
        else:
            short_err = (result.error or "unknown error").splitlines()[0][:120]
            console.print(f"  [red]FAIL[/red] {_label(name)}: {escape(short_err)}")


class ConsoleReporter:
    """Progress listener printing one line per workflow event.

    Document and plan content events are not printed; the summary shows the
    plan once the run is over.
    """

    def __init__(self, out: Console = console) -> None:
        self.console = out

    def __call__(self, name: str, payload: dict[str, Any]) -> None:
        handler = getattr(self, f"_on_{name}", None)
        if handler is not None:
            handler(payload)

    def _on_workspace_created(self, payload: dict[str, Any]) -> None:
        self.console.print(f"[dim]Workspace: {escape(payload['path'])}[/dim]")

    def _on_question_state(self, payload: dict[str, Any]) -> None:
        line = f"Question  {_label(payload['participant'])}: {_state(payload['state'])}"
        if payload.get("error"):
            line += f" [dim]({escape(payload['error'])})[/dim]"
        self.console.print(line)

    def _on_document_initialized(self, payload: dict[str, Any]) -> None:
        if payload["status"] == "failed":
            self.console.print(f"[red]Discussion file could not be created:[/red] {escape(str(payload.get('error')))}")
        else:
            self.console.print(f"[dim]Discussion file: {escape(payload['path'])}[/dim]")

    def _on_initial_views_start(self, payload: dict[str, Any]) -> None:
        names = ", ".join(_label(p) for p in payload["participants"])
        self.console.print(f"[bold]Initial views[/bold]  {names}")

    def _on_initial_view_update(self, payload: dict[str, Any]) -> None:
        if payload["state"] != "responding":
            self.console.print(f"Initial view  {_label(payload['participant'])}: {_state(payload['state'])}")

    def _on_discussion_start(self, payload: dict[str, Any]) -> None:
        names = ", ".join(_label(p) for p in payload["participants"])
        self.console.print(Rule(f"[bold cyan]Discussion[/bold cyan] (max {payload['max_rounds']} rounds: {names})"))

    def _on_round_start(self, payload: dict[str, Any]) -> None:
        order = " -> ".join(_label(p) for p in payload["speakers"])
        self.console.print(f"[bold]Round {payload['round']}[/bold]  {order}")

    def _on_entry_update(self, payload: dict[str, Any]) -> None:
        if payload["state"] == "responding":
            return
        line = f"  {_label(payload['participant'])}: {_state(payload['state'])}"
        if payload.get("error"):
            line += f" [dim]({escape(payload['error'])})[/dim]"
        self.console.print(line)

    def _on_continuation_analyzing(self, payload: dict[str, Any]) -> None:
        self.console.print(f"  [dim]Round {payload['round']}: checking whether another round is needed...[/dim]")

    def _on_user_input_analyzing(self, payload: dict[str, Any]) -> None:
        self.console.print(f"  [dim]Round {payload['round']}: checking for open questions...[/dim]")

    def _on_continuation_decision(self, payload: dict[str, Any]) -> None:
        verdict = "continue" if payload["should_continue"] else "stop"
        self.console.print(f"  [dim]Next round: {verdict} ({escape(payload['reason'])})[/dim]")

    def _on_user_input_needed(self, payload: dict[str, Any]) -> None:
        self.console.print(
            Panel(
                "\n".join(f"{i + 1}. {escape(q)}" for i, q in enumerate(payload["questions"])),
                title=f"[bold yellow]Clarification needed after round {payload['round']}[/bold yellow]",
                border_style="yellow",
            )
        )

    def _on_discussion_complete(self, payload: dict[str, Any]) -> None:
        self.console.print(f"Discussion {_state(payload['status'])} after {payload['total_rounds']} round(s)")

    def _on_consensus_complete(self, payload: dict[str, Any]) -> None:
        self.console.print(f"Consensus summary: {_state(payload['status'])}")

    def _on_plan_complete(self, payload: dict[str, Any]) -> None:
        self.console.print(f"Execution plan: {_state(payload['status'])}")


def print_summary(result: WorkflowResult, plan_text: str = "") -> None:
    """Print the run summary, then the execution plan rendered as Markdown."""
    style = "green" if result.status == "complete" else "red"
    console.print(Rule(f"[bold {style}]Ultra Plan {result.status}[/bold {style}]"))
    participants = ", ".join(_label(p) for p in result.participants) or "none"
    console.print(
        Text(
            f"Participants: {participants} | "
            f"Discussion: {result.discussion_status} | "
            f"Rounds: {result.total_rounds}",
            style="dim",
        )
    )
    if result.document_path:
        console.print(f"[dim]Discussion: {result.document_path}[/dim]")
    if result.plan_path:
        console.print(f"[dim]Plan: {result.plan_path}[/dim]")
    if plan_text:
        console.print(Rule("[bold green]Execution Plan[/bold green]"))
        console.print(Markdown(plan_text))
