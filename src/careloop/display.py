# display.py
# All terminal output for the careloop demo.
#
# This module owns presentation entirely. Nothing else formats for the
# terminal. The stream consumer's callbacks call named functions here.
#
# Colour language:
#   cyan:    requests and routing
#   magenta: ReAct internals (Thought / Action / Observation)
#   green:   final answers
#   yellow:  exhausted runs
#   red:     errors

import json

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from careloop.models import ActionStep, ErrorEvent, ObservationStep, RunResult, ThoughtStep

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = value.replace("\n", " ")
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Run entry
# ---------------------------------------------------------------------------


def banner(model: str, tools: list[str]) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]careloop ReAct agent[/bold cyan]\n"
            "[dim]Think → Act → Observe, streamed live[/dim]\n\n"
            f"[dim]Model :[/dim] [white]{model}[/white]\n"
            f"[dim]Tools :[/dim] [white]{', '.join(tools) or '(none)'}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def prompt_received(prompt: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{prompt}[/white]",
            title=_label("USER PROMPT", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def react_thought(step: ThoughtStep) -> None:
    console.print()
    console.print(f"[bold cyan]  ITERATION {step.iteration}[/bold cyan]")
    console.print(f"  [magenta]Thought[/magenta]  [dim white]{_mono(step.thought, 200)}[/dim white]")


def react_action(step: ActionStep) -> None:
    console.print(
        f"  [magenta]Action[/magenta]   [bold white]{step.tool}[/bold white]"
        f"  [dim]{_mono(json.dumps(step.args), 100)}[/dim]"
    )


def react_observation(step: ObservationStep) -> None:
    color = "red" if step.observation.startswith("Error") else "white"
    console.print(f"  [magenta]Observe[/magenta]  [{color}]{_mono(step.observation, 140)}[/{color}]")


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


def run_summary(result: RunResult) -> None:
    console.print()
    table = Table(box=box.SIMPLE_HEAVY, border_style="dim", show_header=True, header_style="bold dim")
    table.add_column("Status", justify="center")
    table.add_column("Iterations", justify="center")
    table.add_column("Tools used")
    table.add_column("Tokens", justify="right")
    table.add_row(
        result.status.value,
        str(result.iterations),
        ", ".join(result.tools_used) or "-",
        str(result.usage.total_tokens),
    )
    console.print(Panel(table, title="[dim]RUN SUMMARY[/dim]", border_style="dim", padding=(0, 1)))


def final_result(answer: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{answer}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def exhausted(fallback: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{fallback}[/white]",
            title=_label("ITERATION LIMIT", "yellow"),
            border_style="yellow",
            padding=(1, 2),
        )
    )
    console.print()


def stream_error(event: ErrorEvent) -> None:
    retry = " [dim](retryable)[/dim]" if event.retryable else ""
    console.print()
    console.print(
        Panel(
            f"[bold white]{event.error}[/bold white]{retry}",
            title=_label("ERROR", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
