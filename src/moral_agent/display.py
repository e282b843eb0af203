# display.py
# All terminal output for the awakening supervisor.
#
# This module owns presentation entirely. supervisor.py never formats
# strings: it calls named functions here. The log handler shares `console`
# so narration and log lines interleave cleanly.
#
# Colour language:
#   cyan   : supervisor / routing events
#   blue   : reasoning calls
#   yellow : budget and schedule
#   green  : success / approved
#   red    : failures, blocks, halts
#   magenta: dormancy

import json
from datetime import datetime

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from moral_agent.models import Action, ExecutionResult

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


def _target(action: Action) -> str:
    for field in ("path", "url", "recipient", "label", "cron"):
        value = getattr(action, field, None)
        if value:
            return str(value)
    return ""


# ---------------------------------------------------------------------------
# Process lifecycle
# ---------------------------------------------------------------------------


def banner(agent_name: str, reasoning_model: str, delegation_model: str, balance: float) -> None:
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Autonomous Moral Agent — {agent_name}[/bold cyan]\n"
            "[dim]Governed awakenings: budget gate → reasoning → moral engine → sandboxed effects[/dim]\n\n"
            f"[dim]Reasoning model  :[/dim] [white]{reasoning_model}[/white]\n"
            f"[dim]Delegation model :[/dim] [white]{delegation_model}[/white]\n"
            f"[dim]Energy balance   :[/dim] [yellow]${balance:.4f}[/yellow]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def scheduled(expression: str, next_run: datetime) -> None:
    console.print(
        _label("SCHEDULE", "yellow"),
        f"[yellow] {expression}[/yellow]  [dim]next awakening {next_run:%Y-%m-%d %H:%M:%S %Z}[/dim]",
    )


def task_recorded(task_id: str, title: str, status: str) -> None:
    console.print(_label("TASK", "yellow"), f"[yellow] {title}[/yellow]  [dim]{task_id} ({status})[/dim]")


def shutdown(signal_name: str) -> None:
    console.print()
    console.print(_label("SUPERVISOR", "cyan"), f"[cyan] Received {signal_name} — shutting down.[/cyan]")


# ---------------------------------------------------------------------------
# Cycle gates
# ---------------------------------------------------------------------------


def cycle_start(cycle: int, balance: float) -> None:
    console.print()
    console.print(Rule(f"[cyan]AWAKENING #{cycle}[/cyan]", style="cyan"))
    console.print(f"  [yellow]Energy[/yellow]  [white]${balance:.4f}[/white]")


def trigger_rejected() -> None:
    console.print(_label("SUPERVISOR", "cyan"), "[cyan] Trigger rejected — awakening already in progress.[/cyan]")


def dormant(balance: float) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold magenta]No energy remaining[/bold magenta] [dim](balance ${balance:.4f})[/dim]\n"
            "[dim]Entering dormancy. A later trigger re-checks the budget.[/dim]",
            title=_label("DORMANT", "magenta"),
            border_style="magenta",
            padding=(0, 2),
        )
    )


def reasoning_unavailable() -> None:
    console.print(
        _label("SUPERVISOR", "red"),
        "[red] Reasoning engine unavailable — skipping awakening.[/red]",
    )


def calling_reasoning(model: str, briefing_tokens: int) -> None:
    console.print(
        _label("REASONING", "blue"),
        f"[blue] → {model}[/blue]  [dim]~{briefing_tokens} briefing tokens[/dim]",
    )


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def actions_reviewed(actions: list[Action], approved: list[Action]) -> None:
    if not actions:
        console.print("  [dim]No actions proposed.[/dim]")
        return

    approved_ids = {id(action) for action in approved}
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("#", justify="center", width=4)
    table.add_column("Kind", style="bold white", width=13)
    table.add_column("Target", style="dim white", width=36)
    table.add_column("Moral engine", justify="center", width=12)

    for index, action in enumerate(actions, start=1):
        verdict = "[bold green]✓ proceed[/bold green]" if id(action) in approved_ids else "[bold red]✗ block[/bold red]"
        table.add_row(str(index), action.kind, _mono(_target(action), 34), verdict)

    console.print(
        Panel(
            table,
            title=_label("PROPOSED ACTIONS", "cyan"),
            subtitle=f"[dim]{len(approved)}/{len(actions)} approved[/dim]",
            border_style="cyan",
            padding=(0, 1),
        )
    )


def execution_summary(results: list[ExecutionResult]) -> None:
    if not results:
        return

    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Kind", width=13)
    table.add_column("OK", justify="center", width=4)
    table.add_column("Detail", style="dim white")

    for result in results:
        ok = "[bold green]✓[/bold green]" if result.success else "[bold red]✗[/bold red]"
        detail = result.detail if result.success else result.error
        table.add_row(result.action.kind, ok, _mono(detail or "", 70))

    console.print(
        Panel(
            table,
            title="[dim]EXECUTION SUMMARY[/dim]",
            border_style="dim",
            padding=(0, 1),
        )
    )


def cycle_complete(cycle: int, successes: int, failures: int, balance: float) -> None:
    color = "green" if failures == 0 else "yellow"
    console.print(
        _label(f"AWAKENING #{cycle} COMPLETE", color),
        f"[{color}] {successes} succeeded, {failures} failed[/{color}]  "
        f"[dim]balance ${balance:.4f}[/dim]",
    )


def halt(reason: str, data: dict | None = None) -> None:
    body = f"[bold white]{reason}[/bold white]"
    if data:
        body += f"\n[dim]{json.dumps(data, default=str)}[/dim]"
    console.print()
    console.print(
        Panel(
            body,
            title=_label("CYCLE ABORTED", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
