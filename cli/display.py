"""
cli/display.py

All Rich-based terminal rendering for the reconciler.
Centralising this here means:
  - main.py never imports Rich directly
  - The API layer can skip this entirely
  - Tests can mock this module without touching engine logic

Functions:
  print_banner()          — header
  print_plan_table()      — plan preview table + summary
  print_apply_report()    — per-resource outcomes after apply
  print_state_table()     — records in the state file
  print_graph()           — dependency tree
  print_outputs()         — resolved outputs
  make_log_handler()      — Returns a log callable with Rich formatting
  print_success()         — Styled success message
  print_error()           — Styled error message
"""

import json
from typing import Any, Callable, Dict, Mapping

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from reconciler.executor import ApplyReport, Outcome
from reconciler.graph import DependencyGraph
from reconciler.planner import ACTION_SYMBOLS, ActionType, Plan, to_jsonable

console = Console()

_ACTION_STYLES = {
    ActionType.NOOP:    "dim",
    ActionType.CREATE:  "green",
    ActionType.UPDATE:  "yellow",
    ActionType.REPLACE: "magenta",
    ActionType.DESTROY: "red",
}

_OUTCOME_STYLES = {
    Outcome.APPLIED:            ("✅", "green"),
    Outcome.UNCHANGED:          ("·", "dim"),
    Outcome.FAILED:             ("❌", "bold red"),
    Outcome.SKIPPED_DEPENDENCY: ("⚠️", "yellow"),
    Outcome.SKIPPED_CANCELLED:  ("⏹", "yellow"),
}


def _short(value: Any, limit: int = 48) -> str:
    value = to_jsonable(value)
    text = value if isinstance(value, str) else json.dumps(value, sort_keys=True)
    text = text.replace("\n", "⏎")
    return text if len(text) <= limit else text[: limit - 1] + "…"


def print_banner() -> None:
    """Print the reconciler banner."""
    banner = Text()
    banner.append("  ☁  Reconciler", style="bold cyan")
    banner.append("  |  ", style="dim")
    banner.append("Declarative Infrastructure Planner", style="italic white")
    console.print(Panel(banner, border_style="cyan", padding=(0, 2)))


def print_plan_table(plan: Plan, show_unchanged: bool = False) -> None:
    """
    Render the plan — like 'terraform plan' output.

    One row per resource with the action symbol, then one indented row per
    changed attribute (old → new). Attributes that force replacement are
    flagged.
    """
    table = Table(
        title="[bold cyan]Execution Plan[/bold cyan]  [dim](nothing has been changed yet)[/dim]",
        box=box.ROUNDED,
        border_style="cyan",
        show_header=True,
        header_style="bold white",
        padding=(0, 1),
    )
    table.add_column("  ", width=4, no_wrap=True)
    table.add_column("Resource",  style="white", min_width=22)
    table.add_column("Attribute", style="dim",   min_width=14)
    table.add_column("Change",    min_width=36)

    for action in plan.actions:
        if not action.is_change and not show_unchanged:
            continue
        style = _ACTION_STYLES[action.action]
        table.add_row(
            f"[{style}]{ACTION_SYMBOLS[action.action]}[/{style}]",
            f"[{style}]{action.identity}[/{style}]",
            "",
            f"[{style}]{action.action.value}[/{style}]",
        )
        if action.action in (ActionType.CREATE, ActionType.DESTROY):
            continue
        for name, change in sorted(action.diff.items()):
            note = "  [magenta](forces replacement)[/magenta]" if change.forces_replacement else ""
            table.add_row("", "", name, f"{_short(change.old)} → {_short(change.new)}{note}")

    console.print()
    if plan.is_empty:
        console.print(Panel("  No changes. Infrastructure matches the desired state.",
                            border_style="green", padding=(0, 1)))
        return
    console.print(table)

    counts = plan.summary()
    summary = Text()
    summary.append("  Plan: ", style="dim")
    summary.append(f"{counts['create']} to create", style="bold green")
    summary.append(", ", style="dim")
    summary.append(f"{counts['update']} to update", style="bold yellow")
    summary.append(", ", style="dim")
    summary.append(f"{counts['replace']} to replace", style="bold magenta")
    summary.append(", ", style="dim")
    summary.append(f"{counts['destroy']} to destroy", style="bold red")
    summary.append(".", style="dim")
    console.print(summary)
    console.print()


def print_apply_report(report: ApplyReport) -> None:
    table = Table(
        title="[bold cyan]Apply Report[/bold cyan]",
        box=box.ROUNDED,
        border_style="cyan",
        header_style="bold white",
    )
    table.add_column("  ", width=3, no_wrap=True)
    table.add_column("Resource", min_width=22)
    table.add_column("Action",   style="dim")
    table.add_column("Outcome")
    table.add_column("Detail",   style="dim", min_width=24)

    for result in report.results:
        icon, style = _OUTCOME_STYLES[result.outcome]
        performed = result.performed.value if result.performed else result.action.value
        table.add_row(
            icon,
            str(result.identity),
            performed,
            f"[{style}]{result.outcome.value}[/{style}]",
            result.error or "",
        )

    console.print()
    console.print(table)


def print_state_table(records: Mapping) -> None:
    """
    Render the state file contents: one row per resource with its
    provider id and attributes.
    """
    if not records:
        console.print(Panel("  State is empty.", border_style="yellow", padding=(0, 1)))
        return

    table = Table(
        title="[bold cyan]State[/bold cyan]",
        box=box.ROUNDED,
        border_style="cyan",
        header_style="bold white",
    )
    table.add_column("Resource", style="green", min_width=22)
    table.add_column("Provider ID", style="white")
    table.add_column("Attributes", style="dim", min_width=36)
    table.add_column("Depends on", style="dim")

    for identity in sorted(records):
        record = records[identity]
        attrs = "\n".join(f"{k} = {_short(v)}" for k, v in sorted(record.attributes.items()))
        deps = ", ".join(str(d) for d in record.dependencies) or "-"
        table.add_row(str(identity), record.provider_id, attrs, deps)

    console.print()
    console.print(table)


def print_graph(graph: DependencyGraph) -> None:
    """Dependency tree: each root (nothing depends on it) with what it needs."""
    tree = Tree("[bold cyan]Dependency Graph[/bold cyan]")

    def add(branch, identity, seen):
        node = branch.add(str(identity))
        if identity in seen:
            return
        for dep in graph.dependencies_of(identity):
            add(node, dep, seen | {identity})

    roots = [i for i in graph.nodes if not graph.dependents_of(i)]
    for root in roots:
        add(tree, root, frozenset())

    console.print()
    console.print(tree)
    order = " → ".join(str(i) for i in graph.topological_order())
    console.print(f"\n  [dim]Apply order:[/dim] {order}\n")


def print_outputs(outputs: Dict[str, Any]) -> None:
    if not outputs:
        return
    text = Text()
    for name, value in outputs.items():
        text.append(f"  {name} = ", style="dim")
        text.append(f"{_short(value, limit=120)}\n", style="bold white")
    console.print(Panel(text, title="[cyan]Outputs[/cyan]", border_style="cyan", padding=(0, 1)))


def make_log_handler(prefix: str = "") -> Callable[[str], None]:
    """
    Returns a log callable that formats output with Rich.
    Used as the `log=` argument passed to apply_plan() and the providers.

    Detects line content to apply appropriate styling:
      ✅  → green
      ❌  → red
      ⏳/⚠️/⏹  → yellow
      🔥  → red
      $  (shell cmd) → dim cyan (code style)
      default → white
    """
    def _log(message: str) -> None:
        msg = f"{prefix}{message}"
        bare = str(message)
        if bare.startswith("✅"):
            console.print(f"  {msg}", style="green")
        elif bare.startswith("❌"):
            console.print(f"  {msg}", style="bold red")
        elif bare.startswith(("⏳", "⚠", "⏹")):
            console.print(f"  {msg}", style="yellow")
        elif bare.startswith("🔥"):
            console.print(f"  {msg}", style="red")
        elif bare.strip().startswith("$"):
            console.print(f"  {msg}", style="dim cyan")
        elif bare.startswith("🎉"):
            console.print(f"\n  {msg}", style="bold green")
        else:
            console.print(f"  {msg}", style="white")

    return _log


def print_success(message: str) -> None:
    console.print(Panel(f"  {message}", border_style="green", padding=(0, 1)))


def print_error(message: str) -> None:
    console.print(Panel(f"  {message}", border_style="red", title="[red]Error[/red]", padding=(0, 1)))
