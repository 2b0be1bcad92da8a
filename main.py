"""
main.py

Reconciler CLI.

Commands:
  plan      — show what apply would do, change nothing
  apply     — plan, confirm, then apply through the providers
  destroy   — remove everything recorded in state, dependents first
  state     — list the records in the state file
  graph     — print the dependency graph and apply order
  output    — resolve the document's outputs against current state

Configuration (env vars, also read from .env):
  RECONCILER_STATE_FILE   state file path            (default: state.json)
  RECONCILER_CLOUD_FILE   simulated cloud inventory  (default: .cloud.json)
  RECONCILER_MAX_WORKERS  concurrent provider calls  (default: 1)
"""

import json
import os

import typer
from dotenv import load_dotenv

from cli.display import (
    console,
    make_log_handler,
    print_apply_report,
    print_banner,
    print_error,
    print_graph,
    print_outputs,
    print_plan_table,
    print_state_table,
    print_success,
)
from providers import SimulatedCloud, default_providers, schemas_for
from reconciler import (
    JsonStateStore,
    ReconcilerError,
    apply_plan,
    build_graph,
    load_document,
    plan as make_plan,
    plan_destroy,
    resolve_outputs,
    validate,
)

load_dotenv()

STATE_FILE = os.getenv("RECONCILER_STATE_FILE", "state.json")
CLOUD_FILE = os.getenv("RECONCILER_CLOUD_FILE", ".cloud.json")
MAX_WORKERS = int(os.getenv("RECONCILER_MAX_WORKERS", "1"))
DOCUMENT_FILE = "infrastructure.json"

app = typer.Typer(
    name="reconciler",
    help="Declarative infrastructure planner: plan, apply and destroy resources from a JSON document.",
    add_completion=False,
    no_args_is_help=True,
)

_file_option = typer.Option(DOCUMENT_FILE, "--file", "-f", help="Desired-state JSON document.")
_state_option = typer.Option(STATE_FILE, "--state", help="State file path.")


def _providers():
    return default_providers(SimulatedCloud(CLOUD_FILE))


def _fail(message: str) -> None:
    print_error(message)
    raise typer.Exit(code=1)


@app.command()
def plan(
    file: str = _file_option,
    state: str = _state_option,
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON."),
    show_unchanged: bool = typer.Option(False, "--all", help="Include resources with no changes."),
):
    """Shows the actions apply would take. Nothing is changed."""
    try:
        document = load_document(file)
        providers = _providers()
        result = make_plan(document.specs(), schemas_for(providers), JsonStateStore(state).load())
    except ReconcilerError as ex:
        _fail(str(ex))

    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return
    print_banner()
    print_plan_table(result, show_unchanged=show_unchanged)


@app.command()
def apply(
    file: str = _file_option,
    state: str = _state_option,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
    workers: int = typer.Option(MAX_WORKERS, "--workers", "-w", min=1, help="Concurrent provider calls."),
):
    """Plans, asks for confirmation, then applies the changes."""
    store = JsonStateStore(state)
    try:
        document = load_document(file)
        providers = _providers()
        result = make_plan(document.specs(), schemas_for(providers), store.load())
    except ReconcilerError as ex:
        _fail(str(ex))

    print_banner()
    print_plan_table(result)
    if result.is_empty:
        print_outputs(resolve_outputs(document.output_values(), store.load()))
        return
    if not yes and not typer.confirm("Apply these changes?"):
        raise typer.Abort()

    try:
        report = apply_plan(result, providers, store, log=make_log_handler(), max_workers=workers)
    except ReconcilerError as ex:
        _fail(f"Apply aborted: {ex}")

    print_apply_report(report)
    print_outputs(resolve_outputs(document.output_values(), report.records))
    if not report.succeeded:
        raise typer.Exit(code=1)
    print_success(f"State saved to {store.path}")


@app.command()
def destroy(
    state: str = _state_option,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
    workers: int = typer.Option(MAX_WORKERS, "--workers", "-w", min=1, help="Concurrent provider calls."),
):
    """Destroys every resource recorded in state, dependents first."""
    store = JsonStateStore(state)
    try:
        records = store.load()
    except ReconcilerError as ex:
        _fail(str(ex))

    if not records:
        typer.secho("🤷 State is empty. Nothing to destroy.", fg=typer.colors.YELLOW)
        raise typer.Exit()

    result = plan_destroy(records)
    print_plan_table(result)
    typer.secho(
        f"🔥 This will destroy {len(result.actions)} resource(s).",
        fg=typer.colors.RED,
        bold=True,
    )
    if not yes and not typer.confirm("Are you sure you want to proceed?"):
        raise typer.Abort()

    try:
        report = apply_plan(result, _providers(), store, log=make_log_handler(), max_workers=workers)
    except ReconcilerError as ex:
        _fail(f"Destroy aborted: {ex}")

    print_apply_report(report)
    if not report.succeeded:
        raise typer.Exit(code=1)
    print_success("All resources destroyed.")


@app.command(name="state")
def show_state(
    state: str = _state_option,
    as_json: bool = typer.Option(False, "--json", help="Print the raw records as JSON."),
):
    """Lists the resources recorded in the state file."""
    try:
        records = JsonStateStore(state).load()
    except ReconcilerError as ex:
        _fail(str(ex))

    if as_json:
        typer.echo(json.dumps([records[i].to_dict() for i in sorted(records)], indent=2))
        return
    print_state_table(records)


@app.command()
def graph(file: str = _file_option):
    """Prints the dependency graph and the apply order."""
    try:
        document = load_document(file)
        desired = validate(document.specs(), schemas_for(_providers()))
        dependency_graph = build_graph(desired)
    except ReconcilerError as ex:
        _fail(str(ex))
    print_graph(dependency_graph)


@app.command()
def output(
    file: str = _file_option,
    state: str = _state_option,
):
    """Prints the document's outputs resolved against current state."""
    try:
        document = load_document(file)
        records = JsonStateStore(state).load()
    except ReconcilerError as ex:
        _fail(str(ex))
    outputs = resolve_outputs(document.output_values(), records)
    if not outputs:
        console.print("  [dim]No outputs defined.[/dim]")
        return
    print_outputs(outputs)


if __name__ == "__main__":
    app()
