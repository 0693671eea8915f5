"""Kiln CLI — the user interface.

Commands:
    kiln define   — Synthesize and store a new function from a description
    kiln run      — Invoke a stored function inside the sandbox
    kiln show     — Print a stored function's record and source
    kiln list     — List stored functions
    kiln tools    — Dump the tool schemas a host model would be offered
    kiln clear    — Remove every generated function
    kiln health   — Oracle reachability and configuration
    kiln trace    — View Synapse trace for a dispatch
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from kiln.capabilities import CapabilityRegistry
from kiln.config import KilnSettings, load_settings
from kiln.utils import setup_logging

app = typer.Typer(
    name="kiln",
    help="🔥 Kiln — synthesize, store and safely run functions on demand",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()


@app.callback()
def load_config(ctx: typer.Context):
    # one KilnSettings per invocation, handed to every command through ctx.obj
    if ctx.obj is None:
        ctx.obj = load_settings()
        setup_logging(ctx.obj)


def _settings(ctx: typer.Context) -> KilnSettings:
    return ctx.obj


def _demo_capabilities() -> CapabilityRegistry:
    """Capabilities exposed to functions run from the CLI."""
    registry = CapabilityRegistry()

    @registry.capability("echo", "Returns its args unchanged, as a JSON string.")
    async def echo(args: dict) -> str:
        return json.dumps(args)

    @registry.capability("now", "Current UTC time as an ISO-8601 string. Takes no args.")
    async def now(args: dict) -> str:
        return datetime.now(timezone.utc).isoformat()

    return registry


def _dispatcher(settings: KilnSettings):
    from kiln.dispatcher import ToolDispatcher
    return ToolDispatcher(settings, capabilities=_demo_capabilities())


def _parse_json_option(raw: str, option: str) -> dict:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        console.print(f"[red]{option} is not valid JSON: {exc}[/]")
        raise typer.Exit(code=2) from exc
    if not isinstance(value, dict):
        console.print(f"[red]{option} must be a JSON object[/]")
        raise typer.Exit(code=2)
    return value


def _print_result(result: str) -> None:
    style = "red" if result.startswith("Error:") else "green"
    console.print(f"[{style}]{escape(result)}[/]")


# ── kiln define ───────────────────────────────────────────────


@app.command()
def define(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Function name (a Python identifier)"),
    description: str = typer.Argument(..., help="What the function should do"),
    schema: str = typer.Option(
        '{"type": "object", "properties": {}}',
        "--schema", "-s",
        help="JSON schema of the function's params object",
    ),
):
    """🛠  Synthesize a new function and store it."""
    asyncio.run(_define(_settings(ctx), name, description, _parse_json_option(schema, "--schema")))


async def _define(settings: KilnSettings, name: str, description: str, schema: dict) -> None:
    dispatcher = _dispatcher(settings)
    try:
        await dispatcher.initialize()
        with console.status(f"[dim]Synthesizing {name}...[/]", spinner="dots"):
            result = await dispatcher.dispatch(
                "create_dynamic_function",
                {
                    "new_function_name": name,
                    "new_function_description": description,
                    "new_function_parameters_schema": schema,
                },
            )
    finally:
        await dispatcher.aclose()
    _print_result(result)
    if result.startswith("Error:"):
        raise typer.Exit(code=1)


# ── kiln run ──────────────────────────────────────────────────


@app.command()
def run(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Stored function to invoke"),
    params: str = typer.Option("{}", "--params", "-p", help="JSON params object"),
):
    """▶  Run a stored function in the sandbox."""
    asyncio.run(_run(_settings(ctx), name, _parse_json_option(params, "--params")))


async def _run(settings: KilnSettings, name: str, params: dict) -> None:
    dispatcher = _dispatcher(settings)
    try:
        result = await dispatcher.dispatch(name, params)
    finally:
        await dispatcher.aclose()
    _print_result(result)
    if result.startswith("Error:"):
        raise typer.Exit(code=1)


# ── kiln show / list / tools / clear ──────────────────────────


@app.command()
def show(ctx: typer.Context, name: str = typer.Argument(..., help="Stored function name")):
    """📄 Show a stored function's record and source."""
    definition = _dispatcher(_settings(ctx)).get_function_definition(name)
    if definition is None:
        console.print(f"[yellow]No function named: {name}[/]")
        raise typer.Exit(code=1)

    console.print(Panel(
        f"[bold]Name:[/] {definition.name}\n"
        f"[bold]Description:[/] {escape(definition.description)}\n"
        f"[bold]Internal:[/] {'yes' if definition.is_internal else 'no'}\n"
        f"[bold]Params schema:[/] {escape(json.dumps(definition.parameter_schema))}",
        title="[bold cyan]📄 Function[/]",
        border_style="cyan",
    ))
    console.print(Syntax(definition.code, "python", line_numbers=True))


@app.command("list")
def list_functions(ctx: typer.Context):
    """📚 List stored functions."""
    settings = _settings(ctx)
    definitions = _dispatcher(settings).store.list_definitions()
    if not definitions:
        console.print("[yellow]No functions stored. Run 'kiln define' first.[/]")
        return

    table = Table(title=f"Stored Functions  (from {settings.function_store_dir})")
    table.add_column("Name", style="cyan")
    table.add_column("Description", style="white")
    table.add_column("Internal", justify="center")
    for d in definitions:
        table.add_row(d.name, d.description[:80], "✅" if d.is_internal else "")
    console.print(table)


@app.command()
def tools(ctx: typer.Context):
    """🧰 Print the tool schemas offered to a host model."""
    console.print_json(json.dumps(_dispatcher(_settings(ctx)).available_tool_definitions()))


@app.command()
def clear(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """🧹 Delete every generated function (internal records are kept)."""
    if not yes and not typer.confirm("Delete all generated functions?"):
        raise typer.Abort()
    _print_result(_dispatcher(_settings(ctx)).clear_functions())


# ── kiln health ───────────────────────────────────────────────


@app.command()
def health(ctx: typer.Context):
    """🩺 Oracle reachability and current configuration."""
    asyncio.run(_health(_settings(ctx)))


async def _health(settings: KilnSettings):
    from kiln.tools.oracle import OracleClient

    oracle = OracleClient(settings)
    try:
        with console.status("[dim]Checking oracle...[/]", spinner="dots"):
            status = await oracle.health()
    finally:
        await oracle.close()

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Oracle", f"{settings.oracle_url}  ({settings.oracle_model})")
    table.add_row("Status", escape(str(status.get("status", "unknown"))))
    if status.get("error"):
        table.add_row("Error", f"[red]{escape(str(status['error']))}[/]")
    table.add_row("Repair attempts", str(settings.max_repair_attempts))
    table.add_row("Sandbox timeout", f"{settings.sandbox_timeout}s")
    table.add_row("Function store", str(settings.function_store_dir))
    console.print(Panel(table, title="[bold magenta]🧠 Kiln[/]", border_style="magenta"))


# ── kiln trace ────────────────────────────────────────────────


@app.command()
def trace(
    ctx: typer.Context,
    correlation_id: str = typer.Argument(
        None,
        help="Correlation ID to trace. If omitted, shows recent traces from disk.",
    ),
):
    """🔍 View Synapse trace for a dispatch."""
    from kiln.models.synapse import SynapseEventBus

    settings = _settings(ctx)
    synapse = SynapseEventBus(trace_dir=settings.trace_dir)

    if correlation_id:
        t = synapse.get_trace(correlation_id)
        if not t.events:
            console.print(f"[yellow]No trace found for: {correlation_id}[/]")
            return

        started = t.started_at.strftime("%H:%M:%S") if t.started_at else "?"
        console.print(Panel(
            f"[bold]Correlation ID:[/] {t.correlation_id}\n"
            f"[bold]Started:[/] {started}\n"
            f"[bold]Duration:[/] {t.total_duration_ms}ms\n"
            f"[bold]Success:[/] {'✅' if t.success else '❌'}\n"
            f"[bold]Functions:[/] {', '.join(t.functions)}",
            title="[bold blue]🔍 Synapse Trace[/]",
            border_style="blue",
        ))

        table = Table(title="Events", show_lines=True)
        table.add_column("#", style="dim", width=3)
        table.add_column("Timestamp", style="dim", width=12)
        table.add_column("Type", style="cyan")
        table.add_column("Source", style="green")
        table.add_column("Target", style="magenta")
        table.add_column("Info", style="white")

        t0 = t.started_at
        for i, event in enumerate(t.events, 1):
            offset_ms = (event.timestamp - t0).total_seconds() * 1000 if t0 else 0
            info = ""
            if event.error:
                info = f"[red]ERR: {escape(event.error[:60])}[/]"
            elif event.payload:
                for key in ("output_preview", "attempt", "code_chars"):
                    if key in event.payload:
                        info = f"[dim]{key}:[/] {escape(str(event.payload[key])[:80])}"
                        break
            table.add_row(
                str(i), f"+{offset_ms:.0f}ms", event.event_type,
                event.source, event.target or "—", info,
            )
        console.print(table)
    else:
        trace_ids = synapse.list_traces(limit=15)
        if not trace_ids:
            console.print("[yellow]No traces found. Run 'kiln define' or 'kiln run' first.[/]")
            return

        table = Table(title=f"Recent Traces  (from {settings.trace_dir})")
        table.add_column("Correlation ID", style="cyan")
        table.add_column("Functions", style="magenta")
        table.add_column("Events", justify="right")
        table.add_column("Duration", style="yellow", justify="right")
        table.add_column("Status", justify="center")
        for cid in trace_ids:
            t = synapse.get_trace(cid)
            table.add_row(
                t.correlation_id,
                ", ".join(t.functions),
                str(len(t.events)),
                f"{t.total_duration_ms:.0f}ms",
                "✅" if t.success else "❌",
            )
        console.print(table)
        console.print("[dim]Run: kiln trace <correlation_id>  for full event log[/]")


if __name__ == "__main__":
    app()
