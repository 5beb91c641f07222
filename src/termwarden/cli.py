"""CLI entry point for termwarden."""

from __future__ import annotations

import asyncio
import logging

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from termwarden import __version__
from termwarden.config import TermwardenConfig

app = typer.Typer(
    name="termwarden",
    help="Terminal session bridge with AI-agent supervision.",
    no_args_is_help=True,
)

console = Console()


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind host (default: from env/config)."),
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port."),
    project: str | None = typer.Option(
        None, "--project", "-P", help="Project directory to supervise."
    ),
    mode: str | None = typer.Option(
        None, "--mode", "-m", help="Supervision mode: strict, balanced or auto."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Serve terminal sessions over HTTP/WebSocket with supervision enabled."""
    setup_logging(verbose)
    import uvicorn

    from termwarden.server import create_app

    config = TermwardenConfig.load(config_file)
    if host:
        config.server.host = host
    if port:
        config.server.port = port
    if project:
        config.supervision.project_root = project
    if mode:
        if mode.lower() not in ("strict", "balanced", "auto"):
            typer.echo(f"Error: Unknown mode: {mode}", err=True)
            raise typer.Exit(1)
        config.supervision.mode = mode.lower()

    typer.echo(f"termwarden v{__version__}")
    typer.echo(f"Shell: {config.bridge.shell} (fallback {config.bridge.fallback_shell})")
    typer.echo(f"Project: {config.supervision.project_root}")
    typer.echo(f"Mode: {config.supervision.mode}")
    typer.echo(f"Listening on http://{config.server.host}:{config.server.port}")
    typer.echo("---")

    uvicorn.run(
        create_app(config=config),
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if verbose else "info",
    )


@app.command()
def context(
    scenario: str = typer.Argument(
        "general_confusion",
        help="initial_setup, requirements_missing, file_confusion, implementation_stuck or general_confusion.",
    ),
    project: str = typer.Option(".", "--project", "-P", help="Project directory to scan."),
    instruction_file: str = typer.Option(
        "CLAUDE.md", "--instruction-file", "-i", help="Sidecar instruction file name."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
) -> None:
    """Show the context an agent would receive for a scenario."""
    setup_logging(verbose)
    from termwarden.supervision.context import ProjectContextCache

    cache = ProjectContextCache(project, instruction_file=instruction_file)

    async def _load() -> str:
        await cache.refresh()
        payload = await cache.get_context_for(scenario)
        return payload.message

    message = asyncio.run(_load())

    summary = cache.summary()
    table = Table(title="Project", show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    for key in ("root", "projectType", "framework", "requirements", "files", "phase"):
        table.add_row(key, escape(str(summary[key])))
    table.add_row(
        instruction_file, "[green]found[/green]" if summary["instructionFile"] else "[red]missing[/red]"
    )
    console.print(table)
    console.print(Panel(escape(message), title=f"[bold cyan]{escape(scenario)}[/bold cyan]"))


@app.command()
def workflows(
    definitions: str | None = typer.Argument(
        None, help="YAML file with workflow definitions to validate and list."
    ),
) -> None:
    """List the known workflow types and their steps."""
    from termwarden.supervision.workflow import WorkflowTracker

    tracker = WorkflowTracker()
    if definitions:
        try:
            tracker.load_definitions(definitions)
        except (OSError, ValueError, yaml.YAMLError) as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)

    table = Table(title="Workflow types")
    table.add_column("type", style="bold")
    table.add_column("steps")
    table.add_column("critical", style="yellow")
    for name in tracker.types:
        definition = tracker.definition(name)
        steps = ", ".join(
            f"{step} ({definition.timeout_for(step) // 1000}s)" for step in definition.steps
        )
        table.add_row(escape(name), escape(steps), escape(", ".join(sorted(definition.critical_steps))))
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
