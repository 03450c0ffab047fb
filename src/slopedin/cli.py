"""Command-line interface for SlopedIn."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from slopedin import __version__
from slopedin.config import Config, load_config
from slopedin.container import DependencyContainer
from slopedin.errors import ClassificationError
from slopedin.feed import ConsoleBadgeRenderer, DirectoryFeedSource, FileTextExtractor, SidecarBadgeRenderer, badge_text
from slopedin.observability import configure_logging
from slopedin.preferences import ENABLED_KEY, JsonPreferenceStore
from slopedin.protocols import ClassificationResult

console = Console()
logger = structlog.get_logger(__name__)


def _load(ctx: click.Context) -> Config:
    """Load configuration once per invocation and configure logging from it."""
    config = ctx.obj.get("config")
    if config is None:
        config = load_config(ctx.obj["config_path"])
        if ctx.obj["log_level"]:
            config.monitoring.log_level = ctx.obj["log_level"]
        configure_logging(config.monitoring)
        ctx.obj["config"] = config
    return config


def _preferences(config: Config) -> JsonPreferenceStore:
    return JsonPreferenceStore(config.preferences.path, defaults={ENABLED_KEY: config.preferences.default_enabled})


def _result_payload(result: ClassificationResult) -> Dict[str, Any]:
    badge = badge_text(result)
    return {
        "label": result.label.value,
        "score": result.score,
        "badge": badge.text,
        "tooltip": badge.tooltip,
        "raw_ranking": [entry.to_dict() for entry in result.raw_ranking],
    }


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides the configuration file)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """SlopedIn - flags AI-generated posts in a live feed."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level


@cli.command()
@click.argument("directory", type=click.Path(file_okay=False, path_type=Path))
@click.option("--sidecar", is_flag=True, help="Write <post>.badge.json files instead of printing badges")
@click.pass_context
def watch(ctx: click.Context, directory: Path, sidecar: bool) -> None:
    """Classify every post file that appears in DIRECTORY until interrupted."""
    config = _load(ctx)

    async def run_watch() -> Dict[str, Any]:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                pass

        source = DirectoryFeedSource(directory, config.feed.patterns)
        renderer = SidecarBadgeRenderer(console) if sidecar else ConsoleBadgeRenderer(console)
        container = DependencyContainer(ctx.obj["config_path"], config=config)
        try:
            async with container.lifecycle():
                pipeline = await container.build_pipeline(source, FileTextExtractor(), renderer)
                console.print(
                    Panel.fit(
                        f"[bold blue]SlopedIn[/bold blue]\n"
                        f"Directory: {source.directory}\n"
                        f"Patterns: {', '.join(config.feed.patterns)}\n"
                        f"Model: {config.inference.model}",
                        title="Watching feed",
                    )
                )
                await pipeline.start()
                if not pipeline.enabled:
                    console.print("[yellow]Detection is paused. Run 'slopedin enable' to resume.[/yellow]")
                await stop.wait()
                console.print("\n[yellow]Stopping, waiting for in-flight classifications...[/yellow]")
                await pipeline.stop()
                return pipeline.stats()
        finally:
            source.close()

    stats = asyncio.run(run_watch())

    table = Table(title="Items")
    table.add_column("State", style="cyan")
    table.add_column("Count", style="magenta", justify="right")
    for state, count in stats["items"].items():
        table.add_row(state, str(count))
    console.print(table)


@cli.command()
@click.argument("text", required=False)
@click.option("--file", "file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Read text from a file")
@click.pass_context
def classify(ctx: click.Context, text: Optional[str], file_path: Optional[Path]) -> None:
    """Classify TEXT (or --file, or stdin) once and print the verdict as JSON."""
    config = _load(ctx)
    if file_path is not None:
        text = FileTextExtractor().extract(file_path)
    elif text is None:
        text = click.get_text_stream("stdin").read()
    if not text or not text.strip():
        console.print("[red]Error: no text to classify[/red]")
        sys.exit(1)

    async def run_classify() -> ClassificationResult:
        container = DependencyContainer(ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            relay = await container.get_relay()
            return await relay.send(text)

    try:
        result = asyncio.run(run_classify())
    except ClassificationError as e:
        console.print(f"[red]Classification failed ({e.kind}): {e}[/red]")
        sys.exit(1)

    click.echo(json.dumps(_result_payload(result), indent=2, ensure_ascii=False))


@cli.command()
@click.pass_context
def enable(ctx: click.Context) -> None:
    """Resume detection in running and future pipelines."""
    _preferences(_load(ctx)).set(ENABLED_KEY, True)
    console.print("[green]Scanning feed…[/green]")


@cli.command()
@click.pass_context
def disable(ctx: click.Context) -> None:
    """Pause detection in running and future pipelines."""
    _preferences(_load(ctx)).set(ENABLED_KEY, False)
    console.print("[yellow]Detection paused[/yellow]")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show whether detection is enabled and what it is configured with."""
    config = _load(ctx)
    enabled = bool(_preferences(config).get(ENABLED_KEY, config.preferences.default_enabled))

    table = Table(title="SlopedIn Status")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("enabled", "✅ yes" if enabled else "⏸ no")
    table.add_row("preferences", str(config.preferences.path))
    table.add_row("model", config.inference.model)
    table.add_row("device", config.inference.device)
    table.add_row("min_text_length", str(config.feed.min_text_length))
    table.add_row("ai_threshold", str(config.inference.ai_threshold))
    console.print(table)


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
