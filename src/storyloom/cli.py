"""Command line interface for Storyloom."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from dotenv import find_dotenv, load_dotenv, set_key
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from storyloom.context import API_KEY_ENV_VARS, get_default_context
from storyloom.error_handling import StoryloomError
from storyloom.models import AgeGroup, IllustrationOptions, IllustrationStyle
from storyloom.providers import PROVIDER_CLASSES
from storyloom.service import StoryGenerationService


console = Console()
logger = logging.getLogger(__name__)

STATUS_COLORS = {
    "online": "green",
    "offline": "yellow",
    "unconfigured": "dim",
    "error": "red",
}


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else get_default_context().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _build_service() -> StoryGenerationService:
    return StoryGenerationService.from_context(get_default_context())


def _status_table(service: StoryGenerationService) -> Table:
    table = Table(title="Generation Providers")
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Capabilities")
    table.add_column("Success rate", justify="right")
    table.add_column("Models")
    table.add_column("Message", style="dim")

    reports = {report.id: report for report in service.get_provider_report()}
    for entry in service.get_providers_status():
        report = reports[entry.id]
        capabilities = [
            name for name, enabled in (
                ("text", report.capabilities.text_generation),
                ("image", report.capabilities.image_generation),
                ("audio", report.capabilities.audio_generation),
            ) if enabled
        ]
        color = STATUS_COLORS.get(entry.status, "white")
        table.add_row(
            entry.name,
            f"[{color}]{entry.status}[/{color}]",
            ", ".join(capabilities),
            report.metrics.success_rate,
            ", ".join(entry.models),
            entry.message,
        )
    return table


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def cli(verbose):
    """Storyloom - generate illustrated children's stories across AI providers."""
    load_dotenv(find_dotenv(usecwd=True), override=False)
    _configure_logging(verbose)


@cli.command()
@click.option('--check/--no-check', default=False, help='Run health checks before listing')
def status(check):
    """List providers with their status and metrics."""
    service = _build_service()
    if check:
        asyncio.run(service.check_all_providers_health())
    console.print(_status_table(service))


@cli.command('check-health')
def check_health():
    """Probe every provider concurrently."""
    service = _build_service()
    results = asyncio.run(service.check_all_providers_health())

    table = Table(title="Health Check")
    table.add_column("Provider", style="cyan")
    table.add_column("Healthy")
    table.add_column("Latency (ms)", justify="right")
    table.add_column("Message", style="dim")
    for provider_id, result in results.items():
        healthy = "[green]yes[/green]" if result.is_healthy else "[red]no[/red]"
        table.add_row(provider_id, healthy, f"{result.response_time_ms:.0f}", result.message)
    console.print(table)

    healthy_count = sum(1 for result in results.values() if result.is_healthy)
    console.print(f"\n[bold]{healthy_count}/{len(results)} providers healthy[/bold]")


@cli.command('configure-key')
@click.argument('provider', type=click.Choice(sorted(API_KEY_ENV_VARS)))
@click.argument('api_key')
@click.option('--env-file', type=click.Path(dir_okay=False), help='File to write (default: nearest .env)')
def configure_key(provider, api_key, env_file):
    """Validate an API key format and store it in the .env file."""
    validation = PROVIDER_CLASSES[provider].validate_api_key(api_key)
    if not validation.is_valid:
        console.print(f"[red]Invalid {provider} API key: {validation.message}[/red]")
        sys.exit(1)

    env_file = env_file or find_dotenv(usecwd=True) or str(Path.cwd() / '.env')
    Path(env_file).touch(exist_ok=True)
    set_key(env_file, API_KEY_ENV_VARS[provider], api_key.strip())
    console.print(f"[green]Saved {API_KEY_ENV_VARS[provider]} to {env_file}[/green]")


@cli.command()
@click.option('--character', '-c', 'characters', multiple=True, required=True, help='Story character (repeatable)')
@click.option('--theme', '-t', required=True, help='Story theme')
@click.option(
    '--age-group',
    type=click.Choice([group.value for group in AgeGroup]),
    default=AgeGroup.EARLY_READER.value,
    show_default=True,
)
@click.option('--child-name', help='Personalise the story with a child name')
@click.option('--tier', help='Subscription tier used for provider access')
@click.option('--text-only', is_flag=True, help='Skip illustration prompts')
@click.option('--illustrate', is_flag=True, help='Illustrate every chapter after writing the story')
@click.option(
    '--style',
    type=click.Choice([style.value for style in IllustrationStyle]),
    default=IllustrationStyle.CARTOON.value,
    show_default=True,
)
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write the story as JSON')
def story(characters, theme, age_group, child_name, tier, text_only, illustrate, style, output):
    """Write a story and optionally illustrate it."""
    service = _build_service()

    async def _run():
        generated = await service.generate_story_text(
            list(characters), theme, age_group, child_name=child_name, text_only=text_only, tier=tier,
        )
        if illustrate and not text_only:
            story_id = generated.title
            options = IllustrationOptions(style=style, age_group=age_group, story_id=story_id)
            with Progress(SpinnerColumn(), TextColumn("{task.description}"), console=console) as progress:
                progress.add_task(f"Illustrating {len(generated.chapters)} chapters...", total=None)
                await service.generate_all_illustrations(story_id, generated.chapters, options, tier=tier)
                await service.wait_for_illustrations(story_id)
        return generated

    try:
        generated = asyncio.run(_run())
    except StoryloomError as exc:
        console.print(f"[red]Story generation failed: {exc}[/red]")
        sys.exit(1)

    console.print(Panel(generated.summary, title=f"[bold]{generated.title}[/bold]", subtitle=f"{generated.reading_time_minutes} min read"))
    for number, chapter in enumerate(generated.chapters, 1):
        console.print(f"\n[bold cyan]{number}. {chapter.title}[/bold cyan]")
        console.print(chapter.content)
        if chapter.image_url:
            shown = chapter.image_url if not chapter.image_url.startswith("data:") else "inline image data"
            console.print(f"[dim]Illustration: {shown}[/dim]")
        elif chapter.image_prompt:
            console.print(f"[dim]Illustration prompt: {chapter.image_prompt}[/dim]")

    if output:
        Path(output).write_text(json.dumps(generated.model_dump(mode="json"), indent=2), encoding="utf-8")
        console.print(f"\n[green]Story saved to {output}[/green]")


@cli.command()
@click.option('--host', default='127.0.0.1', show_default=True, help='Host to bind to')
@click.option('--port', default=8000, type=int, show_default=True, help='Port to bind to')
def serve(host, port):
    """Run the web API."""
    import uvicorn

    from storyloom.web.app import create_app

    console.print(f"[green]Serving Storyloom API on http://{host}:{port}[/green]")
    uvicorn.run(create_app(_build_service()), host=host, port=port)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
