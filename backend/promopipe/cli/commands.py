"""CLI commands for promopipe using Typer and Rich.

- generate: Submit a run from a JSON request file and follow its progress
- status: Show the stored record of a finished run
- list: List recent runs for an owner
- queues: Show configured queues and their limits
- serve: Start the API server
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path

import pydantic
import typer
from rich.console import Console
from rich.table import Table

from promopipe import validate_dependencies
from promopipe.config import settings
from promopipe.db import RunRepository, SqlJobStore, async_session, init_database, shutdown
from promopipe.errors import ConfigurationError, ValidationError
from promopipe.orchestrator.factory import build_runtime
from promopipe.orchestrator.state import RunStage, is_terminal
from promopipe.schemas.pipeline import PipelineRequest, PipelineRun

app = typer.Typer(name="promopipe", help="Marketing video generation pipeline")
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def generate(
    request_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON pipeline request"),
    owner: str = typer.Option("cli", "--owner", "-o", help="Owner id recorded on the run"),
    platform: str = typer.Option(None, "--platform", "-p", help="youtube, instagram or tiktok"),
):
    """Generate a marketing video from a request file.

    The file holds subject, marketing_idea and image_urls, plus optional
    style, platform, music_theme and custom_prompts.
    """
    try:
        validate_dependencies()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    try:
        data = json.loads(request_file.read_text())
        if platform:
            data["platform"] = platform
        request = PipelineRequest.model_validate(data)
    except (json.JSONDecodeError, pydantic.ValidationError) as e:
        console.print(f"[red]Error:[/red] Invalid request file: {e}")
        raise typer.Exit(code=1)

    asyncio.run(_generate_async(request, owner))


async def _generate_async(request: PipelineRequest, owner: str):
    """Async implementation of generate command."""
    await init_database()
    try:
        runtime = build_runtime(
            settings,
            store=SqlJobStore(async_session),
            run_repository=RunRepository(async_session),
        )
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        await shutdown()
        raise typer.Exit(code=1)

    await runtime.start()
    try:
        try:
            run_id = await runtime.orchestrator.submit_pipeline(owner, request)
        except ValidationError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(code=1)
        console.print(f"[green]Created run:[/green] {run_id}")
        console.print()

        with console.status("[bold green]Starting pipeline...") as status:
            while True:
                run = await runtime.orchestrator.get_status(run_id)
                if run is not None:
                    status.update(f"[bold green]{run.current_step} ({run.progress}%)")
                    if is_terminal(run.stage):
                        break
                await asyncio.sleep(1.0)
        run = await runtime.orchestrator.wait(run_id)

        if run.stage == RunStage.COMPLETED:
            console.print("[green]✓[/green] Video generation complete!")
            console.print(f"[green]Video:[/green] {run.final_url}")
            console.print(f"[green]Thumbnail:[/green] {run.thumbnail_url}")
        elif run.stage == RunStage.CANCELLED:
            console.print("[yellow]Pipeline cancelled[/yellow]")
            raise typer.Exit(code=130)
        else:
            console.print(f"[red]✗ Pipeline failed:[/red] {run.error.type}: {run.error.message}")
            console.print(f"[red]Stage:[/red] {run.error.stage}")
            raise typer.Exit(code=1)

    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Pipeline interrupted.[/yellow]")
        raise typer.Exit(code=130)
    finally:
        await runtime.stop()
        await shutdown()


@app.command()
def status(run_id: str = typer.Argument(..., help="Run id")):
    """Show the stored record of a run."""
    asyncio.run(_status_async(run_id))


async def _status_async(run_id: str):
    await init_database()
    try:
        run = await RunRepository(async_session).get(run_id)
    finally:
        await shutdown()
    if run is None:
        console.print(f"[red]Error:[/red] Run {run_id} not found")
        raise typer.Exit(code=1)
    _print_run(run)


def _print_run(run: PipelineRun) -> None:
    color = _get_status_color(run.stage)
    console.print(f"[bold]Run:[/bold] {run.run_id}")
    console.print(f"[bold]Owner:[/bold] {run.owner_id}")
    console.print(f"[bold]Stage:[/bold] [{color}]{run.stage.value}[/{color}] ({run.progress}%)")
    console.print(f"[bold]Platform:[/bold] {run.platform}")
    if run.scenes:
        table = Table(show_header=True, header_style="bold blue")
        table.add_column("#", style="dim")
        table.add_column("Description")
        table.add_column("Camera")
        table.add_column("Mood")
        table.add_column("Duration")
        for scene in run.scenes:
            desc = scene.description if len(scene.description) <= 60 else scene.description[:57] + "..."
            table.add_row(
                str(scene.scene_number), desc, scene.camera_movement, scene.mood, f"{scene.duration}s",
            )
        console.print(table)
    if run.final_url:
        console.print(f"[green]Video:[/green] {run.final_url}")
    if run.thumbnail_url:
        console.print(f"[green]Thumbnail:[/green] {run.thumbnail_url}")
    if run.error:
        console.print(f"[red]Error:[/red] {run.error.type}: {run.error.message} (stage {run.error.stage})")


@app.command(name="list")
def list_runs(owner: str = typer.Option("cli", "--owner", "-o", help="Owner id")):
    """List recent runs for an owner."""
    asyncio.run(_list_async(owner))


async def _list_async(owner: str):
    await init_database()
    try:
        runs = await RunRepository(async_session).list_for_owner(owner)
    finally:
        await shutdown()

    if not runs:
        console.print("[yellow]No runs found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Stage")
    table.add_column("Progress")
    table.add_column("Platform")
    table.add_column("Created")
    for run in runs:
        color = _get_status_color(run.stage)
        table.add_row(
            run.run_id[:8] + "...",
            f"[{color}]{run.stage.value}[/{color}]",
            f"{run.progress}%",
            run.platform,
            datetime.fromtimestamp(run.created_at).strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def queues():
    """Show configured queues with their concurrency and rate limits."""
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Queue")
    table.add_column("Concurrency", justify="right")
    table.add_column("Rate limit")
    table.add_column("Keep finished")
    for name, cfg in settings.queues.items():
        if cfg.limiter_max:
            limit = f"{cfg.limiter_max} per {cfg.limiter_duration_ms / 1000:g}s"
        else:
            limit = "-"
        keep = "forever" if cfg.retention_seconds is None else f"{cfg.retention_seconds:g}s"
        table.add_row(name, str(cfg.concurrency), limit, keep)
    console.print(table)
    console.print(
        f"Retries: {settings.retry.max_attempts} attempts, "
        f"backoff {settings.retry.base_delay:g}s x2 up to {settings.retry.max_delay:g}s"
    )


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Bind address"),
    port: int = typer.Option(None, "--port", help="Port"),
):
    """Start the API server."""
    import uvicorn

    uvicorn.run(
        "promopipe.api.app:app",
        host=host or settings.server.host,
        port=port or settings.server.port,
        reload=False,
    )


def _get_status_color(stage: RunStage) -> str:
    """Get Rich color for a run stage.

    Color coding:
    - completed: green
    - failed: red
    - cancelled: dim
    - in-progress stages: yellow
    """
    if stage == RunStage.COMPLETED:
        return "green"
    elif stage == RunStage.FAILED:
        return "red"
    elif stage in (RunStage.CANCELLED, RunStage.QUEUED):
        return "dim"
    else:
        return "yellow"


if __name__ == "__main__":
    app()
