"""Entry-point for the MediaHub service."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer
import uvicorn
from rich.console import Console

from mediahub.bootstrap import initialize_app
from mediahub.config import AppConfig
from mediahub.errors import MediaHubError
from mediahub.logging_utils import build_default_handlers, configure_logging
from mediahub.processing import RandomSensitivityAnalyzer
from mediahub.services.media_store import FilesystemMediaStore
from mediahub.services.notifications import NotificationBus, ProcessingEvent
from mediahub.services.pipeline import ProcessingPipeline
from mediahub.services.storage import MediaRepository
from mediahub.ui.overview import OverviewUI
from mediahub.web import create_app


LOGGER = logging.getLogger("mediahub.cli")


cli = typer.Typer(add_completion=False, help="MediaHub management commands")


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_default_handlers(storage_root / "mediahub.log"))


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="MEDIAHUB_ROOT_PATH",
    ),
) -> None:
    """Run the streaming and notification server."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    repository = MediaRepository(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(repository, config=app_config, root_path=normalized_root)

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving MediaHub on http://%s:%s%s/", host, port, normalized_root)
    server.run()


@cli.command()
def register(
    source: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="Path to the media file to register",
    ),
    owner: str = typer.Option(..., "--owner", help="Identifier of the uploading user"),
    title: str = typer.Option("", help="Display title"),
) -> None:
    """Copy a file into the media store and register it as pending."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = MediaRepository(config)
    store = FilesystemMediaStore(config.media_root)
    try:
        location_ref, size_bytes, content_type = store.import_file(source, owner_id=owner)
    except MediaHubError as error:
        typer.echo(f"Could not register {source}: {error}", err=True)
        raise typer.Exit(code=1) from error
    media_id = repository.add_media(
        owner_id=owner,
        location_ref=location_ref,
        content_type=content_type,
        size_bytes=size_bytes,
        title=title or source.stem,
    )
    typer.echo(media_id)


async def _process_once(
    config: AppConfig,
    repository: MediaRepository,
    media_id: str,
    owner_id: str,
    *,
    reprocess: bool,
) -> List[ProcessingEvent]:
    bus = NotificationBus(queue_size=config.notification_queue_size)
    pipeline = ProcessingPipeline(
        repository,
        bus,
        RandomSensitivityAnalyzer(),
        total_steps=config.processing_steps,
        step_delay_seconds=config.step_delay_seconds,
        analysis_timeout_seconds=config.analysis_timeout_seconds,
    )
    events: List[ProcessingEvent] = []
    async with bus.subscription(owner_id) as subscription:
        if reprocess:
            task = pipeline.reprocess(media_id, owner_id)
        else:
            task = pipeline.start(media_id, owner_id)
        if task is not None:
            await task
        while subscription.pending():
            events.append(subscription.get_nowait())
    return events


@cli.command()
def process(
    media_id: str = typer.Argument(..., help="Identifier of the media record"),
    reprocess: bool = typer.Option(False, "--reprocess", help="Re-open a finished record first"),
) -> None:
    """Run the processing pipeline for one record in the foreground."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = MediaRepository(config)
    record = repository.get_media(media_id)
    if record is None:
        typer.echo(f"Media record '{media_id}' not found", err=True)
        raise typer.Exit(code=1)

    events = asyncio.run(
        _process_once(config, repository, media_id, record.owner_id, reprocess=reprocess)
    )
    console = Console()
    for event in events:
        if event.kind == "progress":
            console.print(
                f"[cyan]{event.payload['progressPercent']:>3}%[/] {event.payload['phaseMessage']}"
            )
        elif event.kind == "complete":
            console.print(
                f"[green]Finished[/] as [bold]{event.payload['finalState']}[/] "
                f"(score {event.payload['score']})"
            )
        elif event.kind == "error":
            console.print(f"[red]Failed[/]: {event.payload['message']}")

    final = repository.require_media(media_id)
    if final.state == "error":
        raise typer.Exit(code=1)


@cli.command()
def overview(
    owner: Optional[str] = typer.Option(None, "--owner", help="Only show this owner's media"),
) -> None:
    """Render an overview of registered media."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    repository = MediaRepository(config)
    OverviewUI(repository).run(owner_id=owner)


if __name__ == "__main__":
    cli()
