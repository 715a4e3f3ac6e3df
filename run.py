"""Entry-point for the CourseDB service."""

from __future__ import annotations

import inspect
import logging
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from coursedb.bootstrap import initialize_app
from coursedb.context import AppContext
from coursedb.errors import CourseError
from coursedb.logging_utils import DEFAULT_LOG_FORMAT, configure_logging, get_log_file_path
from coursedb.services.artifacts import COURSE_FORMATS, Representation
from coursedb.services.storage import Difficulty
from coursedb.ui.overview import OverviewUI
from coursedb.web import create_app
from coursedb.web.server import get_max_upload_bytes


LOGGER = logging.getLogger("coursedb.cli")


cli = typer.Typer(add_completion=False, help="CourseDB management commands")


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(storage_root: Path) -> None:
    log_file = get_log_file_path(storage_root)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    configure_logging(handlers=[file_handler, stream_handler])


def _build_context() -> AppContext:
    config = initialize_app()
    _prepare_logging(config.storage_root)
    return AppContext.build(config)


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip().rstrip("/")
    if normalized and not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized


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
        envvar="COURSEDB_ROOT_PATH",
    ),
) -> None:
    """Serve the course API."""

    context = _build_context()
    normalized_root = _normalize_root_path(root_path)
    app = create_app(context, root_path=normalized_root)

    config_kwargs = {}
    max_upload_bytes = get_max_upload_bytes()
    if max_upload_bytes > 0:
        config_signature = inspect.signature(uvicorn.Config.__init__)
        if "limit_max_request_size" in config_signature.parameters:
            config_kwargs["limit_max_request_size"] = max_upload_bytes
        else:
            LOGGER.debug(
                "uvicorn.Config has no 'limit_max_request_size'; relying on the "
                "application-level upload limit",
            )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
        **config_kwargs,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving %d indexed course(s) on %s:%s", len(context.index), host, port)
    server.run()


@cli.command()
def ingest(
    archive: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="Course archive to upload",
    ),
    owner: str = typer.Option(..., help="Account id recorded as the uploader"),
    difficulty: Optional[Difficulty] = typer.Option(None, help="Difficulty for every course"),
) -> None:
    """Upload every course of an archive, rejecting near-duplicates."""

    context = _build_context()
    try:
        result = context.ingestor.ingest_upload(
            archive.read_bytes(), owner=owner, difficulty=difficulty
        )
    except CourseError as error:
        typer.echo(f"Upload rejected: {error}", err=True)
        raise typer.Exit(code=1) from error

    for record in result.succeeded:
        typer.echo(f"Accepted #{record.id}: {record.title}")
    for failure in result.failed:
        typer.echo(f"Rejected '{failure.title}': {failure.error}", err=True)
    typer.echo(f"{len(result.succeeded)} accepted, {len(result.failed)} rejected.")
    if result.failed and not result.succeeded:
        raise typer.Exit(code=1)


@cli.command()
def overview(
    owner: Optional[str] = typer.Option(None, help="Only show courses of this owner"),
    limit: Optional[int] = typer.Option(None, min=1, help="Maximum number of courses"),
) -> None:
    """Render an overview of stored courses."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    context = AppContext.build(config, rebuild=False)
    OverviewUI(context.repository).run(owner=owner, limit=limit)


@cli.command()
def export(
    course_id: int = typer.Argument(..., help="Course id"),
    output: Path = typer.Option(..., "--output", "-o", dir_okay=False, help="Destination file"),
    representation: Representation = typer.Option(
        Representation.COMPRESSED, help="Representation to export"
    ),
    bundle: bool = typer.Option(
        False, help="Write a download archive with the course data and its thumbnail"
    ),
) -> None:
    """Write a stored or derived representation of a course to disk."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    context = AppContext.build(config, rebuild=False)
    if bundle and representation not in COURSE_FORMATS:
        typer.echo(f"{representation.value} cannot be bundled", err=True)
        raise typer.Exit(code=2)
    try:
        if bundle:
            data = context.artifacts.build_bundle(course_id, representation)
        else:
            data = context.artifacts.get(course_id, representation)
    except CourseError as error:
        typer.echo(f"Export failed: {error}", err=True)
        raise typer.Exit(code=1) from error

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(data)
    typer.echo(f"Wrote {len(data)} bytes to {output}")


if __name__ == "__main__":
    cli()
