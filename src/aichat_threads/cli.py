"""CLI entry point for aichat-threads."""

import asyncio
import logging
from pathlib import Path

import click
import uvicorn

from .config import get_workspace_root
from .export import thread_to_json, thread_to_markdown
from .store import ThreadStore

LOG_LEVELS = ["debug", "info", "warning", "error"]


def _load_store(workspace: Path | None) -> ThreadStore:
    store = ThreadStore(workspace or get_workspace_root())
    asyncio.run(store.load())
    return store


@click.group()
@click.option("--log-level", default="info", type=click.Choice(LOG_LEVELS), help="Logging verbosity.")
@click.pass_context
def main(ctx: click.Context, log_level: str):
    """Persist chat threads and stream assistant replies."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Workspace root holding the threads file (default: $AICHAT_WORKSPACE_ROOT or cwd).",
)
@click.pass_context
def serve(ctx: click.Context, port: int, host: str, workspace: Path | None):
    """Start the HTTP API."""
    from . import server

    server.configure(store=ThreadStore(workspace or get_workspace_root()))
    click.echo(f"Starting aichat-threads on http://{host}:{port}")
    uvicorn.run(server.app, host=host, port=port, reload=False, log_level=ctx.obj["log_level"])


@main.command()
@click.option("--workspace", type=click.Path(file_okay=False, path_type=Path), default=None)
def threads(workspace: Path | None):
    """List threads, most recently updated first."""
    store = _load_store(workspace)
    summaries = store.get_thread_list()
    if not summaries:
        click.echo("No threads.")
        return
    for s in summaries:
        updated = s.updated_at.strftime("%Y-%m-%d %H:%M")
        click.echo(f"{s.id}  {updated}  {s.message_count:>4} msgs  {s.name}")


@main.command()
@click.argument("thread_id")
@click.option("--format", "fmt", default="md", type=click.Choice(["md", "json"]), help="Export format.")
@click.option("--workspace", type=click.Path(file_okay=False, path_type=Path), default=None)
def export(thread_id: str, fmt: str, workspace: Path | None):
    """Print a thread as Markdown or JSON."""
    store = _load_store(workspace)
    thread = store.get_thread(thread_id)
    if thread is None:
        raise click.ClickException(f"Thread not found: {thread_id}")
    click.echo(thread_to_json(thread) if fmt == "json" else thread_to_markdown(thread))
