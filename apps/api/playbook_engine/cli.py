"""CLI entrypoint (Typer).

- `playbook-engine serve`                 run the API
- `playbook-engine worker`                poll and process QUEUED runs
- `playbook-engine process-run RUN_ID`    process one run now
- `playbook-engine init-db`               create tables
- `playbook-engine work-queue PROJECT_ID --user USER_ID [--tab]`
"""

from __future__ import annotations

import asyncio
import json
import logging

import typer

from playbook_engine.api.main import configure_logging
from playbook_engine.config import get_settings
from playbook_engine.database.session import close_db, init_db
from playbook_engine.errors import PlaybookError
from playbook_engine.schemas import WorkQueueTab
from playbook_engine.services import build_services


logger = logging.getLogger(__name__)

app = typer.Typer(help="Playbook Engine CLI.")


@app.callback()
def main(debug: bool = typer.Option(False, "--debug", help="Verbose logging.")):
    configure_logging(debug or get_settings().debug)


@app.command()
def serve(
    host: str = typer.Option(None, "--host"),
    port: int = typer.Option(None, "--port"),
):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "playbook_engine.api.main:app_factory",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=settings.debug,
    )


@app.command()
def worker(once: bool = typer.Option(False, "--once", help="Drain QUEUED runs and exit.")):
    """Process QUEUED runs with a bounded worker pool."""

    async def _run() -> None:
        services = build_services()
        pool = services.worker()
        try:
            if once:
                count = await pool.run_once()
                typer.echo(f"Processed {count} run(s)")
                return
            await pool.start()
            await asyncio.Event().wait()
        finally:
            await pool.stop()
            await services.close()
            await close_db()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("Worker stopped")


@app.command("process-run")
def process_run(run_id: str):
    """Process a single run now."""

    async def _run():
        services = build_services()
        try:
            return await services.processor.process(run_id)
        finally:
            await services.close()
            await close_db()

    try:
        run = asyncio.run(_run())
    except PlaybookError as e:
        typer.echo(f"Run {run_id} ended with {e.code}: {e.message}", err=True)
        raise typer.Exit(code=1)

    if run is None:
        typer.echo(f"Run {run_id} was not QUEUED; nothing to do")
    else:
        typer.echo(f"Run {run_id}: {run.status.value}")


@app.command("init-db")
def init_db_command():
    """Create all tables (development only; use migrations in production)."""

    async def _run() -> None:
        try:
            await init_db()
        finally:
            await close_db()

    asyncio.run(_run())
    typer.echo("Database initialized")


@app.command("work-queue")
def work_queue(
    project_id: str,
    user_id: str = typer.Option(..., "--user"),
    tab: WorkQueueTab = typer.Option(None, "--tab"),
):
    """Print the ranked work queue as JSON."""

    async def _run():
        services = build_services()
        try:
            return await services.work_queue.get_work_queue(project_id, user_id, tab=tab)
        finally:
            await services.close()
            await close_db()

    try:
        response = asyncio.run(_run())
    except PlaybookError as e:
        typer.echo(json.dumps(e.to_payload()), err=True)
        raise typer.Exit(code=1)

    typer.echo(response.model_dump_json(by_alias=True, indent=2))


if __name__ == "__main__":
    app()
