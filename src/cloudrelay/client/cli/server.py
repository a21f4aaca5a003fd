"""Engine commands for cloudrelay CLI.

Commands:
- serve: Run the HTTP API
- worker: Run the lease scheduler and worker pool until interrupted
- purge: Delete finished jobs older than the retention period
"""

from __future__ import annotations

import sys
import time
from datetime import timedelta
from pathlib import Path

import click


@click.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port.")
def serve(host: str, port: int) -> None:
    """Run the HTTP API server.

    Configuration is read from CLOUDRELAY_* environment variables.
    """
    import uvicorn

    uvicorn.run("cloudrelay.server.app:app_factory", factory=True, host=host, port=port)


@click.command()
@click.option(
    "--concurrency",
    "-c",
    type=click.IntRange(min=1),
    default=None,
    help="Jobs executed at once (default: CLOUDRELAY_CONCURRENCY or 5).",
)
def worker(concurrency: int | None) -> None:
    """Lease and execute jobs until interrupted.

    Several worker processes may share one database; each job is leased
    by exactly one of them at a time.
    """
    from cloudrelay.core.config import EngineConfig
    from cloudrelay.engine.providers import local_registry
    from cloudrelay.server.app import build_engine, setup_logging
    from cloudrelay.server.database import Database

    try:
        config = EngineConfig.from_env()
        if concurrency is not None:
            config.global_concurrency = concurrency
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    setup_logging(config.log_path)
    db = Database(config.db_path)
    providers = local_registry(config.provider_root)
    engine = build_engine(db, config, providers)

    click.echo(f"Worker {config.worker_id} started")
    click.echo(f"Providers: {', '.join(providers.names()) or '(none)'}")
    engine.start()
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        click.echo("\nStopping worker...")
    finally:
        engine.stop()
        db.close()


@click.command()
@click.option(
    "--older-than-hours",
    type=float,
    default=None,
    help="Delete jobs finished more than N hours ago (default: CLOUDRELAY_RETENTION_HOURS or 24).",
)
@click.option(
    "--db-path",
    type=click.Path(),
    default=None,
    help="Path to database file (default: CLOUDRELAY_DB_PATH or ./cloudrelay.db).",
)
def purge(older_than_hours: float | None, db_path: str | None) -> None:
    """Purge finished jobs.

    Deletes completed, failed and cancelled jobs together with their runs.
    File mappings and version history are kept.

    Examples:

        # Purge using configured retention
        cloudrelay purge

        # Purge everything finished more than an hour ago
        cloudrelay purge --older-than-hours 1
    """
    from cloudrelay.core.config import EngineConfig
    from cloudrelay.server.database import Database
    from cloudrelay.server.jobs import JobStore

    config = EngineConfig.from_env()
    db_file = Path(db_path) if db_path else config.db_path
    hours = older_than_hours if older_than_hours is not None else config.retention_hours

    if not db_file.exists():
        click.echo(f"Error: Database not found: {db_file}", err=True)
        sys.exit(1)

    click.echo(f"Database: {db_file}")
    click.echo(f"Purging jobs finished more than {hours:g} hours ago...")

    db = Database(db_file)
    try:
        deleted = JobStore(db, config=config).purge_finished(timedelta(hours=hours))
        if deleted > 0:
            click.echo(f"Purged {deleted} jobs.")
        else:
            click.echo("No jobs to purge.")
    finally:
        db.close()
