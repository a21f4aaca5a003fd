"""Command-line interface for cloudrelay.

This module provides the main CLI entry point and assembles all commands.

Commands:
- serve: Run the HTTP API (optionally with the engine in-process)
- worker: Run the lease scheduler and worker pool
- purge: Delete finished jobs past retention
- enqueue: Submit a transfer or sync job
- status: Show a job, or list jobs
- cancel: Request cancellation of a job
- versions: Show a file's version chain
"""

from __future__ import annotations

import click

from cloudrelay.client.cli.jobs import cancel, enqueue, status, versions
from cloudrelay.client.cli.server import purge, serve, worker


@click.group()
@click.version_option(package_name="cloudrelay")
def cli() -> None:
    """cloudrelay - Cloud-to-cloud transfer and synchronization jobs."""


# Engine commands
cli.add_command(serve)
cli.add_command(worker)
cli.add_command(purge)

# Job commands
cli.add_command(enqueue)
cli.add_command(status)
cli.add_command(cancel)
cli.add_command(versions)


def main() -> None:
    """Main entry point."""
    cli()


__all__ = ["cli", "main"]
