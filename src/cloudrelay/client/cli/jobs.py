"""Job commands for cloudrelay CLI.

Commands:
- enqueue: Submit a transfer or sync job
- status: Show one job with its latest run, or list jobs
- cancel: Request cancellation of a job
- versions: Show the version chain of a synchronized file

All commands talk to the server over HTTP. The server URL and user id come
from --server/--user or CLOUDRELAY_SERVER_URL/CLOUDRELAY_USER_ID.
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from functools import wraps
from typing import Any

import click

from cloudrelay.client.api import APIError, RelayClient, RemoteJob

DEFAULT_SERVER_URL = "http://127.0.0.1:8000"


def client_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Add --server and --user options and pass a RelayClient as ``client``."""

    @click.option(
        "--server",
        "server_url",
        envvar="CLOUDRELAY_SERVER_URL",
        default=DEFAULT_SERVER_URL,
        show_default=True,
        help="Server URL.",
    )
    @click.option(
        "--user",
        "user_id",
        envvar="CLOUDRELAY_USER_ID",
        required=True,
        help="User id sent with every request.",
    )
    @wraps(func)
    def wrapper(server_url: str, user_id: str, **kwargs: Any) -> None:
        with RelayClient(server_url, user_id) as client:
            try:
                func(client=client, **kwargs)
            except APIError as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)

    return wrapper


def _format_job(job: RemoteJob) -> list[str]:
    lines = [
        f"Job:      {job.id}",
        f"Status:   {job.status}",
        f"Mode:     {job.mode} ({job.item_kind})",
        f"Route:    {job.source_provider}:{job.source_item_id} -> "
        f"{job.dest_provider}:{job.dest_folder_id}",
        f"Progress: {job.progress_pct}% ({job.completed_items}/{job.total_items} items)",
        f"Attempts: {job.attempts}/{job.max_retries}",
    ]
    if job.cancel_requested and job.status == "running":
        lines.append("Cancellation requested")
    if job.error_code:
        lines.append(f"Error:    [{job.error_code}] {job.error_message or ''}")
    if job.result_item_name:
        lines.append(f"Result:   {job.result_item_name}")
    run = job.latest_run
    if run is not None:
        lines.append(
            f"Last run: {run.status} - {run.files_new} new, {run.files_modified} modified, "
            f"{run.files_skipped} skipped, {run.files_failed} failed, "
            f"{run.files_deleted} deleted, {run.bytes_transferred} bytes"
        )
    return lines


@click.command()
@click.argument("source")
@click.argument("destination")
@click.option(
    "--kind",
    type=click.Choice(["file", "folder"]),
    default="file",
    show_default=True,
    help="Whether SOURCE is a file or a folder.",
)
@click.option(
    "--mode",
    type=click.Choice(["one_shot_copy", "cumulative_sync", "mirror"]),
    default="one_shot_copy",
    show_default=True,
    help="Transfer policy.",
)
@click.option("--priority", type=int, default=0, help="Higher runs first.")
@click.option("--max-retries", type=int, default=None, help="Attempt budget for the job.")
@click.option(
    "--on-duplicate",
    "duplicate_action",
    type=click.Choice(["skip", "replace", "copy_with_suffix"]),
    default="skip",
    show_default=True,
    help="What to do with an existing same-named destination file.",
)
@client_options
def enqueue(
    client: RelayClient,
    source: str,
    destination: str,
    kind: str,
    mode: str,
    priority: int,
    max_retries: int | None,
    duplicate_action: str,
) -> None:
    """Submit a job copying SOURCE into DESTINATION.

    Both are given as PROVIDER:ITEM_ID, DESTINATION naming a folder.

    Examples:

        cloudrelay enqueue --user alice drive:reports/q3.pdf box:root

        cloudrelay enqueue --user alice --kind folder --mode mirror drive:photos box:backup
    """
    src_provider, _, src_item = source.partition(":")
    dst_provider, _, dst_folder = destination.partition(":")
    if not src_item or not dst_folder:
        raise click.BadParameter("expected PROVIDER:ITEM_ID")

    job = client.enqueue(
        source_provider=src_provider,
        dest_provider=dst_provider,
        source_item_id=src_item,
        dest_folder_id=dst_folder,
        item_kind=kind,
        mode=mode,
        priority=priority,
        max_retries=max_retries,
        duplicate_action=duplicate_action,
    )
    click.echo(f"Enqueued job {job.id} ({job.status})")


@click.command()
@click.argument("job_id", required=False)
@click.option("--filter", "status_filter", default=None, help="Only list jobs with this status.")
@client_options
def status(client: RelayClient, job_id: str | None, status_filter: str | None) -> None:
    """Show JOB_ID in detail, or list your jobs."""
    if job_id:
        for line in _format_job(client.get_job(job_id)):
            click.echo(line)
        return

    jobs = client.list_jobs(status=status_filter)
    if not jobs:
        click.echo("No jobs.")
        return
    for job in jobs:
        click.echo(f"{job.id}  {job.status:<10} {job.progress_pct:>3}%  {job.mode:<16} {job.source_item_id}")


@click.command()
@click.argument("job_id")
@client_options
def cancel(client: RelayClient, job_id: str) -> None:
    """Request cancellation of JOB_ID.

    A pending job is cancelled at once; a running job stops at its next
    item boundary.
    """
    job = client.cancel(job_id)
    if job.status == "cancelled":
        click.echo(f"Job {job.id} cancelled")
    elif job.status == "running":
        click.echo(f"Cancellation requested for job {job.id}")
    else:
        click.echo(f"Job {job.id} already {job.status}")


@click.command()
@click.argument("file_id", type=int)
@client_options
def versions(client: RelayClient, file_id: int) -> None:
    """Show the version chain of FILE_ID, newest first."""
    chain = client.file_versions(file_id)
    if not chain:
        click.echo("No versions.")
        return
    for v in chain:
        size = f"{v.size} bytes" if v.size is not None else "-"
        click.echo(f"v{v.version:<4} {v.change_type:<12} {size:<16} {v.created_at.isoformat()}  {v.detail}")
