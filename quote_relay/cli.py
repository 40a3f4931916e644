"""Command-line interface for quote-relay.

Operator commands that work directly on the job database, without going
through the HTTP API.

Usage:
    quote-relay --db /data/db.sqlite init
    quote-relay jobs list --status error
    quote-relay jobs show <id>
    quote-relay jobs retry [ID ...]
    quote-relay jobs delete ID [ID ...]
    quote-relay jobs reset-abandoned
    quote-relay jobs purge --status done --older-than-hours 72
    quote-relay stats
    quote-relay webhook
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime
from typing import Any, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from quote_relay.models import Job, JobStatus
from quote_relay.persistence import JobStore, now_ms

console = Console()
err_console = Console(stderr=True)


def get_store(db_path: str) -> JobStore:
    """Create a JobStore for the given database path."""
    return JobStore(db_path)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _fmt_ts(value: Optional[int]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


_STATUS_STYLE = {
    JobStatus.PENDING: "yellow",
    JobStatus.PROCESSING: "blue",
    JobStatus.DONE: "green",
    JobStatus.ERROR: "red",
}


@click.group()
@click.option(
    "--db",
    "db_path",
    envvar="QR_DB_PATH",
    default="/data/db.sqlite",
    show_default=True,
    help="Path of the SQLite job database.",
)
@click.pass_context
def main(ctx: click.Context, db_path: str) -> None:
    """quote-relay CLI - inspect and operate the durable job queue."""
    ctx.ensure_object(dict)
    ctx.obj["store"] = get_store(db_path)


@main.command("init")
@click.pass_obj
def init(obj: dict) -> None:
    """Create the job table if it does not exist."""
    store: JobStore = obj["store"]
    run_async(store.init_db())
    print_success(f"Database ready at {store.db_path}")


@main.group("jobs")
def jobs() -> None:
    """Inspect and manage jobs."""


@jobs.command("list")
@click.option("--status", "-s", type=click.Choice([s.value for s in JobStatus]), help="Only jobs in this status.")
@click.option("--limit", "-n", type=int, default=None, help="Maximum number of jobs.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def jobs_list(obj: dict, status: Optional[str], limit: Optional[int], as_json: bool) -> None:
    """List jobs, oldest first."""
    store: JobStore = obj["store"]

    async def _list():
        await store.init_db()
        return await store.list_jobs(status=JobStatus(status) if status else None, limit=limit)

    job_list = run_async(_list())

    if as_json:
        print_json([job.model_dump(mode="json") for job in job_list])
        return

    if not job_list:
        console.print("[dim]No jobs found.[/dim]")
        return

    table = Table(title="Jobs")
    table.add_column("ID", style="cyan", overflow="fold")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Next run")
    table.add_column("Subject")
    table.add_column("Result", overflow="ellipsis", max_width=50)

    for job in job_list:
        style = _STATUS_STYLE.get(job.status, "white")
        table.add_row(
            job.id,
            f"[{style}]{job.status.value}[/{style}]",
            str(job.attempts),
            _fmt_ts(job.next_run_at),
            str(job.payload.get("subject") or "-"),
            job.result or "-",
        )

    console.print(table)


@jobs.command("show")
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def jobs_show(obj: dict, job_id: str, as_json: bool) -> None:
    """Show details for a specific job."""
    store: JobStore = obj["store"]
    job: Optional[Job] = run_async(store.get_job(job_id))

    if job is None:
        print_error(f"Job '{job_id}' not found.")
        sys.exit(1)

    if as_json:
        print_json(job.model_dump(mode="json"))
        return

    source = job.source
    console.print(f"\n[bold cyan]Job: {job.id}[/bold cyan]\n")
    console.print(f"  Status:     {job.status.value}")
    console.print(f"  Attempts:   {job.attempts}")
    console.print(f"  Created:    {_fmt_ts(job.created_at)}")
    console.print(f"  Next run:   {_fmt_ts(job.next_run_at)}")
    console.print(f"  Source:     {source.kind if source else '-'}")
    console.print(f"  From:       {job.payload.get('from') or '-'}")
    console.print(f"  Subject:    {job.payload.get('subject') or '-'}")
    console.print(f"  Result:     {job.result or '-'}")
    console.print()


@jobs.command("retry")
@click.argument("job_ids", nargs=-1)
@click.pass_obj
def jobs_retry(obj: dict, job_ids: Tuple[str, ...]) -> None:
    """Return jobs in error to pending (all of them when no id is given)."""
    store: JobStore = obj["store"]
    count = run_async(store.reset_errors(list(job_ids) if job_ids else None))
    print_success(f"{count} job(s) scheduled for retry.")


@jobs.command("delete")
@click.argument("job_ids", nargs=-1, required=True)
@click.pass_obj
def jobs_delete(obj: dict, job_ids: Tuple[str, ...]) -> None:
    """Delete jobs regardless of their status."""
    store: JobStore = obj["store"]

    async def _delete():
        return [jid for jid in job_ids if not await store.delete_job(jid)]

    missing = run_async(_delete())
    print_success(f"{len(job_ids) - len(missing)} job(s) deleted.")
    if missing:
        print_error(f"Not found: {', '.join(missing)}")
        sys.exit(1)


@jobs.command("reset-abandoned")
@click.pass_obj
def jobs_reset_abandoned(obj: dict) -> None:
    """Return jobs stuck in processing to pending. Run only while the relay is stopped."""
    store: JobStore = obj["store"]
    count = run_async(store.reset_abandoned())
    print_success(f"{count} job(s) returned to pending.")


@jobs.command("purge")
@click.option(
    "--status",
    "-s",
    type=click.Choice([JobStatus.DONE.value, JobStatus.ERROR.value]),
    default=JobStatus.DONE.value,
    show_default=True,
)
@click.option("--older-than-hours", type=float, default=72.0, show_default=True)
@click.pass_obj
def jobs_purge(obj: dict, status: str, older_than_hours: float) -> None:
    """Delete finished jobs older than the given age."""
    store: JobStore = obj["store"]
    cutoff = now_ms() - int(older_than_hours * 3600 * 1000)
    count = run_async(store.purge(JobStatus(status), cutoff))
    print_success(f"{count} {status} job(s) purged.")


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def stats(obj: dict, as_json: bool) -> None:
    """Show job counts per status."""
    store: JobStore = obj["store"]

    async def _stats():
        await store.init_db()
        return await store.count_by_status()

    counts = run_async(_stats())
    data = {"total": sum(counts.values()), **counts}

    if as_json:
        print_json(data)
        return

    console.print("\n[bold]Job queue[/bold]\n")
    console.print(f"  Total:      {data['total']}")
    for status in JobStatus:
        console.print(f"  {status.value.capitalize() + ':':<11} {counts[status.value]}")
    console.print()


@main.command("webhook")
@click.option("--log-level", default="INFO", show_default=True)
def webhook(log_level: str) -> None:
    """Run the quote webhook service."""
    from quote_relay.settings import load_webhook_settings
    from quote_relay.webhook import serve

    serve(load_webhook_settings(), log_level=log_level)


if __name__ == "__main__":
    main()
