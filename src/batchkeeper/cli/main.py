import asyncio
import json
import logging
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from batchkeeper.cli.callbacks import env_file_callback, processing_type_callback
from batchkeeper.config import Settings
from batchkeeper.db.crud import (
    bulk_update_request_status,
    create_processing_request,
    create_tenant,
    get_batch_jobs,
    get_batch_processing_stats,
    get_processing_requests,
    get_token_usage,
)
from batchkeeper.db.session import Database
from batchkeeper.logging import setup_logging
from batchkeeper.metrics import UsageTotals, estimate_cost
from batchkeeper.scheduler import BatchScheduler, Cadence, build_scheduler
from batchkeeper.status import ProcessingType, RequestStatus, RetryRoute

app = typer.Typer(no_args_is_help=True)
console = Console()


class State:
    settings: Settings | None = None


state = State()


def get_settings() -> Settings:
    if state.settings is None:
        state.settings = Settings.from_env()
    return state.settings


def get_database() -> Database:
    database = Database(get_settings().database_url)
    database.init_db()
    return database


def format_datetime(value: datetime | None) -> str:
    return datetime.strftime(value, "%Y-%m-%d %H:%M:%S") if value else "-"


@app.callback()
def main(
    env_file: Annotated[
        Path | None,
        typer.Option(
            "--env-file",
            help="Dotenv file to load settings from",
            callback=env_file_callback,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Log at debug level"),
    ] = False,
):
    """Batch processing orchestrator for chat session analysis"""
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    state.settings = Settings.from_env(env_file=env_file)


@app.command(name="init-db")
def init_db():
    """Create the database tables"""
    database = get_database()
    console.print(f"Database ready at [green]{database.url}[/green]")


@app.command(name="add-tenant")
def add_tenant(
    name: Annotated[str, typer.Argument(help="Display name of the tenant")],
):
    """Register an active tenant"""
    database = get_database()
    with database.session() as db:
        tenant = create_tenant(db, name)
    console.print(f"Tenant [green]{tenant.name}[/green] created with id {tenant.id}")


@app.command(name="enqueue")
def enqueue(
    session_id: Annotated[str, typer.Argument(help="The chat session to analyze")],
    processing_type: Annotated[
        str,
        typer.Option(
            "-t",
            "--type",
            help="The analysis to run",
            callback=processing_type_callback,
        ),
    ] = ProcessingType.FULL_ANALYSIS,
    model: Annotated[
        str | None,
        typer.Option("-m", "--model", help="Model to use, defaults to the configured model"),
    ] = None,
):
    """Create a pending processing request for a session"""
    database = get_database()
    with database.session() as db:
        try:
            request = create_processing_request(
                db,
                session_id,
                model=model or get_settings().default_model,
                processing_type=processing_type,
            )
        except ValueError as e:
            typer.echo(str(e))
            raise typer.Exit(1)
    console.print(f"Request [green]{request.id}[/green] is pending for tenant {request.tenant_id}")


@app.command(name="run")
def run():
    """Run the scheduler until interrupted"""
    scheduler = build_scheduler(get_settings(), database=get_database())

    async def serve(scheduler: BatchScheduler) -> None:
        scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()

    try:
        asyncio.run(serve(scheduler))
    except KeyboardInterrupt:
        console.print("Scheduler stopped")


@app.command(name="tick")
def tick(
    cadence: Annotated[Cadence, typer.Argument(help="The cadence to run once")],
):
    """Run a single invocation of a cadence"""
    scheduler = build_scheduler(get_settings(), database=get_database())
    succeeded = asyncio.run(scheduler.run_cadence(cadence))
    if not succeeded:
        console.print(f"[red]{cadence} failed:[/red] {scheduler.context.last_error}")
        raise typer.Exit(1)
    console.print(f"[green]{cadence} done[/green]")


@app.command(name="force-batch")
def force_batch(
    tenant_id: Annotated[str, typer.Argument(help="The tenant to submit a batch for")],
):
    """Submit a tenant's pending requests now, ignoring the batching policy"""
    scheduler = build_scheduler(get_settings(), database=get_database())
    batch_job = asyncio.run(scheduler.force_batch_creation(tenant_id))
    if batch_job is None:
        console.print(f"No pending requests for tenant {tenant_id}")
        return
    values = "\n".join(
        [
            f"Batch ID: {batch_job.id}",
            f"Provider Batch ID: {batch_job.provider_batch_id}",
            f"Status: [green]{batch_job.status}[/green]",
            f"Created At: {format_datetime(batch_job.created_at)}",
        ]
    )
    console.print(Panel(values, title=tenant_id, expand=False, highlight=True))


@app.command(name="requeue")
def requeue(
    tenant_id: Annotated[str, typer.Argument(help="The tenant whose failed requests to requeue")],
):
    """Send requests that gave up retrying back to the batch path"""
    database = get_database()
    with database.session() as db:
        request_ids = [
            request.id
            for request in get_processing_requests(
                db, tenant_id=tenant_id, status=RequestStatus.FAILED
            )
            if request.retry_route == RetryRoute.NONE
        ]
        updated = bulk_update_request_status(
            db,
            request_ids,
            status=RequestStatus.PENDING,
            retry_route=RetryRoute.BATCH,
            from_status=RequestStatus.FAILED,
        )
    console.print(f"Requeued {updated} request(s)")


@app.command(name="stats")
def stats(
    tenant_id: Annotated[
        str | None, typer.Option("--tenant", help="Restrict to one tenant")
    ] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print raw JSON")] = False,
):
    """Show batch and request counts by status, and token usage with its cost"""
    database = get_database()
    with database.session() as db:
        counts = get_batch_processing_stats(db, tenant_id=tenant_id)
        batches = get_batch_jobs(db, tenant_id=tenant_id, limit=10)
        usage_rows = get_token_usage(db, tenant_id=tenant_id)
    usage: dict[str, UsageTotals] = {}
    for row_tenant_id, model, request_count, prompt_tokens, completion_tokens in usage_rows:
        totals = usage.setdefault(row_tenant_id, UsageTotals())
        totals.request_count += request_count
        totals.prompt_tokens += prompt_tokens
        totals.completion_tokens += completion_tokens
        totals.cost += estimate_cost(model, prompt_tokens, completion_tokens)
    if as_json:
        typer.echo(
            json.dumps(
                {**counts, "usage": {key: asdict(value) for key, value in usage.items()}},
                indent=2,
            )
        )
        return

    table = Table("Kind", "Status", "Count", title="Batch processing")
    for status, count in sorted(counts["batches"].items()):
        table.add_row("batch", status, str(count))
    for status, count in sorted(counts["requests"].items()):
        table.add_row("request", status, str(count))
    table.add_row("request", "eligible for next batch", str(counts["pending_requests"]))
    console.print(table)

    if usage:
        usage_table = Table(
            "Tenant", "Completed", "Prompt Tokens", "Completion Tokens", "Cost (USD)",
            title="Token usage",
        )
        for key, totals in usage.items():
            usage_table.add_row(
                key,
                str(totals.request_count),
                str(totals.prompt_tokens),
                str(totals.completion_tokens),
                f"{totals.cost:.4f}",
            )
        console.print(usage_table)

    if batches:
        recent = Table("Batch ID", "Tenant", "Status", "Created At", title="Recent batches")
        for batch_job in batches:
            recent.add_row(
                batch_job.id,
                batch_job.tenant_id,
                batch_job.status,
                format_datetime(batch_job.created_at),
            )
        console.print(recent)
