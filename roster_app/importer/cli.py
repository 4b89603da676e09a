"""
CLI commands for the roster importer (``flask importer ...``).

Commands run the same services as the JSON API. Pipeline errors surface as
``click.ClickException`` carrying the error code.
"""

from __future__ import annotations

import json
from functools import wraps
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import current_app
from flask.cli import ScriptInfo, with_appcontext

from roster_app.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from roster_app.importer.errors import ImportPipelineError
from roster_app.importer.pipeline import (
    BatchFilters,
    BatchStore,
    ImportBatchService,
    SessionController,
    build_error_report,
)
from roster_app.models import Organization
from roster_app.utils.importer import get_importer_adapters, is_importer_enabled


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    Roster import commands.

    Displays configured adapters when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        adapters = get_importer_adapters(app)
        if not adapters:
            click.echo("No importer adapters configured.")
        else:
            click.echo("Enabled importer adapters:")
            for adapter in adapters:
                click.echo(f"  - {adapter}")


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _pipeline_errors(func):
    """Translate pipeline errors into click errors that name the code."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ImportPipelineError as exc:
            raise click.ClickException(f"{exc.code}: {exc.message}") from exc

    return wrapper


def _resolve_celery(app) -> Optional[Celery]:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


@importer_cli.command("upload")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--org", "organization_id", required=True, type=int, help="Organization receiving the roster.")
@click.option("--user", "user_id", type=int, help="User recorded as the uploader.")
@click.option("--no-update-duplicates", is_flag=True, help="Create new customers instead of updating matches.")
@with_appcontext
@_pipeline_errors
def importer_upload(file_path: Path, organization_id: int, user_id: Optional[int], no_update_duplicates: bool):
    """Stage a CSV or XLSX roster as a new batch."""
    if Organization.find_by_id(organization_id) is None:
        raise click.ClickException(f"Organization {organization_id} not found.")
    _, payload = SessionController().upload(
        organization_id,
        file_path.name,
        file_path.read_bytes(),
        created_by=user_id,
        update_on_duplicate=False if no_update_duplicates else None,
    )
    click.echo(f"Batch {payload['batch_id']} staged with {payload['total_rows']} rows.")
    for mapping in payload["suggested_mapping"]:
        target = mapping.get("target_field") or "-"
        click.echo(f"  {mapping['source_column']:<30} -> {target} ({mapping.get('confidence', 0):.2f})")
    if payload["open_questions"]:
        click.echo(f"{len(payload['open_questions'])} column(s) need a decision before validation.")


@importer_cli.command("validate")
@click.argument("batch_id", type=int)
@with_appcontext
@_pipeline_errors
def importer_validate(batch_id: int):
    """Validate a mapped batch and print its counts."""
    controller = SessionController()
    summary = controller.validate(controller.load(batch_id))
    click.echo(
        f"Batch {batch_id}: {summary.valid_count} valid, {summary.warning_count} warning, "
        f"{summary.error_count} invalid, {summary.removed_count} removed."
    )
    for group in summary.issue_groups[:10]:
        click.echo(f"  {group['code']:<24} {group['field'] or '-':<16} x{group['count']}  {group['message']}")


@importer_cli.command("commit")
@click.argument("batch_id", type=int)
@click.option("--dry-run", is_flag=True, help="Count creates and updates without writing.")
@click.option("--exclude", "excluded", type=int, multiple=True, help="Row index to leave out; repeatable.")
@click.option("--reimport", is_flag=True, help="Retry the rows that failed in the last commit.")
@with_appcontext
@_pipeline_errors
def importer_commit(batch_id: int, dry_run: bool, excluded: tuple[int, ...], reimport: bool):
    """Commit a batch from its preview step into the customer store."""
    controller = SessionController()
    state = controller.load(batch_id)
    if reimport and state.row_scope is None:
        state = controller.start_reimport(state)
    _, result = controller.commit(state, excluded_row_ids=excluded or None, dry_run=dry_run)
    click.echo(json.dumps(result.to_dict(), indent=2))


@importer_cli.command("rollback")
@click.argument("batch_id", type=int)
@click.option("--reason", required=True, help="Recorded on the commit and in the audit log.")
@with_appcontext
@_pipeline_errors
def importer_rollback(batch_id: int, reason: str):
    """Delete the customers a committed batch created."""
    controller = SessionController()
    _, result = controller.rollback(controller.load(batch_id), reason=reason)
    click.echo(f"Batch {batch_id} rolled back; {result.records_deleted} customer(s) deleted.")


@importer_cli.command("error-report")
@click.argument("batch_id", type=int)
@click.option("--output", "output_path", type=click.Path(dir_okay=False, path_type=Path), help="Write the CSV here.")
@with_appcontext
@_pipeline_errors
def importer_error_report(batch_id: int, output_path: Optional[Path]):
    """Export rows with issues or failed commits as CSV."""
    store = BatchStore()
    batch = store.get_batch(batch_id)
    filename, body = build_error_report(batch, store.get_rows(batch_id))
    if output_path is None:
        click.echo(body, nl=False)
        return
    output_path.write_text(body, encoding="utf-8")
    click.echo(f"Wrote {filename} to {output_path}.")


@importer_cli.command("batches")
@click.option("--org", "organization_id", type=int, help="Only batches of this organization.")
@click.option("--status", "statuses", multiple=True, help="Filter by status; repeatable.")
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print the raw listing payload.")
@with_appcontext
def importer_batches(organization_id: Optional[int], statuses: tuple[str, ...], page: int, as_json: bool):
    """List import batches, newest first."""
    try:
        filters = BatchFilters.coerce(page=page, statuses=statuses)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    listing = ImportBatchService().list_batches(filters, organization_id=organization_id)
    if as_json:
        click.echo(json.dumps(listing.to_dict(), indent=2))
        return
    if not listing.items:
        click.echo("No import batches found.")
        return
    for item in listing.items:
        click.echo(
            f"{item['id']:>6}  org={item['organization_id']:<4} {item['status']:<12} "
            f"rows={item['row_count']:<6} {item['file_name'] or ''}"
        )
    click.echo(f"Page {listing.page} of {listing.total_pages} ({listing.total} total).")


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but commits and rollbacks stay inline until the flag is set.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list.")
@with_appcontext
def worker_run(loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    app = current_app._get_current_object()
    celery_app = _resolve_celery(app)
    app.extensions.setdefault("importer", {})["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@with_appcontext
def worker_ping(timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    celery_app = _resolve_celery(current_app._get_current_object())
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))
