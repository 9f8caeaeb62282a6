"""
``flask importer`` commands: preview session housekeeping, rule maintenance
and worker management.
"""

from __future__ import annotations

import json
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from training_app.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from training_app.importer.errors import ImportPreviewError
from training_app.importer.pipeline.rules import RuleEngine
from training_app.importer.pipeline.session_store import PreviewSessionStore
from training_app.models.importer import EntityType
from training_app.utils.importer import get_importer_row_sources, is_importer_enabled


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    Import preview management commands.

    Displays configured row sources when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        sources = get_importer_row_sources(app)
        if not sources:
            click.echo("No importer row sources configured.")
        else:
            click.echo("Enabled importer row sources:")
            for source in sources:
                click.echo(f"  - {source}")


def get_disabled_importer_group() -> click.Group:
    """Return a minimal command group that informs the operator the importer is disabled."""

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Optional[Celery]:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


@importer_cli.command("sweep-previews")
def importer_sweep_previews():
    """Expire overdue preview sessions and evict old tombstones."""
    summary = PreviewSessionStore().sweep()
    click.echo(f"Expired {summary.expired} preview session(s); evicted {summary.evicted} tombstone(s).")


@importer_cli.command("list-previews")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of a table.")
def importer_list_previews(as_json: bool):
    """List OPEN preview sessions."""
    sessions = PreviewSessionStore().list_open()

    if as_json:
        payload = [
            {
                "previewId": session.preview_id,
                "fileName": session.file_name,
                "rows": session.row_count,
                "conflicts": len(session.conflicts),
                "remainingConflicts": len(session.remaining_conflicts()),
                "expiresAt": session.expires_at.isoformat(),
            }
            for session in sessions
        ]
        click.echo(json.dumps(payload, indent=2))
        return

    if not sessions:
        click.echo("No open preview sessions.")
        return
    for session in sessions:
        click.echo(
            f"{session.preview_id[:12]}  {session.file_name or '-'}  rows={session.row_count}  "
            f"conflicts={len(session.conflicts)}  remaining={len(session.remaining_conflicts())}  "
            f"expires={session.expires_at.isoformat()}"
        )


@importer_cli.command("rules")
@click.option(
    "--entity-type",
    type=click.Choice([member.value for member in EntityType], case_sensitive=False),
    help="Only list rules for this entity type.",
)
@click.option("--all", "include_inactive", is_flag=True, help="Include deactivated rules.")
def importer_rules(entity_type: Optional[str], include_inactive: bool):
    """List memorized resolution rules."""
    engine = RuleEngine()
    rules = engine.list_rules(entity_type=entity_type, active=None if include_inactive else True)
    lines = [
        f"#{rule.id}  {rule.entity_type.value:<12} {rule.raw_value!r} -> {rule.action.value}"
        + (f" {rule.target_entity_id} ({engine.target_name(rule) or '?'})" if rule.target_entity_id else "")
        + ("" if rule.is_active else "  [inactive]")
        for rule in rules
    ]

    if not lines:
        click.echo("No import rules found.")
        return
    for line in lines:
        click.echo(line)


@importer_cli.command("purge-rule")
@click.argument("rule_id", type=int)
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
def importer_purge_rule(rule_id: int, yes: bool):
    """Permanently delete an import rule."""
    if not yes:
        click.confirm(f"Permanently delete import rule {rule_id}?", abort=True)
    try:
        RuleEngine().purge(rule_id)
    except ImportPreviewError as exc:
        raise click.ClickException(exc.message) from exc
    click.echo(f"Import rule {rule_id} deleted.")


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. The preview sweep will not be scheduled.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--beat", is_flag=True, help="Embed the beat scheduler so the preview sweep runs.")
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], beat: bool, queues: str):
    """Start the Celery worker in the current process."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))
