"""Command line interface for the workflow engine."""

import json
import sys
from pathlib import Path
from typing import Dict, List

import click
import yaml
from rich.console import Console
from rich.table import Table

from ..core.config import EngineConfig, load_config
from ..core.models import DeadLetterStatus, WorkflowStatus
from ..errors.exceptions import WorkflowError
from ..errors.translator import ErrorTranslator
from ..safeguards.resume_retry import ResumeRetryService
from ..scheduling.scheduler import Scheduler
from ..storage.base import WorkflowStore
from ..storage.file_store import FileStore
from ..storage.memory import InMemoryStore
from ..utils.rich_logging import setup_logging
from ..workflow.definition import load_definition
from ..workflow.engine import WorkflowEngine
from ..workflow.validator import ValidationResult, WorkflowValidator


console = Console()

STATUS_STYLES = {
    WorkflowStatus.COMPLETED: "green",
    WorkflowStatus.FAILED: "red",
    WorkflowStatus.CANCELLED: "dim",
    WorkflowStatus.RUNNING: "cyan",
    WorkflowStatus.PAUSED: "yellow",
}


def _fail(error: Exception) -> None:
    translator = ErrorTranslator()
    console.print(translator.format_for_cli(translator.translate(error)))
    sys.exit(1)


def _parse_vars(pairs: List[str]) -> Dict[str, object]:
    """Parse k=v pairs; values go through YAML so numbers and booleans keep their type."""
    variables = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"Expected key=value, got '{pair}'", param_hint="--var")
        key, value = pair.split("=", 1)
        variables[key.strip()] = yaml.safe_load(value) if value else ""
    return variables


def _build_store(config: EngineConfig, data_dir: Path = None) -> WorkflowStore:
    if data_dir is not None:
        return FileStore(data_dir)
    if config.storage.backend == "memory":
        return InMemoryStore()
    return FileStore(config.storage.root)


def _engine(ctx) -> WorkflowEngine:
    if "engine" not in ctx.obj:
        config = ctx.obj["config"]
        ctx.obj["engine"] = WorkflowEngine(_build_store(config, ctx.obj["data_dir"]), config=config)
    return ctx.obj["engine"]


def _print_validation(result: ValidationResult) -> None:
    table = Table(title="Validation")
    table.add_column("Severity")
    table.add_column("Code")
    table.add_column("Step")
    table.add_column("Message")

    for issue in result.errors:
        table.add_row("[red]error[/]", issue.code, issue.step_id or "", issue.message)
    for issue in result.warnings:
        table.add_row("[yellow]warning[/]", issue.code, issue.step_id or "", issue.message)
    for issue in result.info:
        table.add_row("[dim]info[/]", issue.code, issue.step_id or "", issue.message)

    console.print(table)
    summary = result.summary
    console.print(
        f"{summary['errors']} error(s), {summary['warnings']} warning(s), {summary['info']} info"
    )


@click.group()
@click.option("--config", "-c", "config_path", default="jml-workflow.yaml", help="Engine config file")
@click.option("--data-dir", "-d", type=click.Path(path_type=Path), help="Override the file store directory")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_path, data_dir, verbose):
    """JML Workflow - joiner/mover/leaver workflow orchestration."""
    setup_logging("DEBUG" if verbose else "WARNING")
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(Path(config_path))
    ctx.obj["data_dir"] = data_dir


@cli.command()
@click.argument("file", type=click.Path(exists=True, path_type=Path))
def validate(file):
    """Validate a workflow definition file."""
    try:
        definition = load_definition(file)
    except WorkflowError as e:
        _fail(e)

    console.print(f"[bold]Validating {definition.id}[/]")
    result = WorkflowValidator().validate(definition)
    _print_validation(result)

    if not result.can_publish:
        console.print("[red]✗ Definition cannot be published[/]")
        sys.exit(1)
    console.print("[green]✓ Definition can be published[/]")


@cli.command()
@click.argument("file", type=click.Path(exists=True, path_type=Path))
@click.pass_context
def publish(ctx, file):
    """Validate and store a definition as Published."""
    engine = _engine(ctx)
    try:
        definition = load_definition(file)
        published = engine.definitions.publish(definition)
    except WorkflowError as e:
        _fail(e)

    console.print(f"[green]✓ Published {published.id}[/]")


@cli.command()
@click.argument("code")
@click.option("--var", "variables", multiple=True, help="Workflow variable as key=value")
@click.option("--version", help="Definition version (default: latest published)")
@click.option("--process-id", help="Business process id")
@click.option("--started-by", help="User starting the workflow")
@click.pass_context
def start(ctx, code, variables, version, process_id, started_by):
    """Start a workflow instance."""
    engine = _engine(ctx)
    try:
        instance = engine.start_workflow(
            code,
            variables=_parse_vars(list(variables)),
            version=version,
            process_id=process_id,
            started_by=started_by,
        )
    except WorkflowError as e:
        _fail(e)

    style = STATUS_STYLES.get(instance.status, "yellow")
    console.print(f"[green]✓ Started {instance.id}[/] ([{style}]{instance.status.value}[/])")
    if instance.current_step_id:
        console.print(f"  Current step: {instance.current_step_id}")


@cli.command()
@click.argument("instance_id", required=False)
@click.option("--status", "status_filter", type=click.Choice([s.value for s in WorkflowStatus]))
@click.option("--json", "as_json", is_flag=True, help="Print the instance as JSON")
@click.pass_context
def status(ctx, instance_id, status_filter, as_json):
    """Show instances, or steps and audit trail for one instance."""
    engine = _engine(ctx)

    if instance_id is None:
        statuses = [WorkflowStatus(status_filter)] if status_filter else None
        instances = engine.store.list_instances(statuses=statuses)
        table = Table(title="Workflow instances")
        table.add_column("ID")
        table.add_column("Definition")
        table.add_column("Status")
        table.add_column("Step")
        table.add_column("Progress", justify="right")

        for instance in instances:
            style = STATUS_STYLES.get(instance.status, "yellow")
            table.add_row(
                instance.id,
                f"{instance.definition_code}@{instance.definition_version}",
                f"[{style}]{instance.status.value}[/]",
                instance.current_step_id or "",
                f"{instance.progress_percent}%",
            )
        console.print(table)
        return

    try:
        instance = engine.get_instance(instance_id)
    except WorkflowError as e:
        _fail(e)

    if as_json:
        console.print_json(instance.model_dump_json())
        return

    style = STATUS_STYLES.get(instance.status, "yellow")
    console.print(f"[bold]{instance.id}[/] {instance.definition_code}@{instance.definition_version}")
    console.print(f"  Status: [{style}]{instance.status.value}[/]  Progress: {instance.progress_percent}%")
    if instance.error_message:
        console.print(f"  [red]Error ({instance.error_code or '-'}): {instance.error_message}[/]")

    steps = Table(title="Steps")
    steps.add_column("Step")
    steps.add_column("Status")
    steps.add_column("Started")
    steps.add_column("Retries", justify="right")
    for step_status in engine.get_step_statuses(instance.id):
        steps.add_row(
            step_status.step_id,
            step_status.status.value,
            step_status.started_at.isoformat(timespec="seconds") if step_status.started_at else "",
            str(step_status.retry_count),
        )
    console.print(steps)

    audit = Table(title="Audit log")
    audit.add_column("Time")
    audit.add_column("Level")
    audit.add_column("Step")
    audit.add_column("Action")
    audit.add_column("Message")
    for entry in engine.store.list_audit_entries(instance.id):
        audit.add_row(
            entry.timestamp.isoformat(timespec="seconds"),
            entry.level.value,
            entry.step_id or "",
            entry.action,
            entry.message,
        )
    console.print(audit)


@cli.command()
@click.option("--loop", is_flag=True, help="Keep ticking at the configured interval")
@click.pass_context
def tick(ctx, loop):
    """Run the scheduler: due timers, waits, timeouts, SLAs, escalations."""
    engine = _engine(ctx)
    scheduler = Scheduler(engine, resume_retry=ResumeRetryService(engine))

    if loop:
        console.print("[bold]Scheduler running. Press Ctrl+C to stop.[/]")
        try:
            scheduler.run()
        except KeyboardInterrupt:
            scheduler.stop()
            console.print("\n[yellow]Scheduler stopped[/]")
        return

    result = scheduler.tick()
    table = Table(title="Scheduler tick")
    table.add_column("Phase")
    table.add_column("Processed", justify="right")
    table.add_column("Succeeded", justify="right")
    table.add_column("Failed", justify="right")
    for name, phase in (
        ("Due items", result.due_items),
        ("Timeouts", result.timeouts),
        ("Waiting workflows", result.waiting),
        ("Dead letters", result.dead_letters),
    ):
        table.add_row(name, str(phase.processed), str(phase.succeeded), str(phase.failed))
    console.print(table)
    console.print(
        f"SLA warnings: {result.sla_warnings}  SLA breaches: {result.sla_breaches}  "
        f"Escalations: {result.escalations}"
    )
    for error in result.due_items.errors + result.timeouts.errors + result.waiting.errors:
        console.print(f"  [red]{error}[/]")


@cli.command()
@click.argument("instance_id")
@click.option("--reason", "-r", help="Cancellation reason")
@click.option("--by", "cancelled_by", help="User cancelling the workflow")
@click.pass_context
def cancel(ctx, instance_id, reason, cancelled_by):
    """Cancel a workflow instance."""
    engine = _engine(ctx)
    try:
        engine.cancel_workflow(instance_id, reason=reason, cancelled_by=cancelled_by)
    except WorkflowError as e:
        _fail(e)
    console.print(f"[green]✓ Cancelled {instance_id}[/]")


@cli.group()
def dlq():
    """Inspect and replay the dead-letter queue."""


@dlq.command("list")
@click.option("--status", "status_filter", type=click.Choice([s.value for s in DeadLetterStatus]))
@click.option("--type", "operation_type", help="Operation type")
@click.pass_context
def dlq_list(ctx, status_filter, operation_type):
    """List dead-letter items."""
    engine = _engine(ctx)
    status = DeadLetterStatus(status_filter) if status_filter else None
    items = engine.dead_letters.list(status=status, operation_type=operation_type)

    table = Table(title=f"Dead letters ({len(items)})")
    table.add_column("ID")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Created")
    table.add_column("Error")
    for item in items:
        table.add_row(
            item.id,
            item.operation_type,
            item.status.value,
            str(item.attempts),
            item.created_at.isoformat(timespec="seconds"),
            item.error[:80],
        )
    console.print(table)


@dlq.command("retry")
@click.argument("item_id")
@click.pass_context
def dlq_retry(ctx, item_id):
    """Replay one item now, ignoring the attempt and age ceilings."""
    engine = _engine(ctx)
    scheduler = Scheduler(engine, resume_retry=ResumeRetryService(engine))
    try:
        item = engine.dead_letters.get(item_id)
        sweeper = scheduler.sweeper
        if item.operation_type in scheduler.resume_retry.sweeper.operation_types:
            sweeper = scheduler.resume_retry.sweeper
        result = sweeper.force_retry(item_id)
    except WorkflowError as e:
        _fail(e)

    if result.success:
        console.print(f"[green]✓ {item_id} resolved[/] {result.note or ''}")
    else:
        console.print(f"[red]✗ {item_id} failed again: {result.error}[/]")
        sys.exit(1)


@dlq.command("abandon")
@click.argument("item_id")
@click.option("--reason", "-r", required=True, help="Why the item is abandoned")
@click.pass_context
def dlq_abandon(ctx, item_id, reason):
    """Abandon an item for manual handling."""
    engine = _engine(ctx)
    try:
        engine.dead_letters.mark_abandoned(item_id, reason)
    except WorkflowError as e:
        _fail(e)
    console.print(f"[yellow]Abandoned {item_id}[/]")


@dlq.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
@click.pass_context
def dlq_stats(ctx, as_json):
    """Counts by status and operation type."""
    stats = _engine(ctx).dead_letters.get_stats()
    if as_json:
        console.print_json(json.dumps({
            "total": stats.total,
            "by_status": stats.by_status,
            "by_operation_type": stats.by_operation_type,
        }))
        return

    table = Table(title=f"Dead letters: {stats.total}")
    table.add_column("Group")
    table.add_column("Key")
    table.add_column("Count", justify="right")
    for key, count in stats.by_status.items():
        table.add_row("status", key, str(count))
    for key, count in stats.by_operation_type.items():
        table.add_row("type", key, str(count))
    console.print(table)


@dlq.command("sweep")
@click.pass_context
def dlq_sweep(ctx):
    """Run one dead-letter sweep without the rest of the tick."""
    engine = _engine(ctx)
    resume_retry = ResumeRetryService(engine)
    scheduler = Scheduler(engine, resume_retry=resume_retry)

    notifications = scheduler.sweeper.process()
    resumes = resume_retry.process_retry_queue()
    console.print(
        f"Notifications: {notifications.succeeded} resolved, {notifications.failed} failed, "
        f"{notifications.abandoned} abandoned"
    )
    console.print(
        f"Resumes: {resumes['succeeded']} resolved, {resumes['failed']} failed, "
        f"{resumes['abandoned']} abandoned"
    )


if __name__ == "__main__":
    cli()
