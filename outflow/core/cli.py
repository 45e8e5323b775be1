"""Command-line interface for the outflow workflow engine."""

import asyncio
import json
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
import structlog

from outflow.core.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from outflow.core.db import DEFAULT_DB_PATH, get_lead_by_id, get_pipeline_stats, init_db, lead_variables
from outflow.core.errors import GraphValidationError, NotFoundError
from outflow.outreach.importer import import_leads
from outflow.outreach.sender import ComposioEmailSender
from outflow.services.slack_notifier import SlackNotifier
from outflow.workflows.definitions import load_definition_file, save_workflow, set_workflow_active
from outflow.workflows.dispatcher import TriggerDispatcher
from outflow.workflows.resumer import DelayResumptionService
from outflow.workflows.scheduler import Scheduler
from outflow.workflows.store import get_execution, list_executions
from outflow.workflows.triggers import TriggerEvent, TriggerType, lead_created
from outflow.workflows.validator import check_definition

# Configure structlog for CLI output
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer()
    ]
)

log = structlog.get_logger()

LEADS_FOLDER = Path("leads")
PROCESSED_FOLDER = LEADS_FOLDER / "processed"

db_option = click.option("--db", "db_path", type=click.Path(), default=str(DEFAULT_DB_PATH),
                         help="Database path")
config_option = click.option("--config", "config_path", type=click.Path(), default=str(DEFAULT_CONFIG_PATH),
                             help="Config directory path")


def build_engine(db: Path, config: Path, settings: Optional[Settings] = None) -> tuple:
    """Wire the scheduler, dispatcher and resumer from settings."""
    settings = settings or load_settings(config)

    wakeups = DelayResumptionService(
        db_path=db,
        batch_size=settings.resumer.batch_size,
        poll_interval=settings.resumer.poll_interval_seconds,
    )
    on_failure = None
    if settings.slack.webhook_url:
        on_failure = SlackNotifier(settings.slack.webhook_url).send_failure

    scheduler = Scheduler(
        db_path=db,
        sender=ComposioEmailSender.from_settings(settings),
        wakeups=wakeups,
        settings=settings,
        config_path=config,
        on_failure=on_failure,
    )
    dispatcher = TriggerDispatcher(db, scheduler)
    return scheduler, dispatcher, wakeups


async def dispatch_new_leads(db: Path, dispatcher: TriggerDispatcher, lead_ids: list[str]) -> int:
    """Fire LEAD_CREATED for each lead. Returns the number of executions started."""
    started = 0
    for lead_id in lead_ids:
        lead = get_lead_by_id(db, lead_id)
        if lead is None:
            continue
        states = await dispatcher.dispatch(lead_created(lead_variables(lead)))
        started += len(states)
    return started


def import_from_leads_folder(db: Path, dispatcher: TriggerDispatcher) -> dict:
    """Import all Excel files from /leads folder, start workflows, move files to /processed."""
    LEADS_FOLDER.mkdir(exist_ok=True)
    PROCESSED_FOLDER.mkdir(exist_ok=True)

    total_imported = 0
    total_skipped = 0
    total_started = 0
    files_processed = []

    excel_files = list(LEADS_FOLDER.glob("*.xlsx")) + list(LEADS_FOLDER.glob("*.xls"))

    for excel_path in excel_files:
        click.echo(f"Importing {excel_path.name}...")

        try:
            result = import_leads(excel_path, db)
            total_imported += result["imported"]
            total_skipped += result["skipped"]

            started = asyncio.run(dispatch_new_leads(db, dispatcher, result["lead_ids"]))
            total_started += started

            # Move to processed folder with timestamp
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            new_name = f"{excel_path.stem}_{timestamp}{excel_path.suffix}"
            shutil.move(str(excel_path), str(PROCESSED_FOLDER / new_name))

            files_processed.append(excel_path.name)
            click.echo(f"  → Imported {result['imported']}, skipped {result['skipped']}, "
                       f"started {started} execution(s)")

        except Exception as e:
            click.echo(f"  ✗ Error: {e}")

    return {
        "imported": total_imported,
        "skipped": total_skipped,
        "started": total_started,
        "files": files_processed,
    }


def _echo_record(state) -> None:
    click.echo(json.dumps(state.to_record(), indent=2, default=str))


async def _deliver_due(scheduler: Scheduler, dispatcher: TriggerDispatcher,
                       wakeups: DelayResumptionService) -> tuple[dict, dict]:
    result = await wakeups.run_due(scheduler)
    fired = await wakeups.run_due_triggers(dispatcher)
    return result, fired


def _echo_delivery(result: dict, fired: dict) -> None:
    click.echo(f"Wake-ups delivered: {result['delivered']}")
    click.echo(f"Scheduled triggers fired: {fired['fired']} "
               f"(started {fired['executions']} execution(s))")
    for error in result["errors"] + fired["errors"]:
        click.echo(f"  ✗ {error}")


@click.group(invoke_without_command=True)
@click.pass_context
def cli(ctx):
    """Outflow - outreach workflow execution engine.

    Just run 'python run.py' to import leads and deliver due wake-ups.
    """
    if ctx.invoked_subcommand is None:
        ctx.invoke(run)


@cli.command()
@db_option
@config_option
def run(db_path: str, config_path: str):
    """Import new leads from /leads folder, deliver due wake-ups and scheduled triggers."""
    db = Path(db_path)
    config = Path(config_path)

    init_db(db)
    scheduler, dispatcher, wakeups = build_engine(db, config)

    click.echo("=" * 40)
    click.echo("STEP 1: Checking for new leads...")
    click.echo("=" * 40)

    import_result = import_from_leads_folder(db, dispatcher)
    if import_result["files"]:
        click.echo(f"\nImported {import_result['imported']} leads from {len(import_result['files'])} file(s)")
        click.echo(f"Started {import_result['started']} execution(s)")
    else:
        click.echo("No new files in /leads folder")

    click.echo("\n" + "=" * 40)
    click.echo("STEP 2: Delivering due wake-ups...")
    click.echo("=" * 40 + "\n")

    wakeups.reconcile()
    result, fired = asyncio.run(_deliver_due(scheduler, dispatcher, wakeups))
    _echo_delivery(result, fired)


@cli.command()
@click.argument("definition_file", type=click.Path(exists=True))
def validate(definition_file: str):
    """Check a workflow definition file without storing it."""
    try:
        definition = load_definition_file(Path(definition_file))
    except GraphValidationError as e:
        violations = e.violations
    else:
        violations = check_definition(definition)

    if violations:
        click.echo(f"✗ {len(violations)} problem(s):")
        for violation in violations:
            click.echo(f"  - {violation}")
        raise SystemExit(1)

    click.echo(f"✓ {definition.id} is valid ({len(definition.nodes)} nodes, {len(definition.edges)} edges)")


@cli.command()
@click.argument("definition_file", type=click.Path(exists=True))
@db_option
@click.option("--inactive", is_flag=True, help="Store the workflow deactivated")
def load(definition_file: str, db_path: str, inactive: bool):
    """Validate and store a workflow definition (new version on structural change)."""
    db = Path(db_path)
    init_db(db)

    try:
        definition = load_definition_file(Path(definition_file))
        if inactive:
            definition = definition.model_copy(update={"is_active": False})
        saved = save_workflow(db, definition)
    except GraphValidationError as e:
        click.echo(f"✗ {len(e.violations)} problem(s):")
        for violation in e.violations:
            click.echo(f"  - {violation}")
        raise SystemExit(1)

    state = "inactive" if not saved.is_active else "active"
    click.echo(f"Stored workflow {saved.id} version {saved.version} ({state})")


@cli.command()
@click.argument("workflow_id")
@db_option
@click.option("--off", is_flag=True, help="Deactivate instead of activate")
def activate(workflow_id: str, db_path: str, off: bool):
    """Activate or deactivate a stored workflow."""
    db = Path(db_path)
    init_db(db)
    try:
        set_workflow_active(db, workflow_id, not off)
    except NotFoundError as e:
        click.echo(f"✗ {e}")
        raise SystemExit(1)
    click.echo(f"Workflow {workflow_id} {'deactivated' if off else 'activated'}")


@cli.command("import")
@click.argument("excel_file", type=click.Path(exists=True), required=False)
@db_option
@config_option
def import_cmd(excel_file: Optional[str], db_path: str, config_path: str):
    """Import leads (one file, or the /leads folder) and fire LEAD_CREATED."""
    db = Path(db_path)
    config = Path(config_path)

    init_db(db)
    _, dispatcher, _ = build_engine(db, config)

    if excel_file is None:
        result = import_from_leads_folder(db, dispatcher)
        click.echo(f"Imported {result['imported']}, skipped {result['skipped']}, "
                   f"started {result['started']} execution(s)")
        return

    result = import_leads(Path(excel_file), db)
    started = asyncio.run(dispatch_new_leads(db, dispatcher, result["lead_ids"]))
    click.echo(f"Imported {result['imported']}, skipped {result['skipped']}, "
               f"started {started} execution(s)")


@cli.command()
@click.argument("workflow_id")
@click.argument("lead_id")
@db_option
@config_option
def trigger(workflow_id: str, lead_id: str, db_path: str, config_path: str):
    """Manually start (or restart) a workflow for a lead."""
    db = Path(db_path)
    config = Path(config_path)

    init_db(db)
    _, dispatcher, _ = build_engine(db, config)

    try:
        state = asyncio.run(dispatcher.trigger_manual(workflow_id, lead_id))
    except NotFoundError as e:
        click.echo(f"✗ {e}")
        raise SystemExit(1)

    click.echo(f"Execution {state.run_id}: {state.status.value} at {state.current_node_id}")


@cli.command()
@click.argument("trigger_type", type=click.Choice([t.value for t in TriggerType]))
@click.argument("lead_id")
@click.option("--at", "fire_at", required=True, type=click.DateTime(),
              help="When to fire the trigger (UTC)")
@db_option
@config_option
def schedule(trigger_type: str, lead_id: str, fire_at: datetime, db_path: str, config_path: str):
    """Fire a trigger event for a lead at a later time."""
    db = Path(db_path)
    config = Path(config_path)

    init_db(db)
    _, dispatcher, _ = build_engine(db, config)

    lead = get_lead_by_id(db, lead_id)
    if lead is None:
        click.echo(f"✗ Lead '{lead_id}' not found")
        raise SystemExit(1)

    fire_at = fire_at.replace(tzinfo=timezone.utc)
    event = TriggerEvent(type=TriggerType(trigger_type), lead_id=lead_id, payload=lead_variables(lead))
    due = fire_at <= dispatcher.scheduler.clock()
    started = asyncio.run(dispatcher.schedule(event, fire_at))

    if due:
        click.echo(f"Fired {trigger_type} now, started {len(started)} execution(s)")
    else:
        click.echo(f"Scheduled {trigger_type} for {lead_id} at {fire_at.isoformat()}")


@cli.command()
@click.argument("workflow_id")
@db_option
@click.option("--json", "as_json", is_flag=True, help="Print execution records as JSON")
def executions(workflow_id: str, db_path: str, as_json: bool):
    """List executions of a workflow, most recently updated first."""
    db = Path(db_path)
    init_db(db)

    states = list_executions(db, workflow_id)

    if as_json:
        click.echo(json.dumps([s.to_record() for s in states], indent=2, default=str))
        return

    if not states:
        click.echo(f"No executions for workflow {workflow_id}")
        return

    click.echo(f"\nExecutions of {workflow_id}")
    click.echo("───────────────")
    for state in states:
        wake = f"  wakes {state.next_wake_at.isoformat()}" if state.next_wake_at else ""
        click.echo(f"{state.lead_id:<38} {state.status.value:<10} {state.current_node_id}{wake}")


@cli.command()
@click.argument("workflow_id")
@click.argument("lead_id")
@db_option
def show(workflow_id: str, lead_id: str, db_path: str):
    """Show the execution record for a (workflow, lead) pair."""
    db = Path(db_path)
    init_db(db)

    try:
        state = get_execution(db, workflow_id, lead_id)
    except NotFoundError as e:
        click.echo(f"✗ {e}")
        raise SystemExit(1)

    _echo_record(state)


@cli.command()
@click.argument("workflow_id")
@click.argument("lead_id")
@db_option
@config_option
def cancel(workflow_id: str, lead_id: str, db_path: str, config_path: str):
    """Cancel an execution and its pending wake-ups."""
    db = Path(db_path)
    config = Path(config_path)

    init_db(db)
    scheduler, _, _ = build_engine(db, config)

    try:
        state = scheduler.cancel(workflow_id, lead_id)
    except NotFoundError as e:
        click.echo(f"✗ {e}")
        raise SystemExit(1)

    click.echo(f"Execution {workflow_id}/{lead_id}: {state.status.value}")


@cli.command()
@db_option
@config_option
@click.option("--loop", "loop_forever", is_flag=True, help="Keep polling for due wake-ups")
def resume(db_path: str, config_path: str, loop_forever: bool):
    """Deliver due wake-ups and fire due scheduled triggers."""
    db = Path(db_path)
    config = Path(config_path)

    init_db(db)
    scheduler, dispatcher, wakeups = build_engine(db, config)

    if loop_forever:
        click.echo(f"Polling every {wakeups.poll_interval}s (Ctrl+C to stop)")
        try:
            asyncio.run(wakeups.run_forever(scheduler, dispatcher=dispatcher))
        except KeyboardInterrupt:
            click.echo("Stopped")
        return

    restored = wakeups.reconcile()
    result, fired = asyncio.run(_deliver_due(scheduler, dispatcher, wakeups))

    if restored:
        click.echo(f"Restored {restored} missing wake-up(s)")
    _echo_delivery(result, fired)


@cli.command()
@db_option
def status(db_path: str):
    """Show execution counts."""
    db = Path(db_path)
    init_db(db)

    stats = get_pipeline_stats(db)

    click.echo("\nExecution Status")
    click.echo("───────────────")
    click.echo(f"Running:    {stats.get('RUNNING', 0)}")
    click.echo(f"Waiting:    {stats.get('WAITING', 0)}")
    click.echo(f"  - Due:    {stats.get('wakeups_due', 0)}")
    click.echo(f"Completed:  {stats.get('COMPLETED', 0)}")
    click.echo(f"Failed:     {stats.get('FAILED', 0)}")
    click.echo(f"Cancelled:  {stats.get('CANCELLED', 0)}")
    click.echo(f"Scheduled:  {stats.get('triggers_scheduled', 0)} trigger(s)")
    click.echo("───────────────")
    click.echo(f"Leads: {stats.get('leads', 0)}")


def main(args: Optional[list[str]] = None):
    """Main entry point."""
    cli(args=args)


if __name__ == "__main__":
    main()
