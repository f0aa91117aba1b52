"""Command-line interface for the dispatch differential migration."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

import click
from sqlalchemy.exc import SQLAlchemyError

from ..contracts.migration_engine_service import (
    ConflictResolution,
    DifferentialMigrationOptions,
    MigrationEntity,
    OperationType,
)
from ..contracts.validation_service import Severity
from ..lib.db_manager import DatabaseManager
from ..lib.exceptions import MigrationEngineException, format_exception_details
from ..lib.logging_config import setup_logging
from ..lib.performance_monitor import PerformanceMonitor
from ..models import CheckpointStatus
from ..services.checkpoint_manager import CheckpointManager
from ..services.entity_registry import build_default_entities, select_entities
from ..services.error_handler import ErrorHandler
from ..services.orchestrator import MigrationOrchestrator
from ..services.reporter import MigrationReporter
from ..services.validator import ValidationFramework
from .config import Config
from .display import EntityProgressBar, ProgressDisplay

LOG_LEVELS = [logging.WARNING, logging.INFO, logging.DEBUG]

logger = logging.getLogger(__name__)


def _configure_logging(config: Config, verbose: int, quiet: bool, command: Optional[str] = None) -> None:
    level = config.log_level
    if verbose:
        level = logging.getLevelName(LOG_LEVELS[min(verbose, len(LOG_LEVELS) - 1)])
    if quiet:
        level = "ERROR"
    setup_logging(
        log_dir=Path(config.log_directory),
        log_level=level,
        enable_json=config.log_json,
        context={"command": command} if command else None,
    )


def _database(config: Config, role: str) -> DatabaseManager:
    url = config.source_database_url if role == "source" else config.target_database_url
    if not url:
        raise click.UsageError(
            f"No {role} database configured; set {role.upper()}_DATABASE_URL or {role.upper()}_DB_HOST/NAME"
        )
    return DatabaseManager(
        url,
        name=role,
        pool_size=config.database_pool_size,
        max_overflow=config.database_max_overflow,
        statement_timeout=config.statement_timeout,
        connect_timeout=config.connect_timeout,
        read_only=role == "source",
    )


def _entities(ctx: click.Context) -> List[MigrationEntity]:
    entities = ctx.obj.get("entities")
    if entities is None:
        entities = build_default_entities(batch_size=ctx.obj["config"].batch_size)
    return entities


def _options(
    entities: Tuple[str, ...],
    batch_size: Optional[int],
    full: bool,
    **kwargs,
) -> DifferentialMigrationOptions:
    return DifferentialMigrationOptions(
        batch_size=batch_size,
        entities=list(entities) or None,
        operation_type=OperationType.FULL if full else OperationType.DIFFERENTIAL,
        **kwargs,
    )


def _fail(ctx: click.Context, error: Exception) -> None:
    if isinstance(error, MigrationEngineException):
        logger.error(format_exception_details(error))
    ProgressDisplay.print_error(str(error))
    ctx.exit(1)


entity_option = click.option(
    "--entity", "-e", "entities", multiple=True,
    help="Entity to process (repeatable, default: all in dependency order)",
)


@click.group()
@click.option("--verbose", "-v", count=True, help="Increase verbosity (use up to -vv)")
@click.option("--quiet", "-q", is_flag=True, help="Only show errors")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Load settings from this .env file")
@click.pass_context
def cli(ctx: click.Context, verbose: int, quiet: bool, env_file: Optional[str]) -> None:
    """Differential migration of the legacy dispatch database."""
    config = Config(env_file)
    _configure_logging(config, verbose, quiet, ctx.invoked_subcommand)
    ctx.ensure_object(dict)
    ctx.obj.update({"verbose": verbose, "quiet": quiet, "config": config})


@cli.command(name="init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the checkpoint tables in the target database."""
    try:
        with _database(ctx.obj["config"], "target") as target_db:
            CheckpointManager(target_db).ensure_schema()
    except SQLAlchemyError as e:
        _fail(ctx, e)
    ProgressDisplay.print_success("Checkpoint schema is ready")


@cli.command()
@entity_option
@click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Rows per batch (overrides descriptors)")
@click.option("--dry-run", is_flag=True, help="Detect and transform without writing")
@click.option("--resume", is_flag=True, help="Continue from failed checkpoints")
@click.option(
    "--conflict-resolution",
    type=click.Choice([c.value for c in ConflictResolution]),
    default=ConflictResolution.SKIP.value,
    show_default=True,
    help="What to do with rows already in the target",
)
@click.option("--skip-validation", is_flag=True, help="Do not run post-load validation")
@click.option("--rollback-on-failure", is_flag=True, help="Delete this run's rows when an entity fails")
@click.option("--full", is_flag=True, help="Ignore watermarks and scan every source row")
@click.pass_context
def migrate(
    ctx: click.Context,
    entities: Tuple[str, ...],
    batch_size: Optional[int],
    dry_run: bool,
    resume: bool,
    conflict_resolution: str,
    skip_validation: bool,
    rollback_on_failure: bool,
    full: bool,
) -> None:
    """Migrate new and changed rows into the target database."""
    config: Config = ctx.obj["config"]
    options = _options(
        entities, batch_size, full,
        dry_run=dry_run,
        resume=resume,
        conflict_resolution=ConflictResolution(conflict_resolution),
        skip_validation=skip_validation,
        rollback_on_failure=rollback_on_failure,
    )

    if dry_run:
        ProgressDisplay.print_info("Dry run: nothing will be written")

    monitor = PerformanceMonitor(max_memory_mb=config.max_memory_mb)
    try:
        with _database(config, "source") as source_db, _database(config, "target") as target_db:
            orchestrator = MigrationOrchestrator(
                source_db,
                target_db,
                error_handler=ErrorHandler(),
                monitor=monitor,
                max_retries=config.max_retries,
                retry_delay=config.retry_delay,
                stale_after=config.checkpoint_stale_after,
                progress_callback=EntityProgressBar(disable=ctx.obj["quiet"]),
            )
            result = orchestrator.run(_entities(ctx), options)
    except (MigrationEngineException, SQLAlchemyError) as e:
        _fail(ctx, e)
        return

    ProgressDisplay.print_result(result)
    reporter = MigrationReporter(Path(config.report_directory))
    report_path = reporter.generate_run_report(result)
    ProgressDisplay.print_summary("Migration Summary", {
        "operation_id": result.operation_id,
        "status": result.status.value,
        "migrated": result.successful,
        "skipped": result.skipped,
        "failed": result.failed,
        "duration": ProgressDisplay.format_duration(result.duration),
        "peak_memory_mb": round(monitor.get_peak_memory_mb(), 1),
        "report": report_path,
    })

    if not result.success:
        failed = reporter.failed_entities(result)
        ProgressDisplay.print_error(
            f"Migration {result.status.value}" + (f": {', '.join(failed)} failed" if failed else "")
        )
        ctx.exit(1)
    ProgressDisplay.print_success("Migration completed")


@cli.command()
@entity_option
@click.option("--full", is_flag=True, help="Count every source row instead of rows past the watermark")
@click.option("--save-report", is_flag=True, help="Write the counts to the report directory")
@click.pass_context
def plan(ctx: click.Context, entities: Tuple[str, ...], full: bool, save_report: bool) -> None:
    """Show how many rows a migration would consider, per entity."""
    config: Config = ctx.obj["config"]
    try:
        with _database(config, "source") as source_db, _database(config, "target") as target_db:
            orchestrator = MigrationOrchestrator(source_db, target_db, stale_after=config.checkpoint_stale_after)
            pending = orchestrator.plan(_entities(ctx), _options(entities, None, full))
    except (MigrationEngineException, SQLAlchemyError) as e:
        _fail(ctx, e)
        return

    ProgressDisplay.print_table(["Entity", "Pending"], [[name, count] for name, count in pending.items()])
    click.echo(f"\nTotal pending: {sum(pending.values())}")
    if save_report:
        path = MigrationReporter(Path(config.report_directory)).generate_plan_report(pending)
        ProgressDisplay.print_info(f"Plan saved to {path}")


@cli.command()
@click.option("--entity", "-e", default=None, help="Only this entity")
@click.option("--status", "status_filter", type=click.Choice(list(CheckpointStatus.ALL)), default=None)
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print full checkpoint records as JSON")
@click.pass_context
def status(
    ctx: click.Context, entity: Optional[str], status_filter: Optional[str], limit: int, as_json: bool
) -> None:
    """List migration checkpoints."""
    try:
        with _database(ctx.obj["config"], "target") as target_db:
            checkpoints = CheckpointManager(target_db)
            if not checkpoints.has_schema():
                ProgressDisplay.print_info("No checkpoints yet; run init-db or migrate first")
                return
            found = checkpoints.list_checkpoints(entity, status_filter, limit)
    except SQLAlchemyError as e:
        _fail(ctx, e)
        return

    if as_json:
        click.echo(json.dumps([cp.to_dict() for cp in found], indent=2, default=str))
        return

    if not found:
        ProgressDisplay.print_info("No matching checkpoints")
        return

    rows = [cp.summary() for cp in found]
    ProgressDisplay.print_table(
        ["Entity", "Type", "Status", "Batch", "Last id", "Processed", "Skipped", "Duration", "Updated"],
        [[
            row["entity"], row["operation_type"], row["status"], row["batch_number"],
            row["last_processed_source_id"], row["processed"], row["skipped"],
            ProgressDisplay.format_duration(row["duration"]), row["updated_at"],
        ] for row in rows]
    )


@cli.command()
@click.argument("entity")
@click.option(
    "--operation-type",
    type=click.Choice([op.value for op in OperationType]),
    default=None,
    help="Only checkpoints of this type (default: all)",
)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def reset(ctx: click.Context, entity: str, operation_type: Optional[str], yes: bool) -> None:
    """Clear unfinished checkpoints of ENTITY so it restarts cleanly."""
    if not yes and not ProgressDisplay.confirm_action(f"Remove unfinished checkpoints for {entity}?"):
        raise click.Abort()

    try:
        with _database(ctx.obj["config"], "target") as target_db:
            checkpoints = CheckpointManager(target_db)
            removed = checkpoints.reset(entity, operation_type) if checkpoints.has_schema() else 0
    except SQLAlchemyError as e:
        _fail(ctx, e)
        return

    ProgressDisplay.print_success(f"Removed {removed} checkpoint(s) for {entity}")


@cli.command()
@entity_option
@click.pass_context
def validate(ctx: click.Context, entities: Tuple[str, ...]) -> None:
    """Run completeness, foreign key and integrity checks."""
    config: Config = ctx.obj["config"]
    try:
        selected = select_entities(_entities(ctx), list(entities) or None)
        with _database(config, "source") as source_db, _database(config, "target") as target_db:
            results = ValidationFramework(source_db, target_db).validate_entities(selected)
    except (MigrationEngineException, SQLAlchemyError) as e:
        _fail(ctx, e)
        return

    errors = 0
    for entity, result in zip(selected, results):
        if result.is_valid and not result.warnings:
            ProgressDisplay.print_success(f"{entity.name}: {result.total_records} source record(s), no issues")
            continue
        for issue in result.issues:
            if issue.severity == Severity.ERROR:
                errors += 1
                ProgressDisplay.print_error(f"{entity.name}: {issue.message}")
            elif issue.severity == Severity.WARNING:
                ProgressDisplay.print_warning(f"{entity.name}: {issue.message}")
            else:
                ProgressDisplay.print_info(f"{entity.name}: {issue.message}")

    if errors:
        ctx.exit(1)


@cli.command(name="show-config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the effective configuration and any problems with it."""
    config: Config = ctx.obj["config"]
    ProgressDisplay.print_summary("Configuration", config.to_dict())

    problems = config.validate()
    for problem in problems:
        ProgressDisplay.print_warning(problem)
    if problems:
        ctx.exit(1)


def main() -> None:  # pragma: no cover - console entry point
    cli(prog_name="dispatch-migrate")


if __name__ == "__main__":  # pragma: no cover - script entrypoint
    main()
