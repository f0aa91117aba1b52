"""
Migration Orchestrator

Runs entities in dependency order. For each entity it resumes or starts a
checkpoint, loops detector -> batch processor -> checkpoint until the
source is exhausted, validates the result and decides, from the error
handler's classification, whether the run continues or halts.
"""

import logging
import uuid
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError

from ..contracts.migration_engine_service import (
    BatchResult,
    DetectionCursor,
    DifferentialMigrationOptions,
    EntityStats,
    EntityStatus,
    MigrationEngineService,
    MigrationEntity,
    MigrationResult,
    OperationType,
    RunStatus,
)
from ..contracts.validation_service import Severity
from ..lib.db_manager import DatabaseManager
from ..lib.exceptions import InvalidEntityConfiguration
from ..lib.logging_config import get_operation_logger
from ..lib.performance_monitor import PerformanceMonitor
from ..lib.retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS
from ..models import RowChecksum, utcnow
from .batch_processor import BatchProcessor
from .checkpoint_manager import CheckpointManager
from .differential_detector import DifferentialDetector, parse_timestamp
from .entity_registry import select_entities
from .error_handler import ErrorDecision, ErrorHandler, ErrorKind, RecoveryAction
from .uuid_mapping import UUIDMappingService
from .validator import ValidationFramework

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = 900  # seconds without a checkpoint update before takeover
ROLLBACK_CHUNK_SIZE = 1000

# (event, entity stats, estimated total rows); events: start, batch, finish
ProgressCallback = Callable[[str, EntityStats, Optional[int]], None]


class MigrationOrchestrator(MigrationEngineService):
    """Implementation of MigrationEngineService"""

    def __init__(
        self,
        source_db: DatabaseManager,
        target_db: DatabaseManager,
        error_handler: Optional[ErrorHandler] = None,
        monitor: Optional[PerformanceMonitor] = None,
        max_retries: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_BASE_DELAY,
        stale_after: Optional[float] = DEFAULT_STALE_AFTER,
        progress_callback: Optional[ProgressCallback] = None,
        sleep=None,
    ):
        """
        Wire the engine components around two database managers

        Args:
            source_db: Legacy database (read only)
            target_db: Target database, also holding the checkpoints
            error_handler: Shared classifier; one is created when omitted
            monitor: Memory guard checked on every batch
            max_retries: Retries for transient query errors
            retry_delay: Delay before the first retry in seconds
            stale_after: Seconds after which an in_progress checkpoint is taken over
            progress_callback: Receives start/batch/finish events per entity
            sleep: Sleep function for retries (injectable for tests)
        """
        self.source_db = source_db
        self.target_db = target_db
        self.error_handler = error_handler or ErrorHandler()
        self.stale_after = stale_after
        self.progress_callback = progress_callback

        self.mapping = UUIDMappingService(target_db)
        self.checkpoints = CheckpointManager(target_db)
        self.detector = DifferentialDetector(
            source_db, target_db, self.error_handler,
            max_retries=max_retries, retry_delay=retry_delay, sleep=sleep,
        )
        self.processor = BatchProcessor(
            target_db, self.mapping, self.detector, self.error_handler,
            monitor=monitor, max_retries=max_retries, retry_delay=retry_delay, sleep=sleep,
        )
        self.validator = ValidationFramework(source_db, target_db)

    def run(
        self,
        entities: Sequence[MigrationEntity],
        options: Optional[DifferentialMigrationOptions] = None
    ) -> MigrationResult:
        options = options or DifferentialMigrationOptions()
        self._check_descriptors(entities)
        selected = select_entities(entities, options.entities)

        result = MigrationResult(
            operation_id=str(uuid.uuid4()),
            status=RunStatus.CREATED,
            started_at=utcnow(),
            dry_run=options.dry_run,
        )
        for entity in selected:
            result.entities[entity.name] = EntityStats(entity.name, entity.dependency_order)

        op_logger = get_operation_logger(__name__, result.operation_id)
        errors_before = len(self.error_handler.records)

        # Every descriptor registers its mapping so that filtered runs still
        # resolve references to entities migrated earlier
        self._register_mappings(entities)
        if not options.dry_run:
            self.checkpoints.ensure_schema()

        result.status = RunStatus.RUNNING
        op_logger.info(
            f"Starting {options.operation_type.value} run {result.operation_id}: "
            f"{', '.join(e.name for e in selected)}{' (dry run)' if options.dry_run else ''}"
        )

        halted_by: Optional[str] = None
        try:
            for entity in selected:
                stats = result.entities[entity.name]

                if halted_by:
                    stats.status = EntityStatus.SKIPPED
                    stats.blocked_by = halted_by
                    continue

                blocker = self._blocking_dependency(entity, selected, result)
                if blocker:
                    stats.status = EntityStatus.SKIPPED
                    stats.blocked_by = blocker
                    op_logger.warning(f"Skipping {entity.name}: dependency {blocker} did not complete")
                    continue

                decision = self._run_entity(entity, options, stats, result.operation_id)
                if decision is not None and decision.action == RecoveryAction.ABORT_RUN:
                    halted_by = f"run aborted after {entity.name} ({decision.kind.value})"
                    op_logger.error(f"Halting run: {decision.kind.value} in {entity.name}")

        except KeyboardInterrupt:
            result.status = RunStatus.FAILED
            result.completed_at = utcnow()
            result.errors = self.error_handler.records[errors_before:]
            op_logger.warning(f"Run {result.operation_id} interrupted")
            raise

        finally:
            if options.dry_run:
                # Drop the provisional ids handed out to would-be-inserted rows
                self.mapping.invalidate()

        result.errors = self.error_handler.records[errors_before:]
        failed = [s.name for s in result.entities.values() if s.status == EntityStatus.FAILED]

        if failed and options.rollback_on_failure and not options.dry_run:
            result.status = RunStatus.ROLLING_BACK
            op_logger.warning(f"Rolling back run {result.operation_id} after failure of {', '.join(failed)}")
            result.rolled_back = self._rollback(selected, result)

        result.status = RunStatus.FAILED if (failed or halted_by) else RunStatus.COMPLETED
        result.completed_at = utcnow()

        op_logger.info(
            f"Run {result.operation_id} {result.status.value}: {result.successful} migrated, "
            f"{result.skipped} skipped, {result.failed} failed in {result.duration:.1f}s"
        )
        return result

    def plan(
        self,
        entities: Sequence[MigrationEntity],
        options: Optional[DifferentialMigrationOptions] = None
    ) -> Dict[str, int]:
        options = options or DifferentialMigrationOptions()
        self._check_descriptors(entities)

        pending = {}
        for entity in select_entities(entities, options.entities):
            checkpoint, since = self._existing_progress(entity, options)
            cursor = self.detector.initial_cursor(
                entity, checkpoint, since, full=options.operation_type == OperationType.FULL
            )
            pending[entity.name] = self.detector.count_pending(entity, cursor)
            logger.info(f"{entity.name}: {pending[entity.name]} row(s) pending")
        return pending

    def reset(self, entity_name: str, operation_type: Optional[OperationType] = None) -> int:
        if not self.checkpoints.has_schema():
            return 0
        return self.checkpoints.reset(entity_name, operation_type)

    # Entity execution

    def _run_entity(
        self,
        entity: MigrationEntity,
        options: DifferentialMigrationOptions,
        stats: EntityStats,
        operation_id: str,
    ) -> Optional[ErrorDecision]:
        """
        Migrate one entity to a terminal status

        Returns:
            The error decision when the entity failed, None otherwise
        """
        stats.status = EntityStatus.RUNNING
        stats.started_at = utcnow()
        errors_before = len(self.error_handler.records)
        batch_size = options.batch_size or entity.batch_size
        batch_number = 0
        checkpoint_id = None

        try:
            checkpoint_id, cursor, batch_number, total = self._open(entity, options, stats, operation_id)
            self.mapping.ensure_loaded(
                [entity.entity_type] + [fk.entity_type for fk in entity.foreign_keys]
            )
            self._notify("start", stats, total)

            exhausted = False
            while not exhausted:
                batch_number += 1
                batch, cursor, exhausted = self._process_batch(entity, cursor, batch_size, batch_number, options)
                if checkpoint_id is not None:
                    self.checkpoints.record_batch(checkpoint_id, batch)
                stats.add_batch(batch)
                self._notify("batch", stats, total)

            if not options.dry_run:
                if not options.skip_validation:
                    stats.validation_issues.extend(self.validator.validate_entity(entity).issues)
                self.mapping.refresh(entity.entity_type)

            has_errors = any(issue.severity == Severity.ERROR for issue in stats.validation_issues)
            stats.status = EntityStatus.PARTIAL if (stats.failed or has_errors) else EntityStatus.COMPLETED

            if checkpoint_id is not None:
                self.checkpoints.complete(checkpoint_id, final_stats={
                    'status': stats.status.value,
                    'batches': stats.batches,
                    'inserted': stats.inserted,
                    'updated': stats.updated,
                    'skipped': stats.skipped,
                    'failed': stats.failed,
                })
            logger.info(
                f"{entity.name} {stats.status.value}: {stats.inserted} inserted, {stats.updated} updated, "
                f"{stats.skipped} skipped in {stats.batches} batch(es)"
            )
            return None

        except KeyboardInterrupt:
            stats.status = EntityStatus.FAILED
            if checkpoint_id is not None:
                self.checkpoints.fail(checkpoint_id, "Interrupted by user")
            logger.warning(f"{entity.name} interrupted; resume continues after source id {stats.last_source_id}")
            raise

        except Exception as e:
            decision = self.error_handler.handle(
                e, entity.name, batch_number=batch_number or None, retries_exhausted=True
            )
            stats.status = EntityStatus.FAILED
            if checkpoint_id is not None:
                try:
                    self.checkpoints.fail(checkpoint_id, e)
                except SQLAlchemyError as fail_error:
                    logger.error(f"Could not mark checkpoint {checkpoint_id} failed: {fail_error}")
            return decision

        finally:
            stats.completed_at = utcnow()
            stats.errors = self.error_handler.records[errors_before:]
            self._notify("finish", stats, None)

    def _open(
        self,
        entity: MigrationEntity,
        options: DifferentialMigrationOptions,
        stats: EntityStats,
        operation_id: str,
    ) -> Tuple[Optional[str], DetectionCursor, int, Optional[int]]:
        """
        Resume or start the entity's checkpoint

        Returns:
            Tuple of (checkpoint id, start cursor, last batch number, estimated rows)
        """
        operation_type = options.operation_type
        full = operation_type == OperationType.FULL
        checkpoint, since = self._existing_progress(entity, options)

        if checkpoint is not None and not options.dry_run:
            checkpoint = self.checkpoints.resume(checkpoint.id, stale_after=self.stale_after)
            stats.resumed = True

        cursor = self.detector.initial_cursor(entity, checkpoint, since, full=full)
        total = self._estimate(entity, cursor)

        if options.dry_run:
            return None, cursor, 0, total

        if checkpoint is not None:
            stats.checkpoint_id = str(checkpoint.id)
            return stats.checkpoint_id, cursor, checkpoint.batch_number or 0, total

        checkpoint_id = self.checkpoints.start(
            entity.name,
            operation_type,
            metadata={
                'operation_id': operation_id,
                'detection_strategy': entity.detection_strategy.value,
                'start_id': cursor.last_id,
                'last_sync_timestamp': cursor.last_timestamp.isoformat() if cursor.last_timestamp else None,
            },
            batch_size=options.batch_size or entity.batch_size,
            records_total=total,
        )
        stats.checkpoint_id = checkpoint_id
        return checkpoint_id, cursor, 0, total

    def _existing_progress(self, entity: MigrationEntity, options: DifferentialMigrationOptions):
        """
        Checkpoint to continue from, plus the timestamp watermark

        A live in_progress checkpoint is returned as-is; ``resume`` then
        raises ConflictError unless it is stale. Failed checkpoints are only
        continued when the caller asked to resume.
        """
        if not self.checkpoints.has_schema():
            return None, None

        operation_type = options.operation_type
        checkpoint = self.checkpoints.find_in_progress(entity.name, operation_type)
        if checkpoint is None and options.resume:
            checkpoint = self.checkpoints.find_resumable(entity.name, operation_type)

        since = None
        last = self.checkpoints.last_completed(entity.name, operation_type)
        if last is not None and last.last_sync_timestamp:
            since = parse_timestamp(last.last_sync_timestamp)
        return checkpoint, since

    def _estimate(self, entity: MigrationEntity, cursor: DetectionCursor) -> Optional[int]:
        try:
            return self.detector.count_pending(entity, cursor)
        except SQLAlchemyError as e:
            logger.warning(f"Could not estimate pending rows for {entity.name}: {e}")
            return None

    def _process_batch(
        self,
        entity: MigrationEntity,
        cursor: DetectionCursor,
        batch_size: int,
        batch_number: int,
        options: DifferentialMigrationOptions,
    ) -> Tuple[BatchResult, DetectionCursor, bool]:
        """One batch; a timeout that survived the retries gets one more try at half size"""
        try:
            return self.processor.process_batch(
                entity, cursor, batch_size, batch_number,
                dry_run=options.dry_run, conflict_resolution=options.conflict_resolution,
            )
        except Exception as e:
            if self.error_handler.classify(e) != ErrorKind.TIMEOUT or batch_size <= 1:
                raise
            smaller = max(batch_size // 2, 1)
            logger.warning(f"{entity.name} batch {batch_number} timed out; retrying with batch size {smaller}")
            return self.processor.process_batch(
                entity, cursor, smaller, batch_number,
                dry_run=options.dry_run, conflict_resolution=options.conflict_resolution,
            )

    # Sequencing

    @staticmethod
    def _check_descriptors(entities: Sequence[MigrationEntity]) -> None:
        by_name = {}
        for entity in entities:
            if entity.name in by_name:
                raise InvalidEntityConfiguration(f"Duplicate entity name: {entity.name}")
            by_name[entity.name] = entity

        for entity in entities:
            for dependency in entity.depends_on or []:
                parent = by_name.get(dependency)
                if parent is None:
                    raise InvalidEntityConfiguration(
                        f"{entity.name} depends on unknown entity {dependency}"
                    )
                if parent.dependency_order >= entity.dependency_order:
                    raise InvalidEntityConfiguration(
                        f"{entity.name} (order {entity.dependency_order}) depends on "
                        f"{dependency} (order {parent.dependency_order}); dependencies must run first"
                    )

    @staticmethod
    def _blocking_dependency(
        entity: MigrationEntity,
        selected: Sequence[MigrationEntity],
        result: MigrationResult,
    ) -> Optional[str]:
        """
        First dependency in this run that did not finish

        Explicit ``depends_on`` wins; without it every lower-order entity
        in the run is a dependency. Entities outside the run are assumed
        migrated by an earlier run.
        """
        if entity.depends_on is not None:
            dependencies = [name for name in entity.depends_on if name in result.entities]
        else:
            dependencies = [e.name for e in selected if e.dependency_order < entity.dependency_order]

        for name in dependencies:
            stats = result.entities[name]
            if stats.status in (EntityStatus.COMPLETED, EntityStatus.PARTIAL):
                continue
            if stats.status == EntityStatus.SKIPPED and stats.blocked_by is None:
                continue
            return name
        return None

    def _register_mappings(self, entities: Sequence[MigrationEntity]) -> None:
        for entity in entities:
            self.mapping.register(entity.entity_type, entity.target_table, entity.legacy_id_column)

        missing = {
            fk.entity_type
            for entity in entities for fk in entity.foreign_keys
            if not self.mapping.is_registered(fk.entity_type)
        }
        if missing:
            raise InvalidEntityConfiguration(
                f"Foreign keys reference entity types without a descriptor: {', '.join(sorted(missing))}"
            )

    # Rollback

    def _rollback(self, selected: Sequence[MigrationEntity], result: MigrationResult) -> Dict[str, int]:
        """
        Delete rows inserted by this run, dependents first

        Checkpoints written by the run are removed too, so the next run
        does not resume past rows that no longer exist.
        """
        removed = {}
        for entity in sorted(selected, key=lambda e: e.dependency_order, reverse=True):
            stats = result.entities[entity.name]
            legacy_ids = stats.inserted_legacy_ids
            try:
                removed[entity.name] = self._delete_rows(entity, legacy_ids) if legacy_ids else 0
                if stats.checkpoint_id:
                    self.checkpoints.delete(stats.checkpoint_id)
            except SQLAlchemyError as e:
                self.error_handler.handle(e, entity.name)
                result.errors = result.errors + [self.error_handler.records[-1]]
                continue
            self.mapping.invalidate(entity.entity_type)
            if removed[entity.name]:
                logger.warning(f"Rolled back {removed[entity.name]} {entity.name} row(s)")
        return removed

    def _delete_rows(self, entity: MigrationEntity, legacy_ids: List[int]) -> int:
        table = self.target_db.get_table(entity.target_table)
        column = table.c[entity.legacy_id_column]
        deleted = 0
        with self.target_db.transaction() as conn:
            for start in range(0, len(legacy_ids), ROLLBACK_CHUNK_SIZE):
                chunk = legacy_ids[start:start + ROLLBACK_CHUNK_SIZE]
                deleted += conn.execute(delete(table).where(column.in_(chunk))).rowcount
                conn.execute(
                    delete(RowChecksum.__table__).where(
                        RowChecksum.__table__.c.entity_name == entity.name,
                        RowChecksum.__table__.c.legacy_id.in_(chunk),
                    )
                )
        return deleted

    def _notify(self, event: str, stats: EntityStats, total: Optional[int]) -> None:
        if self.progress_callback is not None:
            self.progress_callback(event, stats, total)
