"""
Checkpoint Manager

Durable, queryable progress state in the ``migration_checkpoints`` table.
A checkpoint moves ``pending -> in_progress -> completed | failed``; the
partial unique index on in_progress rows guarantees that only one process
advances a given (entity, operation type) at a time.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..contracts.migration_engine_service import BatchResult, OperationType
from ..lib.db_manager import DatabaseManager
from ..lib.exceptions import CheckpointNotFoundException, ConflictError, InvalidCheckpointTransition
from ..models import Base, CheckpointStatus, MigrationCheckpoint, as_utc, utcnow

logger = logging.getLogger(__name__)

OperationTypeLike = Union[OperationType, str]

ALLOWED_TRANSITIONS = {
    CheckpointStatus.PENDING: {CheckpointStatus.IN_PROGRESS, CheckpointStatus.FAILED},
    CheckpointStatus.IN_PROGRESS: {CheckpointStatus.COMPLETED, CheckpointStatus.FAILED},
    CheckpointStatus.FAILED: {CheckpointStatus.IN_PROGRESS},
    CheckpointStatus.COMPLETED: set(),
}


def _operation_value(operation_type: OperationTypeLike) -> str:
    if isinstance(operation_type, OperationType):
        return operation_type.value
    return OperationType(operation_type).value


def _checkpoint_uuid(checkpoint_id: Union[str, uuid.UUID]) -> uuid.UUID:
    if isinstance(checkpoint_id, uuid.UUID):
        return checkpoint_id
    try:
        return uuid.UUID(str(checkpoint_id))
    except ValueError:
        raise CheckpointNotFoundException(f"Invalid checkpoint id: {checkpoint_id}") from None


class CheckpointManager:
    """Persists per-entity progress so interrupted runs resume, not restart"""

    def __init__(self, target_db: DatabaseManager):
        self.target_db = target_db

    def ensure_schema(self) -> None:
        """Create the checkpoint and checksum tables when missing"""
        if not self.target_db._is_initialized:
            self.target_db.initialize()
        Base.metadata.create_all(bind=self.target_db.engine)

    def has_schema(self) -> bool:
        return self.target_db.table_exists(MigrationCheckpoint.__tablename__)

    def start(
        self,
        entity: str,
        operation_type: OperationTypeLike,
        metadata: Optional[Dict[str, Any]] = None,
        batch_size: Optional[int] = None,
        records_total: Optional[int] = None,
    ) -> str:
        """
        Create an in_progress checkpoint

        Returns:
            The checkpoint id

        Raises:
            ConflictError: If an in_progress checkpoint already exists for the pair
        """
        op = _operation_value(operation_type)

        try:
            with self.target_db.session_transaction() as session:
                existing = session.execute(
                    select(MigrationCheckpoint.id).where(
                        MigrationCheckpoint.entity_name == entity,
                        MigrationCheckpoint.operation_type == op,
                        MigrationCheckpoint.status == CheckpointStatus.IN_PROGRESS,
                    )
                ).scalar()
                if existing is not None:
                    raise ConflictError(
                        f"Checkpoint {existing} is already in progress for {entity} ({op})",
                        {'entity': entity, 'operation_type': op, 'checkpoint_id': str(existing)}
                    )

                checkpoint = MigrationCheckpoint(
                    entity_name=entity,
                    operation_type=op,
                    status=CheckpointStatus.PENDING,
                    batch_size=batch_size,
                    records_total=records_total,
                    checkpoint_metadata=dict(metadata or {}),
                )
                session.add(checkpoint)
                session.flush()

                self._transition(checkpoint, CheckpointStatus.IN_PROGRESS)
                checkpoint.started_at = utcnow()
                checkpoint_id = str(checkpoint.id)

        except IntegrityError as e:
            # Lost the race against another process between check and insert
            raise ConflictError(
                f"Checkpoint already in progress for {entity} ({op})",
                {'entity': entity, 'operation_type': op, 'original_message': str(e.orig)}
            ) from e

        logger.info(f"Started checkpoint {checkpoint_id} for {entity} ({op})")
        return checkpoint_id

    def record_batch(self, checkpoint_id: Union[str, uuid.UUID], batch_result: BatchResult) -> MigrationCheckpoint:
        """
        Fold a committed batch into the checkpoint

        Must be called after every batch so a crash loses at most one
        batch of work.
        """
        with self.target_db.session_transaction() as session:
            checkpoint = self._get_for_update(session, checkpoint_id)
            if checkpoint.status != CheckpointStatus.IN_PROGRESS:
                raise InvalidCheckpointTransition(
                    f"Cannot record a batch on checkpoint {checkpoint_id} in status {checkpoint.status}"
                )

            checkpoint.records_processed += batch_result.processed_count
            checkpoint.records_successful += batch_result.successful_count
            checkpoint.records_failed += batch_result.failed_count
            checkpoint.records_skipped += batch_result.skipped_count
            checkpoint.batch_number = max(checkpoint.batch_number or 0, batch_result.batch_number)

            if batch_result.last_source_id is not None:
                checkpoint.last_processed_source_id = batch_result.last_source_id

            metadata = dict(checkpoint.checkpoint_metadata or {})
            if batch_result.last_source_timestamp is not None:
                metadata['last_sync_timestamp'] = batch_result.last_source_timestamp.isoformat()
            metadata['last_batch_at'] = utcnow().isoformat()
            checkpoint.checkpoint_metadata = metadata
            checkpoint.updated_at = utcnow()

        logger.debug(
            f"Checkpoint {checkpoint_id}: batch {batch_result.batch_number} recorded "
            f"(last id {batch_result.last_source_id})"
        )
        return checkpoint

    def complete(self, checkpoint_id: Union[str, uuid.UUID], final_stats: Optional[Dict[str, Any]] = None) -> MigrationCheckpoint:
        """Terminal transition on full success"""
        with self.target_db.session_transaction() as session:
            checkpoint = self._get_for_update(session, checkpoint_id)
            self._transition(checkpoint, CheckpointStatus.COMPLETED)
            checkpoint.completed_at = utcnow()
            if final_stats:
                metadata = dict(checkpoint.checkpoint_metadata or {})
                metadata['final_stats'] = final_stats
                checkpoint.checkpoint_metadata = metadata

        logger.info(f"Checkpoint {checkpoint_id} completed")
        return checkpoint

    def fail(self, checkpoint_id: Union[str, uuid.UUID], error: Union[BaseException, str]) -> MigrationCheckpoint:
        """
        Terminal transition on unrecoverable error

        The resume position (last id, batch number) is left untouched.
        """
        message = error if isinstance(error, str) else f"{error.__class__.__name__}: {error}"

        with self.target_db.session_transaction() as session:
            checkpoint = self._get_for_update(session, checkpoint_id)
            self._transition(checkpoint, CheckpointStatus.FAILED)
            checkpoint.failed_at = utcnow()
            checkpoint.error_message = message[:4000]

        logger.warning(f"Checkpoint {checkpoint_id} failed: {message}")
        return checkpoint

    def find_resumable(self, entity: str, operation_type: OperationTypeLike) -> Optional[MigrationCheckpoint]:
        """Latest in_progress or failed checkpoint that holds a resume position"""
        op = _operation_value(operation_type)

        with self.target_db.get_session() as session:
            candidates = session.execute(
                select(MigrationCheckpoint)
                .where(
                    MigrationCheckpoint.entity_name == entity,
                    MigrationCheckpoint.operation_type == op,
                    MigrationCheckpoint.status.in_([CheckpointStatus.IN_PROGRESS, CheckpointStatus.FAILED]),
                )
                .order_by(MigrationCheckpoint.updated_at.desc())
            ).scalars().all()

        for checkpoint in candidates:
            if checkpoint.is_resumable:
                return checkpoint
        return None

    def resume(
        self,
        checkpoint_id: Union[str, uuid.UUID],
        stale_after: Optional[float] = None,
    ) -> MigrationCheckpoint:
        """
        Take a checkpoint back into in_progress

        A failed checkpoint is reopened. An in_progress checkpoint is only
        taken over when it has not been updated for ``stale_after`` seconds
        (its process died); otherwise another process owns it.

        Raises:
            ConflictError: If the checkpoint (or a sibling) is actively in progress
            InvalidCheckpointTransition: If the checkpoint is completed
        """
        try:
            with self.target_db.session_transaction() as session:
                checkpoint = self._get_for_update(session, checkpoint_id)
                metadata = dict(checkpoint.checkpoint_metadata or {})

                if checkpoint.status == CheckpointStatus.IN_PROGRESS:
                    last_update = as_utc(checkpoint.updated_at)
                    if stale_after is None or last_update > utcnow() - timedelta(seconds=stale_after):
                        raise ConflictError(
                            f"Checkpoint {checkpoint_id} for {checkpoint.entity_name} is still in progress",
                            {'checkpoint_id': str(checkpoint_id), 'updated_at': last_update.isoformat()}
                        )
                    metadata['takeovers'] = metadata.get('takeovers', 0) + 1
                    logger.warning(
                        f"Taking over stale checkpoint {checkpoint_id} for {checkpoint.entity_name} "
                        f"(last update {last_update.isoformat()})"
                    )
                else:
                    self._transition(checkpoint, CheckpointStatus.IN_PROGRESS)
                    checkpoint.failed_at = None
                    checkpoint.error_message = None
                    metadata['resumes'] = metadata.get('resumes', 0) + 1

                checkpoint.checkpoint_metadata = metadata
                checkpoint.updated_at = utcnow()

        except IntegrityError as e:
            raise ConflictError(
                f"Another checkpoint is in progress; cannot resume {checkpoint_id}",
                {'original_message': str(e.orig)}
            ) from e

        logger.info(
            f"Resuming checkpoint {checkpoint_id} for {checkpoint.entity_name} "
            f"after source id {checkpoint.last_processed_source_id}"
        )
        return checkpoint

    def reset(self, entity: str, operation_type: Optional[OperationTypeLike] = None) -> int:
        """
        Delete pending, in_progress and failed checkpoints for an entity

        Completed checkpoints are kept as history.

        Returns:
            Number of checkpoints removed
        """
        with self.target_db.session_transaction() as session:
            query = select(MigrationCheckpoint).where(
                MigrationCheckpoint.entity_name == entity,
                MigrationCheckpoint.status.in_([
                    CheckpointStatus.PENDING, CheckpointStatus.IN_PROGRESS, CheckpointStatus.FAILED
                ]),
            )
            if operation_type is not None:
                query = query.where(MigrationCheckpoint.operation_type == _operation_value(operation_type))

            checkpoints = session.execute(query).scalars().all()
            for checkpoint in checkpoints:
                session.delete(checkpoint)
            removed = len(checkpoints)

        logger.info(f"Reset {removed} checkpoint(s) for {entity}")
        return removed

    def delete(self, checkpoint_id: Union[str, uuid.UUID]) -> None:
        """Remove one checkpoint regardless of status (used after a rollback)"""
        with self.target_db.session_transaction() as session:
            session.delete(self._get_for_update(session, checkpoint_id))
        logger.info(f"Deleted checkpoint {checkpoint_id}")

    def find_in_progress(self, entity: str, operation_type: OperationTypeLike) -> Optional[MigrationCheckpoint]:
        with self.target_db.get_session() as session:
            return session.execute(
                select(MigrationCheckpoint).where(
                    MigrationCheckpoint.entity_name == entity,
                    MigrationCheckpoint.operation_type == _operation_value(operation_type),
                    MigrationCheckpoint.status == CheckpointStatus.IN_PROGRESS,
                )
            ).scalars().first()

    def get(self, checkpoint_id: Union[str, uuid.UUID]) -> MigrationCheckpoint:
        with self.target_db.get_session() as session:
            checkpoint = session.get(MigrationCheckpoint, _checkpoint_uuid(checkpoint_id))
            if checkpoint is None:
                raise CheckpointNotFoundException(f"Checkpoint not found: {checkpoint_id}")
            return checkpoint

    def last_completed(self, entity: str, operation_type: OperationTypeLike) -> Optional[MigrationCheckpoint]:
        """Most recent completed checkpoint; source of the timestamp watermark"""
        with self.target_db.get_session() as session:
            return session.execute(
                select(MigrationCheckpoint)
                .where(
                    MigrationCheckpoint.entity_name == entity,
                    MigrationCheckpoint.operation_type == _operation_value(operation_type),
                    MigrationCheckpoint.status == CheckpointStatus.COMPLETED,
                )
                .order_by(MigrationCheckpoint.completed_at.desc())
                .limit(1)
            ).scalars().first()

    def list_checkpoints(
        self,
        entity: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[MigrationCheckpoint]:
        with self.target_db.get_session() as session:
            query = select(MigrationCheckpoint).order_by(
                MigrationCheckpoint.entity_name, MigrationCheckpoint.updated_at.desc()
            )
            if entity:
                query = query.where(MigrationCheckpoint.entity_name == entity)
            if status:
                query = query.where(MigrationCheckpoint.status == status)
            if limit:
                query = query.limit(limit)
            return list(session.execute(query).scalars().all())

    def _get_for_update(self, session, checkpoint_id: Union[str, uuid.UUID]) -> MigrationCheckpoint:
        checkpoint = session.get(MigrationCheckpoint, _checkpoint_uuid(checkpoint_id), with_for_update=True)
        if checkpoint is None:
            raise CheckpointNotFoundException(f"Checkpoint not found: {checkpoint_id}")
        return checkpoint

    @staticmethod
    def _transition(checkpoint: MigrationCheckpoint, new_status: str) -> None:
        allowed = ALLOWED_TRANSITIONS.get(checkpoint.status, set())
        if new_status not in allowed:
            raise InvalidCheckpointTransition(
                f"Checkpoint {checkpoint.id}: {checkpoint.status} -> {new_status} is not allowed",
                {'entity': checkpoint.entity_name}
            )
        checkpoint.status = new_status
