"""
MigrationCheckpoint Model

Durable progress marker for one (entity, operation type) pair, enabling
resume after interruption.
"""

from typing import Any, Dict, Optional

from sqlalchemy import JSON, BigInteger, CheckConstraint, Column, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import validates

from . import Base, CheckpointStatus, as_utc

IN_PROGRESS_PREDICATE = text("status = 'in_progress'")


class MigrationCheckpoint(Base):
    """Progress of one entity migration, updated after every batch"""

    __tablename__ = "migration_checkpoints"

    entity_name = Column(
        String(100),
        nullable=False,
        comment="Entity descriptor name (offices, orders, ...)"
    )

    operation_type = Column(
        String(20),
        nullable=False,
        comment="full or differential"
    )

    status = Column(
        String(20),
        nullable=False,
        default=CheckpointStatus.PENDING,
        comment="Current checkpoint status"
    )

    # Resume position
    last_processed_source_id = Column(
        BigInteger,
        nullable=True,
        comment="Highest source id covered by a committed batch"
    )

    batch_number = Column(Integer, nullable=False, default=0)
    batch_size = Column(Integer, nullable=True)

    # Counters
    records_total = Column(Integer, nullable=True, comment="Estimated rows to process")
    records_processed = Column(Integer, nullable=False, default=0)
    records_successful = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    records_skipped = Column(Integer, nullable=False, default=0)

    # Timing
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    error_message = Column(Text, nullable=True)

    checkpoint_metadata = Column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
        comment="Operation id, last_sync_timestamp, detection strategy"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'failed')",
            name="valid_status"
        ),
        CheckConstraint(
            "operation_type IN ('full', 'differential')",
            name="valid_operation_type"
        ),
        CheckConstraint(
            "records_processed >= 0 AND records_successful >= 0 "
            "AND records_failed >= 0 AND records_skipped >= 0",
            name="valid_counters"
        ),
        CheckConstraint("batch_number >= 0", name="valid_batch_number"),
        # At most one in_progress checkpoint per (entity, operation type)
        Index(
            "uq_migration_checkpoints_in_progress",
            "entity_name",
            "operation_type",
            unique=True,
            postgresql_where=IN_PROGRESS_PREDICATE,
            sqlite_where=IN_PROGRESS_PREDICATE,
        ),
        Index("ix_migration_checkpoints_entity_status", "entity_name", "operation_type", "status"),
    )

    @validates('entity_name')
    def validate_entity_name(self, key: str, entity_name: str) -> str:
        if not entity_name or not entity_name.strip():
            raise ValueError("entity_name cannot be empty")
        return entity_name.strip()

    @validates('status')
    def validate_status(self, key: str, status: str) -> str:
        if status not in CheckpointStatus.ALL:
            raise ValueError(f"Invalid checkpoint status: {status}")
        return status

    @property
    def is_resumable(self) -> bool:
        return (
            self.status in (CheckpointStatus.IN_PROGRESS, CheckpointStatus.FAILED)
            and (self.last_processed_source_id is not None or (self.batch_number or 0) > 0)
        )

    @property
    def last_sync_timestamp(self) -> Optional[str]:
        return (self.checkpoint_metadata or {}).get('last_sync_timestamp')

    def get_processing_duration(self) -> Optional[float]:
        """Seconds between start and the terminal transition"""
        end = self.completed_at or self.failed_at
        if not self.started_at or not end:
            return None
        return (as_utc(end) - as_utc(self.started_at)).total_seconds()

    def summary(self) -> Dict[str, Any]:
        return {
            'id': str(self.id),
            'entity': self.entity_name,
            'operation_type': self.operation_type,
            'status': self.status,
            'batch_number': self.batch_number,
            'last_processed_source_id': self.last_processed_source_id,
            'processed': self.records_processed,
            'successful': self.records_successful,
            'skipped': self.records_skipped,
            'failed': self.records_failed,
            'updated_at': as_utc(self.updated_at).isoformat() if self.updated_at else None,
            'duration': self.get_processing_duration(),
        }

    def __repr__(self) -> str:
        return (
            f"<MigrationCheckpoint(entity='{self.entity_name}', type='{self.operation_type}', "
            f"status='{self.status}', batch={self.batch_number})>"
        )
