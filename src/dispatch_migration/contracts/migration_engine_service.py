"""
Migration Engine Service Contract

Types exchanged between the orchestrator, the batch processor, the
differential detector and the CLI boundary, plus the abstract engine
interface. The CLI hands the engine a list of ``MigrationEntity``
descriptors and a ``DifferentialMigrationOptions`` and gets a
``MigrationResult`` back; rendering that result is the caller's job.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..models import utcnow
from .validation_service import ForeignKeySpec, IntegrityCheck, ValidationIssue


class OperationType(Enum):
    FULL = "full"
    DIFFERENTIAL = "differential"


class RunStatus(Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"


class EntityStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class DetectionStrategy(Enum):
    MAX_ID = "max_id"
    TIMESTAMP = "timestamp"
    CHECKSUM = "checksum"


class ConflictResolution(Enum):
    """What to do with a source row whose legacy id is already in the target"""
    SKIP = "skip"
    SOURCE_WINS = "source_wins"
    LAST_WRITER_WINS = "last_writer_wins"
    MANUAL = "manual"


# (source row, mapped target record) -> target record, or None to skip the row
TransformHook = Callable[[Dict[str, Any], Dict[str, Any]], Optional[Dict[str, Any]]]


@dataclass
class ForeignKeyReference:
    """A legacy integer foreign key that must be translated to a target UUID"""
    source_field: str
    target_field: str
    entity_type: str
    required: bool = True


@dataclass
class MigrationEntity:
    """
    Static description of one migratable entity

    ``entity_type`` is the mapping key (``office`` -> ``legacy_office_id``);
    ``legacy_id_column`` overrides the derived column name where the target
    schema deviates (orders carry ``legacy_instruction_id``).
    """
    name: str
    entity_type: str
    source_table: str
    target_table: str
    dependency_order: int
    batch_size: int = 1000
    field_mappings: Dict[str, str] = field(default_factory=dict)
    foreign_keys: List[ForeignKeyReference] = field(default_factory=list)
    legacy_id_column: Optional[str] = None
    source_id_field: str = "id"
    timestamp_field: str = "updated_at"
    detection_strategy: DetectionStrategy = DetectionStrategy.MAX_ID
    checksum_exclude_fields: List[str] = field(default_factory=list)
    source_filter: Optional[str] = None
    source_select: Optional[str] = None
    depends_on: Optional[List[str]] = None
    transform: Optional[TransformHook] = None
    foreign_key_checks: List[ForeignKeySpec] = field(default_factory=list)
    integrity_checks: List[IntegrityCheck] = field(default_factory=list)

    def __post_init__(self):
        if not self.name:
            raise ValueError("entity name cannot be empty")
        if self.batch_size <= 0:
            raise ValueError(f"{self.name}: batch_size must be positive")
        if not self.legacy_id_column:
            self.legacy_id_column = f"legacy_{self.entity_type}_id"

    @property
    def source_relation(self) -> str:
        """FROM clause for source reads: the table or a wrapped select"""
        if self.source_select:
            return f"({self.source_select}) AS src"
        return self.source_table


@dataclass
class DetectionCursor:
    """Position after the last scanned source row (exclusive)"""
    last_id: Optional[int] = None
    last_timestamp: Optional[datetime] = None


@dataclass
class DetectedBatch:
    """Rows selected for migration from one bounded window of the source"""
    rows: List[Dict[str, Any]]
    cursor: DetectionCursor
    exhausted: bool
    scanned: int = 0


@dataclass
class BatchResult:
    """
    Per-batch counters, folded into checkpoint and entity statistics

    Rows that are not written count as skipped. ``failed_count`` is the
    part of ``skipped_count`` that was rejected with a recorded error
    (foreign key violation, bad value) and needs manual review.
    """
    batch_number: int
    input_count: int = 0
    transformed_count: int = 0
    inserted_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    first_source_id: Optional[int] = None
    last_source_id: Optional[int] = None
    last_source_timestamp: Optional[datetime] = None
    validation_issues: List[ValidationIssue] = field(default_factory=list)
    error_messages: List[str] = field(default_factory=list)
    inserted_legacy_ids: List[int] = field(default_factory=list)
    duration: float = 0.0

    @property
    def successful_count(self) -> int:
        return self.inserted_count + self.updated_count

    @property
    def processed_count(self) -> int:
        return self.successful_count + self.skipped_count


@dataclass
class MigrationErrorRecord:
    """A classified error, kept for the run report"""
    entity: str
    kind: str
    action: str
    message: str
    legacy_id: Optional[int] = None
    batch_number: Optional[int] = None
    recommendation: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity': self.entity,
            'kind': self.kind,
            'action': self.action,
            'message': self.message,
            'legacy_id': self.legacy_id,
            'batch_number': self.batch_number,
            'recommendation': self.recommendation,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class EntityStats:
    """Aggregated outcome of one entity in a run"""
    name: str
    dependency_order: int
    status: EntityStatus = EntityStatus.PENDING
    checkpoint_id: Optional[str] = None
    resumed: bool = False
    batches: int = 0
    total_processed: int = 0
    transformed: int = 0
    successful: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    last_source_id: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    blocked_by: Optional[str] = None
    validation_issues: List[ValidationIssue] = field(default_factory=list)
    errors: List[MigrationErrorRecord] = field(default_factory=list)
    inserted_legacy_ids: List[int] = field(default_factory=list)

    @property
    def duration(self) -> Optional[float]:
        if not self.started_at or not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def add_batch(self, batch: BatchResult) -> None:
        self.batches += 1
        self.total_processed += batch.processed_count
        self.transformed += batch.transformed_count
        self.successful += batch.successful_count
        self.inserted += batch.inserted_count
        self.updated += batch.updated_count
        self.skipped += batch.skipped_count
        self.failed += batch.failed_count
        self.validation_issues.extend(batch.validation_issues)
        self.inserted_legacy_ids.extend(batch.inserted_legacy_ids)
        if batch.last_source_id is not None:
            self.last_source_id = batch.last_source_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'dependency_order': self.dependency_order,
            'status': self.status.value,
            'checkpoint_id': self.checkpoint_id,
            'resumed': self.resumed,
            'batches': self.batches,
            'total_processed': self.total_processed,
            'transformed': self.transformed,
            'successful': self.successful,
            'inserted': self.inserted,
            'updated': self.updated,
            'skipped': self.skipped,
            'failed': self.failed,
            'last_source_id': self.last_source_id,
            'duration': self.duration,
            'blocked_by': self.blocked_by,
            'validation_issues': [issue.to_dict() for issue in self.validation_issues],
            'errors': [error.to_dict() for error in self.errors],
        }


@dataclass
class DifferentialMigrationOptions:
    """Run-level options supplied by the CLI boundary"""
    batch_size: Optional[int] = None
    entities: Optional[List[str]] = None
    dry_run: bool = False
    resume: bool = False
    conflict_resolution: ConflictResolution = ConflictResolution.SKIP
    skip_validation: bool = False
    rollback_on_failure: bool = False
    operation_type: OperationType = OperationType.DIFFERENTIAL


@dataclass
class MigrationResult:
    """Structured outcome of a run"""
    operation_id: str
    status: RunStatus
    entities: Dict[str, EntityStats] = field(default_factory=dict)
    errors: List[MigrationErrorRecord] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    dry_run: bool = False
    rolled_back: Dict[str, int] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED and not any(
            stats.status == EntityStatus.FAILED for stats in self.entities.values()
        )

    @property
    def duration(self) -> Optional[float]:
        if not self.started_at or not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def total_processed(self) -> int:
        return sum(s.total_processed for s in self.entities.values())

    @property
    def successful(self) -> int:
        return sum(s.successful for s in self.entities.values())

    @property
    def skipped(self) -> int:
        return sum(s.skipped for s in self.entities.values())

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.entities.values())

    @property
    def validation_issues(self) -> List[ValidationIssue]:
        return [issue for s in self.entities.values() for issue in s.validation_issues]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation_id': self.operation_id,
            'status': self.status.value,
            'success': self.success,
            'dry_run': self.dry_run,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration': self.duration,
            'totals': {
                'processed': self.total_processed,
                'successful': self.successful,
                'skipped': self.skipped,
                'failed': self.failed,
            },
            'entities': {name: stats.to_dict() for name, stats in self.entities.items()},
            'rolled_back': dict(self.rolled_back),
            'errors': [error.to_dict() for error in self.errors],
        }


class MigrationEngineService(ABC):
    """Abstract interface for the migration engine"""

    @abstractmethod
    def run(
        self,
        entities: Sequence[MigrationEntity],
        options: Optional[DifferentialMigrationOptions] = None
    ) -> MigrationResult:
        """
        Migrate entities in dependency order

        Args:
            entities: Entity descriptors (any order)
            options: Run options

        Returns:
            MigrationResult with a terminal status for every entity

        Raises:
            InvalidEntityConfiguration: If descriptors are inconsistent
        """
        pass

    @abstractmethod
    def plan(
        self,
        entities: Sequence[MigrationEntity],
        options: Optional[DifferentialMigrationOptions] = None
    ) -> Dict[str, int]:
        """
        Estimate pending source rows per entity without writing anything

        Returns:
            Mapping of entity name to the number of rows a run would consider
        """
        pass

    @abstractmethod
    def reset(self, entity_name: str, operation_type: Optional[OperationType] = None) -> int:
        """
        Clear in_progress/failed checkpoints so the entity restarts cleanly

        Returns:
            Number of checkpoints removed
        """
        pass
