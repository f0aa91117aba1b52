"""
Service contracts for the migration engine.
"""

from .migration_engine_service import (
    BatchResult,
    ConflictResolution,
    DetectedBatch,
    DetectionCursor,
    DetectionStrategy,
    DifferentialMigrationOptions,
    EntityStats,
    EntityStatus,
    ForeignKeyReference,
    MigrationEngineService,
    MigrationEntity,
    MigrationErrorRecord,
    MigrationResult,
    OperationType,
    RunStatus,
)
from .validation_service import (
    ForeignKeyCheck,
    IntegrityCheck,
    Severity,
    ValidationIssue,
    ValidationResult,
    ValidationService,
)

__all__ = [
    "BatchResult",
    "ConflictResolution",
    "DetectedBatch",
    "DetectionCursor",
    "DetectionStrategy",
    "DifferentialMigrationOptions",
    "EntityStats",
    "EntityStatus",
    "ForeignKeyReference",
    "MigrationEngineService",
    "MigrationEntity",
    "MigrationErrorRecord",
    "MigrationResult",
    "OperationType",
    "RunStatus",
    "ForeignKeyCheck",
    "IntegrityCheck",
    "Severity",
    "ValidationIssue",
    "ValidationResult",
    "ValidationService",
]
