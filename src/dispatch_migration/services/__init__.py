"""
Migration engine services.
"""

from .batch_processor import BatchProcessor
from .checkpoint_manager import CheckpointManager
from .differential_detector import DifferentialDetector, calculate_checksum
from .entity_registry import build_default_entities, select_entities
from .error_handler import ErrorHandler, ErrorKind, RecoveryAction
from .orchestrator import MigrationOrchestrator
from .reporter import MigrationReporter
from .uuid_mapping import UUIDMappingService
from .validator import ValidationFramework

__all__ = [
    "BatchProcessor",
    "CheckpointManager",
    "DifferentialDetector",
    "calculate_checksum",
    "build_default_entities",
    "select_entities",
    "ErrorHandler",
    "ErrorKind",
    "RecoveryAction",
    "MigrationOrchestrator",
    "MigrationReporter",
    "UUIDMappingService",
    "ValidationFramework",
]
