"""
Validation Service Contract

Post-load correctness checks that run independently of the write path:
completeness (source vs target counts), referential integrity (orphaned
foreign keys) and caller-supplied integrity predicates.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class ValidationIssue:
    """A single validation finding; only ERROR severity affects validity"""
    severity: Severity
    table: str
    message: str
    field: Optional[str] = None
    suggested_fix: Optional[str] = None
    affected_records: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'severity': self.severity.value,
            'table': self.table,
            'field': self.field,
            'message': self.message,
            'suggested_fix': self.suggested_fix,
            'affected_records': self.affected_records,
        }


@dataclass
class ValidationResult:
    """Outcome of one or more validation checks"""
    total_records: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    missing_records: int = 0
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not any(issue.severity == Severity.ERROR for issue in self.issues)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        """Combine two results; record totals take the larger observation"""
        total_records = max(self.total_records, other.total_records)
        invalid_records = self.invalid_records + other.invalid_records
        return ValidationResult(
            total_records=total_records,
            valid_records=max(total_records - invalid_records, 0),
            invalid_records=invalid_records,
            missing_records=self.missing_records + other.missing_records,
            issues=self.issues + other.issues,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_valid': self.is_valid,
            'total_records': self.total_records,
            'valid_records': self.valid_records,
            'invalid_records': self.invalid_records,
            'missing_records': self.missing_records,
            'issues': [issue.to_dict() for issue in self.issues],
        }


@dataclass
class ForeignKeyCheck:
    """Target column that must reference an existing row"""
    fk_field: str
    referenced_table: str
    referenced_column: str = "id"


@dataclass
class IntegrityCheck:
    """
    Caller-supplied SQL check

    ``query`` must return a single row whose first column is the number of
    violating records (e.g. ``SELECT COUNT(*) FROM orders WHERE ...``).
    """
    description: str
    query: str
    severity: Severity = Severity.ERROR
    suggested_fix: Optional[str] = None


ForeignKeySpec = Union[ForeignKeyCheck, Tuple[str, str]]


class ValidationService(ABC):
    """Abstract interface for migration validation"""

    @abstractmethod
    def check_completeness(
        self,
        source_table: str,
        target_table: str,
        optional_filter: Optional[str] = None,
        legacy_column: Optional[str] = None
    ) -> ValidationResult:
        """
        Compare source and target record counts

        Args:
            source_table: Source table (or subquery alias) to count
            target_table: Target table to count
            optional_filter: SQL predicate applied to the source count
            legacy_column: When given, only target rows carrying a legacy id count

        Returns:
            ValidationResult whose ``missing_records`` is the count delta;
            a WARNING issue is raised when target < source
        """
        pass

    @abstractmethod
    def check_foreign_keys(
        self,
        target_table: str,
        foreign_keys: Sequence[ForeignKeySpec]
    ) -> ValidationResult:
        """
        Count orphaned foreign keys

        Args:
            target_table: Table holding the foreign keys
            foreign_keys: (fk_field, referenced_table) pairs or ForeignKeyCheck

        Returns:
            ValidationResult with one ERROR issue per field that has orphans
        """
        pass

    @abstractmethod
    def check_integrity(
        self,
        target_table: str,
        checks: Sequence[IntegrityCheck]
    ) -> ValidationResult:
        """
        Run caller-supplied predicate queries

        Args:
            target_table: Table the checks concern
            checks: Checks, each tagged with a severity

        Returns:
            ValidationResult with an issue per violated check
        """
        pass
