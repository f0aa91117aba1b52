"""
Validation Framework

Post-load checks that run independently of the write path, so a migration
bug is caught even when every insert "succeeded". A failing check query is
reported as an error issue; validation itself never raises.
"""

import logging
from typing import List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from ..contracts.migration_engine_service import MigrationEntity
from ..contracts.validation_service import (
    ForeignKeyCheck,
    ForeignKeySpec,
    IntegrityCheck,
    Severity,
    ValidationIssue,
    ValidationResult,
    ValidationService,
)
from ..lib.db_manager import DatabaseManager

logger = logging.getLogger(__name__)


def _as_foreign_key_check(spec: ForeignKeySpec) -> ForeignKeyCheck:
    if isinstance(spec, ForeignKeyCheck):
        return spec
    fk_field, referenced_table = spec
    return ForeignKeyCheck(fk_field=fk_field, referenced_table=referenced_table)


class ValidationFramework(ValidationService):
    """Implementation of ValidationService against the source and target databases"""

    def __init__(self, source_db: DatabaseManager, target_db: DatabaseManager):
        self.source_db = source_db
        self.target_db = target_db

    def check_completeness(
        self,
        source_table: str,
        target_table: str,
        optional_filter: Optional[str] = None,
        legacy_column: Optional[str] = None
    ) -> ValidationResult:
        try:
            source_count = self.source_db.get_table_row_count(source_table, optional_filter)
            target_count = self.target_db.get_table_row_count(
                target_table, f"{legacy_column} IS NOT NULL" if legacy_column else None
            )
        except SQLAlchemyError as e:
            logger.error(f"Completeness check {source_table} -> {target_table} failed: {e}")
            return ValidationResult(issues=[ValidationIssue(
                severity=Severity.ERROR,
                table=target_table,
                message=f"Completeness check could not run: {e.__class__.__name__}",
                suggested_fix="Verify both tables exist and are readable",
            )])

        missing = max(source_count - target_count, 0)
        result = ValidationResult(
            total_records=source_count,
            valid_records=min(source_count, target_count),
            missing_records=missing,
        )

        if target_count < source_count:
            result.issues.append(ValidationIssue(
                severity=Severity.WARNING,
                table=target_table,
                field=legacy_column,
                message=f"{missing} of {source_count} source record(s) are not in {target_table}",
                suggested_fix="Review skipped rows in the run report; re-run after fixing their references",
                affected_records=missing,
            ))
        elif target_count > source_count:
            result.issues.append(ValidationIssue(
                severity=Severity.INFO,
                table=target_table,
                field=legacy_column,
                message=f"{target_table} holds {target_count - source_count} more record(s) than {source_table}",
                affected_records=target_count - source_count,
            ))

        logger.debug(f"Completeness {source_table} -> {target_table}: {source_count} vs {target_count}")
        return result

    def check_foreign_keys(
        self,
        target_table: str,
        foreign_keys: Sequence[ForeignKeySpec]
    ) -> ValidationResult:
        result = ValidationResult()

        try:
            result.total_records = self.target_db.get_table_row_count(target_table)
        except SQLAlchemyError as e:
            result.issues.append(ValidationIssue(
                severity=Severity.ERROR,
                table=target_table,
                message=f"Foreign key check could not count {target_table}: {e.__class__.__name__}",
            ))
            return result

        for spec in foreign_keys:
            check = _as_foreign_key_check(spec)
            query = (
                f"SELECT COUNT(*) FROM {target_table} t "
                f"WHERE t.{check.fk_field} IS NOT NULL AND NOT EXISTS ("
                f"SELECT 1 FROM {check.referenced_table} r "
                f"WHERE r.{check.referenced_column} = t.{check.fk_field})"
            )
            try:
                orphans = int(self.target_db.scalar(query) or 0)
            except SQLAlchemyError as e:
                logger.error(f"Foreign key check {target_table}.{check.fk_field} failed: {e}")
                result.issues.append(ValidationIssue(
                    severity=Severity.ERROR,
                    table=target_table,
                    field=check.fk_field,
                    message=f"Foreign key check could not run: {e.__class__.__name__}",
                    suggested_fix=f"Verify {check.referenced_table}.{check.referenced_column} exists",
                ))
                continue

            if orphans:
                result.invalid_records += orphans
                result.issues.append(ValidationIssue(
                    severity=Severity.ERROR,
                    table=target_table,
                    field=check.fk_field,
                    message=(
                        f"{orphans} orphaned record(s): {check.fk_field} references a missing "
                        f"{check.referenced_table}.{check.referenced_column}"
                    ),
                    suggested_fix=f"Migrate the missing {check.referenced_table} rows or null the reference",
                    affected_records=orphans,
                ))

        result.valid_records = max(result.total_records - result.invalid_records, 0)
        return result

    def check_integrity(
        self,
        target_table: str,
        checks: Sequence[IntegrityCheck]
    ) -> ValidationResult:
        result = ValidationResult()

        for check in checks:
            try:
                violations = int(self.target_db.scalar(check.query) or 0)
            except SQLAlchemyError as e:
                logger.error(f"Integrity check '{check.description}' on {target_table} failed: {e}")
                result.issues.append(ValidationIssue(
                    severity=Severity.ERROR,
                    table=target_table,
                    message=f"Integrity check '{check.description}' could not run: {e.__class__.__name__}",
                    suggested_fix="Fix the check query",
                ))
                continue

            if violations:
                if check.severity == Severity.ERROR:
                    result.invalid_records += violations
                result.issues.append(ValidationIssue(
                    severity=check.severity,
                    table=target_table,
                    message=f"{check.description}: {violations} record(s)",
                    suggested_fix=check.suggested_fix,
                    affected_records=violations,
                ))

        return result

    def validate_entity(self, entity: MigrationEntity) -> ValidationResult:
        """Completeness, foreign key and integrity checks for one entity"""
        result = self.check_completeness(
            entity.source_relation,
            entity.target_table,
            entity.source_filter,
            entity.legacy_id_column,
        )
        if entity.foreign_key_checks:
            result = result.merge(self.check_foreign_keys(entity.target_table, entity.foreign_key_checks))
        if entity.integrity_checks:
            result = result.merge(self.check_integrity(entity.target_table, entity.integrity_checks))

        level = logging.INFO if result.is_valid else logging.WARNING
        logger.log(
            level,
            f"Validated {entity.name}: {len(result.errors)} error(s), {len(result.warnings)} warning(s)"
        )
        return result

    def validate_entities(self, entities: Sequence[MigrationEntity]) -> List[ValidationResult]:
        return [self.validate_entity(entity) for entity in entities]
