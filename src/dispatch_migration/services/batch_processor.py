"""
Batch Processor

The inner loop of a migration: pull one bounded window of source rows,
transform them into the target shape (legacy foreign keys resolved to
UUIDs through the mapping service) and load them with a conflict-skip
insert keyed on the legacy id column.
"""

import logging
import time
import uuid
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from ..contracts.migration_engine_service import (
    BatchResult,
    ConflictResolution,
    DetectionCursor,
    DetectionStrategy,
    ForeignKeyReference,
    MigrationEntity,
)
from ..contracts.validation_service import Severity, ValidationIssue
from ..lib.db_manager import DatabaseManager
from ..lib.exceptions import DataTypeException, InvalidConfigurationException, InvalidEntityConfiguration
from ..lib.performance_monitor import PerformanceMonitor
from ..lib.retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS, retry_with_backoff
from ..models import RowChecksum, as_utc, utcnow
from .differential_detector import DifferentialDetector, parse_timestamp
from .error_handler import ErrorHandler, ErrorKind
from .uuid_mapping import UUIDMappingService

logger = logging.getLogger(__name__)

DIALECT_INSERTS = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


class UnresolvedForeignKey(Exception):
    """A required legacy foreign key has no target row"""

    def __init__(self, reference: ForeignKeyReference, value: Any):
        self.reference = reference
        self.value = value
        super().__init__(
            f"{reference.source_field}={value} has no {reference.entity_type} mapping"
        )


def _legacy_id(entity: MigrationEntity, row: Dict[str, Any]) -> int:
    value = row.get(entity.source_id_field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise DataTypeException(
            f"{entity.name}: {entity.source_id_field}={value!r} is not an integer id",
            {'entity': entity.name, 'value': value},
        ) from None


class BatchProcessor:
    """Transforms and loads one batch at a time"""

    def __init__(
        self,
        target_db: DatabaseManager,
        mapping: UUIDMappingService,
        detector: DifferentialDetector,
        error_handler: Optional[ErrorHandler] = None,
        monitor: Optional[PerformanceMonitor] = None,
        max_retries: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_BASE_DELAY,
        sleep=None,
    ):
        self.target_db = target_db
        self.mapping = mapping
        self.detector = detector
        self.error_handler = error_handler or ErrorHandler()
        self.monitor = monitor
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep

    def process_batch(
        self,
        entity: MigrationEntity,
        cursor: DetectionCursor,
        batch_size: int,
        batch_number: int = 1,
        dry_run: bool = False,
        conflict_resolution: ConflictResolution = ConflictResolution.SKIP,
    ) -> Tuple[BatchResult, DetectionCursor, bool]:
        """
        Detect, transform and load one batch

        Args:
            entity: Entity descriptor
            cursor: Position after the last processed source row
            batch_size: Maximum rows to pull from the source
            batch_number: Sequence number of this batch within the entity
            dry_run: Transform only, write nothing
            conflict_resolution: Handling of rows already present in the target

        Returns:
            Tuple of (batch result, cursor for the next batch, exhausted flag)
        """
        start_time = time.time()

        detected = self.detector.fetch_batch(entity, cursor, batch_size)
        result = BatchResult(batch_number=batch_number, input_count=len(detected.rows))
        result.last_source_id = detected.cursor.last_id
        result.last_source_timestamp = detected.cursor.last_timestamp
        if detected.rows:
            result.first_source_id = int(detected.rows[0][entity.source_id_field])

        pairs = self.transform_rows(entity, detected.rows, result)
        result.transformed_count = len(pairs)

        if self.monitor is not None:
            self.monitor.check_memory_limit(f"{entity.name} batch {batch_number}")

        if dry_run:
            self._preview_mapping(entity, pairs)
            logger.info(
                f"[dry-run] {entity.name} batch {batch_number}: "
                f"{len(pairs)} of {len(detected.rows)} rows would be written"
            )
        elif pairs:
            self.load(entity, pairs, result, conflict_resolution)

        result.duration = time.time() - start_time
        logger.info(
            f"{entity.name} batch {batch_number}: {result.inserted_count} inserted, "
            f"{result.updated_count} updated, {result.skipped_count} skipped "
            f"(scanned {detected.scanned}, last id {result.last_source_id})"
        )
        return result, detected.cursor, detected.exhausted

    def transform_rows(
        self,
        entity: MigrationEntity,
        rows: List[Dict[str, Any]],
        result: BatchResult,
    ) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
        """
        Transform source rows, skipping the ones that cannot be migrated

        Returns:
            (source row, target record) pairs ready to load
        """
        pairs = []
        unresolved: Dict[str, List[Any]] = defaultdict(list)
        references: Dict[str, ForeignKeyReference] = {}

        for row in rows:
            legacy_id = row.get(entity.source_id_field)
            try:
                record = self.transform_row(entity, row)
            except UnresolvedForeignKey as e:
                logger.warning(f"Skipping {entity.name} row {legacy_id}: {e}")
                unresolved[e.reference.target_field].append(legacy_id)
                references[e.reference.target_field] = e.reference
                result.skipped_count += 1
                continue
            except Exception as e:
                decision = self.error_handler.handle(e, entity.name, legacy_id, result.batch_number)
                if not decision.is_row_level:
                    raise
                result.skipped_count += 1
                result.failed_count += 1
                result.error_messages.append(f"row {legacy_id}: {e}")
                continue

            if record is None:
                logger.debug(f"{entity.name} row {legacy_id} dropped by transform")
                result.skipped_count += 1
                continue

            pairs.append((row, record))

        for target_field, legacy_ids in unresolved.items():
            reference = references[target_field]
            result.validation_issues.append(ValidationIssue(
                severity=Severity.WARNING,
                table=entity.target_table,
                field=target_field,
                message=(
                    f"{len(legacy_ids)} row(s) skipped in batch {result.batch_number}: "
                    f"{reference.source_field} has no {reference.entity_type} mapping "
                    f"(source ids {', '.join(str(i) for i in legacy_ids[:10])}"
                    f"{', ...' if len(legacy_ids) > 10 else ''})"
                ),
                suggested_fix=f"Migrate the referenced {reference.entity_type} rows, then re-run",
                affected_records=len(legacy_ids),
            ))

        return pairs

    def transform_row(self, entity: MigrationEntity, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Map one source row to a target record

        Raises:
            UnresolvedForeignKey: If a required foreign key has no mapping
            DataTypeException: If the source id is not an integer
        """
        fk_fields = {fk.source_field for fk in entity.foreign_keys}

        if entity.field_mappings:
            record = {target: row.get(source) for source, target in entity.field_mappings.items()}
        else:
            record = {
                key: value for key, value in row.items()
                if key != entity.source_id_field and key not in fk_fields
            }

        legacy_id = _legacy_id(entity, row)
        record[entity.legacy_id_column] = legacy_id

        for reference in entity.foreign_keys:
            value = row.get(reference.source_field)
            target_id = self.mapping.resolve(reference.entity_type, value)
            if target_id is None and reference.required:
                raise UnresolvedForeignKey(reference, value)
            record[reference.target_field] = target_id

        if entity.transform is not None:
            record = entity.transform(row, record)
            if record is None:
                return None
            record[entity.legacy_id_column] = legacy_id

        return record

    def _preview_mapping(self, entity: MigrationEntity, pairs: List[Tuple[Dict[str, Any], Dict[str, Any]]]) -> None:
        """
        Map would-be-inserted rows to provisional UUIDs

        Dependent entities later in the same dry run then resolve their
        references the way they would in a real run.
        """
        legacy_column = entity.legacy_id_column
        self.mapping.extend(entity.entity_type, [
            (record[legacy_column], str(uuid.uuid4()))
            for _, record in pairs
            if self.mapping.resolve(entity.entity_type, record[legacy_column]) is None
        ])

    def load(
        self,
        entity: MigrationEntity,
        pairs: List[Tuple[Dict[str, Any], Dict[str, Any]]],
        result: BatchResult,
        conflict_resolution: ConflictResolution = ConflictResolution.SKIP,
    ) -> None:
        """Write transformed records; counters land in ``result``"""
        table = self._target_table(entity)
        legacy_column = entity.legacy_id_column
        records = self._prepare_records(entity, table, [record for _, record in pairs])
        rows_by_legacy = {record[legacy_column]: row for row, record in pairs}

        existing: Set[int] = set()
        if conflict_resolution != ConflictResolution.SKIP:
            existing = self._existing_legacy_ids(table, legacy_column, list(rows_by_legacy))

        new_records = [r for r in records if r[legacy_column] not in existing]
        changed_records = [r for r in records if r[legacy_column] in existing]

        inserted_ids, rejected = self._insert(entity, table, new_records, result) if new_records else ([], 0)
        inserted = set(inserted_ids)
        result.inserted_count += len(inserted)
        result.inserted_legacy_ids.extend(sorted(inserted))

        # Rows neither inserted nor rejected hit the legacy id conflict: already migrated
        result.skipped_count += len(new_records) - len(inserted) - rejected

        updated: List[int] = []
        if changed_records:
            updated = self._resolve_conflicts(entity, table, changed_records, rows_by_legacy,
                                              conflict_resolution, result)

        self.mapping.extend(
            entity.entity_type,
            [(r[legacy_column], r['id']) for r in new_records if r[legacy_column] in inserted],
        )

        if entity.detection_strategy == DetectionStrategy.CHECKSUM:
            self._store_checksums(entity, [rows_by_legacy[i] for i in list(inserted) + updated])

    def _insert(
        self,
        entity: MigrationEntity,
        table,
        records: List[Dict[str, Any]],
        result: BatchResult,
    ) -> Tuple[List[int], int]:
        """
        Bulk conflict-skip insert, replayed row by row on a row-level error

        Returns:
            Tuple of (inserted legacy ids, number of rows rejected by the database)
        """
        legacy_column = entity.legacy_id_column
        statement = self._insert_statement(table, legacy_column)

        def bulk():
            with self.target_db.transaction() as conn:
                return [row[0] for row in conn.execute(statement, records)]

        try:
            inserted = retry_with_backoff(
                bulk,
                is_retryable=self.error_handler.is_transient,
                max_attempts=self.max_retries,
                base_delay=self.retry_delay,
                description=f"{entity.name} batch {result.batch_number} insert",
                sleep=self.sleep,
            )
            return inserted, 0
        except SQLAlchemyError as e:
            decision = self.error_handler.decide(e)
            if not decision.is_row_level:
                raise
            logger.warning(
                f"{entity.name} batch {result.batch_number}: {decision.kind.value} in bulk insert, "
                f"isolating offending rows"
            )

        inserted = []
        rejected = 0
        with self.target_db.transaction() as conn:
            for record in records:
                savepoint = conn.begin_nested()
                try:
                    inserted.extend(row[0] for row in conn.execute(statement, [record]))
                    savepoint.commit()
                except SQLAlchemyError as e:
                    savepoint.rollback()
                    legacy_id = record[legacy_column]
                    decision = self.error_handler.handle(e, entity.name, legacy_id, result.batch_number)
                    if not decision.is_row_level:
                        raise
                    rejected += 1
                    result.skipped_count += 1
                    if decision.kind != ErrorKind.DUPLICATE_KEY:
                        result.failed_count += 1
                    result.error_messages.append(f"row {legacy_id}: {decision.kind.value}")
        return inserted, rejected

    def _resolve_conflicts(
        self,
        entity: MigrationEntity,
        table,
        records: List[Dict[str, Any]],
        rows_by_legacy: Dict[int, Dict[str, Any]],
        conflict_resolution: ConflictResolution,
        result: BatchResult,
    ) -> List[int]:
        """
        Apply the conflict policy to rows already present in the target

        Only mapped columns are written; the target id and target-only
        columns are never touched.

        Returns:
            Legacy ids of updated rows
        """
        legacy_column = entity.legacy_id_column

        if conflict_resolution == ConflictResolution.MANUAL:
            result.skipped_count += len(records)
            result.validation_issues.append(ValidationIssue(
                severity=Severity.INFO,
                table=entity.target_table,
                field=legacy_column,
                message=(
                    f"{len(records)} already migrated row(s) changed in the source and were left "
                    f"for manual review (legacy ids "
                    f"{', '.join(str(r[legacy_column]) for r in records[:10])})"
                ),
                suggested_fix="Re-run with source_wins or last_writer_wins to apply the changes",
                affected_records=len(records),
            ))
            return []

        to_update = records
        if conflict_resolution == ConflictResolution.LAST_WRITER_WINS and 'updated_at' in table.c:
            target_times = self._target_update_times(table, legacy_column, [r[legacy_column] for r in records])
            to_update = []
            for record in records:
                source_time = parse_timestamp(rows_by_legacy[record[legacy_column]].get(entity.timestamp_field))
                target_time = target_times.get(record[legacy_column])
                if source_time is None or (target_time is not None and as_utc(source_time) <= as_utc(target_time)):
                    result.skipped_count += 1
                    continue
                to_update.append(record)

        updated = []
        with self.target_db.transaction() as conn:
            for record in to_update:
                legacy_id = record[legacy_column]
                values = {k: v for k, v in record.items() if k not in ('id', legacy_column)}
                savepoint = conn.begin_nested()
                try:
                    conn.execute(
                        update(table).where(table.c[legacy_column] == legacy_id).values(**values)
                    )
                    savepoint.commit()
                    updated.append(legacy_id)
                except SQLAlchemyError as e:
                    savepoint.rollback()
                    decision = self.error_handler.handle(e, entity.name, legacy_id, result.batch_number)
                    if not decision.is_row_level:
                        raise
                    result.skipped_count += 1
                    result.failed_count += 1

        result.updated_count += len(updated)
        return updated

    def _store_checksums(self, entity: MigrationEntity, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        values = [
            {
                'id': uuid.uuid4(),
                'entity_name': entity.name,
                'legacy_id': int(row[entity.source_id_field]),
                'checksum': self.detector.checksum_for(entity, row),
                'created_at': utcnow(),
                'updated_at': utcnow(),
            }
            for row in rows
        ]
        insert = self._dialect_insert()
        statement = insert(RowChecksum.__table__)
        statement = statement.on_conflict_do_update(
            index_elements=['entity_name', 'legacy_id'],
            set_={'checksum': statement.excluded.checksum, 'updated_at': statement.excluded.updated_at},
        )
        with self.target_db.transaction() as conn:
            conn.execute(statement, values)

    # Helpers

    def _target_table(self, entity: MigrationEntity):
        try:
            table = self.target_db.get_table(entity.target_table)
        except NoSuchTableError:
            raise InvalidEntityConfiguration(
                f"{entity.name}: target table {entity.target_table} does not exist"
            ) from None
        if entity.legacy_id_column not in table.c:
            raise InvalidEntityConfiguration(
                f"{entity.name}: target table {entity.target_table} has no {entity.legacy_id_column} column"
            )
        return table

    @staticmethod
    def _prepare_records(entity: MigrationEntity, table, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Give every record the same keys and a fresh UUID primary key"""
        columns = set()
        for record in records:
            columns.update(record)

        unknown = columns - set(table.c.keys())
        if unknown:
            raise InvalidEntityConfiguration(
                f"{entity.name}: columns {sorted(unknown)} do not exist in {entity.target_table}"
            )

        native_uuid = 'id' in table.c and getattr(table.c.id.type, 'as_uuid', False)
        prepared = []
        for record in records:
            row = {column: record.get(column) for column in columns}
            if row.get('id') is None:
                row['id'] = uuid.uuid4() if native_uuid else str(uuid.uuid4())
            prepared.append(row)
        return prepared

    def _dialect_insert(self):
        try:
            return DIALECT_INSERTS[self.target_db.dialect_name]
        except KeyError:
            raise InvalidConfigurationException(
                f"Conflict-skip inserts are not supported on {self.target_db.dialect_name}"
            ) from None

    def _insert_statement(self, table, legacy_column: str):
        insert = self._dialect_insert()
        return (
            insert(table)
            .on_conflict_do_nothing(index_elements=[legacy_column])
            .returning(table.c[legacy_column])
        )

    def _existing_legacy_ids(self, table, legacy_column: str, legacy_ids: List[int]) -> Set[int]:
        with self.target_db.connect() as conn:
            rows = conn.execute(
                select(table.c[legacy_column]).where(table.c[legacy_column].in_(legacy_ids))
            )
            return {int(row[0]) for row in rows}

    def _target_update_times(self, table, legacy_column: str, legacy_ids: List[int]) -> Dict[int, Any]:
        with self.target_db.connect() as conn:
            rows = conn.execute(
                select(table.c[legacy_column], table.c.updated_at).where(table.c[legacy_column].in_(legacy_ids))
            )
            return {int(legacy_id): parse_timestamp(updated_at) for legacy_id, updated_at in rows}
