import dataclasses
import uuid
from datetime import timedelta

import pytest

from dispatch_migration.contracts.migration_engine_service import (
    BatchResult,
    ConflictResolution,
    DetectionCursor,
    DetectionStrategy,
)
from dispatch_migration.contracts.validation_service import Severity
from dispatch_migration.lib.exceptions import InvalidEntityConfiguration, MemoryLimitException
from dispatch_migration.services.batch_processor import BatchProcessor
from dispatch_migration.services.checkpoint_manager import CheckpointManager
from dispatch_migration.services.differential_detector import DifferentialDetector
from dispatch_migration.services.error_handler import ErrorHandler
from dispatch_migration.services.uuid_mapping import UUIDMappingService

from conftest import BASE_TIME


@pytest.fixture
def error_handler():
    return ErrorHandler()


@pytest.fixture
def mapping(target_db, entities):
    service = UUIDMappingService(target_db)
    for entity in entities:
        service.register(entity.entity_type, entity.target_table, entity.legacy_id_column)
    return service


@pytest.fixture
def processor(seeded_source, target_db, mapping, error_handler):
    detector = DifferentialDetector(seeded_source, target_db, error_handler, retry_delay=0, sleep=lambda s: None)
    return BatchProcessor(target_db, mapping, detector, error_handler, retry_delay=0, sleep=lambda s: None)


def _run(processor, entity, batch_size=100, **kwargs):
    """Process an entity to exhaustion; returns the batch results."""
    cursor = DetectionCursor(last_id=0)
    results = []
    exhausted = False
    while not exhausted:
        result, cursor, exhausted = processor.process_batch(
            entity, cursor, batch_size, batch_number=len(results) + 1, **kwargs
        )
        results.append(result)
    return results


def _rows(db, table):
    return db.execute_query(f"SELECT * FROM {table} ORDER BY 2")


def test_inserts_rows_with_uuid_keys_and_legacy_ids(processor, entities, target_db):
    result, cursor, exhausted = processor.process_batch(entities[0], DetectionCursor(last_id=0), 10)

    assert exhausted
    assert result.inserted_count == 5
    assert result.inserted_legacy_ids == [1, 2, 3, 4, 5]
    assert result.first_source_id == 1
    assert result.last_source_id == 5
    assert cursor.last_id == 5

    rows = _rows(target_db, "offices")
    assert [row["legacy_office_id"] for row in rows] == [1, 2, 3, 4, 5]
    assert all(uuid.UUID(row["id"]) for row in rows)
    assert rows[0]["name"] == "Office 1"


def test_inserted_rows_extend_the_mapping(processor, entities, mapping):
    processor.process_batch(entities[0], DetectionCursor(last_id=0), 10)

    assert mapping.resolve("office", 3) is not None
    assert mapping.stats()["office"] == 5


def test_reprocessing_is_idempotent(processor, entities, target_db):
    processor.process_batch(entities[0], DetectionCursor(last_id=0), 10)
    result, _, _ = processor.process_batch(entities[0], DetectionCursor(last_id=0), 10)

    assert result.inserted_count == 0
    assert result.skipped_count == 5
    assert result.failed_count == 0
    assert target_db.get_table_row_count("offices") == 5


def test_foreign_keys_resolve_to_target_uuids(processor, entities, target_db, mapping):
    _run(processor, entities[0])
    _run(processor, entities[1])

    patients = {row["legacy_patient_id"]: row for row in _rows(target_db, "patients")}
    assert patients[2]["office_id"] == mapping.resolve("office", 2)
    # Optional reference without a value stays NULL
    assert patients[6]["office_id"] is None
    assert patients[1]["gender"] == "male"


def test_unresolved_required_foreign_key_skips_the_row(processor, entities, target_db, seeded_source, insert):
    _run(processor, entities[0])
    _run(processor, entities[1])
    insert(seeded_source, "dispatch_instruction", [{"id": 9, "patient_id": 404, "status": "draft"}])

    results = _run(processor, entities[2])

    assert sum(r.inserted_count for r in results) == 8
    assert sum(r.skipped_count for r in results) == 1
    assert sum(r.failed_count for r in results) == 0
    issues = [issue for r in results for issue in r.validation_issues]
    assert len(issues) == 1
    assert issues[0].severity == Severity.WARNING
    assert issues[0].field == "patient_id"
    assert "9" in issues[0].message


def test_bad_row_is_isolated_from_its_batch(processor, entities, target_db, mapping, error_handler, seeded_source, insert):
    _run(processor, entities[0])
    _run(processor, entities[1])
    # Mapping points at a patient row that does not exist: the database rejects it
    mapping.extend("patient", [(77, str(uuid.uuid4()))])
    insert(seeded_source, "dispatch_instruction", [{"id": 9, "patient_id": 77, "status": "draft"}])

    result, _, _ = processor.process_batch(entities[2], DetectionCursor(last_id=0), 100)

    assert result.inserted_count == 8
    assert result.skipped_count == 1
    assert 9 not in result.inserted_legacy_ids
    assert target_db.get_table_row_count("orders") == 8
    record = error_handler.records_for("orders")[0]
    assert record.kind == "foreign_key_violation"
    assert record.legacy_id == 9


def test_not_null_violation_skips_only_that_row(processor, entities, error_handler, seeded_source, insert):
    insert(seeded_source, "dispatch_patient", [{"id": 7, "first_name": None, "sex": 1}])
    _run(processor, entities[0])

    results = _run(processor, entities[1])

    assert sum(r.inserted_count for r in results) == 6
    assert sum(r.skipped_count for r in results) == 1
    assert error_handler.records_for("patients")[0].kind == "data_type"


def test_malformed_value_skips_only_that_row(processor, entities, error_handler, target_db):
    _run(processor, entities[0])
    gender = entities[1].transform

    def bad_date(row, record):
        record = gender(row, record)
        if row["id"] == 3:
            record["updated_at"] = "not-a-date"
        return record

    results = _run(processor, dataclasses.replace(entities[1], transform=bad_date))

    assert sum(r.inserted_count for r in results) == 5
    assert sum(r.skipped_count for r in results) == 1
    assert sum(r.failed_count for r in results) == 1
    assert 3 not in {row["legacy_patient_id"] for row in _rows(target_db, "patients")}
    assert error_handler.records_for("patients")[0].kind == "data_type"


def test_non_integer_source_id_is_a_data_type_error(processor, entities, error_handler):
    rows = [{"id": "A-17", "name": "Broken", "city": None}, {"id": 2, "name": "Office 2", "city": "Austin"}]
    result = BatchResult(batch_number=1, input_count=2)

    pairs = processor.transform_rows(entities[0], rows, result)

    assert [record["legacy_office_id"] for _, record in pairs] == [2]
    assert result.skipped_count == 1
    assert result.failed_count == 1
    record = error_handler.records_for("offices")[0]
    assert record.kind == "data_type"
    assert record.action == "skip_row"


def test_transform_returning_none_skips_row(processor, entities, target_db):
    only_austin = dataclasses.replace(
        entities[0], transform=lambda row, record: record if row["id"] % 2 else None
    )

    result, _, _ = processor.process_batch(only_austin, DetectionCursor(last_id=0), 10)

    assert result.inserted_legacy_ids == [1, 3, 5]
    assert result.skipped_count == 2


def test_dry_run_writes_nothing(processor, entities, target_db, mapping):
    result, cursor, exhausted = processor.process_batch(entities[0], DetectionCursor(last_id=0), 10, dry_run=True)

    assert result.transformed_count == 5
    assert result.inserted_count == 0
    assert cursor.last_id == 5
    assert target_db.get_table_row_count("offices") == 0
    # Provisional ids let dependents resolve later in the same dry run
    assert mapping.resolve("office", 1) is not None
    mapping.invalidate("office")
    assert mapping.resolve("office", 1) is None


def test_unknown_target_column_is_a_configuration_error(processor, entities):
    broken = dataclasses.replace(entities[0], field_mappings={"name": "title"})

    with pytest.raises(InvalidEntityConfiguration):
        processor.process_batch(broken, DetectionCursor(last_id=0), 10)


def test_missing_legacy_column_is_a_configuration_error(processor, entities):
    broken = dataclasses.replace(entities[0], legacy_id_column="legacy_clinic_id")

    with pytest.raises(InvalidEntityConfiguration):
        processor.process_batch(broken, DetectionCursor(last_id=0), 10)


def test_memory_guard_stops_the_batch(seeded_source, target_db, mapping, entities):
    class Exhausted:
        def check_memory_limit(self, context=""):
            raise MemoryLimitException(f"over the limit in {context}")

    detector = DifferentialDetector(seeded_source, target_db)
    processor = BatchProcessor(target_db, mapping, detector, monitor=Exhausted())

    with pytest.raises(MemoryLimitException):
        processor.process_batch(entities[0], DetectionCursor(last_id=0), 10)
    assert target_db.get_table_row_count("offices") == 0


class TestConflictResolution:
    """Rows already in the target whose source changed"""

    @pytest.fixture
    def migrated(self, processor, entities, seeded_source):
        _run(processor, entities[0])
        _run(processor, entities[1])
        with seeded_source.transaction() as conn:
            conn.exec_driver_sql(
                "UPDATE dispatch_patient SET first_name = 'Renamed', updated_at = '2025-01-01 00:00:00.000000' "
                "WHERE id = 2"
            )
        return entities[1]

    def test_skip_leaves_target_untouched(self, processor, migrated, target_db):
        results = _run(processor, migrated)

        assert sum(r.updated_count for r in results) == 0
        assert sum(r.skipped_count for r in results) == 6
        names = {row["legacy_patient_id"]: row["first_name"] for row in _rows(target_db, "patients")}
        assert names[2] == "Patient 2"

    def test_source_wins_updates_mapped_columns(self, processor, migrated, target_db, mapping):
        before = {row["legacy_patient_id"]: row["id"] for row in _rows(target_db, "patients")}

        results = _run(processor, migrated, conflict_resolution=ConflictResolution.SOURCE_WINS)

        assert sum(r.updated_count for r in results) == 6
        rows = {row["legacy_patient_id"]: row for row in _rows(target_db, "patients")}
        assert rows[2]["first_name"] == "Renamed"
        # UUIDs survive the update
        assert {k: row["id"] for k, row in rows.items()} == before

    def test_last_writer_wins_only_updates_newer_rows(self, processor, migrated, target_db):
        with target_db.transaction() as conn:
            conn.exec_driver_sql("UPDATE patients SET updated_at = '2024-06-01 00:00:00.000000'")

        results = _run(processor, migrated, conflict_resolution=ConflictResolution.LAST_WRITER_WINS)

        assert sum(r.updated_count for r in results) == 1
        assert sum(r.skipped_count for r in results) == 5
        names = {row["legacy_patient_id"]: row["first_name"] for row in _rows(target_db, "patients")}
        assert names[2] == "Renamed"

    def test_manual_reports_conflicts_for_review(self, processor, migrated):
        results = _run(processor, migrated, conflict_resolution=ConflictResolution.MANUAL)

        assert sum(r.updated_count for r in results) == 0
        issues = [issue for r in results for issue in r.validation_issues]
        assert len(issues) == 1
        assert issues[0].severity == Severity.INFO
        assert issues[0].affected_records == 6


def test_checksum_strategy_stores_hashes(processor, entities, target_db, seeded_source):
    CheckpointManager(target_db).ensure_schema()
    by_checksum = dataclasses.replace(entities[0], detection_strategy=DetectionStrategy.CHECKSUM)

    first = _run(processor, by_checksum)
    assert sum(r.inserted_count for r in first) == 5
    assert target_db.get_table_row_count("migration_row_checksums") == 5

    unchanged = _run(processor, by_checksum)
    assert sum(r.input_count for r in unchanged) == 0

    with seeded_source.transaction() as conn:
        conn.exec_driver_sql("UPDATE dispatch_office SET name = 'HQ' WHERE id = 1")
    changed = _run(processor, by_checksum, conflict_resolution=ConflictResolution.SOURCE_WINS)
    assert sum(r.updated_count for r in changed) == 1

    assert sum(r.input_count for r in _run(processor, by_checksum)) == 0


def test_batch_result_counts():
    result = BatchResult(batch_number=1, inserted_count=3, updated_count=1, skipped_count=2, failed_count=1)

    assert result.successful_count == 4
    assert result.processed_count == 6


def test_timestamp_cursor_is_reported(processor, entities):
    patients = dataclasses.replace(entities[1], detection_strategy=DetectionStrategy.TIMESTAMP)
    processor.process_batch(entities[0], DetectionCursor(last_id=0), 10)

    result, cursor, _ = processor.process_batch(patients, DetectionCursor(), 2)

    assert result.last_source_id == 2
    assert result.last_source_timestamp == BASE_TIME + timedelta(hours=2)
    assert cursor.last_timestamp == result.last_source_timestamp
