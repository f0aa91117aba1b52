import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from dispatch_migration.contracts.migration_engine_service import BatchResult, OperationType
from dispatch_migration.lib.exceptions import (
    CheckpointNotFoundException,
    ConflictError,
    InvalidCheckpointTransition,
)
from dispatch_migration.models import CheckpointStatus, MigrationCheckpoint, utcnow
from dispatch_migration.services.checkpoint_manager import CheckpointManager

DIFF = OperationType.DIFFERENTIAL


@pytest.fixture
def checkpoints(target_db):
    manager = CheckpointManager(target_db)
    manager.ensure_schema()
    return manager


def _batch(number, last_id, inserted=2, skipped=0, timestamp=None):
    return BatchResult(
        batch_number=number,
        input_count=inserted + skipped,
        inserted_count=inserted,
        skipped_count=skipped,
        last_source_id=last_id,
        last_source_timestamp=timestamp,
    )


def _age(target_db, checkpoint_id, seconds):
    """Pretend the checkpoint was last touched ``seconds`` ago."""
    checkpoint = MigrationCheckpoint.__table__
    with target_db.transaction() as conn:
        conn.execute(
            update(checkpoint)
            .where(checkpoint.c.id == uuid.UUID(checkpoint_id))
            .values(updated_at=utcnow() - timedelta(seconds=seconds))
        )


def test_start_creates_in_progress_checkpoint(checkpoints):
    checkpoint_id = checkpoints.start("offices", DIFF, metadata={"operation_id": "op-1"}, batch_size=2)

    checkpoint = checkpoints.get(checkpoint_id)
    assert checkpoint.status == CheckpointStatus.IN_PROGRESS
    assert checkpoint.operation_type == "differential"
    assert checkpoint.started_at is not None
    assert checkpoint.batch_number == 0
    assert checkpoint.checkpoint_metadata["operation_id"] == "op-1"


def test_second_start_for_same_entity_conflicts(checkpoints):
    checkpoints.start("offices", DIFF)

    with pytest.raises(ConflictError):
        checkpoints.start("offices", DIFF)

    # Other entities and operation types are independent
    checkpoints.start("patients", DIFF)
    checkpoints.start("offices", OperationType.FULL)


def test_record_batch_accumulates_counters(checkpoints):
    checkpoint_id = checkpoints.start("offices", DIFF)

    checkpoints.record_batch(checkpoint_id, _batch(1, last_id=2, inserted=2))
    checkpoints.record_batch(checkpoint_id, _batch(2, last_id=4, inserted=1, skipped=1))

    checkpoint = checkpoints.get(checkpoint_id)
    assert checkpoint.batch_number == 2
    assert checkpoint.last_processed_source_id == 4
    assert checkpoint.records_processed == 4
    assert checkpoint.records_successful == 3
    assert checkpoint.records_skipped == 1
    assert "last_batch_at" in checkpoint.checkpoint_metadata


def test_record_batch_keeps_timestamp_watermark(checkpoints):
    checkpoint_id = checkpoints.start("patients", DIFF)
    moment = datetime(2024, 3, 1, 12, 30)

    checkpoints.record_batch(checkpoint_id, _batch(1, last_id=9, timestamp=moment))

    checkpoint = checkpoints.get(checkpoint_id)
    assert checkpoint.last_sync_timestamp == moment.isoformat()


def test_complete_is_terminal(checkpoints):
    checkpoint_id = checkpoints.start("offices", DIFF)
    checkpoints.complete(checkpoint_id, final_stats={"inserted": 5})

    checkpoint = checkpoints.get(checkpoint_id)
    assert checkpoint.status == CheckpointStatus.COMPLETED
    assert checkpoint.completed_at is not None
    assert checkpoint.checkpoint_metadata["final_stats"] == {"inserted": 5}

    with pytest.raises(InvalidCheckpointTransition):
        checkpoints.fail(checkpoint_id, "too late")
    with pytest.raises(InvalidCheckpointTransition):
        checkpoints.record_batch(checkpoint_id, _batch(3, last_id=10))


def test_fail_keeps_resume_position(checkpoints):
    checkpoint_id = checkpoints.start("orders", DIFF)
    checkpoints.record_batch(checkpoint_id, _batch(1, last_id=1010))

    checkpoints.fail(checkpoint_id, RuntimeError("connection lost"))

    checkpoint = checkpoints.get(checkpoint_id)
    assert checkpoint.status == CheckpointStatus.FAILED
    assert checkpoint.last_processed_source_id == 1010
    assert checkpoint.error_message == "RuntimeError: connection lost"
    assert checkpoint.is_resumable


def test_resume_reopens_failed_checkpoint(checkpoints):
    checkpoint_id = checkpoints.start("orders", DIFF)
    checkpoints.record_batch(checkpoint_id, _batch(1, last_id=1010))
    checkpoints.fail(checkpoint_id, "boom")

    found = checkpoints.find_resumable("orders", DIFF)
    assert str(found.id) == checkpoint_id

    checkpoint = checkpoints.resume(checkpoint_id)
    assert checkpoint.status == CheckpointStatus.IN_PROGRESS
    assert checkpoint.error_message is None
    assert checkpoint.batch_number == 1
    assert checkpoint.checkpoint_metadata["resumes"] == 1


def test_resume_refuses_live_in_progress_checkpoint(checkpoints):
    checkpoint_id = checkpoints.start("orders", DIFF)

    with pytest.raises(ConflictError):
        checkpoints.resume(checkpoint_id, stale_after=900)


def test_resume_takes_over_stale_checkpoint(checkpoints, target_db):
    checkpoint_id = checkpoints.start("orders", DIFF)
    checkpoints.record_batch(checkpoint_id, _batch(1, last_id=1005))
    _age(target_db, checkpoint_id, seconds=3600)

    checkpoint = checkpoints.resume(checkpoint_id, stale_after=900)

    assert checkpoint.status == CheckpointStatus.IN_PROGRESS
    assert checkpoint.checkpoint_metadata["takeovers"] == 1
    assert checkpoint.last_processed_source_id == 1005


def test_resume_conflicts_when_sibling_is_in_progress(checkpoints):
    failed_id = checkpoints.start("orders", DIFF)
    checkpoints.record_batch(failed_id, _batch(1, last_id=1002))
    checkpoints.fail(failed_id, "boom")
    checkpoints.start("orders", DIFF)

    with pytest.raises(ConflictError):
        checkpoints.resume(failed_id)


def test_checkpoint_without_progress_is_not_resumable(checkpoints):
    checkpoint_id = checkpoints.start("orders", DIFF)
    checkpoints.fail(checkpoint_id, "failed before the first batch")

    assert checkpoints.find_resumable("orders", DIFF) is None


def test_reset_removes_unfinished_checkpoints_only(checkpoints):
    done = checkpoints.start("offices", DIFF)
    checkpoints.complete(done)
    failed = checkpoints.start("offices", DIFF)
    checkpoints.fail(failed, "boom")
    checkpoints.start("offices", DIFF)

    removed = checkpoints.reset("offices")

    assert removed == 2
    remaining = checkpoints.list_checkpoints("offices")
    assert [cp.status for cp in remaining] == [CheckpointStatus.COMPLETED]
    assert checkpoints.last_completed("offices", DIFF) is not None


def test_get_unknown_checkpoint_raises(checkpoints):
    with pytest.raises(CheckpointNotFoundException):
        checkpoints.get("00000000-0000-0000-0000-000000000000")
    with pytest.raises(CheckpointNotFoundException):
        checkpoints.get("not-a-uuid")


def test_list_checkpoints_filters_by_status(checkpoints):
    first = checkpoints.start("offices", DIFF)
    checkpoints.complete(first)
    checkpoints.start("patients", DIFF)

    in_progress = checkpoints.list_checkpoints(status=CheckpointStatus.IN_PROGRESS)

    assert [cp.entity_name for cp in in_progress] == ["patients"]
    assert in_progress[0].summary()["status"] == "in_progress"
