import errno
from unittest.mock import Mock

import pytest
from sqlalchemy import exc as sa_exc

from dispatch_migration.lib.exceptions import (
    ConflictError,
    DataTypeException,
    MemoryLimitException,
)
from dispatch_migration.services.error_handler import ErrorHandler, ErrorKind, RecoveryAction


def _driver_error(error_class, pgcode=None, message="driver error"):
    orig = Mock(pgcode=pgcode)
    orig.__str__ = Mock(return_value=message)
    return error_class("INSERT INTO orders ...", {}, orig)


@pytest.mark.parametrize(
    "pgcode, kind",
    [
        ("23503", ErrorKind.FOREIGN_KEY_VIOLATION),
        ("23505", ErrorKind.DUPLICATE_KEY),
        ("23502", ErrorKind.DATA_TYPE),
        ("22P02", ErrorKind.DATA_TYPE),
        ("57014", ErrorKind.TIMEOUT),
        ("08006", ErrorKind.CONNECTION),
        ("53100", ErrorKind.DISK_SPACE),
        ("42501", ErrorKind.PERMISSION),
        ("28P01", ErrorKind.PERMISSION),
    ],
)
def test_classifies_postgres_sqlstate(pgcode, kind):
    handler = ErrorHandler()
    error = _driver_error(sa_exc.DatabaseError, pgcode=pgcode, message="something unrelated")

    assert handler.classify(error) == kind


def test_sqlstate_wins_over_message_text():
    """A duplicate key error mentioning 'timeout' in its text is still a duplicate."""
    handler = ErrorHandler()
    error = _driver_error(sa_exc.IntegrityError, pgcode="23505",
                          message='duplicate key value violates unique constraint "timeout_idx"')

    assert handler.classify(error) == ErrorKind.DUPLICATE_KEY


def test_message_fallback_for_drivers_without_codes():
    handler = ErrorHandler()
    error = _driver_error(sa_exc.IntegrityError, message="FOREIGN KEY constraint failed")

    assert handler.classify(error) == ErrorKind.FOREIGN_KEY_VIOLATION


def test_invalidated_connection_is_connection_error():
    handler = ErrorHandler()
    error = sa_exc.OperationalError("SELECT 1", {}, Mock(pgcode=None), connection_invalidated=True)

    assert handler.classify(error) == ErrorKind.CONNECTION


def test_bind_failure_is_classified_by_its_cause():
    handler = ErrorHandler()
    error = sa_exc.StatementError(
        "(builtins.TypeError) SQLite DateTime type only accepts Python datetime",
        "INSERT INTO patients ...", {}, TypeError("SQLite DateTime type only accepts Python datetime"),
    )

    assert handler.classify(error) == ErrorKind.DATA_TYPE
    assert handler.decide(error).is_row_level


def test_pool_timeout_is_timeout():
    assert ErrorHandler().classify(sa_exc.TimeoutError("QueuePool limit reached")) == ErrorKind.TIMEOUT


@pytest.mark.parametrize(
    "error, kind",
    [
        (MemoryError(), ErrorKind.MEMORY),
        (PermissionError("denied"), ErrorKind.PERMISSION),
        (TimeoutError(), ErrorKind.TIMEOUT),
        (ConnectionResetError(), ErrorKind.CONNECTION),
        (OSError(errno.ENOSPC, "No space left on device"), ErrorKind.DISK_SPACE),
        (ValueError("invalid literal for int()"), ErrorKind.DATA_TYPE),
        (RuntimeError("something odd"), ErrorKind.UNKNOWN),
    ],
)
def test_classifies_builtin_exceptions(error, kind):
    assert ErrorHandler().classify(error) == kind


@pytest.mark.parametrize(
    "error, kind",
    [
        (DataTypeException("bad date"), ErrorKind.DATA_TYPE),
        (MemoryLimitException("too big"), ErrorKind.MEMORY),
        (ConflictError("already running"), ErrorKind.UNKNOWN),
    ],
)
def test_engine_exceptions_carry_their_kind(error, kind):
    assert ErrorHandler().classify(error) == kind


def test_decide_uses_exhausted_action_after_retries():
    handler = ErrorHandler()
    error = _driver_error(sa_exc.OperationalError, pgcode="57014", message="canceling statement due to statement timeout")

    assert handler.decide(error).action == RecoveryAction.RETRY
    assert handler.decide(error, retries_exhausted=True).action == RecoveryAction.ABORT_ENTITY


def test_disk_and_permission_errors_abort_the_run():
    handler = ErrorHandler()

    assert handler.decide(OSError(errno.ENOSPC, "No space left on device")).action == RecoveryAction.ABORT_RUN
    assert handler.decide(PermissionError("denied")).action == RecoveryAction.ABORT_RUN


def test_row_level_errors_skip_the_row():
    decision = ErrorHandler().decide(_driver_error(sa_exc.IntegrityError, pgcode="23503"))

    assert decision.action == RecoveryAction.SKIP_ROW
    assert decision.is_row_level
    assert not decision.is_transient


def test_handle_records_every_error():
    handler = ErrorHandler()

    handler.handle(ValueError("bad date"), "patients", legacy_id=7, batch_number=2)
    handler.handle(TimeoutError("slow"), "orders", retries_exhausted=True)

    assert len(handler.records) == 2
    record = handler.records_for("patients")[0]
    assert record.kind == "data_type"
    assert record.action == "skip_row"
    assert record.legacy_id == 7
    assert record.batch_number == 2
    assert record.recommendation
    assert record.timestamp.tzinfo is not None
    assert handler.records_for("orders")[0].action == "abort_entity"


def test_is_transient_only_for_connection_and_timeout():
    handler = ErrorHandler()

    assert handler.is_transient(ConnectionRefusedError())
    assert handler.is_transient(_driver_error(sa_exc.OperationalError, pgcode="57014"))
    assert not handler.is_transient(_driver_error(sa_exc.IntegrityError, pgcode="23505"))
    assert not handler.is_transient(RuntimeError("boom"))


def test_policies_can_be_overridden():
    from dispatch_migration.services.error_handler import ErrorPolicy  # noqa: PLC0415

    handler = ErrorHandler(policies={
        ErrorKind.UNKNOWN: ErrorPolicy(RecoveryAction.ABORT_RUN, RecoveryAction.ABORT_RUN, "stop everything"),
    })

    assert handler.decide(RuntimeError("?")).action == RecoveryAction.ABORT_RUN
