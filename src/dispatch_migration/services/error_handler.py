"""
Error Handler

Maps a caught exception to one of a fixed set of error kinds and to the
recovery action the engine takes for it. ``ErrorHandler.classify`` is the
only place in the engine that looks at driver error codes or message
text; everything else works with ``ErrorKind`` / ``RecoveryAction``.
"""

import errno
import logging
from dataclasses import dataclass
from decimal import InvalidOperation
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import exc as sa_exc

from ..contracts.migration_engine_service import MigrationErrorRecord
from ..lib.exceptions import MigrationEngineException

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    DUPLICATE_KEY = "duplicate_key"
    DATA_TYPE = "data_type"
    MEMORY = "memory"
    DISK_SPACE = "disk_space"
    PERMISSION = "permission"
    UNKNOWN = "unknown"


class RecoveryAction(Enum):
    RETRY = "retry"
    SKIP_ROW = "skip_row"
    ABORT_ENTITY = "abort_entity"
    ABORT_RUN = "abort_run"


@dataclass(frozen=True)
class ErrorPolicy:
    """Default handling of one error kind"""
    action: RecoveryAction
    exhausted_action: RecoveryAction
    recommendation: str


DEFAULT_POLICIES: Dict[ErrorKind, ErrorPolicy] = {
    ErrorKind.CONNECTION: ErrorPolicy(
        RecoveryAction.RETRY, RecoveryAction.ABORT_ENTITY,
        "Check database availability and network, then resume the entity"),
    ErrorKind.TIMEOUT: ErrorPolicy(
        RecoveryAction.RETRY, RecoveryAction.ABORT_ENTITY,
        "Retry with a smaller batch size or raise the statement timeout"),
    ErrorKind.FOREIGN_KEY_VIOLATION: ErrorPolicy(
        RecoveryAction.SKIP_ROW, RecoveryAction.SKIP_ROW,
        "Verify the referenced entity was migrated before this one"),
    ErrorKind.DUPLICATE_KEY: ErrorPolicy(
        RecoveryAction.SKIP_ROW, RecoveryAction.SKIP_ROW,
        "Row already migrated; no action needed"),
    ErrorKind.DATA_TYPE: ErrorPolicy(
        RecoveryAction.SKIP_ROW, RecoveryAction.SKIP_ROW,
        "Review the source row manually; the value could not be converted"),
    ErrorKind.MEMORY: ErrorPolicy(
        RecoveryAction.ABORT_ENTITY, RecoveryAction.ABORT_ENTITY,
        "Reduce the batch size and resume the entity"),
    ErrorKind.DISK_SPACE: ErrorPolicy(
        RecoveryAction.ABORT_RUN, RecoveryAction.ABORT_RUN,
        "Free storage on the target database before re-running"),
    ErrorKind.PERMISSION: ErrorPolicy(
        RecoveryAction.ABORT_RUN, RecoveryAction.ABORT_RUN,
        "Fix database credentials or grants before re-running"),
    ErrorKind.UNKNOWN: ErrorPolicy(
        RecoveryAction.ABORT_ENTITY, RecoveryAction.ABORT_ENTITY,
        "Unclassified error; manual triage required"),
}

ROW_LEVEL_KINDS = frozenset({
    ErrorKind.FOREIGN_KEY_VIOLATION,
    ErrorKind.DUPLICATE_KEY,
    ErrorKind.DATA_TYPE,
})

TRANSIENT_KINDS = frozenset({ErrorKind.CONNECTION, ErrorKind.TIMEOUT})

# PostgreSQL SQLSTATE codes (exact) and classes (two-character prefix)
SQLSTATE_CODES: Dict[str, ErrorKind] = {
    "23503": ErrorKind.FOREIGN_KEY_VIOLATION,
    "23505": ErrorKind.DUPLICATE_KEY,
    "23502": ErrorKind.DATA_TYPE,    # not_null_violation
    "23514": ErrorKind.DATA_TYPE,    # check_violation
    "57014": ErrorKind.TIMEOUT,      # query_canceled (statement_timeout)
    "55P03": ErrorKind.TIMEOUT,      # lock_not_available
    "57P01": ErrorKind.CONNECTION,   # admin_shutdown
    "57P02": ErrorKind.CONNECTION,   # crash_shutdown
    "57P03": ErrorKind.CONNECTION,   # cannot_connect_now
    "53100": ErrorKind.DISK_SPACE,   # disk_full
    "53200": ErrorKind.MEMORY,       # out_of_memory
    "42501": ErrorKind.PERMISSION,   # insufficient_privilege
}

SQLSTATE_CLASSES: Dict[str, ErrorKind] = {
    "08": ErrorKind.CONNECTION,
    "22": ErrorKind.DATA_TYPE,
    "28": ErrorKind.PERMISSION,
    "53": ErrorKind.MEMORY,
}

# Last resort for drivers without error codes (SQLite, wrapped errors).
# Order matters: the first matching fragment wins.
MESSAGE_FRAGMENTS = [
    ("foreign key constraint", ErrorKind.FOREIGN_KEY_VIOLATION),
    ("violates foreign key", ErrorKind.FOREIGN_KEY_VIOLATION),
    ("unique constraint", ErrorKind.DUPLICATE_KEY),
    ("duplicate key", ErrorKind.DUPLICATE_KEY),
    ("database or disk is full", ErrorKind.DISK_SPACE),
    ("no space left", ErrorKind.DISK_SPACE),
    ("out of memory", ErrorKind.MEMORY),
    ("permission denied", ErrorKind.PERMISSION),
    ("password authentication failed", ErrorKind.PERMISSION),
    ("readonly database", ErrorKind.PERMISSION),
    ("statement timeout", ErrorKind.TIMEOUT),
    ("timed out", ErrorKind.TIMEOUT),
    ("timeout", ErrorKind.TIMEOUT),
    ("database is locked", ErrorKind.TIMEOUT),
    ("connection refused", ErrorKind.CONNECTION),
    ("connection reset", ErrorKind.CONNECTION),
    ("server closed the connection", ErrorKind.CONNECTION),
    ("could not connect", ErrorKind.CONNECTION),
    ("datatype mismatch", ErrorKind.DATA_TYPE),
    ("invalid input syntax", ErrorKind.DATA_TYPE),
    ("not null constraint", ErrorKind.DATA_TYPE),
    ("check constraint", ErrorKind.DATA_TYPE),
]


@dataclass
class ErrorDecision:
    """Classification and recovery decision for one exception"""
    kind: ErrorKind
    action: RecoveryAction
    recommendation: str

    @property
    def is_row_level(self) -> bool:
        return self.kind in ROW_LEVEL_KINDS

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS


class ErrorHandler:
    """
    Classifies exceptions and records every handled error

    Errors are never dropped: ``handle`` appends a ``MigrationErrorRecord``
    that ends up in the entity statistics and the run report.
    """

    def __init__(self, policies: Optional[Dict[ErrorKind, ErrorPolicy]] = None):
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self.records: List[MigrationErrorRecord] = []

    def classify(self, error: BaseException) -> ErrorKind:
        """
        Map an exception to an error kind

        Order: engine exceptions, SQLAlchemy wrappers (driver SQLSTATE
        codes), Python builtins, and finally message text.
        """
        if isinstance(error, MigrationEngineException):
            try:
                return ErrorKind(error.kind)
            except ValueError:
                return ErrorKind.UNKNOWN

        if isinstance(error, sa_exc.TimeoutError):
            # Pool checkout timeout
            return ErrorKind.TIMEOUT

        if isinstance(error, sa_exc.DBAPIError):
            if error.connection_invalidated:
                return ErrorKind.CONNECTION
            kind = self._classify_sqlstate(getattr(error.orig, "pgcode", None))
            if kind is not None:
                return kind
            if isinstance(error, sa_exc.DisconnectionError):
                return ErrorKind.CONNECTION
            if isinstance(error, sa_exc.DataError):
                return ErrorKind.DATA_TYPE
            return self._classify_by_message(str(error.orig or error))

        if isinstance(error, sa_exc.StatementError) and error.orig is not None:
            # Failed before reaching the driver, e.g. in a bind processor
            return self.classify(error.orig)

        if isinstance(error, sa_exc.DisconnectionError):
            return ErrorKind.CONNECTION

        kind = self._classify_sqlstate(getattr(error, "pgcode", None))
        if kind is not None:
            return kind

        if isinstance(error, MemoryError):
            return ErrorKind.MEMORY
        if isinstance(error, PermissionError):
            return ErrorKind.PERMISSION
        if isinstance(error, TimeoutError):
            return ErrorKind.TIMEOUT
        if isinstance(error, ConnectionError):
            return ErrorKind.CONNECTION
        if isinstance(error, OSError) and error.errno == errno.ENOSPC:
            return ErrorKind.DISK_SPACE
        if isinstance(error, (ValueError, TypeError, InvalidOperation, OverflowError)):
            return ErrorKind.DATA_TYPE

        return self._classify_by_message(str(error))

    def decide(self, error: BaseException, retries_exhausted: bool = False) -> ErrorDecision:
        """Classify and pick the recovery action"""
        kind = self.classify(error)
        policy = self.policies[kind]
        action = policy.exhausted_action if retries_exhausted else policy.action
        return ErrorDecision(kind=kind, action=action, recommendation=policy.recommendation)

    def is_transient(self, error: BaseException) -> bool:
        """Predicate used by query-level retry"""
        return self.classify(error) in TRANSIENT_KINDS

    def handle(
        self,
        error: BaseException,
        entity: str,
        legacy_id: Optional[int] = None,
        batch_number: Optional[int] = None,
        retries_exhausted: bool = False,
    ) -> ErrorDecision:
        """
        Classify, decide and record an error

        Args:
            error: The caught exception
            entity: Entity being migrated
            legacy_id: Source row id for row-level errors
            batch_number: Batch in which the error happened
            retries_exhausted: Whether query-level retries already ran

        Returns:
            The decision taken
        """
        decision = self.decide(error, retries_exhausted=retries_exhausted)
        message = _error_message(error)

        self.records.append(MigrationErrorRecord(
            entity=entity,
            kind=decision.kind.value,
            action=decision.action.value,
            message=message,
            legacy_id=legacy_id,
            batch_number=batch_number,
            recommendation=decision.recommendation,
        ))

        where = f"{entity}" + (f" row {legacy_id}" if legacy_id is not None else "")
        if decision.action == RecoveryAction.SKIP_ROW:
            logger.warning(f"Skipping {where}: {decision.kind.value}: {message}")
        else:
            logger.error(f"{decision.kind.value} error in {where} -> {decision.action.value}: {message}")

        return decision

    def records_for(self, entity: str) -> List[MigrationErrorRecord]:
        return [record for record in self.records if record.entity == entity]

    @staticmethod
    def _classify_sqlstate(code: Optional[str]) -> Optional[ErrorKind]:
        if not code:
            return None
        if code in SQLSTATE_CODES:
            return SQLSTATE_CODES[code]
        return SQLSTATE_CLASSES.get(code[:2])

    @staticmethod
    def _classify_by_message(message: str) -> ErrorKind:
        lowered = message.lower()
        for fragment, kind in MESSAGE_FRAGMENTS:
            if fragment in lowered:
                return kind
        return ErrorKind.UNKNOWN


def _error_message(error: BaseException) -> str:
    if isinstance(error, MigrationEngineException):
        return error.message
    if isinstance(error, sa_exc.DBAPIError) and error.orig is not None:
        return str(error.orig).strip().splitlines()[0] if str(error.orig).strip() else repr(error.orig)
    return str(error) or error.__class__.__name__
