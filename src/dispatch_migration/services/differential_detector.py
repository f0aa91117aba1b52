"""
Differential Detector

Decides which source rows a run still has to migrate. Three strategies:

- ``max_id``: rows with an id above the watermark (append-only tables)
- ``timestamp``: rows whose ``updated_at`` moved past the last sync
- ``checksum``: rows whose content hash differs from the stored one

Detection is a pure read on both databases. Every call returns rows in a
deterministic order together with a cursor that resumes exactly after the
last scanned row, which is what makes checkpoint resume correct.
"""

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import DateTime, and_, func, literal_column, or_, select, text
from sqlalchemy.exc import NoSuchTableError

from ..contracts.migration_engine_service import (
    DetectedBatch,
    DetectionCursor,
    DetectionStrategy,
    MigrationEntity,
)
from ..lib.db_manager import DatabaseManager
from ..lib.exceptions import InvalidEntityConfiguration
from ..lib.retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS, retry_with_backoff
from ..models import MigrationCheckpoint, RowChecksum
from .error_handler import ErrorHandler

logger = logging.getLogger(__name__)

# Never part of a row's content hash
DEFAULT_CHECKSUM_EXCLUDE = ("id", "created_at", "updated_at", "deleted_at")


def calculate_checksum(row: Dict[str, Any], exclude_fields: Iterable[str] = ()) -> str:
    """
    Content hash of a source row

    Significant fields are serialized as sorted JSON so the hash does not
    depend on column order.

    Returns:
        ``sha256_`` followed by the first 16 hex digits of the digest
    """
    excluded = set(DEFAULT_CHECKSUM_EXCLUDE) | set(exclude_fields)
    significant = {key: value for key, value in row.items() if key not in excluded}
    payload = json.dumps(significant, sort_keys=True, default=str, separators=(",", ":"))
    return "sha256_" + hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class DifferentialDetector:
    """Selects new or changed source rows, one bounded window at a time"""

    def __init__(
        self,
        source_db: DatabaseManager,
        target_db: DatabaseManager,
        error_handler: Optional[ErrorHandler] = None,
        max_retries: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_BASE_DELAY,
        sleep=None,
    ):
        self.source_db = source_db
        self.target_db = target_db
        self.error_handler = error_handler or ErrorHandler()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep

    def initial_cursor(
        self,
        entity: MigrationEntity,
        checkpoint: Optional[MigrationCheckpoint] = None,
        since: Optional[datetime] = None,
        full: bool = False,
    ) -> DetectionCursor:
        """
        Starting position for an entity

        Args:
            entity: Entity descriptor
            checkpoint: Resumable checkpoint, takes precedence when present
            since: Timestamp watermark of the last completed run
            full: Ignore watermarks and scan the whole source table

        Returns:
            Cursor positioned after the last migrated row
        """
        strategy = entity.detection_strategy

        if strategy == DetectionStrategy.TIMESTAMP:
            if checkpoint is not None and checkpoint.last_sync_timestamp:
                return DetectionCursor(
                    last_id=checkpoint.last_processed_source_id,
                    last_timestamp=parse_timestamp(checkpoint.last_sync_timestamp),
                )
            return DetectionCursor(last_id=None, last_timestamp=None if full else since)

        if checkpoint is not None and checkpoint.last_processed_source_id is not None:
            return DetectionCursor(last_id=int(checkpoint.last_processed_source_id))

        if full or strategy == DetectionStrategy.CHECKSUM:
            # Every row is a candidate; conflict-skip or the stored hashes decide
            return DetectionCursor(last_id=0)

        return DetectionCursor(last_id=self.target_watermark(entity))

    def target_watermark(self, entity: MigrationEntity) -> int:
        """Highest legacy id already present in the target, 0 when none"""
        if not self.target_db.column_exists(entity.target_table, entity.legacy_id_column):
            logger.info(
                f"{entity.name}: {entity.target_table}.{entity.legacy_id_column} not found, watermark is 0"
            )
            return 0

        watermark = self.target_db.scalar(
            f"SELECT MAX({entity.legacy_id_column}) FROM {entity.target_table}"
        )
        return int(watermark or 0)

    def fetch_batch(self, entity: MigrationEntity, cursor: DetectionCursor, batch_size: int) -> DetectedBatch:
        """
        Next window of rows to migrate

        ``exhausted`` is set once a source page comes back short; for the
        checksum strategy ``rows`` may be empty on a page where nothing
        changed while ``exhausted`` is still False.
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        strategy = entity.detection_strategy
        if strategy == DetectionStrategy.TIMESTAMP:
            return self._fetch_by_timestamp(entity, cursor, batch_size)
        if strategy == DetectionStrategy.CHECKSUM:
            return self._fetch_by_checksum(entity, cursor, batch_size)
        return self._fetch_by_id(entity, cursor, batch_size)

    def count_pending(self, entity: MigrationEntity, cursor: DetectionCursor) -> int:
        """Number of rows a run starting at ``cursor`` would migrate"""
        if entity.detection_strategy == DetectionStrategy.CHECKSUM:
            pending = 0
            batch_size = entity.batch_size
            while True:
                batch = self._fetch_by_checksum(entity, cursor, batch_size)
                pending += len(batch.rows)
                if batch.exhausted:
                    return pending
                cursor = batch.cursor

        source, id_col, ts_col = self._source(entity)
        query = select(func.count()).select_from(source)
        conditions = self._base_conditions(entity)
        if entity.detection_strategy == DetectionStrategy.TIMESTAMP:
            conditions.append(ts_col.isnot(None))
        conditions.append(self._position_predicate(entity, cursor, id_col, ts_col))
        query = query.where(*[c for c in conditions if c is not None])
        return int(self._execute(entity, query, scalar=True) or 0)

    def load_stored_checksums(self, entity_name: str, legacy_ids: List[int]) -> Dict[int, str]:
        """Stored content hashes for the given legacy ids"""
        if not legacy_ids or not self.target_db.table_exists(RowChecksum.__tablename__):
            return {}
        with self.target_db.get_session() as session:
            rows = session.execute(
                select(RowChecksum.legacy_id, RowChecksum.checksum).where(
                    RowChecksum.entity_name == entity_name,
                    RowChecksum.legacy_id.in_(legacy_ids),
                )
            ).all()
        return {int(legacy_id): checksum for legacy_id, checksum in rows}

    def checksum_for(self, entity: MigrationEntity, row: Dict[str, Any]) -> str:
        exclude = list(entity.checksum_exclude_fields) + [entity.source_id_field]
        return calculate_checksum(row, exclude)

    # Strategies

    def _fetch_by_id(self, entity: MigrationEntity, cursor: DetectionCursor, batch_size: int) -> DetectedBatch:
        rows = self._page_by_id(entity, cursor.last_id or 0, batch_size)
        last_id = int(rows[-1][entity.source_id_field]) if rows else cursor.last_id
        return DetectedBatch(
            rows=rows,
            cursor=DetectionCursor(last_id=last_id),
            exhausted=len(rows) < batch_size,
            scanned=len(rows),
        )

    def _fetch_by_timestamp(self, entity: MigrationEntity, cursor: DetectionCursor, batch_size: int) -> DetectedBatch:
        source, id_col, ts_col = self._source(entity)
        conditions = self._base_conditions(entity)
        conditions.append(ts_col.isnot(None))
        conditions.append(self._position_predicate(entity, cursor, id_col, ts_col))

        query = (
            select(literal_column("*") if entity.source_select else source)
            .select_from(source)
            .where(*[c for c in conditions if c is not None])
            .order_by(ts_col, id_col)
            .limit(batch_size)
        )
        rows = self._execute(entity, query)

        next_cursor = cursor
        if rows:
            last = rows[-1]
            next_cursor = DetectionCursor(
                last_id=int(last[entity.source_id_field]),
                last_timestamp=parse_timestamp(last[entity.timestamp_field]),
            )
        return DetectedBatch(rows=rows, cursor=next_cursor, exhausted=len(rows) < batch_size, scanned=len(rows))

    def _fetch_by_checksum(self, entity: MigrationEntity, cursor: DetectionCursor, batch_size: int) -> DetectedBatch:
        page = self._page_by_id(entity, cursor.last_id or 0, batch_size)
        ids = [int(row[entity.source_id_field]) for row in page]
        stored = self.load_stored_checksums(entity.name, ids)

        changed = [
            row for row in page
            if stored.get(int(row[entity.source_id_field])) != self.checksum_for(entity, row)
        ]
        if page:
            logger.debug(f"{entity.name}: {len(changed)} of {len(page)} scanned rows changed")

        return DetectedBatch(
            rows=changed,
            cursor=DetectionCursor(last_id=ids[-1] if ids else cursor.last_id),
            exhausted=len(page) < batch_size,
            scanned=len(page),
        )

    # Query helpers

    def _page_by_id(self, entity: MigrationEntity, after_id: int, batch_size: int) -> List[Dict[str, Any]]:
        source, id_col, _ = self._source(entity, need_timestamp=False)
        conditions = self._base_conditions(entity)
        conditions.append(id_col > after_id)

        query = (
            select(literal_column("*") if entity.source_select else source)
            .select_from(source)
            .where(*[c for c in conditions if c is not None])
            .order_by(id_col)
            .limit(batch_size)
        )
        return self._execute(entity, query)

    def _source(self, entity: MigrationEntity, need_timestamp: bool = True) -> Tuple[Any, Any, Any]:
        """FROM object plus id and timestamp column expressions"""
        if entity.source_select:
            source = text(entity.source_relation)
            id_col = literal_column(entity.source_id_field)
            ts_col = literal_column(entity.timestamp_field, type_=DateTime())
            return source, id_col, ts_col

        try:
            table = self.source_db.get_table(entity.source_table)
        except NoSuchTableError:
            raise InvalidEntityConfiguration(
                f"{entity.name}: source table {entity.source_table} does not exist"
            ) from None

        if entity.source_id_field not in table.c:
            raise InvalidEntityConfiguration(
                f"{entity.name}: source column {entity.source_table}.{entity.source_id_field} does not exist"
            )

        ts_col = None
        if entity.timestamp_field in table.c:
            ts_col = table.c[entity.timestamp_field]
        elif need_timestamp and entity.detection_strategy == DetectionStrategy.TIMESTAMP:
            raise InvalidEntityConfiguration(
                f"{entity.name}: timestamp strategy needs {entity.source_table}.{entity.timestamp_field}"
            )
        return table, table.c[entity.source_id_field], ts_col

    @staticmethod
    def _base_conditions(entity: MigrationEntity) -> list:
        return [text(f"({entity.source_filter})")] if entity.source_filter else []

    @staticmethod
    def _position_predicate(entity: MigrationEntity, cursor: DetectionCursor, id_col, ts_col):
        if entity.detection_strategy == DetectionStrategy.TIMESTAMP:
            if cursor.last_timestamp is None:
                return None
            if cursor.last_id is None:
                return ts_col > cursor.last_timestamp
            return or_(
                ts_col > cursor.last_timestamp,
                and_(ts_col == cursor.last_timestamp, id_col > cursor.last_id),
            )
        return id_col > (cursor.last_id or 0)

    def _execute(self, entity: MigrationEntity, query, scalar: bool = False):
        def run():
            with self.source_db.connect() as conn:
                result = conn.execute(query)
                if scalar:
                    return result.scalar()
                return [dict(row) for row in result.mappings()]

        return retry_with_backoff(
            run,
            is_retryable=self.error_handler.is_transient,
            max_attempts=self.max_retries,
            base_delay=self.retry_delay,
            description=f"{entity.name} source read",
            sleep=self.sleep,
        )
