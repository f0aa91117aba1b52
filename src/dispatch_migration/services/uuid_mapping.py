"""
UUID Mapping Service

Resolves legacy integer ids to target UUIDs. Mappings are rebuilt from
the ``legacy_<entity>_id`` column of each target table and cached in
memory, so a batch never issues per-row lookup queries.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..lib.db_manager import DatabaseManager
from ..lib.exceptions import UnknownEntityTypeException

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MappingSource:
    """Where the mapping of one entity type is stored in the target"""
    entity_type: str
    target_table: str
    legacy_column: str
    id_column: str = "id"


class UUIDMappingService:
    """In-memory legacy id -> UUID cache backed by target legacy columns"""

    def __init__(self, target_db: DatabaseManager):
        self.target_db = target_db
        self._sources: Dict[str, MappingSource] = {}
        self._cache: Dict[str, Dict[int, str]] = {}

    def register(
        self,
        entity_type: str,
        target_table: str,
        legacy_column: Optional[str] = None,
        id_column: str = "id",
    ) -> None:
        """
        Declare the target table holding an entity type's legacy ids

        Args:
            entity_type: Mapping key (office, patient, ...)
            target_table: Target table name
            legacy_column: Defaults to ``legacy_<entity_type>_id``
            id_column: UUID primary key column
        """
        source = MappingSource(
            entity_type=entity_type,
            target_table=target_table,
            legacy_column=legacy_column or f"legacy_{entity_type}_id",
            id_column=id_column,
        )
        existing = self._sources.get(entity_type)
        if existing is not None and existing != source:
            logger.warning(f"Re-registering mapping for {entity_type}: {existing} -> {source}")
            self._cache.pop(entity_type, None)
        self._sources[entity_type] = source

    def is_registered(self, entity_type: str) -> bool:
        return entity_type in self._sources

    def build_mapping(self, entity_type: str) -> Dict[int, str]:
        """
        Scan the target table and return legacy id -> UUID

        A missing table or column (entity not migrated yet) yields an empty
        mapping; it is logged, not raised.
        """
        source = self._get_source(entity_type)

        if not self.target_db.table_exists(source.target_table):
            logger.info(f"Mapping for {entity_type}: table {source.target_table} does not exist yet")
            return {}

        columns = self.target_db.get_columns(source.target_table)
        if source.legacy_column not in columns or source.id_column not in columns:
            logger.info(
                f"Mapping for {entity_type}: {source.target_table}.{source.legacy_column} does not exist yet"
            )
            return {}

        query = (
            f"SELECT {source.id_column} AS target_id, {source.legacy_column} AS legacy_id "
            f"FROM {source.target_table} WHERE {source.legacy_column} IS NOT NULL"
        )
        try:
            rows = self.target_db.execute_query(query)
        except SQLAlchemyError as e:
            logger.warning(f"Mapping for {entity_type} could not be loaded: {e}")
            return {}

        mapping = {int(row['legacy_id']): str(row['target_id']) for row in rows}
        logger.info(f"Loaded {len(mapping)} {entity_type} mappings from {source.target_table}")
        return mapping

    def load(self, entity_type: str, force: bool = False) -> Dict[int, str]:
        """Build the mapping once per run and cache it"""
        if force or entity_type not in self._cache:
            self._cache[entity_type] = self.build_mapping(entity_type)
        return self._cache[entity_type]

    def ensure_loaded(self, entity_types: Iterable[str]) -> None:
        for entity_type in entity_types:
            self.load(entity_type)

    def resolve(self, entity_type: str, legacy_id: Any) -> Optional[str]:
        """
        Pure lookup; None when the legacy id has no target row

        The caller decides whether a miss means "skip the record" or "fatal".
        """
        if legacy_id is None:
            return None
        mapping = self._cache.get(entity_type)
        if mapping is None:
            mapping = self.load(entity_type)
        try:
            return mapping.get(int(legacy_id))
        except (TypeError, ValueError):
            return None

    def extend(self, entity_type: str, pairs: Iterable[Tuple[int, str]]) -> int:
        """Add freshly inserted rows to the cache without a reload"""
        mapping = self._cache.setdefault(entity_type, {})
        added = 0
        for legacy_id, target_id in pairs:
            if int(legacy_id) not in mapping:
                added += 1
            mapping[int(legacy_id)] = str(target_id)
        return added

    def refresh(self, entity_type: str) -> Dict[int, str]:
        """Reload after an entity completes so later entities see every row"""
        return self.load(entity_type, force=True)

    def invalidate(self, entity_type: Optional[str] = None) -> None:
        if entity_type is None:
            self._cache.clear()
        else:
            self._cache.pop(entity_type, None)

    def stats(self) -> Dict[str, int]:
        return {entity_type: len(mapping) for entity_type, mapping in self._cache.items()}

    def _get_source(self, entity_type: str) -> MappingSource:
        try:
            return self._sources[entity_type]
        except KeyError:
            raise UnknownEntityTypeException(
                f"No mapping registered for entity type '{entity_type}'",
                {'registered': sorted(self._sources)}
            ) from None
