"""
SQLAlchemy Base Model and Common Utilities

Base model class and status constants for the engine's own bookkeeping
tables (checkpoints, row checksums). These tables live in the target
database next to the migrated data.
"""

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, MetaData, Uuid
from sqlalchemy.orm import declarative_base, declared_attr

# Consistent constraint naming across PostgreSQL and SQLite
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime read back from any backend to aware UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BaseModel:
    """
    Base model class providing common fields and functionality

    UUID primary key plus audit timestamps maintained from Python so
    that every backend stores the same values.
    """

    @declared_attr
    def __tablename__(cls):
        """Generate table name from class name (convert CamelCase to snake_case)"""
        name = re.sub('(.)([A-Z][a-z]+)', r'\1_\2', cls.__name__)
        return re.sub('([a-z0-9])([A-Z])', r'\1_\2', name).lower()

    id = Column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        comment="Unique identifier"
    )

    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        comment="Record creation timestamp"
    )

    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="Record last update timestamp"
    )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert model instance to dictionary

        Returns:
            Dictionary representation of the model
        """
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, uuid.UUID):
                value = str(value)
            elif isinstance(value, datetime):
                value = as_utc(value).isoformat()
            result[column.key] = value
        return result

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(id={self.id})>"


Base = declarative_base(cls=BaseModel, metadata=metadata)


class CheckpointStatus:
    """Status values for migration checkpoints"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (PENDING, IN_PROGRESS, COMPLETED, FAILED)


# Import all models to ensure they are registered with SQLAlchemy
from .migration_checkpoint import MigrationCheckpoint  # noqa: E402
from .row_checksum import RowChecksum  # noqa: E402

__all__ = [
    'Base',
    'BaseModel',
    'metadata',
    'utcnow',
    'as_utc',
    'CheckpointStatus',
    'MigrationCheckpoint',
    'RowChecksum',
]
