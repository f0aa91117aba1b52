"""
RowChecksum Model

Content hash of the last migrated version of a source row, used by the
checksum detection strategy.
"""

from sqlalchemy import BigInteger, Column, String, UniqueConstraint

from . import Base


class RowChecksum(Base):
    """Stored checksum per (entity, legacy id)"""

    __tablename__ = "migration_row_checksums"

    entity_name = Column(String(100), nullable=False)
    legacy_id = Column(BigInteger, nullable=False)
    checksum = Column(String(80), nullable=False)

    __table_args__ = (
        UniqueConstraint("entity_name", "legacy_id", name="uq_migration_row_checksums_entity_legacy"),
    )

    def __repr__(self) -> str:
        return f"<RowChecksum(entity='{self.entity_name}', legacy_id={self.legacy_id})>"
