from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Generator, List

import pytest
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, MetaData, String, Table

from dispatch_migration.contracts.migration_engine_service import ForeignKeyReference, MigrationEntity
from dispatch_migration.contracts.validation_service import ForeignKeyCheck
from dispatch_migration.lib.db_manager import DatabaseManager
from dispatch_migration.services.orchestrator import MigrationOrchestrator

BASE_TIME = datetime(2024, 1, 1, 8, 0, 0)

SOURCE_METADATA = MetaData()

Table(
    "dispatch_office", SOURCE_METADATA,
    Column("id", Integer, primary_key=True),
    Column("name", String(100)),
    Column("city", String(100)),
    Column("valid", Boolean, nullable=False, default=True),
    Column("updated_at", DateTime),
)

Table(
    "dispatch_patient", SOURCE_METADATA,
    Column("id", Integer, primary_key=True),
    Column("first_name", String(100)),
    Column("sex", Integer),
    Column("office_id", Integer),
    Column("updated_at", DateTime),
)

Table(
    "dispatch_instruction", SOURCE_METADATA,
    Column("id", Integer, primary_key=True),
    Column("patient_id", Integer),
    Column("status", String(20)),
    Column("notes", String(200)),
    Column("updated_at", DateTime),
)

TARGET_METADATA = MetaData()

Table(
    "offices", TARGET_METADATA,
    Column("id", String(36), primary_key=True),
    Column("legacy_office_id", Integer, unique=True),
    Column("name", String(100)),
    Column("city", String(100)),
    Column("updated_at", DateTime),
)

Table(
    "patients", TARGET_METADATA,
    Column("id", String(36), primary_key=True),
    Column("legacy_patient_id", Integer, unique=True),
    Column("first_name", String(100), nullable=False),
    Column("gender", String(10)),
    Column("office_id", String(36)),
    Column("updated_at", DateTime),
)

Table(
    "orders", TARGET_METADATA,
    Column("id", String(36), primary_key=True),
    Column("legacy_instruction_id", Integer, unique=True),
    Column("patient_id", String(36), ForeignKey("patients.id"), nullable=False),
    Column("status", String(20)),
    Column("notes", String(200)),
)


def _gender(row: Dict, record: Dict) -> Dict:
    record["gender"] = {1: "male", 2: "female"}.get(row.get("sex"), "unknown")
    return record


def make_entities(batch_size: int = 100) -> List[MigrationEntity]:
    """Descriptors for the three test entities: offices -> patients -> orders."""
    return [
        MigrationEntity(
            name="offices",
            entity_type="office",
            source_table="dispatch_office",
            target_table="offices",
            dependency_order=1,
            batch_size=batch_size,
            field_mappings={"name": "name", "city": "city"},
        ),
        MigrationEntity(
            name="patients",
            entity_type="patient",
            source_table="dispatch_patient",
            target_table="patients",
            dependency_order=2,
            batch_size=batch_size,
            field_mappings={"first_name": "first_name", "updated_at": "updated_at"},
            foreign_keys=[ForeignKeyReference("office_id", "office_id", "office", required=False)],
            depends_on=["offices"],
            transform=_gender,
            foreign_key_checks=[ForeignKeyCheck("office_id", "offices")],
        ),
        MigrationEntity(
            name="orders",
            entity_type="order",
            source_table="dispatch_instruction",
            target_table="orders",
            dependency_order=3,
            batch_size=batch_size,
            legacy_id_column="legacy_instruction_id",
            field_mappings={"status": "status", "notes": "notes"},
            foreign_keys=[ForeignKeyReference("patient_id", "patient_id", "patient")],
            depends_on=["patients"],
            foreign_key_checks=[ForeignKeyCheck("patient_id", "patients")],
        ),
    ]


def _manager(path: Path, name: str, metadata: MetaData) -> DatabaseManager:
    db = DatabaseManager(f"sqlite:///{path}", name=name)
    db.initialize()
    metadata.create_all(db.engine)
    return db


@pytest.fixture
def source_db(tmp_path: Path) -> Generator[DatabaseManager, None, None]:
    """Empty legacy database with the dispatch_* tables."""
    db = _manager(tmp_path / "source.db", "source", SOURCE_METADATA)
    yield db
    db.close()


@pytest.fixture
def target_db(tmp_path: Path) -> Generator[DatabaseManager, None, None]:
    """Empty target database with UUID-keyed tables and legacy id columns."""
    db = _manager(tmp_path / "target.db", "target", TARGET_METADATA)
    yield db
    db.close()


@pytest.fixture
def insert() -> Callable[[DatabaseManager, str, List[Dict]], None]:
    """Insert plain dict rows into a source or target test table."""
    def _insert(db: DatabaseManager, table_name: str, rows: List[Dict]) -> None:
        table = SOURCE_METADATA.tables.get(table_name)
        if table is None:
            table = TARGET_METADATA.tables[table_name]
        with db.transaction() as conn:
            conn.execute(table.insert(), rows)
    return _insert


@pytest.fixture
def seeded_source(source_db: DatabaseManager, insert) -> DatabaseManager:
    """Five offices, six patients (one without office) and eight instructions."""
    insert(source_db, "dispatch_office", [
        {"id": i, "name": f"Office {i}", "city": "Austin", "valid": True,
         "updated_at": BASE_TIME + timedelta(minutes=i)}
        for i in range(1, 6)
    ])
    insert(source_db, "dispatch_patient", [
        {"id": i, "first_name": f"Patient {i}", "sex": i % 3, "office_id": i if i <= 5 else None,
         "updated_at": BASE_TIME + timedelta(hours=i)}
        for i in range(1, 7)
    ])
    insert(source_db, "dispatch_instruction", [
        {"id": i, "patient_id": (i % 6) + 1, "status": "submitted", "notes": f"  note   {i} ",
         "updated_at": BASE_TIME + timedelta(days=i)}
        for i in range(1, 9)
    ])
    return source_db


@pytest.fixture
def entities() -> List[MigrationEntity]:
    return make_entities()


@pytest.fixture
def orchestrator(seeded_source: DatabaseManager, target_db: DatabaseManager) -> MigrationOrchestrator:
    """Orchestrator over the seeded source with retries that never sleep."""
    return MigrationOrchestrator(seeded_source, target_db, retry_delay=0, sleep=lambda seconds: None)
