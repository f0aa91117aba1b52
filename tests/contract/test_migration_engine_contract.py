"""
Contract Test for MigrationEngineService

Validates that MigrationOrchestrator honours the MigrationEngineService
contract: dependency-ordered runs, a terminal status per entity, plan
without writes and checkpoint reset.
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from dispatch_migration.contracts.migration_engine_service import (
    DifferentialMigrationOptions,
    EntityStatus,
    MigrationEngineService,
    MigrationEntity,
    MigrationResult,
    OperationType,
    RunStatus,
)
from dispatch_migration.lib.db_manager import DatabaseManager
from dispatch_migration.lib.exceptions import InvalidEntityConfiguration
from dispatch_migration.services.orchestrator import MigrationOrchestrator

from conftest import SOURCE_METADATA, TARGET_METADATA, make_entities


class TestMigrationEngineServiceContract:
    """Test suite for MigrationEngineService contract compliance"""

    def setup_method(self):
        """Set up test fixtures"""
        self.temp_dir = tempfile.mkdtemp()
        self.temp_path = Path(self.temp_dir)

        self.source_db = DatabaseManager(f"sqlite:///{self.temp_path / 'source.db'}", name="source")
        self.target_db = DatabaseManager(f"sqlite:///{self.temp_path / 'target.db'}", name="target")
        self.source_db.initialize()
        self.target_db.initialize()
        SOURCE_METADATA.create_all(self.source_db.engine)
        TARGET_METADATA.create_all(self.target_db.engine)

        with self.source_db.transaction() as conn:
            conn.execute(SOURCE_METADATA.tables["dispatch_office"].insert(), [
                {"id": i, "name": f"Office {i}", "valid": True} for i in range(1, 4)
            ])

        self.entities = make_entities()
        self.service = MigrationOrchestrator(self.source_db, self.target_db, retry_delay=0, sleep=lambda s: None)

    def teardown_method(self):
        """Clean up test fixtures"""
        self.source_db.close()
        self.target_db.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_implements_migration_engine_service_interface(self):
        """Test that implementation follows the MigrationEngineService contract"""
        assert isinstance(self.service, MigrationEngineService)

        assert hasattr(self.service, 'run')
        assert hasattr(self.service, 'plan')
        assert hasattr(self.service, 'reset')

    def test_run_contract(self):
        """Every selected entity ends in a terminal status"""
        result = self.service.run(self.entities)

        assert isinstance(result, MigrationResult)
        assert result.status == RunStatus.COMPLETED
        assert result.started_at is not None and result.completed_at is not None
        assert list(result.entities) == ["offices", "patients", "orders"]
        for stats in result.entities.values():
            assert stats.status in (EntityStatus.COMPLETED, EntityStatus.PARTIAL)
        assert result.entities["offices"].inserted == 3

    def test_run_accepts_entities_in_any_order(self):
        """Descriptors are sorted by dependency order"""
        result = self.service.run(list(reversed(self.entities)))

        assert list(result.entities) == ["offices", "patients", "orders"]

    def test_run_rejects_inconsistent_descriptors(self):
        """A dependency on a later or unknown entity is a configuration error"""
        backwards = MigrationEntity(
            name="clinics", entity_type="clinic", source_table="dispatch_clinic",
            target_table="clinics", dependency_order=1, depends_on=["patients"],
        )

        with pytest.raises(InvalidEntityConfiguration):
            self.service.run(self.entities + [backwards])
        with pytest.raises(InvalidEntityConfiguration):
            self.service.run(self.entities + [self.entities[0]])

    def test_plan_contract(self):
        """Plan estimates pending rows and writes nothing"""
        pending = self.service.plan(self.entities)

        assert pending == {"offices": 3, "patients": 0, "orders": 0}
        assert self.target_db.get_table_row_count("offices") == 0
        assert not self.target_db.table_exists("migration_checkpoints")

    def test_plan_full_ignores_watermarks(self):
        self.service.run(self.entities)

        assert self.service.plan(self.entities)["offices"] == 0
        options = DifferentialMigrationOptions(operation_type=OperationType.FULL)
        assert self.service.plan(self.entities, options)["offices"] == 3

    def test_reset_contract(self):
        """Reset returns the number of removed checkpoints"""
        assert self.service.reset("offices") == 0

        self.service.run(self.entities)

        # Completed checkpoints are history and survive a reset
        assert self.service.reset("offices") == 0
