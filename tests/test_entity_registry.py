import pytest

from dispatch_migration.contracts.migration_engine_service import DetectionStrategy, MigrationEntity
from dispatch_migration.lib.exceptions import InvalidEntityConfiguration
from dispatch_migration.services.entity_registry import (
    build_default_entities,
    select_entities,
    transform_jaw,
    transform_order,
    transform_patient,
    transform_profile,
)


def test_default_entities_respect_dependency_order():
    entities = {entity.name: entity for entity in build_default_entities()}

    assert set(entities) == {"offices", "profiles", "products", "patients", "orders", "jaws"}
    for entity in entities.values():
        for dependency in entity.depends_on or []:
            assert entities[dependency].dependency_order < entity.dependency_order


def test_default_entities_use_batch_size():
    assert {e.batch_size for e in build_default_entities(250)} == {250}


def test_legacy_columns_are_derived_from_entity_type():
    entities = {entity.name: entity for entity in build_default_entities()}

    assert entities["offices"].legacy_id_column == "legacy_office_id"
    assert entities["profiles"].legacy_id_column == "legacy_user_id"
    assert entities["orders"].legacy_id_column == "legacy_instruction_id"
    assert entities["patients"].detection_strategy == DetectionStrategy.TIMESTAMP


def test_select_entities_sorts_by_dependency_order():
    entities = build_default_entities()

    selected = select_entities(entities, ["jaws", "offices", "orders"])

    assert [e.name for e in selected] == ["offices", "orders", "jaws"]
    assert len(select_entities(entities, None)) == 6


def test_select_unknown_entity_raises():
    with pytest.raises(InvalidEntityConfiguration) as exc_info:
        select_entities(build_default_entities(), ["offices", "clinics"])

    assert "clinics" in str(exc_info.value)
    assert "offices" in exc_info.value.details["available"]


def test_entity_validation():
    with pytest.raises(ValueError):
        MigrationEntity(name="", entity_type="office", source_table="a", target_table="b", dependency_order=1)
    with pytest.raises(ValueError):
        MigrationEntity(name="offices", entity_type="office", source_table="a", target_table="b",
                        dependency_order=1, batch_size=0)


def test_transform_profile_normalizes_email_and_names():
    record = transform_profile(
        {"email": " Jane.Doe@Example.COM ", "first_name": "  Jane ", "last_name": ""},
        {},
    )

    assert record == {"email": "jane.doe@example.com", "first_name": "Jane", "last_name": None}
    assert transform_profile({"email": "not-an-email"}, {})["email"] is None


def test_transform_patient_maps_sex():
    assert transform_patient({"sex": 2}, {})["gender"] == "female"
    assert transform_patient({"sex": 9}, {})["gender"] == "unknown"


def test_transform_order_defaults_course_type():
    record = transform_order({"course_id": None, "notes": "  keep   spacing  tidy "}, {})

    assert record == {"course_type": "main", "notes": "keep spacing tidy"}
    assert transform_order({"course_id": 2}, {})["course_type"] == "refinement"


def test_transform_jaw_drops_unattached_jaws():
    assert transform_jaw({"jaw_type": None}, {"reason": "x"}) is None
    assert transform_jaw({"jaw_type": "upper"}, {"reason": "x"}) == {"reason": "x"}
