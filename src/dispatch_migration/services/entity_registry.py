"""
Default entity descriptors for the dispatch schema.

Dependency order: offices, profiles and products have no references;
patients need profiles and offices; orders need patients; jaws need orders.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from ..contracts.migration_engine_service import (
    DetectionStrategy,
    ForeignKeyReference,
    MigrationEntity,
)
from ..contracts.validation_service import ForeignKeyCheck, IntegrityCheck, Severity
from ..lib.exceptions import InvalidEntityConfiguration

logger = logging.getLogger(__name__)

GENDERS = {0: 'other', 1: 'male', 2: 'female'}

COURSE_TYPES = {1: 'main', 2: 'refinement', 3: 'replacement', 4: 'any'}

JAWS_SELECT = (
    "SELECT dj.id, dj.bond_teeth, dj.extract_teeth, dj.reason, dj.labial, "
    "COALESCE(up.id, lo.id) AS instruction_id, "
    "CASE WHEN up.id IS NOT NULL THEN 'upper' WHEN lo.id IS NOT NULL THEN 'lower' END AS jaw_type "
    "FROM dispatch_jaw dj "
    "LEFT JOIN dispatch_instruction up ON up.upper_jaw_id = dj.id "
    "LEFT JOIN dispatch_instruction lo ON lo.lower_jaw_id = dj.id"
)


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    cleaned = " ".join(str(value).split())
    return cleaned or None


def transform_profile(row: Dict[str, Any], record: Dict[str, Any]) -> Dict[str, Any]:
    email = _clean_text(row.get('email'))
    record['email'] = email.lower() if email and '@' in email else None
    record['first_name'] = _clean_text(row.get('first_name'))
    record['last_name'] = _clean_text(row.get('last_name'))
    return record


def transform_patient(row: Dict[str, Any], record: Dict[str, Any]) -> Dict[str, Any]:
    record['gender'] = GENDERS.get(row.get('sex'), 'unknown')
    return record


def transform_order(row: Dict[str, Any], record: Dict[str, Any]) -> Dict[str, Any]:
    record['course_type'] = COURSE_TYPES.get(row.get('course_id'), 'main')
    record['notes'] = _clean_text(row.get('notes'))
    return record


def transform_jaw(row: Dict[str, Any], record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    # Jaws not attached to any instruction are not migrated
    if not row.get('jaw_type'):
        return None
    return record


def build_default_entities(batch_size: int = 1000) -> List[MigrationEntity]:
    """Descriptors for every entity the engine migrates by default"""
    return [
        MigrationEntity(
            name='offices',
            entity_type='office',
            source_table='dispatch_office',
            target_table='offices',
            dependency_order=1,
            batch_size=batch_size,
            source_filter='valid = true',
            field_mappings={
                'name': 'name',
                'address': 'address',
                'apt': 'apartment',
                'city': 'city',
                'state': 'state',
                'zip': 'zip_code',
                'phone': 'phone',
                'tax_rate': 'tax_rate',
            },
            integrity_checks=[
                IntegrityCheck(
                    description='Offices without a name',
                    query="SELECT COUNT(*) FROM offices WHERE name IS NULL OR name = ''",
                    severity=Severity.WARNING,
                ),
            ],
        ),
        MigrationEntity(
            name='profiles',
            entity_type='user',
            source_table='auth_user',
            target_table='profiles',
            dependency_order=1,
            batch_size=batch_size,
            field_mappings={
                'username': 'username',
                'first_name': 'first_name',
                'last_name': 'last_name',
                'email': 'email',
                'is_active': 'is_active',
                'last_login': 'last_login_at',
            },
            transform=transform_profile,
            integrity_checks=[
                IntegrityCheck(
                    description='Duplicate profile usernames',
                    query=(
                        "SELECT COUNT(*) FROM (SELECT username FROM profiles "
                        "GROUP BY username HAVING COUNT(*) > 1) dup"
                    ),
                ),
            ],
        ),
        MigrationEntity(
            name='products',
            entity_type='product',
            source_table='dispatch_product',
            target_table='products',
            dependency_order=1,
            batch_size=batch_size,
            source_filter='deleted = false',
            field_mappings={
                'name': 'name',
                'description': 'description',
                'free': 'is_free',
                'type': 'product_type',
            },
        ),
        MigrationEntity(
            name='patients',
            entity_type='patient',
            source_table='dispatch_patient',
            target_table='patients',
            dependency_order=2,
            batch_size=batch_size,
            detection_strategy=DetectionStrategy.TIMESTAMP,
            field_mappings={
                'birthdate': 'date_of_birth',
                'suffix': 'suffix',
                'status': 'status',
                'archived': 'archived',
                'suspended': 'suspended',
                'submitted_at': 'submitted_at',
            },
            foreign_keys=[
                ForeignKeyReference('user_id', 'profile_id', 'user'),
                ForeignKeyReference('office_id', 'office_id', 'office', required=False),
            ],
            depends_on=['profiles', 'offices'],
            transform=transform_patient,
            foreign_key_checks=[
                ForeignKeyCheck('profile_id', 'profiles'),
                ForeignKeyCheck('office_id', 'offices'),
            ],
        ),
        MigrationEntity(
            name='orders',
            entity_type='order',
            source_table='dispatch_instruction',
            target_table='orders',
            dependency_order=3,
            batch_size=batch_size,
            legacy_id_column='legacy_instruction_id',
            field_mappings={
                'status': 'status',
                'submitted_at': 'submitted_at',
                'comprehensive': 'comprehensive',
                'accept_extraction': 'accept_extraction',
            },
            foreign_keys=[
                ForeignKeyReference('patient_id', 'patient_id', 'patient'),
            ],
            depends_on=['patients'],
            transform=transform_order,
            foreign_key_checks=[ForeignKeyCheck('patient_id', 'patients')],
            integrity_checks=[
                IntegrityCheck(
                    description='Orders submitted before their patient was created',
                    query=(
                        "SELECT COUNT(*) FROM orders o JOIN patients p ON p.id = o.patient_id "
                        "WHERE o.submitted_at < p.created_at"
                    ),
                    severity=Severity.INFO,
                ),
            ],
        ),
        MigrationEntity(
            name='jaws',
            entity_type='jaw',
            source_table='dispatch_jaw',
            target_table='jaws',
            dependency_order=4,
            batch_size=batch_size,
            source_select=JAWS_SELECT,
            field_mappings={
                'bond_teeth': 'bond_teeth',
                'extract_teeth': 'extract_teeth',
                'reason': 'reason',
                'labial': 'labial',
                'jaw_type': 'jaw_type',
            },
            foreign_keys=[
                ForeignKeyReference('instruction_id', 'order_id', 'order'),
            ],
            depends_on=['orders'],
            transform=transform_jaw,
            foreign_key_checks=[ForeignKeyCheck('order_id', 'orders')],
        ),
    ]


def select_entities(entities: Sequence[MigrationEntity], names: Optional[Sequence[str]]) -> List[MigrationEntity]:
    """
    Filter descriptors by name, keeping dependency order

    Raises:
        InvalidEntityConfiguration: If a requested name is unknown
    """
    if not names:
        return sorted(entities, key=lambda e: e.dependency_order)

    known = {entity.name for entity in entities}
    unknown = [name for name in names if name not in known]
    if unknown:
        raise InvalidEntityConfiguration(
            f"Unknown entities: {', '.join(unknown)}",
            {'available': sorted(known)}
        )

    wanted = set(names)
    return sorted((e for e in entities if e.name in wanted), key=lambda e: e.dependency_order)
