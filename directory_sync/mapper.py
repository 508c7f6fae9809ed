"""
Field mapping from directory records to employee record fields.

Mappings are declarative and restricted to a fixed allow-list of source and
target attributes; the list is validated when configuration is loaded.
"""

from dataclasses import fields
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from directory_sync.errors import ConfigurationError
from directory_sync.models import FieldMapping, SourceRecord, TargetRecord, utcnow

MAPPABLE_SOURCE_FIELDS = frozenset(f.name for f in fields(SourceRecord))

# status and external_id are owned by the orchestrator, id by the store
RESERVED_TARGET_FIELDS = frozenset(['id', 'status', 'external_id', 'last_synced_at'])

MAPPABLE_TARGET_FIELDS = frozenset(
    f.name for f in fields(TargetRecord) if f.name not in RESERVED_TARGET_FIELDS
)

DEFAULT_FIELD_MAPPINGS = (
    FieldMapping('display_name', 'title'),
    FieldMapping('given_name', 'first_name'),
    FieldMapping('surname', 'last_name'),
    FieldMapping('email', 'email'),
    FieldMapping('job_title', 'job_title'),
    FieldMapping('department', 'department'),
    FieldMapping('office_location', 'location'),
    FieldMapping('business_phones', 'office_phone'),
    FieldMapping('mobile_phone', 'mobile_phone'),
    FieldMapping('employee_id', 'employee_number'),
    FieldMapping('employee_type', 'employment_type'),
    FieldMapping('company_name', 'company_name'),
)


def map_source_to_target(source: SourceRecord, mappings: Iterable[FieldMapping],
                         now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Map a directory record to partial employee record fields.

    Args:
        source: Directory record to map
        mappings: Ordered field mappings; disabled ones are ignored
        now: Timestamp stamped into ``last_synced_at`` (defaults to current UTC time)

    Returns:
        Dictionary of target field name to value
    """
    target = {}

    for mapping in mappings:
        if not mapping.enabled:
            continue

        value = getattr(source, mapping.source_field, None)
        if value is None:
            continue

        # Multi-valued attributes collapse to their first element
        if isinstance(value, (list, tuple)):
            value = value[0] if value else ''

        target[mapping.target_field] = value

    target['last_synced_at'] = now or utcnow()
    return target


def validate_field_mappings(mappings: Iterable[FieldMapping]) -> List[FieldMapping]:
    """
    Check mappings against the allow-lists.

    Raises:
        ConfigurationError: If any mapping names an unknown or reserved field
    """
    mappings = list(mappings)
    errors = []

    for i, mapping in enumerate(mappings):
        if mapping.source_field not in MAPPABLE_SOURCE_FIELDS:
            errors.append(f"field_mappings[{i}]: unknown source field '{mapping.source_field}'")
        if mapping.target_field in RESERVED_TARGET_FIELDS:
            errors.append(f"field_mappings[{i}]: target field '{mapping.target_field}' cannot be mapped")
        elif mapping.target_field not in MAPPABLE_TARGET_FIELDS:
            errors.append(f"field_mappings[{i}]: unknown target field '{mapping.target_field}'")

    if errors:
        raise ConfigurationError("Invalid field mappings:\n" + "\n".join(f"  - {error}" for error in errors))

    return mappings


def parse_field_mappings(raw_mappings: Iterable[Dict[str, Any]]) -> List[FieldMapping]:
    """Build and validate FieldMapping objects from configuration dictionaries."""
    mappings = []
    for i, raw in enumerate(raw_mappings):
        if not isinstance(raw, dict) or not raw.get('source_field') or not raw.get('target_field'):
            raise ConfigurationError(f"field_mappings[{i}] requires source_field and target_field")
        mappings.append(FieldMapping(
            source_field=raw['source_field'],
            target_field=raw['target_field'],
            enabled=bool(raw.get('enabled', True))
        ))
    return validate_field_mappings(mappings)
