"""
Conditional mapping rules applied after field mapping.

A rule matches a directory record when all (or any) of its conditions hold and
then applies its actions to the mapped fields: overriding a field, setting the
employment type or cost center, deactivating the record, or skipping it.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from directory_sync.errors import ConfigurationError
from directory_sync.mapper import MAPPABLE_SOURCE_FIELDS, MAPPABLE_TARGET_FIELDS
from directory_sync.models import RecordStatus, SourceRecord

logger = logging.getLogger(__name__)

OPERATORS = frozenset([
    'equals', 'not_equals', 'contains', 'not_contains', 'starts_with',
    'ends_with', 'matches', 'is_empty', 'is_not_empty'
])

ACTION_TYPES = frozenset(['set_field', 'set_employment_type', 'set_cost_center', 'set_status', 'skip'])

# Actions of the hosting application that this engine does not perform
UNSUPPORTED_ACTION_TYPES = frozenset(['assign_role', 'add_to_group'])


@dataclass(frozen=True)
class RuleCondition:
    field: str
    operator: str
    value: str = ''
    case_sensitive: bool = False

    def matches(self, source: SourceRecord) -> bool:
        raw = getattr(source, self.field, None)
        if isinstance(raw, (list, tuple)):
            raw = raw[0] if raw else None
        actual = '' if raw is None else str(raw)

        if self.operator == 'is_empty':
            return actual == ''
        if self.operator == 'is_not_empty':
            return actual != ''
        if self.operator == 'matches':
            flags = 0 if self.case_sensitive else re.IGNORECASE
            return re.search(self.value, actual, flags) is not None

        expected = self.value
        if not self.case_sensitive:
            actual = actual.lower()
            expected = expected.lower()

        if self.operator == 'equals':
            return actual == expected
        if self.operator == 'not_equals':
            return actual != expected
        if self.operator == 'contains':
            return expected in actual
        if self.operator == 'not_contains':
            return expected not in actual
        if self.operator == 'starts_with':
            return actual.startswith(expected)
        if self.operator == 'ends_with':
            return actual.endswith(expected)
        return False


@dataclass(frozen=True)
class RuleAction:
    type: str
    target: str = ''
    value: str = ''


@dataclass(frozen=True)
class MappingRule:
    name: str
    conditions: Tuple[RuleCondition, ...] = ()
    actions: Tuple[RuleAction, ...] = ()
    condition_match: str = 'all'
    priority: int = 100
    is_active: bool = True

    def matches(self, source: SourceRecord) -> bool:
        if not self.conditions:
            return True
        checks = (condition.matches(source) for condition in self.conditions)
        return any(checks) if self.condition_match == 'any' else all(checks)


@dataclass
class RuleOutcome:
    """Mapped fields after rules ran, plus the name of a rule that asked to skip the record."""

    fields: Dict[str, Any]
    skipped_by: Optional[str] = None
    applied: List[str] = field(default_factory=list)


def apply_rules(source: SourceRecord, mapped: Dict[str, Any], rules: Iterable[MappingRule]) -> RuleOutcome:
    """
    Apply active rules in priority order to a copy of the mapped fields.

    Processing stops at the first matching rule with a skip action.
    """
    outcome = RuleOutcome(fields=dict(mapped))

    for rule in sorted(rules, key=lambda r: r.priority):
        if not rule.is_active or not rule.matches(source):
            continue

        outcome.applied.append(rule.name)
        for action in rule.actions:
            if action.type == 'skip':
                outcome.skipped_by = rule.name
                return outcome
            if action.type == 'set_field':
                outcome.fields[action.target] = action.value
            elif action.type == 'set_employment_type':
                outcome.fields['employment_type'] = action.value
            elif action.type == 'set_cost_center':
                outcome.fields['cost_center'] = action.value
            elif action.type == 'set_status':
                outcome.fields['status'] = RecordStatus.INACTIVE

        logger.debug(f"Rule '{rule.name}' applied to {source.identifier}")

    return outcome


def parse_mapping_rules(raw_rules: Iterable[Dict[str, Any]]) -> List[MappingRule]:
    """
    Build mapping rules from configuration dictionaries.

    Args:
        raw_rules: List of rule dictionaries from the ``sync.mapping_rules`` section

    Returns:
        Validated rules

    Raises:
        ConfigurationError: If a rule references unknown fields, operators or actions
    """
    rules = []
    errors = []

    for i, raw in enumerate(raw_rules or []):
        prefix = f"mapping_rules[{i}]"
        if not isinstance(raw, dict):
            errors.append(f"{prefix} must be a mapping")
            continue

        name = raw.get('name') or raw.get('id') or prefix
        match = raw.get('condition_match', 'all')
        if match not in ('all', 'any'):
            errors.append(f"{prefix}: condition_match must be 'all' or 'any'")

        conditions = []
        for j, cond in enumerate(raw.get('conditions', [])):
            field_name = cond.get('field')
            operator = cond.get('operator')
            if field_name not in MAPPABLE_SOURCE_FIELDS:
                errors.append(f"{prefix}.conditions[{j}]: unknown field '{field_name}'")
            if operator not in OPERATORS:
                errors.append(f"{prefix}.conditions[{j}]: unknown operator '{operator}'")
            elif operator == 'matches':
                try:
                    re.compile(str(cond.get('value', '')))
                except re.error as e:
                    errors.append(f"{prefix}.conditions[{j}]: invalid pattern: {e}")
            conditions.append(RuleCondition(
                field=field_name,
                operator=operator,
                value=str(cond.get('value', '')),
                case_sensitive=bool(cond.get('case_sensitive', False))
            ))

        actions = []
        for j, act in enumerate(raw.get('actions', [])):
            action_type = act.get('type')
            if action_type in UNSUPPORTED_ACTION_TYPES:
                errors.append(f"{prefix}.actions[{j}]: action '{action_type}' is not supported by the sync engine")
                continue
            if action_type not in ACTION_TYPES:
                errors.append(f"{prefix}.actions[{j}]: unknown action '{action_type}'")
                continue
            if action_type == 'set_field' and act.get('target') not in MAPPABLE_TARGET_FIELDS:
                errors.append(f"{prefix}.actions[{j}]: cannot set field '{act.get('target')}'")
            if action_type == 'set_status' and act.get('value') != RecordStatus.INACTIVE:
                errors.append(f"{prefix}.actions[{j}]: set_status only supports '{RecordStatus.INACTIVE}'")
            actions.append(RuleAction(
                type=action_type,
                target=act.get('target', ''),
                value=str(act.get('value', ''))
            ))

        rules.append(MappingRule(
            name=name,
            conditions=tuple(conditions),
            actions=tuple(actions),
            condition_match=match,
            priority=int(raw.get('priority', 100)),
            is_active=bool(raw.get('is_active', True))
        ))

    if errors:
        raise ConfigurationError("Invalid mapping rules:\n" + "\n".join(f"  - {error}" for error in errors))

    return rules
