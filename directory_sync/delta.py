"""
Delta calculation between declared and observed directory state.

Compares desired records (from the CSV source) against the accounts read from
the directory and partitions every identity key into exactly one of create,
update, delete or no-change. The calculation is deterministic and performs no
I/O; protection filtering is applied to the candidates before the plan is
finalized.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from directory_sync.csv_loader import DuplicateRecordError, MissingIdentityError
from directory_sync.logging_setup import audit_logger
from directory_sync.models import (
    Action,
    ActionType,
    Change,
    Delta,
    DeltaSummary,
    DesiredRecord,
    ObservedRecord,
    ProtectionCandidate,
)
from directory_sync.protection import AccountProtectionFilter
from directory_sync.schema import USER_PROPERTY_SCHEMA

logger = logging.getLogger(__name__)

MANAGER_FIELD = 'manager'


def calculate_delta(
    desired: Sequence[DesiredRecord],
    known_custom_field_names: Sequence[str],
    observed: Sequence[ObservedRecord],
    protection_filter: Optional[AccountProtectionFilter] = None,
    protect_updates: bool = False,
    log_summary: bool = True
) -> Delta:
    """
    Compute the create/update/delete/no-change partition.
    
    Args:
        desired: Declared records for this run
        known_custom_field_names: Custom attribute names found in the source
        observed: Directory snapshot read at planning time
        protection_filter: Rules removing protected accounts from the plan
        protect_updates: Also keep protected accounts out of the update set
        log_summary: Log the partition counts at INFO

    Returns:
        Delta for the run
        
    Raises:
        MissingIdentityError: If a desired record has no email
        DuplicateRecordError: If two desired records share an email
    """
    desired_index = _index_desired(desired)
    observed_index = _index_observed(observed)
    custom_fields = list(dict.fromkeys(known_custom_field_names))
    
    create: List[Action] = []
    update: List[Action] = []
    no_change: List[Action] = []
    delete_candidates: List[Action] = []
    
    for key, record in desired_index.items():
        current = observed_index.get(key)
        if current is None:
            create.append(Action(ActionType.CREATE, desired=record))
            continue
        
        changes = detect_changes(record, current, custom_fields)
        if changes:
            update.append(Action(ActionType.UPDATE, desired=record, observed=current, changes=tuple(changes)))
        else:
            no_change.append(Action(ActionType.NO_CHANGE, desired=record, observed=current))
    
    for key, current in observed_index.items():
        if key not in desired_index:
            delete_candidates.append(Action(ActionType.DELETE, observed=current))
    
    protected = []
    deletes = delete_candidates
    if protection_filter is not None:
        deletes, blocked = _apply_protection(protection_filter, delete_candidates)
        protected.extend(blocked)
        for account in blocked:
            audit_logger.log_protection('DELETE', account.email, account.reason)
        
        if protect_updates:
            allowed_updates, blocked = _apply_protection(protection_filter, update)
            blocked_keys = {account.email.lower() for account in blocked}
            for action in update:
                if action.key in blocked_keys:
                    no_change.append(Action(ActionType.NO_CHANGE, desired=action.desired, observed=action.observed))
            update = allowed_updates
            protected.extend(blocked)
            for account in blocked:
                audit_logger.log_protection('UPDATE', account.email, account.reason)
    
    summary = DeltaSummary(
        total_desired=len(desired_index),
        total_observed=len(observed_index),
        to_create=len(create),
        to_update=len(update),
        to_delete=len(deletes),
        unchanged=len(no_change),
        custom_properties_detected=tuple(custom_fields),
    )
    
    if log_summary:
        logger.info(f"Delta calculated: {summary.to_create} create, {summary.to_update} update, "
                    f"{summary.to_delete} delete, {summary.unchanged} unchanged, {len(protected)} protected")
    
    return Delta(
        create=tuple(create),
        update=tuple(update),
        delete=tuple(deletes),
        no_change=tuple(no_change),
        summary=summary,
        protected=tuple(protected),
    )


def validate_desired_records(desired: Sequence[DesiredRecord]) -> None:
    """
    Check the identity precondition of the desired state.

    Raises:
        MissingIdentityError: If a record has no email
        DuplicateRecordError: If two records share an email
    """
    _index_desired(desired)


def _index_desired(desired: Iterable[DesiredRecord]) -> Dict[str, DesiredRecord]:
    index: Dict[str, DesiredRecord] = {}
    positions: Dict[str, List[int]] = {}
    
    for position, record in enumerate(desired, start=1):
        if not record.email or not record.email.strip():
            raise MissingIdentityError(f"Desired record #{position} has no email")
        positions.setdefault(record.key, []).append(position)
        index.setdefault(record.key, record)
    
    duplicates = {key: found for key, found in positions.items() if len(found) > 1}
    if duplicates:
        raise DuplicateRecordError(duplicates)
    return index


def _index_observed(observed: Iterable[ObservedRecord]) -> Dict[str, ObservedRecord]:
    index: Dict[str, ObservedRecord] = {}
    for record in observed:
        if not record.email:
            logger.debug(f"Skipping directory account {record.user_id} without an email")
            continue
        if record.key in index:
            logger.warning(f"Directory returned {record.email} more than once, keeping the first entry")
            continue
        index[record.key] = record
    return index


def _apply_protection(protection_filter: AccountProtectionFilter, actions: List[Action]):
    candidates = [
        ProtectionCandidate(
            email=action.email,
            user_id=action.user_id,
            display_name=action.display_name,
            roles=action.observed.roles if action.observed is not None else (),
        )
        for action in actions
    ]
    result = protection_filter.filter_protected_accounts(candidates)
    allowed_keys = {candidate.email.strip().lower() for candidate in result.allowed}
    allowed = [action for action in actions if action.key in allowed_keys]
    return allowed, result.protected_accounts


def detect_changes(desired: DesiredRecord, observed: ObservedRecord, custom_fields: Sequence[str]) -> List[Change]:
    """
    Detect attribute-level differences for an account present on both sides.
    
    Empty desired values carry no opinion and never produce a change.
    """
    changes = []
    
    for metadata in USER_PROPERTY_SCHEMA:
        if metadata.name == 'displayName':
            new_value = desired.display_name or None
            old_value = observed.display_name or None
        else:
            new_value = desired.attributes.get(metadata.name)
            old_value = observed.attributes.get(metadata.path)
        
        if _is_empty(new_value):
            continue
        
        if not values_equal(new_value, old_value, metadata.type):
            changes.append(Change(metadata.name, old_value, new_value))
    
    observed_custom = observed.custom_attributes or {}
    for name in custom_fields:
        new_value = _clean_text(desired.custom_attributes.get(name))
        if not new_value:
            continue
        old_value = observed_custom.get(name)
        if new_value != _clean_text(old_value):
            changes.append(Change(name, old_value, new_value, is_custom_property=True))
    
    manager_change = _detect_manager_change(desired, observed)
    if manager_change:
        changes.append(manager_change)
    
    return changes


def _detect_manager_change(desired: DesiredRecord, observed: ObservedRecord) -> Optional[Change]:
    if not desired.manager_specified:
        return None
    
    wanted = desired.manager_email.strip().lower() if desired.manager_email else None
    current = observed.manager_email.strip().lower() if observed.manager_email else None
    has_manager = current is not None or observed.manager_id is not None
    
    if wanted is None:
        if has_manager:
            return Change(MANAGER_FIELD, observed.manager_email or observed.manager_id, None)
        return None
    
    if wanted != current:
        return Change(MANAGER_FIELD, observed.manager_email or observed.manager_id, desired.manager_email)
    return None


def values_equal(new_value: Any, old_value: Any, value_type: str = 'string') -> bool:
    """
    Type-aware semantic comparison.
    
    Lists compare as unordered sets of trimmed scalars; strings are trimmed;
    dates compare as instants; objects compare structurally.
    """
    if _is_empty(new_value) and _is_empty(old_value):
        return True
    if _is_empty(new_value) or _is_empty(old_value):
        return False
    
    if value_type == 'array' or isinstance(new_value, (list, tuple, set)):
        return _as_set(new_value) == _as_set(old_value)
    
    if value_type == 'boolean':
        return _as_bool(new_value) == _as_bool(old_value)
    
    if value_type == 'number':
        try:
            return float(new_value) == float(old_value)
        except (TypeError, ValueError):
            return _clean_text(new_value) == _clean_text(old_value)
    
    if value_type == 'date':
        new_date = _parse_datetime(new_value)
        old_date = _parse_datetime(old_value)
        if new_date is not None and old_date is not None:
            return new_date == old_date
        return _clean_text(new_value) == _clean_text(old_value)
    
    if value_type == 'object':
        return _canonical_json(new_value) == _canonical_json(old_value)
    
    return _clean_text(new_value) == _clean_text(old_value)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _clean_text(value: Any) -> str:
    if value is None:
        return ''
    return str(value).strip()


def _as_set(value: Any) -> frozenset:
    if not isinstance(value, (list, tuple, set, frozenset)):
        value = [value]
    return frozenset(_clean_text(item) for item in value if _clean_text(item))


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes')
    return bool(value)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = _clean_text(value)
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _canonical_json(value: Any) -> str:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return value.strip()
    return json.dumps(value, sort_keys=True)
