"""
Standard user attribute schema.

This module describes the directory attributes that map directly onto the
remote user object, how CSV cell values are parsed into them, and which
columns are treated as custom attributes.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PropertyMetadata:
    name: str
    type: str = 'string'
    remote_path: Optional[str] = None

    @property
    def path(self) -> str:
        return self.remote_path or self.name


USER_PROPERTY_SCHEMA: List[PropertyMetadata] = [
    # Identity
    PropertyMetadata('displayName'),
    PropertyMetadata('givenName'),
    PropertyMetadata('surname'),
    PropertyMetadata('accountEnabled', 'boolean'),
    PropertyMetadata('mail'),
    PropertyMetadata('mailNickname'),
    PropertyMetadata('userType'),
    # Contact
    PropertyMetadata('mobilePhone'),
    PropertyMetadata('businessPhones', 'array'),
    PropertyMetadata('otherMails', 'array'),
    PropertyMetadata('faxNumber'),
    # Location
    PropertyMetadata('city'),
    PropertyMetadata('state'),
    PropertyMetadata('country'),
    PropertyMetadata('postalCode'),
    PropertyMetadata('streetAddress'),
    PropertyMetadata('officeLocation'),
    PropertyMetadata('usageLocation'),
    PropertyMetadata('preferredLanguage'),
    PropertyMetadata('preferredDataLocation'),
    # Organization
    PropertyMetadata('jobTitle'),
    PropertyMetadata('department'),
    PropertyMetadata('companyName'),
    PropertyMetadata('employeeId'),
    PropertyMetadata('employeeType'),
    PropertyMetadata('employeeHireDate', 'date'),
    PropertyMetadata('employeeLeaveDateTime', 'date'),
    PropertyMetadata('employeeOrgData', 'object'),
    PropertyMetadata('onPremisesImmutableId'),
]

# Profile enrichment fields are written by a separate profile pipeline, not
# by the account reconciliation, so they are neither standard nor custom here.
ENRICHMENT_PROPERTIES = frozenset([
    'aboutMe', 'birthday', 'interests', 'skills', 'schools',
    'projects', 'responsibilities', 'mySite', 'languages',
])

# Columns with a fixed meaning in the CSV source
INTERNAL_CSV_COLUMNS = frozenset(['name', 'email', 'role', 'ManagerEmail'])

MANAGER_COLUMN = 'ManagerEmail'

_SCHEMA_BY_NAME: Dict[str, PropertyMetadata] = {prop.name: prop for prop in USER_PROPERTY_SCHEMA}


def get_property_metadata(name: str) -> Optional[PropertyMetadata]:
    """Return schema metadata for a standard attribute, or None."""
    return _SCHEMA_BY_NAME.get(name)


def is_standard_property(name: str) -> bool:
    return name in _SCHEMA_BY_NAME


def get_custom_properties(columns: Iterable[str]) -> List[str]:
    """
    Determine which source columns are custom attributes.

    Args:
        columns: Column names from the declarative source

    Returns:
        Column names that are neither standard, internal nor enrichment fields,
        in source order
    """
    return [
        column for column in columns
        if column
        and not is_standard_property(column)
        and column not in INTERNAL_CSV_COLUMNS
        and column not in ENRICHMENT_PROPERTIES
    ]


def parse_property_value(name: str, raw_value: Optional[str]) -> Any:
    """
    Parse a CSV cell into the type the schema declares for the attribute.

    Empty cells parse to None. Custom attributes are returned as trimmed strings.

    Args:
        name: Attribute (column) name
        raw_value: Raw CSV cell

    Returns:
        Parsed value or None
    """
    if raw_value is None:
        return None

    value = raw_value.strip() if isinstance(raw_value, str) else raw_value
    if value == '':
        return None

    metadata = get_property_metadata(name)
    if metadata is None:
        return value

    if metadata.type == 'boolean':
        return str(value).lower() in ('true', '1', 'yes')

    if metadata.type == 'number':
        try:
            return float(value) if '.' in str(value) else int(value)
        except ValueError:
            logger.warning(f"Invalid number for {name}: {value!r}, keeping raw value")
            return value

    if metadata.type == 'array':
        return _parse_array(value)

    if metadata.type == 'object':
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return value

    # strings and ISO dates are kept as text
    return value


def _parse_array(value: str) -> List[str]:
    """Accept JSON arrays (double or single quoted) or comma separated values."""
    for candidate in (value, value.replace("'", '"')):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed]
    return [item.strip() for item in value.split(',') if item.strip()]
