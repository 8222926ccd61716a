"""
CSV loader for the declared user state.

Turns the rows of a CSV file into DesiredRecord objects and reports which
columns are custom attributes. Parsing of individual cells follows the
standard attribute schema.
"""

import csv
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from directory_sync.config import ConfigurationError
from directory_sync.models import DesiredRecord
from directory_sync.schema import (
    ENRICHMENT_PROPERTIES,
    MANAGER_COLUMN,
    get_custom_properties,
    is_standard_property,
    parse_property_value,
)

logger = logging.getLogger(__name__)


class MissingIdentityError(ConfigurationError):
    """Raised when a row has no identity (email) value."""
    pass


class DuplicateRecordError(ConfigurationError):
    """Raised when the same identity key is declared more than once."""
    
    def __init__(self, duplicates: Dict[str, List[int]]):
        self.duplicates = duplicates
        details = ', '.join(
            f"{key} (rows {', '.join(str(row) for row in rows)})"
            for key, rows in sorted(duplicates.items())
        )
        super().__init__(f"Duplicate email addresses in desired state: {details}")


def load_desired_state(csv_path: str, encoding: str = 'utf-8-sig') -> Tuple[List[DesiredRecord], List[str]]:
    """
    Load desired records from a CSV file.
    
    Args:
        csv_path: Path to the CSV file
        encoding: File encoding (BOM tolerant by default)
        
    Returns:
        Tuple of (records, custom field names)
        
    Raises:
        ConfigurationError: If the file is missing, has no email column,
            a row lacks an email, or an email is declared twice
    """
    try:
        with open(csv_path, 'r', encoding=encoding, newline='') as f:
            reader = csv.DictReader(f)
            columns = [column.strip() for column in (reader.fieldnames or [])]
            rows = [
                {(key or '').strip(): value for key, value in row.items()}
                for row in reader
                if any((value or '').strip() for value in row.values() if isinstance(value, str))
            ]
    except FileNotFoundError:
        raise ConfigurationError(f"CSV file not found: {csv_path}")
    except csv.Error as e:
        raise ConfigurationError(f"Invalid CSV in {csv_path}: {e}")
    
    records, custom_fields = parse_rows(rows, columns)
    logger.info(f"Loaded {len(records)} desired records from {csv_path}")
    return records, custom_fields


def parse_rows(rows: Iterable[Dict[str, Optional[str]]], columns: List[str]) -> Tuple[List[DesiredRecord], List[str]]:
    """
    Convert raw CSV rows into desired records.
    
    The manager column follows an explicit policy: when the column is absent
    the record carries no opinion about the manager; when it is present but
    empty the manager relationship is to be cleared.
    
    Args:
        rows: Mappings of column name to raw cell
        columns: Column names in source order
        
    Returns:
        Tuple of (records, custom field names)
    """
    if 'email' not in columns:
        raise ConfigurationError("CSV is missing the required 'email' column")
    
    custom_fields = get_custom_properties(columns)
    manager_specified = MANAGER_COLUMN in columns
    deferred = [column for column in columns if column in ENRICHMENT_PROPERTIES]
    
    if custom_fields:
        logger.info(f"Detected {len(custom_fields)} custom properties: {', '.join(custom_fields)}")
    if deferred:
        logger.info(f"Ignoring profile enrichment columns: {', '.join(deferred)}")
    
    records = []
    seen: Dict[str, List[int]] = {}
    
    # Row numbers are reported 1-based including the header line
    for row_number, row in enumerate(rows, start=2):
        email = (row.get('email') or '').strip()
        if not email:
            raise MissingIdentityError(f"Row {row_number} is missing the required 'email' value")
        
        seen.setdefault(email.lower(), []).append(row_number)
        
        attributes = {}
        for column in columns:
            if not is_standard_property(column):
                continue
            value = parse_property_value(column, row.get(column))
            if value is not None:
                attributes[column] = value
        
        display_name = (row.get('name') or '').strip() or attributes.get('displayName') or ''
        attributes.pop('displayName', None)
        
        custom_attributes = {}
        for column in custom_fields:
            value = (row.get(column) or '').strip()
            if value:
                custom_attributes[column] = value
        
        manager_email = (row.get(MANAGER_COLUMN) or '').strip() or None
        
        records.append(DesiredRecord(
            email=email,
            display_name=display_name,
            attributes=attributes,
            manager_email=manager_email,
            manager_specified=manager_specified,
            custom_attributes=custom_attributes,
        ))
    
    duplicates = {key: found for key, found in seen.items() if len(found) > 1}
    if duplicates:
        raise DuplicateRecordError(duplicates)
    
    return records, custom_fields
