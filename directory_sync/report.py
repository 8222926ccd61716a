"""
Plain-text rendering of a reconciliation plan.
"""

from typing import List

from directory_sync.models import Delta

RULE_WIDTH = 80


def generate_diff_report(delta: Delta) -> str:
    """
    Render the full plan with per-account attribute changes.
    
    Args:
        delta: Plan to render
        
    Returns:
        Multi-line report text
    """
    summary = delta.summary
    lines: List[str] = [
        '=' * RULE_WIDTH,
        'Directory State Changes',
        '=' * RULE_WIDTH,
        '',
        'Summary',
        '-' * RULE_WIDTH,
        f"  Total desired:           {summary.total_desired} users",
        f"  Total in directory:      {summary.total_observed} users",
        f"  To CREATE:               {summary.to_create} users",
        f"  To UPDATE:               {summary.to_update} users",
        f"  To DELETE:               {summary.to_delete} users",
        f"  Unchanged:               {summary.unchanged} users",
    ]
    if summary.custom_properties_detected:
        lines.append(f"  Custom properties:       {len(summary.custom_properties_detected)} "
                     f"({', '.join(summary.custom_properties_detected)})")
    if delta.protected:
        lines.append(f"  Protected:               {len(delta.protected)} users")
    
    if delta.create:
        lines.extend(['', 'Users to CREATE', '-' * RULE_WIDTH])
        for index, action in enumerate(delta.create, start=1):
            record = action.desired
            lines.append(f"{index}. {record.display_name or record.email} ({record.email})")
            for name, value in record.attributes.items():
                lines.append(f"     {name}: {_format_value(value)}")
            if record.manager_email:
                lines.append(f"     manager: {record.manager_email}")
            if record.custom_attributes:
                lines.append('     Custom Properties:')
                for name, value in record.custom_attributes.items():
                    lines.append(f"       {name}: {value} (custom)")
    
    if delta.update:
        lines.extend(['', 'Users to UPDATE', '-' * RULE_WIDTH])
        for index, action in enumerate(delta.update, start=1):
            lines.append(f"{index}. {action.display_name or action.email} ({action.email})")
            for change in action.changes:
                suffix = ' (custom)' if change.is_custom_property else ''
                lines.append(f"     {change.field}: {_format_value(change.old_value)} -> "
                             f"{_format_value(change.new_value)}{suffix}")
    
    if delta.delete:
        lines.extend(['', 'Users to DELETE', '-' * RULE_WIDTH])
        for index, action in enumerate(delta.delete, start=1):
            lines.append(f"{index}. {action.display_name or action.email} ({action.email})")
    
    if delta.protected:
        lines.extend(['', 'Protected accounts (excluded)', '-' * RULE_WIDTH])
        for account in delta.protected:
            lines.append(f"  {account.email}: {account.reason}")
    
    lines.extend(['', '=' * RULE_WIDTH])
    return '\n'.join(lines)


def generate_summary(delta: Delta) -> str:
    """Compact one-line summary, e.g. ``CREATE: 2 | UNCHANGED: 5``."""
    summary = delta.summary
    parts = []
    if summary.to_create:
        parts.append(f"CREATE: {summary.to_create}")
    if summary.to_update:
        parts.append(f"UPDATE: {summary.to_update}")
    if summary.to_delete:
        parts.append(f"DELETE: {summary.to_delete}")
    if summary.unchanged:
        parts.append(f"UNCHANGED: {summary.unchanged}")
    return ' | '.join(parts) if parts else 'No accounts'


def _format_value(value) -> str:
    if value is None or value == '':
        return '(empty)'
    if isinstance(value, (list, tuple)):
        return ', '.join(str(item) for item in value)
    return str(value)
