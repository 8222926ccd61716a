"""
Export of provisioned accounts.

Writes the accounts created or updated by a run to a JSON file. Initial
passwords of created accounts are only written to a separate file, and only
when explicitly enabled.
"""

import os
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from directory_sync.reconciler import RunSummary

logger = logging.getLogger(__name__)


class AccountExporter:
    """Writes run results to the configured output files."""
    
    def __init__(self, export_path: str = 'output/accounts.json', passwords_path: str = 'output/passwords.txt'):
        self.export_path = export_path
        self.passwords_path = passwords_path
    
    def build_entries(self, summary: RunSummary) -> List[Dict[str, Any]]:
        """
        Build export entries for created and updated accounts.
        
        Args:
            summary: Completed run summary
            
        Returns:
            List of account dictionaries, created accounts first
        """
        timestamp = _now()
        entries = []
        
        for account in summary.created_accounts:
            entries.append({
                'email': account.email,
                'userId': account.user_id,
                'displayName': account.display_name,
                'lastAction': 'CREATE',
                'lastModified': timestamp,
            })
        
        updated = {email.lower() for email in summary.updated_emails}
        if summary.delta is not None:
            for action in summary.delta.update:
                if action.key not in updated:
                    continue
                entries.append({
                    'email': action.email,
                    'userId': action.user_id,
                    'displayName': action.display_name,
                    'lastAction': 'UPDATE',
                    'lastModified': timestamp,
                    'changedFields': [change.field for change in action.changes],
                })
        
        return entries
    
    def export_accounts(self, summary: RunSummary) -> str:
        """
        Write the JSON export file.
        
        Returns:
            Path of the written file
        """
        entries = self.build_entries(summary)
        document = {
            'accounts': entries,
            'summary': dict(summary.to_dict(), generatedAt=_now()),
        }
        
        _ensure_parent(self.export_path)
        with open(self.export_path, 'w', encoding='utf-8') as f:
            json.dump(document, f, indent=2)
        
        logger.info(f"Exported {len(entries)} accounts to {self.export_path}")
        return self.export_path
    
    def export_passwords(self, summary: RunSummary) -> str:
        """
        Write initial passwords of created accounts, readable by the owner only.
        
        Returns:
            Path of the written file
        """
        lines = [
            '# Initial account passwords',
            '# KEEP THIS FILE SECURE - DO NOT COMMIT TO VERSION CONTROL',
            f'# Generated: {_now()}',
            '',
        ]
        lines.extend(f"{account.email}\t{account.password}"
                     for account in summary.created_accounts if account.password)
        
        _ensure_parent(self.passwords_path)
        fd = os.open(self.passwords_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write('\n'.join(lines) + '\n')
        
        logger.info(f"Exported {len(lines) - 4} passwords to {self.passwords_path}")
        return self.passwords_path


def _ensure_parent(path: str):
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
