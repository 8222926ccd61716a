"""
Account protection rules.

Keeps privileged and operator accounts out of the mutation plan. Each rule
inspects a candidate and returns a human-readable reason when it matches;
the first matching rule wins. Filtering is pure: it performs no I/O, so role
information must already be present on the candidates.
"""

import re
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence

from directory_sync.models import ProtectedAccount, ProtectionCandidate

logger = logging.getLogger(__name__)


class RuleMatch(NamedTuple):
    reason: str
    role: Optional[str] = None


class ProtectionRule(ABC):
    """Base class for a single protection rule."""
    
    @abstractmethod
    def match(self, candidate: ProtectionCandidate) -> Optional[RuleMatch]:
        """Return a RuleMatch when the candidate is protected by this rule."""
        pass


class OperatorRule(ProtectionRule):
    """Always protect the account the tool is running as."""
    
    def __init__(self, operator_email: str):
        self.operator_email = operator_email.strip().lower()
    
    def match(self, candidate):
        if candidate.email.strip().lower() == self.operator_email:
            return RuleMatch('Account belongs to the authenticated operator')
        return None


class ExactEmailRule(ProtectionRule):
    """Protect an explicit list of addresses."""
    
    def __init__(self, emails: Iterable[str]):
        self.emails = {email.strip().lower() for email in emails if email and email.strip()}
    
    def match(self, candidate):
        if candidate.email.strip().lower() in self.emails:
            return RuleMatch('Email in protected exclusion list')
        return None


class EmailPatternRule(ProtectionRule):
    """
    Protect addresses matching wildcard patterns.
    
    ``*`` matches any run of characters and ``?`` a single character,
    case-insensitively. ``admin@*`` protects every ``admin`` mailbox.
    """
    
    def __init__(self, patterns: Iterable[str]):
        self.patterns = [pattern.strip() for pattern in patterns if pattern and pattern.strip()]
        self._compiled = [self._compile(pattern) for pattern in self.patterns]
    
    @staticmethod
    def _compile(pattern: str):
        regex = ''.join(
            '.*' if char == '*' else '.' if char == '?' else re.escape(char)
            for char in pattern
        )
        return re.compile(f'^{regex}$', re.IGNORECASE)
    
    def match(self, candidate):
        for pattern, compiled in zip(self.patterns, self._compiled):
            if compiled.match(candidate.email.strip()):
                return RuleMatch(f"Email matches protected pattern '{pattern}'")
        return None


class DomainRule(ProtectionRule):
    """Protect every account in the listed domains."""
    
    def __init__(self, domains: Iterable[str]):
        self.domains = {domain.strip().lstrip('@').lower() for domain in domains if domain and domain.strip()}
    
    def match(self, candidate):
        _, _, domain = candidate.email.strip().lower().rpartition('@')
        if domain in self.domains:
            return RuleMatch(f"Email domain '{domain}' is protected")
        return None


class RoleRule(ProtectionRule):
    """
    Protect holders of privileged directory roles.
    
    Role names match case-insensitively by substring. A candidate whose roles
    could not be determined (``roles`` is None) is protected as well.
    """
    
    def __init__(self, roles: Iterable[str]):
        self.roles = [role.strip() for role in roles if role and role.strip()]
    
    def match(self, candidate):
        if candidate.roles is None:
            return RuleMatch('Directory roles could not be verified')
        
        matched = [
            role for role in candidate.roles
            if any(protected.lower() in role.lower() for protected in self.roles)
        ]
        if matched:
            return RuleMatch('User has protected admin role', ', '.join(matched))
        return None


class ProtectionResult(NamedTuple):
    allowed: List[ProtectionCandidate]
    protected_accounts: List[ProtectedAccount]


class AccountProtectionFilter:
    """
    Partitions candidate accounts into allowed and protected.
    
    The filter holds an ordered list of rules; an account matching any rule
    is protected and the first match supplies the reported reason.
    """
    
    def __init__(self, rules: Optional[Sequence[ProtectionRule]] = None):
        self.rules = list(rules or [])
    
    @property
    def requires_roles(self) -> bool:
        """True when a rule needs directory role information on candidates."""
        return any(isinstance(rule, RoleRule) for rule in self.rules)
    
    def check(self, candidate: ProtectionCandidate) -> Optional[ProtectedAccount]:
        for rule in self.rules:
            found = rule.match(candidate)
            if found:
                return ProtectedAccount(email=candidate.email, reason=found.reason, role=found.role)
        return None
    
    def filter_protected_accounts(self, candidates: Iterable[ProtectionCandidate]) -> ProtectionResult:
        """
        Split candidates into allowed and protected accounts.
        
        Args:
            candidates: Accounts targeted for mutation
            
        Returns:
            ProtectionResult(allowed, protected_accounts), both in input order
        """
        allowed = []
        protected_accounts = []
        
        for candidate in candidates:
            protected = self.check(candidate)
            if protected:
                protected_accounts.append(protected)
            else:
                allowed.append(candidate)
        
        return ProtectionResult(allowed, protected_accounts)
    
    def describe(self) -> str:
        """Human readable description of the active rules for logging."""
        lines = ['Account Protection Configuration:']
        for rule in self.rules:
            if isinstance(rule, OperatorRule):
                lines.append(f"  Operator: {rule.operator_email}")
            elif isinstance(rule, ExactEmailRule):
                lines.append(f"  Explicit Exclusions: {len(rule.emails)} accounts")
            elif isinstance(rule, EmailPatternRule):
                lines.append(f"  Protected Email Patterns: {', '.join(rule.patterns)}")
            elif isinstance(rule, DomainRule):
                lines.append(f"  Protected Domains: {', '.join(sorted(rule.domains))}")
            elif isinstance(rule, RoleRule):
                lines.append(f"  Protected Roles: {len(rule.roles)} roles")
        if len(lines) == 1:
            lines.append('  No protection rules configured')
        return '\n'.join(lines)
    
    @classmethod
    def from_config(cls, config: Dict[str, Any], operator_email: Optional[str] = None) -> 'AccountProtectionFilter':
        """
        Build a filter from the ``protection`` configuration section.
        
        Args:
            config: Protection configuration dictionary
            operator_email: Authenticated operator, overrides ``operator_email`` in config
            
        Returns:
            Configured AccountProtectionFilter
        """
        rules: List[ProtectionRule] = []
        
        operator = operator_email or config.get('operator_email')
        if config.get('protect_operator', True) and operator:
            rules.append(OperatorRule(operator))
        
        if config.get('protected_emails'):
            rules.append(ExactEmailRule(config['protected_emails']))
        
        if config.get('protected_email_patterns'):
            rules.append(EmailPatternRule(config['protected_email_patterns']))
        
        if config.get('protected_domains'):
            rules.append(DomainRule(config['protected_domains']))
        
        if config.get('check_admin_roles', True) and config.get('protected_roles'):
            rules.append(RoleRule(config['protected_roles']))
        
        return cls(rules)
