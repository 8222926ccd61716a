"""
Manager relationship resolution.

Turns desired manager e-mail references into assignment or removal
instructions for accounts that were successfully created or updated. A
reference is resolved against accounts created earlier in the same run
first, then against the directory. Unresolvable references produce a
warning for that account only.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from directory_sync.gateway.base import DirectoryAPIError, DirectoryGateway
from directory_sync.models import DesiredRecord, ManagerInstruction, ObservedRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManagerTarget:
    """An account whose manager edge may need to change."""

    user_id: str
    desired: DesiredRecord
    observed: Optional[ObservedRecord] = None

    @property
    def email(self) -> str:
        return self.desired.email


@dataclass
class ManagerResolution:
    instructions: List[ManagerInstruction] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def assignments(self) -> List[ManagerInstruction]:
        return [instruction for instruction in self.instructions if not instruction.is_removal]

    @property
    def removals(self) -> List[ManagerInstruction]:
        return [instruction for instruction in self.instructions if instruction.is_removal]


class ManagerResolver:
    """
    Resolves manager references to directory ids.
    
    Directory lookups are cached per resolver so a manager shared by many
    reports is looked up once.
    """
    
    def __init__(self, gateway: DirectoryGateway):
        self.gateway = gateway
        self._lookup_cache: Dict[str, Optional[str]] = {}
    
    async def resolve(self, targets: Sequence[ManagerTarget], peer_ids: Mapping[str, str]) -> ManagerResolution:
        """
        Produce manager instructions for the given accounts.
        
        Args:
            targets: Successfully created or updated accounts
            peer_ids: Lower-cased e-mail to id of accounts created in this run
            
        Returns:
            ManagerResolution with instructions and per-account warnings
        """
        resolution = ManagerResolution()
        
        for target in targets:
            desired = target.desired
            if not desired.manager_specified:
                continue
            
            wanted = desired.manager_email.strip().lower() if desired.manager_email else None
            
            if wanted is None:
                if _has_manager(target.observed):
                    logger.debug(f"Manager of {target.email} will be removed")
                    resolution.instructions.append(ManagerInstruction(
                        user_id=target.user_id,
                        email=target.email,
                        manager_id=None,
                        manager_email=None,
                    ))
                continue
            
            if wanted == desired.key:
                resolution.warnings.append(f"{target.email}: an account cannot be its own manager")
                continue
            
            manager_id = peer_ids.get(wanted)
            if manager_id is None:
                manager_id = await self._lookup(wanted)
            
            if manager_id is None:
                message = f"{target.email}: manager {desired.manager_email} not found, assignment skipped"
                logger.warning(message)
                resolution.warnings.append(message)
                continue
            
            if _is_current_manager(target.observed, manager_id, wanted):
                continue
            
            resolution.instructions.append(ManagerInstruction(
                user_id=target.user_id,
                email=target.email,
                manager_id=manager_id,
                manager_email=desired.manager_email,
            ))
        
        logger.info(f"Manager resolution: {len(resolution.assignments)} assignments, "
                    f"{len(resolution.removals)} removals, {len(resolution.warnings)} warnings")
        return resolution
    
    async def _lookup(self, email: str) -> Optional[str]:
        if email in self._lookup_cache:
            return self._lookup_cache[email]
        
        try:
            found = await self.gateway.get_by_email(email)
        except DirectoryAPIError as e:
            logger.warning(f"Manager lookup for {email} failed: {e}")
            found = None
        
        manager_id = found.user_id if found is not None else None
        self._lookup_cache[email] = manager_id
        return manager_id


def _has_manager(observed: Optional[ObservedRecord]) -> bool:
    return observed is not None and (observed.manager_id is not None or observed.manager_email is not None)


def _is_current_manager(observed: Optional[ObservedRecord], manager_id: str, manager_email: str) -> bool:
    if observed is None:
        return False
    if observed.manager_id is not None:
        return observed.manager_id == manager_id
    return bool(observed.manager_email) and observed.manager_email.strip().lower() == manager_email
