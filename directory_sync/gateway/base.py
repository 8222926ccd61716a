"""
Base remote directory gateway interface and batch dispatch.

This module defines the abstract base class that directory integrations implement,
along with the bounded batch dispatcher shared by all batched mutations.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Sequence

from directory_sync.models import (
    BatchResult,
    CreateRequest,
    DeleteRequest,
    FailedItem,
    LicenseAssignment,
    ManagerInstruction,
    ObservedRecord,
    UserUpdate,
)

logger = logging.getLogger(__name__)


class DirectoryAPIError(Exception):
    """Base exception for directory API errors."""
    
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DirectoryAuthenticationError(DirectoryAPIError):
    """Raised when the directory rejects the credentials."""
    pass


class DirectoryTransientError(DirectoryAPIError):
    """Raised for throttling, server-side and transport failures."""
    pass


class ItemOutcome(NamedTuple):
    """Outcome of one item inside a batch request."""
    
    ok: bool
    value: Any = None
    error: Optional[str] = None


BatchHandler = Callable[[List[Any]], Awaitable[List[ItemOutcome]]]


class DirectoryGateway(ABC):
    """
    Abstract base class for remote directory integrations.
    
    Mutations are dispatched in chunks of at most ``batch_size`` items, one
    batch request per chunk, with a fixed ``batch_delay`` between consecutive
    dispatches. Failed items are recorded, never retried.
    """
    
    def __init__(self, batch_size: int = 20, batch_delay: float = 0.5):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self.batch_delay = batch_delay
    
    async def run_in_batches(self, items: Sequence[Any], handler: BatchHandler, operation: str) -> BatchResult:
        """
        Dispatch items in bounded batches and collect per-item outcomes.
        
        Each batch is awaited to completion before the next one is sent. A
        handler that raises marks every item of that batch as failed and the
        remaining batches are still attempted.
        
        Args:
            items: Items to dispatch
            handler: Coroutine sending one chunk and returning one outcome per item
            operation: Operation name for logging
            
        Returns:
            BatchResult with successful values and failed items
        """
        result = BatchResult()
        items = list(items)
        
        for start in range(0, len(items), self.batch_size):
            chunk = items[start:start + self.batch_size]
            batch_number = start // self.batch_size + 1
            logger.debug(f"Dispatching {operation} batch {batch_number} with {len(chunk)} items")
            
            result.batches_dispatched += 1
            try:
                outcomes = await handler(chunk)
            except DirectoryAPIError as e:
                logger.error(f"{operation} batch {batch_number} failed entirely: {e}")
                for item in chunk:
                    result.failed.append(FailedItem(item, str(e)))
            else:
                if len(outcomes) != len(chunk):
                    logger.error(f"{operation} batch {batch_number} returned {len(outcomes)} "
                                 f"outcomes for {len(chunk)} items")
                for index, item in enumerate(chunk):
                    outcome = outcomes[index] if index < len(outcomes) else ItemOutcome(False, error='No response for item')
                    if outcome.ok:
                        result.successful.append(outcome.value if outcome.value is not None else item)
                    else:
                        result.failed.append(FailedItem(item, outcome.error or 'Unknown error'))
            
            if start + self.batch_size < len(items) and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)
        
        return result
    
    # Abstract methods that directory integrations must implement
    
    @abstractmethod
    async def list_users(self, custom_fields: Sequence[str] = ()) -> List[ObservedRecord]:
        """
        Read every account in the directory.
        
        Args:
            custom_fields: Custom attribute names to read alongside each account
            
        Returns:
            Snapshot of observed records including the realized manager reference
        """
        pass
    
    @abstractmethod
    async def get_roles_many(self, user_ids: Sequence[str]) -> Dict[str, Optional[List[str]]]:
        """
        Read directory role names for several accounts.
        
        Returns:
            Mapping of user id to role names, None where the lookup failed
        """
        pass
    
    @abstractmethod
    async def create_many(self, requests: Sequence[CreateRequest]) -> BatchResult:
        """Create accounts; successful values are CreatedAccount objects."""
        pass
    
    @abstractmethod
    async def update_many(self, updates: Sequence[UserUpdate]) -> BatchResult:
        """Apply standard or custom attribute updates; successful values are the UserUpdate items."""
        pass
    
    @abstractmethod
    async def delete_many(self, requests: Sequence[DeleteRequest]) -> BatchResult:
        """Delete accounts; successful values are the DeleteRequest items."""
        pass
    
    @abstractmethod
    async def assign_managers_many(self, instructions: Sequence[ManagerInstruction]) -> BatchResult:
        """Set manager references in batches; successful values are the instructions."""
        pass
    
    @abstractmethod
    async def assign_licenses_many(self, assignments: Sequence[LicenseAssignment]) -> BatchResult:
        """Add subscription SKUs to accounts; successful values are the assignments."""
        pass
    
    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[ObservedRecord]:
        """Look up one account by email, None when it does not exist."""
        pass
    
    @abstractmethod
    async def get_manager_of(self, user_id: str) -> Optional[ObservedRecord]:
        """Return the manager of an account, None when it has none."""
        pass
    
    @abstractmethod
    async def set_manager_ref(self, user_id: str, manager_id: str) -> None:
        pass
    
    @abstractmethod
    async def clear_manager_ref(self, user_id: str) -> None:
        """Remove the manager reference of an account (no-op when absent)."""
        pass
    
    async def close(self) -> None:
        """Release transport resources."""
        pass
    
    async def __aenter__(self):
        return self
    
    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
