"""Remote directory gateways."""

from directory_sync.gateway.base import (
    DirectoryAPIError,
    DirectoryAuthenticationError,
    DirectoryGateway,
    DirectoryTransientError,
    ItemOutcome,
)

__all__ = [
    'DirectoryAPIError',
    'DirectoryAuthenticationError',
    'DirectoryGateway',
    'DirectoryTransientError',
    'ItemOutcome',
]
