"""
Credential providers for directory gateways.

A provider is passed into the gateway constructor and is the only place that
holds secrets; reconciliation logic never sees them.
"""

import time
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from directory_sync.retry import MaxRetriesExceeded, create_retry_callback, retry_async

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Raised when an access token cannot be obtained."""
    pass


class CredentialProvider(ABC):
    """Supplies bearer tokens to a gateway."""
    
    @abstractmethod
    async def get_token(self, force_refresh: bool = False) -> str:
        """
        Return a valid access token.
        
        Args:
            force_refresh: Discard any cached token first
        """
        pass
    
    async def close(self) -> None:
        pass


class StaticTokenProvider(CredentialProvider):
    """Provider for a pre-issued access token."""
    
    def __init__(self, token: str):
        if not token:
            raise CredentialError("Static token provider requires a token")
        self._token = token
    
    async def get_token(self, force_refresh: bool = False) -> str:
        if force_refresh:
            logger.warning("Static access token was rejected and cannot be refreshed")
        return self._token


class ClientCredentialsProvider(CredentialProvider):
    """
    OAuth2 client credentials flow.
    
    Tokens are cached until 60 seconds before they expire.
    """
    
    EXPIRY_BUFFER_SECONDS = 60
    
    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: str = '',
        max_retries: int = 3,
        retry_wait: float = 2.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.max_retries = max_retries
        self.retry_wait = retry_wait
        self._client = client
        self._owns_client = client is None
        self._token: Optional[str] = None
        self._expires_at = 0.0
    
    def _is_token_valid(self) -> bool:
        return self._token is not None and time.time() < self._expires_at
    
    async def get_token(self, force_refresh: bool = False) -> str:
        if not force_refresh and self._is_token_valid():
            return self._token
        
        try:
            token_response = await retry_async(
                self._request_token,
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                exceptions=(httpx.TransportError,),
                on_retry=create_retry_callback("Token request")
            )
        except MaxRetriesExceeded as e:
            raise CredentialError(f"Token endpoint unreachable: {e.last_exception}")
        except httpx.HTTPError as e:
            raise CredentialError(f"Token request failed: {e}")
        
        access_token = token_response.get('access_token')
        if not access_token:
            raise CredentialError("Token response missing access_token")
        
        self._token = access_token
        expires_in = int(token_response.get('expires_in', 3600))
        self._expires_at = time.time() + expires_in - self.EXPIRY_BUFFER_SECONDS
        logger.info("Obtained directory access token via client credentials")
        return self._token
    
    async def _request_token(self) -> Dict[str, Any]:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30)
        
        data = {
            'grant_type': 'client_credentials',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
        }
        if self.scope:
            data['scope'] = self.scope
        
        logger.debug(f"Requesting access token from {self.token_url}")
        response = await self._client.post(self.token_url, data=data, headers={'Accept': 'application/json'})
        
        if response.status_code != 200:
            raise CredentialError(f"Token request failed: HTTP {response.status_code}")
        
        try:
            return response.json()
        except ValueError as e:
            raise CredentialError(f"Invalid JSON in token response: {e}")
    
    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


def create_credential_provider(auth_config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None) -> CredentialProvider:
    """
    Build a credential provider from the ``directory.auth`` configuration.
    
    Args:
        auth_config: Authentication configuration
        error_config: Retry settings for token requests
        
    Returns:
        CredentialProvider instance
    """
    error_config = error_config or {}
    method = str(auth_config.get('method', '')).lower()
    
    if method == 'token':
        return StaticTokenProvider(auth_config.get('token', ''))
    
    if method == 'client_credentials':
        return ClientCredentialsProvider(
            token_url=auth_config['token_url'],
            client_id=auth_config['client_id'],
            client_secret=auth_config['client_secret'],
            scope=auth_config.get('scope', ''),
            max_retries=error_config.get('max_retries', 3),
            retry_wait=error_config.get('retry_wait_seconds', 2),
        )
    
    raise CredentialError(f"Unsupported authentication method '{method}'")
