"""
Microsoft Graph implementation of the directory gateway.

Mutations go through the JSON ``$batch`` endpoint, one request per chunk of at
most ``batch_size`` sub-requests. Sub-responses are matched back to items by
their request id since Graph may return them in any order.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from directory_sync.gateway.base import (
    DirectoryAPIError,
    DirectoryAuthenticationError,
    DirectoryGateway,
    DirectoryTransientError,
    ItemOutcome,
)
from directory_sync.gateway.credentials import CredentialError, CredentialProvider
from directory_sync.gateway.tls import build_ssl_context
from directory_sync.models import (
    BatchResult,
    CreateRequest,
    CreatedAccount,
    DeleteRequest,
    LicenseAssignment,
    ManagerInstruction,
    ObservedRecord,
    UserUpdate,
)
from directory_sync.retry import MaxRetriesExceeded, create_retry_callback, retry_async
from directory_sync.schema import USER_PROPERTY_SCHEMA

logger = logging.getLogger(__name__)

DIRECTORY_ROLE_TYPE = '#microsoft.graph.directoryRole'
OPEN_EXTENSION_TYPE = 'microsoft.graph.openTypeExtension'

# Keys Graph adds to an open extension that are not custom attributes
_EXTENSION_METADATA_KEYS = frozenset(['id', 'extensionName', '@odata.type', '@odata.context'])

_MANAGER_SELECT = 'id,mail,userPrincipalName,displayName'


class GraphDirectoryGateway(DirectoryGateway):
    """
    Gateway for Microsoft Graph ``/users``.

    Args:
        config: ``directory`` configuration section
        credentials: Provider supplying bearer tokens
        batch_size: Maximum sub-requests per ``$batch`` call
        batch_delay: Seconds to wait between consecutive batches
        max_retries: Retries for idempotent reads
        retry_wait: Seconds between read retries
        client: Optional pre-built HTTP client
    """

    def __init__(
        self,
        config: Dict[str, Any],
        credentials: CredentialProvider,
        batch_size: int = 20,
        batch_delay: float = 0.5,
        max_retries: int = 3,
        retry_wait: float = 2.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(batch_size=batch_size, batch_delay=batch_delay)
        self.config = config
        self.credentials = credentials
        self.base_url = config['base_url'].rstrip('/')
        self.timeout = config.get('timeout_seconds', 30)
        self.extension_name = config.get('extension_name', 'com.directorysync.customFields')
        self.usage_location = config.get('usage_location')
        self.max_retries = max_retries
        self.retry_wait = retry_wait
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                verify=build_ssl_context(self.config),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
        await self.credentials.close()

    # HTTP plumbing

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Send one request, refreshing the token once on a 401.

        Raises:
            DirectoryAuthenticationError: If credentials are rejected
            DirectoryTransientError: On throttling, 5xx or transport failure
            DirectoryAPIError: On any other error status or HTTP client failure
        """
        max_auth_retries = 1
        for auth_attempt in range(max_auth_retries + 1):
            try:
                token = await self.credentials.get_token(force_refresh=auth_attempt > 0)
            except CredentialError as e:
                raise DirectoryAuthenticationError(f"Could not obtain access token: {e}")
            headers = {'Authorization': f'Bearer {token}', 'Accept': 'application/json'}

            logger.debug(f"Making {method} request to {path}")
            try:
                response = await self.client.request(method, path, json=json, params=params, headers=headers)
            except httpx.TransportError as e:
                raise DirectoryTransientError(f"{method} {path} failed: {e}")
            except httpx.HTTPError as e:
                raise DirectoryAPIError(f"{method} {path} failed: {e}")

            if response.status_code == 401 and auth_attempt < max_auth_retries:
                logger.info("401 received from directory, refreshing access token")
                continue

            return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> Dict[str, Any]:
        status = response.status_code
        if 200 <= status < 300:
            if status == 204 or not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise DirectoryAPIError(f"Invalid JSON response: {e}", status_code=status)

        message = _error_message(_safe_json(response), f"HTTP {status}")
        if status in (401, 403):
            raise DirectoryAuthenticationError(f"Authentication failed: {message}", status_code=status)
        if status == 429 or status >= 500:
            raise DirectoryTransientError(f"Directory unavailable: {message}", status_code=status)
        raise DirectoryAPIError(message, status_code=status)

    async def _read(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET with retries on transient failures."""
        try:
            return await retry_async(
                self._request,
                args=('GET', path),
                kwargs={'params': params},
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                exceptions=(DirectoryTransientError,),
                on_retry=create_retry_callback(f"GET {path}")
            )
        except MaxRetriesExceeded as e:
            raise e.last_exception

    async def _post_batch(self, requests: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        """
        Send one ``$batch`` call.

        Args:
            requests: Sub-requests, each with a unique ``id``

        Returns:
            Sub-responses keyed by request id
        """
        payload = await self._request('POST', '/$batch', json={'requests': requests})
        return {str(item.get('id')): item for item in payload.get('responses', [])}

    async def _dispatch(self, sub_requests: List[Dict[str, Any]]) -> List[Tuple[int, Any]]:
        """Send sub-requests and return (status, body) pairs in request order."""
        for index, sub_request in enumerate(sub_requests, start=1):
            sub_request['id'] = str(index)
        responses = await self._post_batch(sub_requests)

        results = []
        for sub_request in sub_requests:
            response = responses.get(sub_request['id'])
            if response is None:
                results.append((0, None))
            else:
                results.append((int(response.get('status', 0)), response.get('body')))
        return results

    # Reads

    async def list_users(self, custom_fields: Sequence[str] = ()) -> List[ObservedRecord]:
        select = ['id', 'mail', 'userPrincipalName'] + [prop.path for prop in USER_PROPERTY_SCHEMA if prop.path != 'mail']
        params = {
            '$select': ','.join(select),
            '$expand': f'manager($select={_MANAGER_SELECT})',
            '$top': 999,
        }

        users: List[Dict[str, Any]] = []
        page = await self._read('/users', params=params)
        users.extend(page.get('value', []))
        while page.get('@odata.nextLink'):
            page = await self._read(page['@odata.nextLink'])
            users.extend(page.get('value', []))

        logger.info(f"Retrieved {len(users)} accounts from directory")

        extensions: Dict[str, Optional[Dict[str, str]]] = {}
        if custom_fields:
            extensions = await self._read_extensions([user['id'] for user in users])

        records = []
        for user in users:
            custom = extensions.get(user['id']) if custom_fields else {}
            records.append(_to_observed(user, custom))
        return records

    async def _read_extensions(self, user_ids: List[str]) -> Dict[str, Optional[Dict[str, str]]]:
        async def handler(chunk: List[str]) -> List[ItemOutcome]:
            results = await self._dispatch([
                {'method': 'GET', 'url': f'/users/{user_id}/extensions/{self.extension_name}'}
                for user_id in chunk
            ])
            outcomes = []
            for user_id, (status, body) in zip(chunk, results):
                if status == 404:
                    outcomes.append(ItemOutcome(True, (user_id, None)))
                elif 200 <= status < 300:
                    values = {
                        key: str(value) for key, value in (body or {}).items()
                        if key not in _EXTENSION_METADATA_KEYS and value is not None
                    }
                    outcomes.append(ItemOutcome(True, (user_id, values)))
                else:
                    outcomes.append(ItemOutcome(False, error=_error_message(body, f"HTTP {status}")))
            return outcomes

        result = await self.run_in_batches(user_ids, handler, 'Extension read')
        if result.failed:
            first = result.failed[0]
            raise DirectoryAPIError(f"Could not read custom attributes for {len(result.failed)} "
                                    f"accounts (first: {first.item}: {first.error})")
        return dict(result.successful)

    async def get_roles_many(self, user_ids: Sequence[str]) -> Dict[str, Optional[List[str]]]:
        async def handler(chunk: List[str]) -> List[ItemOutcome]:
            results = await self._dispatch([
                {'method': 'GET', 'url': f'/users/{user_id}/memberOf?$select=id,displayName'}
                for user_id in chunk
            ])
            outcomes = []
            for user_id, (status, body) in zip(chunk, results):
                if 200 <= status < 300:
                    roles = [
                        entry.get('displayName', '') for entry in (body or {}).get('value', [])
                        if entry.get('@odata.type') == DIRECTORY_ROLE_TYPE
                    ]
                    outcomes.append(ItemOutcome(True, (user_id, roles)))
                else:
                    outcomes.append(ItemOutcome(False, error=_error_message(body, f"HTTP {status}")))
            return outcomes

        roles: Dict[str, Optional[List[str]]] = {user_id: None for user_id in user_ids}
        result = await self.run_in_batches(list(user_ids), handler, 'Role lookup')
        for user_id, found in result.successful:
            roles[user_id] = found
        for failure in result.failed:
            logger.warning(f"Could not read directory roles for {failure.item}: {failure.error}")
        return roles

    async def get_by_email(self, email: str) -> Optional[ObservedRecord]:
        escaped = email.strip().replace("'", "''")
        params = {
            '$filter': f"mail eq '{escaped}' or userPrincipalName eq '{escaped}'",
            '$select': 'id,mail,userPrincipalName,displayName',
        }
        page = await self._read('/users', params=params)
        matches = page.get('value', [])
        if not matches:
            return None
        return _to_observed(matches[0], {})

    async def get_manager_of(self, user_id: str) -> Optional[ObservedRecord]:
        try:
            manager = await self._read(f'/users/{user_id}/manager', params={'$select': _MANAGER_SELECT})
        except DirectoryAPIError as e:
            if e.status_code == 404:
                return None
            raise
        return _to_observed(manager, {})

    async def test_connection(self) -> bool:
        """
        Verify credentials and reachability with a minimal read.

        Raises:
            DirectoryAPIError: If the directory cannot be reached
        """
        await self._read('/users', params={'$top': 1, '$select': 'id'})
        logger.info("Directory connection test succeeded")
        return True

    # Mutations

    async def create_many(self, requests: Sequence[CreateRequest]) -> BatchResult:
        async def handler(chunk: List[CreateRequest]) -> List[ItemOutcome]:
            results = await self._dispatch([
                {
                    'method': 'POST',
                    'url': '/users',
                    'headers': {'Content-Type': 'application/json'},
                    'body': self._create_body(request),
                }
                for request in chunk
            ])
            outcomes = []
            for request, (status, body) in zip(chunk, results):
                if 200 <= status < 300 and body and body.get('id'):
                    outcomes.append(ItemOutcome(True, CreatedAccount(
                        email=request.email,
                        user_id=body['id'],
                        display_name=request.display_name,
                        password=request.password,
                    )))
                else:
                    outcomes.append(ItemOutcome(False, error=_error_message(body, f"HTTP {status}")))
            return outcomes

        return await self.run_in_batches(requests, handler, 'Create')

    def _create_body(self, request: CreateRequest) -> Dict[str, Any]:
        body = {key: value for key, value in request.attributes.items() if key != 'displayName'}
        body.update({
            'accountEnabled': request.attributes.get('accountEnabled', True),
            'displayName': request.display_name,
            'userPrincipalName': request.email,
            'mailNickname': request.attributes.get('mailNickname') or _mail_nickname(request.email),
            'passwordProfile': {
                'forceChangePasswordNextSignIn': True,
                'password': request.password,
            },
        })
        if self.usage_location and not body.get('usageLocation'):
            body['usageLocation'] = self.usage_location
        return body

    async def update_many(self, updates: Sequence[UserUpdate]) -> BatchResult:
        async def handler(chunk: List[UserUpdate]) -> List[ItemOutcome]:
            results = await self._dispatch([self._update_request(update) for update in chunk])
            outcomes = []
            for update, (status, body) in zip(chunk, results):
                if 200 <= status < 300:
                    outcomes.append(ItemOutcome(True, update))
                elif update.is_custom and status in (404, 409):
                    outcomes.append(await self._write_extension_fallback(update, status))
                else:
                    outcomes.append(ItemOutcome(False, error=_error_message(body, f"HTTP {status}")))
            return outcomes

        return await self.run_in_batches(updates, handler, 'Update')

    def _update_request(self, update: UserUpdate) -> Dict[str, Any]:
        headers = {'Content-Type': 'application/json'}
        if not update.is_custom:
            return {'method': 'PATCH', 'url': f'/users/{update.user_id}', 'headers': headers,
                    'body': dict(update.attributes)}

        if update.create_extension:
            body = {'@odata.type': OPEN_EXTENSION_TYPE, 'extensionName': self.extension_name}
            body.update(update.custom_attributes)
            return {'method': 'POST', 'url': f'/users/{update.user_id}/extensions',
                    'headers': headers, 'body': body}

        return {'method': 'PATCH', 'url': f'/users/{update.user_id}/extensions/{self.extension_name}',
                'headers': headers, 'body': dict(update.custom_attributes)}

    async def _write_extension_fallback(self, update: UserUpdate, status: int) -> ItemOutcome:
        # 404 on PATCH means no extension yet, 409 on POST means it already exists
        retry_as_create = status == 404
        logger.debug(f"Extension write for {update.email} returned {status}, retrying as "
                     f"{'create' if retry_as_create else 'update'}")
        try:
            if retry_as_create:
                body = {'@odata.type': OPEN_EXTENSION_TYPE, 'extensionName': self.extension_name}
                body.update(update.custom_attributes)
                await self._request('POST', f'/users/{update.user_id}/extensions', json=body)
            else:
                await self._request('PATCH', f'/users/{update.user_id}/extensions/{self.extension_name}',
                                    json=dict(update.custom_attributes))
        except DirectoryAPIError as e:
            return ItemOutcome(False, error=str(e))
        return ItemOutcome(True, update)

    async def delete_many(self, requests: Sequence[DeleteRequest]) -> BatchResult:
        async def handler(chunk: List[DeleteRequest]) -> List[ItemOutcome]:
            results = await self._dispatch([
                {'method': 'DELETE', 'url': f'/users/{request.user_id}'} for request in chunk
            ])
            return [
                ItemOutcome(True, request) if 200 <= status < 300
                else ItemOutcome(False, error=_error_message(body, f"HTTP {status}"))
                for request, (status, body) in zip(chunk, results)
            ]

        return await self.run_in_batches(requests, handler, 'Delete')

    async def assign_managers_many(self, instructions: Sequence[ManagerInstruction]) -> BatchResult:
        async def handler(chunk: List[ManagerInstruction]) -> List[ItemOutcome]:
            results = await self._dispatch([self._manager_request(instruction) for instruction in chunk])
            outcomes = []
            for instruction, (status, body) in zip(chunk, results):
                # Removing a manager that is already gone is a success
                if 200 <= status < 300 or (instruction.is_removal and status == 404):
                    outcomes.append(ItemOutcome(True, instruction))
                else:
                    outcomes.append(ItemOutcome(False, error=_error_message(body, f"HTTP {status}")))
            return outcomes

        return await self.run_in_batches(instructions, handler, 'Manager assignment')

    def _manager_request(self, instruction: ManagerInstruction) -> Dict[str, Any]:
        url = f'/users/{instruction.user_id}/manager/$ref'
        if instruction.is_removal:
            return {'method': 'DELETE', 'url': url}
        return {
            'method': 'PUT',
            'url': url,
            'headers': {'Content-Type': 'application/json'},
            'body': {'@odata.id': f'{self.base_url}/users/{instruction.manager_id}'},
        }

    async def assign_licenses_many(self, assignments: Sequence[LicenseAssignment]) -> BatchResult:
        async def handler(chunk: List[LicenseAssignment]) -> List[ItemOutcome]:
            results = await self._dispatch([
                {
                    'method': 'POST',
                    'url': f'/users/{assignment.user_id}/assignLicense',
                    'headers': {'Content-Type': 'application/json'},
                    'body': {'addLicenses': [{'skuId': assignment.sku_id}], 'removeLicenses': []},
                }
                for assignment in chunk
            ])
            outcomes = []
            for assignment, (status, body) in zip(chunk, results):
                if 200 <= status < 300:
                    outcomes.append(ItemOutcome(True, assignment))
                elif _error_code(body) == 'Request_InvalidValue':
                    outcomes.append(ItemOutcome(False, error=f"SKU {assignment.sku_id} already assigned or invalid"))
                else:
                    outcomes.append(ItemOutcome(False, error=_error_message(body, f"HTTP {status}")))
            return outcomes

        return await self.run_in_batches(assignments, handler, 'License assignment')

    async def set_manager_ref(self, user_id: str, manager_id: str) -> None:
        await self._request('PUT', f'/users/{user_id}/manager/$ref',
                            json={'@odata.id': f'{self.base_url}/users/{manager_id}'})

    async def clear_manager_ref(self, user_id: str) -> None:
        try:
            await self._request('DELETE', f'/users/{user_id}/manager/$ref')
        except DirectoryAPIError as e:
            if e.status_code != 404:
                raise
            logger.debug(f"Account {user_id} had no manager to remove")


def _to_observed(user: Dict[str, Any], custom: Optional[Dict[str, str]]) -> ObservedRecord:
    attributes = {
        prop.path: user[prop.path] for prop in USER_PROPERTY_SCHEMA
        if prop.path != 'displayName' and user.get(prop.path) is not None
    }
    manager = user.get('manager') or {}
    return ObservedRecord(
        user_id=user['id'],
        email=user.get('userPrincipalName') or user.get('mail') or '',
        display_name=user.get('displayName') or '',
        attributes=attributes,
        manager_id=manager.get('id'),
        manager_email=manager.get('userPrincipalName') or manager.get('mail'),
        custom_attributes=custom,
    )


def _mail_nickname(email: str) -> str:
    local_part = email.split('@', 1)[0]
    nickname = ''.join(char for char in local_part if char.isalnum() or char in '._-')
    return nickname or 'user'


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        error = body.get('error')
        if isinstance(error, dict) and error.get('message'):
            return str(error['message'])
        if isinstance(error, str):
            return error
    return default


def _error_code(body: Any) -> Optional[str]:
    if isinstance(body, dict) and isinstance(body.get('error'), dict):
        return body['error'].get('code')
    return None
