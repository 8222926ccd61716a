"""
In-memory directory gateway used by the reconciliation tests.
"""

import os
import sys
from dataclasses import replace
from typing import Dict, List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.gateway.base import DirectoryAPIError, DirectoryGateway, ItemOutcome
from directory_sync.models import CreatedAccount, ObservedRecord


class FakeGateway(DirectoryGateway):
    """
    Directory double holding accounts in a dict.

    ``fail_emails`` makes every mutation for those accounts fail as an item
    failure. ``fail_batches`` lists batch numbers (per operation) that fail
    as a whole. ``fail_skus`` makes license assignments for those SKUs fail.
    """

    def __init__(self, users: Optional[List[ObservedRecord]] = None, batch_size: int = 20,
                 fail_emails=(), fail_batches=(), fail_skus=()):
        super().__init__(batch_size=batch_size, batch_delay=0)
        self.users: Dict[str, ObservedRecord] = {user.user_id: user for user in (users or [])}
        self.fail_emails = {email.lower() for email in fail_emails}
        self.fail_batches = set(fail_batches)
        self.fail_skus = set(fail_skus)
        self.roles: Dict[str, Optional[List[str]]] = {}
        self.calls: List[tuple] = []
        self.batch_log: List[tuple] = []
        self.lookups: List[str] = []
        self.extensions: Dict[str, Dict[str, str]] = {}
        self.licenses: Dict[str, List[str]] = {}
        self._next_id = 1
        self._batch_counter: Dict[str, int] = {}

    def _batch(self, operation: str, handle_item):
        async def handler(chunk):
            number = self._batch_counter.get(operation, 0) + 1
            self._batch_counter[operation] = number
            self.batch_log.append((operation, len(chunk)))
            if number in self.fail_batches:
                raise DirectoryAPIError(f"{operation} batch {number} rejected", status_code=503)
            outcomes = []
            for item in chunk:
                if item.email.lower() in self.fail_emails:
                    outcomes.append(ItemOutcome(False, error='Simulated failure'))
                else:
                    outcomes.append(ItemOutcome(True, handle_item(item)))
            return outcomes
        return handler

    def by_email(self, email: str) -> Optional[ObservedRecord]:
        for user in self.users.values():
            if user.key == email.lower():
                return user
        return None

    async def list_users(self, custom_fields=()):
        self.calls.append(('list_users', tuple(custom_fields)))
        return list(self.users.values())

    async def get_roles_many(self, user_ids):
        self.calls.append(('get_roles_many', tuple(user_ids)))
        return {user_id: self.roles.get(user_id, []) for user_id in user_ids}

    async def create_many(self, requests):
        self.calls.append(('create_many', len(requests)))

        def create(request):
            user_id = f"id-{self._next_id}"
            self._next_id += 1
            self.users[user_id] = ObservedRecord(user_id=user_id, email=request.email,
                                                 display_name=request.display_name,
                                                 attributes=dict(request.attributes))
            return CreatedAccount(request.email, user_id, request.display_name, request.password)

        return await self.run_in_batches(requests, self._batch('create', create), 'Create')

    async def update_many(self, updates):
        self.calls.append(('update_many', len(updates)))

        def update(item):
            user = self.users[item.user_id]
            if item.is_custom:
                self.extensions.setdefault(item.user_id, {}).update(item.custom_attributes)
            else:
                attributes = dict(user.attributes)
                attributes.update(item.attributes)
                self.users[item.user_id] = replace(user, attributes=attributes)
            return item

        return await self.run_in_batches(updates, self._batch('update', update), 'Update')

    async def delete_many(self, requests):
        self.calls.append(('delete_many', len(requests)))

        def delete(request):
            self.users.pop(request.user_id, None)
            return request

        return await self.run_in_batches(requests, self._batch('delete', delete), 'Delete')

    async def assign_managers_many(self, instructions):
        self.calls.append(('assign_managers_many', len(instructions)))

        def assign(instruction):
            user = self.users[instruction.user_id]
            self.users[instruction.user_id] = replace(user, manager_id=instruction.manager_id,
                                                      manager_email=instruction.manager_email)
            return instruction

        return await self.run_in_batches(instructions, self._batch('manager', assign), 'Manager assignment')

    async def assign_licenses_many(self, assignments):
        self.calls.append(('assign_licenses_many', len(assignments)))
        handle_chunk = self._batch('license', lambda assignment: assignment)

        async def handler(chunk):
            outcomes = await handle_chunk(chunk)
            for index, assignment in enumerate(chunk):
                if outcomes[index].ok and assignment.sku_id in self.fail_skus:
                    outcomes[index] = ItemOutcome(False, error=f"SKU {assignment.sku_id} already assigned or invalid")
                elif outcomes[index].ok:
                    self.licenses.setdefault(assignment.user_id, []).append(assignment.sku_id)
            return outcomes

        return await self.run_in_batches(assignments, handler, 'License assignment')

    async def get_by_email(self, email):
        self.lookups.append(email)
        return self.by_email(email)

    async def get_manager_of(self, user_id):
        manager_id = self.users[user_id].manager_id
        return self.users.get(manager_id) if manager_id else None

    async def set_manager_ref(self, user_id, manager_id):
        self.calls.append(('set_manager_ref', user_id, manager_id))
        user = self.users[user_id]
        if user.key in self.fail_emails:
            raise DirectoryAPIError("Simulated failure", status_code=400)
        manager = self.users.get(manager_id)
        self.users[user_id] = replace(user, manager_id=manager_id,
                                      manager_email=manager.email if manager else None)

    async def clear_manager_ref(self, user_id):
        self.calls.append(('clear_manager_ref', user_id))
        user = self.users[user_id]
        self.users[user_id] = replace(user, manager_id=None, manager_email=None)

    async def test_connection(self):
        return True

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]
