#!/usr/bin/env python3
"""
Unit tests for the manager relationship resolver.
"""

import os
import sys
import unittest
from unittest.mock import AsyncMock

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.gateway.base import DirectoryTransientError
from directory_sync.managers import ManagerResolver, ManagerTarget
from directory_sync.models import DesiredRecord, ObservedRecord

from fakes import FakeGateway


def target(email, manager=None, specified=True, observed=None, user_id=None):
    record = DesiredRecord(email=email, manager_email=manager, manager_specified=specified)
    return ManagerTarget(user_id=user_id or f"id-{email}", desired=record, observed=observed)


class TestManagerResolver(unittest.IsolatedAsyncioTestCase):
    """Test cases for ManagerResolver."""

    def setUp(self):
        self.gateway = FakeGateway([
            ObservedRecord(user_id='boss-id', email='boss@x.com'),
            ObservedRecord(user_id='old-id', email='old@x.com'),
        ])
        self.resolver = ManagerResolver(self.gateway)

    async def test_peer_created_in_same_run_wins_over_lookup(self):
        resolution = await self.resolver.resolve([target('a@x.com', 'm@x.com')], {'m@x.com': 'new-m-id'})

        self.assertEqual(len(resolution.assignments), 1)
        self.assertEqual(resolution.assignments[0].manager_id, 'new-m-id')
        self.assertEqual(self.gateway.lookups, [])

    async def test_existing_manager_looked_up_by_email(self):
        resolution = await self.resolver.resolve([target('a@x.com', 'Boss@x.com')], {})

        self.assertEqual(resolution.assignments[0].manager_id, 'boss-id')
        self.assertEqual(self.gateway.lookups, ['boss@x.com'])

    async def test_lookup_is_cached(self):
        await self.resolver.resolve([target('a@x.com', 'boss@x.com'), target('b@x.com', 'boss@x.com')], {})
        self.assertEqual(self.gateway.lookups, ['boss@x.com'])

    async def test_unknown_manager_warns_and_skips(self):
        resolution = await self.resolver.resolve(
            [target('a@x.com', 'ghost@x.com'), target('b@x.com', 'boss@x.com')], {}
        )

        self.assertEqual([i.email for i in resolution.instructions], ['b@x.com'])
        self.assertEqual(len(resolution.warnings), 1)
        self.assertIn('ghost@x.com', resolution.warnings[0])

    async def test_lookup_error_is_a_warning(self):
        self.gateway.get_by_email = AsyncMock(side_effect=DirectoryTransientError('throttled', 429))

        resolution = await self.resolver.resolve([target('a@x.com', 'boss@x.com')], {})

        self.assertEqual(resolution.instructions, [])
        self.assertEqual(len(resolution.warnings), 1)

    async def test_no_manager_in_desired_clears_existing(self):
        current = ObservedRecord(user_id='a-id', email='a@x.com', manager_id='old-id', manager_email='old@x.com')

        resolution = await self.resolver.resolve([target('a@x.com', None, observed=current, user_id='a-id')], {})

        self.assertEqual(len(resolution.removals), 1)
        self.assertTrue(resolution.removals[0].is_removal)
        self.assertEqual(resolution.removals[0].user_id, 'a-id')

    async def test_no_manager_on_either_side_is_noop(self):
        current = ObservedRecord(user_id='a-id', email='a@x.com')
        resolution = await self.resolver.resolve([target('a@x.com', None, observed=current)], {})
        self.assertEqual(resolution.instructions, [])

    async def test_matching_manager_is_noop(self):
        current = ObservedRecord(user_id='a-id', email='a@x.com', manager_id='boss-id', manager_email='boss@x.com')
        resolution = await self.resolver.resolve([target('a@x.com', 'boss@x.com', observed=current)], {})
        self.assertEqual(resolution.instructions, [])

    async def test_different_manager_is_reassigned(self):
        current = ObservedRecord(user_id='a-id', email='a@x.com', manager_id='old-id', manager_email='old@x.com')

        resolution = await self.resolver.resolve([target('a@x.com', 'boss@x.com', observed=current)], {})

        self.assertEqual(len(resolution.assignments), 1)
        self.assertEqual(resolution.assignments[0].manager_id, 'boss-id')

    async def test_unspecified_manager_is_left_alone(self):
        current = ObservedRecord(user_id='a-id', email='a@x.com', manager_id='old-id')
        resolution = await self.resolver.resolve([target('a@x.com', None, specified=False, observed=current)], {})
        self.assertEqual(resolution.instructions, [])

    async def test_self_reference_is_rejected(self):
        resolution = await self.resolver.resolve([target('a@x.com', 'A@x.com')], {'a@x.com': 'id-a@x.com'})

        self.assertEqual(resolution.instructions, [])
        self.assertIn('own manager', resolution.warnings[0])


if __name__ == '__main__':
    unittest.main()
