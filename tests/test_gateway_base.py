#!/usr/bin/env python3
"""
Unit tests for the bounded batch dispatcher shared by directory gateways.
"""

import os
import sys
import unittest
from unittest.mock import AsyncMock, patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.gateway.base import DirectoryAPIError, ItemOutcome

from fakes import FakeGateway


class TestRunInBatches(unittest.IsolatedAsyncioTestCase):
    """Test cases for DirectoryGateway.run_in_batches."""

    def setUp(self):
        self.gateway = FakeGateway(batch_size=3)
        self.chunks = []

    async def echo(self, chunk):
        self.chunks.append(list(chunk))
        return [ItemOutcome(True, item * 10) for item in chunk]

    async def test_items_split_into_bounded_chunks(self):
        result = await self.gateway.run_in_batches(range(7), self.echo, 'test')

        self.assertEqual([len(chunk) for chunk in self.chunks], [3, 3, 1])
        self.assertEqual(result.batches_dispatched, 3)
        self.assertEqual(result.successful, [0, 10, 20, 30, 40, 50, 60])
        self.assertEqual(result.failed, [])

    async def test_no_items_no_dispatch(self):
        result = await self.gateway.run_in_batches([], self.echo, 'test')
        self.assertEqual(self.chunks, [])
        self.assertEqual(result.batches_dispatched, 0)

    async def test_delay_only_between_batches(self):
        self.gateway.batch_delay = 0.25
        with patch('directory_sync.gateway.base.asyncio.sleep', new_callable=AsyncMock) as sleep:
            await self.gateway.run_in_batches(range(7), self.echo, 'test')

        self.assertEqual(sleep.await_count, 2)
        sleep.assert_awaited_with(0.25)

    async def test_item_failures_recorded_without_retry(self):
        async def handler(chunk):
            self.chunks.append(list(chunk))
            return [ItemOutcome(item != 4, item, None if item != 4 else 'HTTP 400') for item in chunk]

        result = await self.gateway.run_in_batches(range(6), handler, 'test')

        self.assertEqual(len(self.chunks), 2)
        self.assertEqual([f.item for f in result.failed], [4])
        self.assertEqual(result.failed[0].error, 'HTTP 400')
        self.assertEqual(len(result.successful), 5)

    async def test_rejected_batch_fails_its_items_and_continues(self):
        async def handler(chunk):
            self.chunks.append(list(chunk))
            if 0 in chunk:
                raise DirectoryAPIError('batch rejected', 503)
            return [ItemOutcome(True) for _ in chunk]

        result = await self.gateway.run_in_batches(range(5), handler, 'test')

        self.assertEqual([f.item for f in result.failed], [0, 1, 2])
        self.assertTrue(all('batch rejected' in f.error for f in result.failed))
        self.assertEqual(result.successful, [3, 4])

    async def test_missing_outcomes_marked_failed(self):
        async def handler(chunk):
            return [ItemOutcome(True)]

        result = await self.gateway.run_in_batches(['a', 'b'], handler, 'test')

        self.assertEqual(result.successful, ['a'])
        self.assertEqual(result.failed[0].item, 'b')
        self.assertEqual(result.failed[0].error, 'No response for item')

    def test_invalid_batch_size(self):
        with self.assertRaises(ValueError):
            FakeGateway(batch_size=0)


if __name__ == '__main__':
    unittest.main()
