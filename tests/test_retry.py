#!/usr/bin/env python3
"""
Unit tests for the async retry helper.
"""

import os
import sys
import unittest
from unittest.mock import AsyncMock, Mock, patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.gateway.base import DirectoryTransientError
from directory_sync.retry import (
    MaxRetriesExceeded,
    create_retry_callback,
    retry_async,
)


class TestRetryAsync(unittest.IsolatedAsyncioTestCase):
    """Test cases for retry_async."""

    async def test_success_first_attempt(self):
        func = AsyncMock(return_value='ok')
        self.assertEqual(await retry_async(func, args=(1,), kwargs={'a': 2}, delay=0), 'ok')
        func.assert_awaited_once_with(1, a=2)

    async def test_success_after_failures(self):
        func = AsyncMock(side_effect=[ConnectionError('reset'), ConnectionError('reset'), 'ok'])
        callback = Mock()

        result = await retry_async(func, max_attempts=3, delay=0, on_retry=callback)

        self.assertEqual(result, 'ok')
        self.assertEqual(func.await_count, 3)
        self.assertEqual([c.args[0] for c in callback.call_args_list], [1, 2])

    async def test_max_attempts_exceeded(self):
        error = DirectoryTransientError('busy', 503)
        func = AsyncMock(side_effect=error)

        with self.assertRaises(MaxRetriesExceeded) as context:
            await retry_async(func, max_attempts=2, delay=0)

        self.assertEqual(context.exception.attempts, 2)
        self.assertIs(context.exception.last_exception, error)

    async def test_unlisted_exception_propagates(self):
        func = AsyncMock(side_effect=ValueError('bad'))

        with self.assertRaises(ValueError):
            await retry_async(func, max_attempts=3, delay=0, exceptions=(ConnectionError,))
        self.assertEqual(func.await_count, 1)

    async def test_backoff_delays(self):
        func = AsyncMock(side_effect=[TimeoutError(), TimeoutError(), 'ok'])

        with patch('directory_sync.retry.asyncio.sleep', new=AsyncMock()) as sleep:
            await retry_async(func, max_attempts=3, delay=1.0, backoff=2.0)

        self.assertEqual([c.args[0] for c in sleep.await_args_list], [1.0, 2.0])

    async def test_failing_callback_does_not_stop_retries(self):
        func = AsyncMock(side_effect=[ConnectionError(), 'ok'])
        callback = Mock(side_effect=RuntimeError('callback broke'))

        self.assertEqual(await retry_async(func, delay=0, on_retry=callback), 'ok')


class TestCreateRetryCallback(unittest.TestCase):

    def test_callback_logs_warning(self):
        callback = create_retry_callback('Directory listing')
        with self.assertLogs('directory_sync.retry', level='WARNING') as logs:
            callback(1, ConnectionError('reset'))
        self.assertIn('Directory listing failed on attempt 1', logs.output[0])


if __name__ == '__main__':
    unittest.main()
