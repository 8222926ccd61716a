#!/usr/bin/env python3
"""
Unit tests for logging setup, sensitive data scrubbing and audit logging.
"""

import os
import sys
import shutil
import logging
import tempfile
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.logging_setup import AuditLogger, LoggingManager, SensitiveDataFilter


def make_record(msg, args=None):
    return logging.LogRecord('test', logging.INFO, __file__, 1, msg, args, None)


class TestSensitiveDataFilter(unittest.TestCase):
    """Test cases for SensitiveDataFilter."""

    def setUp(self):
        self.filter = SensitiveDataFilter()

    def scrub(self, msg, args=None):
        record = make_record(msg, args)
        self.assertTrue(self.filter.filter(record))
        return record.getMessage()

    def test_key_value_pairs(self):
        self.assertEqual(self.scrub('password=secret123'), 'password=****')
        self.assertEqual(self.scrub('client_secret=abc, next=1'), 'client_secret=****, next=1')

    def test_json_and_dict_values(self):
        self.assertEqual(self.scrub('{"password": "test123"}'), '{"password": "****"}')
        self.assertEqual(self.scrub("{'access_token': 'eyJ0'}"), "{'access_token': '****'}")

    def test_bearer_tokens(self):
        self.assertEqual(self.scrub('Authorization: Bearer abc.def-ghi'), 'Authorization: Bearer ****')
        self.assertNotIn('abc123', self.scrub('sent header Bearer abc123'))

    def test_arguments_are_scrubbed(self):
        self.assertEqual(self.scrub('login with %s', ('password=hunter2',)), 'login with password=****')

    def test_plain_message_unchanged(self):
        self.assertEqual(self.scrub('Created 3 accounts'), 'Created 3 accounts')


class TestLoggingManager(unittest.TestCase):
    """Test cases for LoggingManager."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        root = logging.getLogger()
        self.saved_handlers = list(root.handlers)
        self.saved_level = root.level

    def tearDown(self):
        root = logging.getLogger()
        for handler in root.handlers:
            handler.close()
        root.handlers = self.saved_handlers
        root.setLevel(self.saved_level)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_file_and_console_handlers(self):
        manager = LoggingManager()
        manager.setup_logging({'level': 'DEBUG', 'log_dir': self.temp_dir, 'console_level': 'WARNING'})

        root = logging.getLogger()
        self.assertEqual(root.level, logging.DEBUG)
        self.assertEqual(len(root.handlers), 2)
        self.assertTrue(os.path.exists(os.path.join(self.temp_dir, 'directory-sync.log')))
        self.assertTrue(all(
            any(isinstance(f, SensitiveDataFilter) for f in handler.filters) for handler in root.handlers
        ))

    def test_console_disabled_and_setup_once(self):
        manager = LoggingManager()
        manager.setup_logging({'log_dir': self.temp_dir, 'console_output': False, 'rotation': 'none'})
        manager.setup_logging({'log_dir': self.temp_dir})

        handlers = logging.getLogger().handlers
        self.assertEqual(len(handlers), 1)
        self.assertIsInstance(handlers[0], logging.FileHandler)

    def test_old_rotated_logs_removed(self):
        old_file = os.path.join(self.temp_dir, 'directory-sync.log.2000-01-01')
        with open(old_file, 'w') as f:
            f.write('old')
        os.utime(old_file, (0, 0))

        LoggingManager().setup_logging({'log_dir': self.temp_dir, 'retention_days': 7, 'console_output': False})

        self.assertFalse(os.path.exists(old_file))


class TestAuditLogger(unittest.TestCase):
    """Test cases for AuditLogger."""

    def test_success_and_failure_levels(self):
        audit = AuditLogger()
        with self.assertLogs('audit', level='INFO') as logs:
            audit.log_user_operation('CREATE', 'a@x.com', True)
            audit.log_user_operation('DELETE', 'b@x.com', False, 'HTTP 403')
            audit.log_protection('DELETE', 'admin@x.com', 'pattern')

        self.assertEqual(logs.records[0].levelno, logging.INFO)
        self.assertIn('SUCCESS: CREATE user=a@x.com', logs.output[0])
        self.assertEqual(logs.records[1].levelno, logging.ERROR)
        self.assertIn('HTTP 403', logs.output[1])
        self.assertEqual(logs.records[2].levelno, logging.WARNING)


if __name__ == '__main__':
    unittest.main()
