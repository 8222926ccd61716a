#!/usr/bin/env python3
"""
Unit tests for email notifications.
"""

import os
import sys
import smtplib
import unittest
from unittest.mock import patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.notifications import (
    send_configuration_error,
    send_email,
    send_operation_errors_notification,
    send_success_summary,
    test_notification_config as check_notification_config,
)


class TestSendEmail(unittest.TestCase):
    """Test cases for the SMTP transport."""

    def setUp(self):
        self.config = {
            'enable_email': True,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'alerts@example.com',
            'smtp_password': 'password123',
            'email_from': 'alerts@example.com',
            'email_to': ['admin1@example.com', 'admin2@example.com'],
        }

    def test_disabled_by_default(self):
        config = dict(self.config)
        del config['enable_email']
        with patch('directory_sync.notifications.smtplib.SMTP') as smtp:
            self.assertFalse(send_email('Subject', 'Body', config))
        smtp.assert_not_called()

    def test_missing_server(self):
        config = dict(self.config, smtp_server=None)
        self.assertFalse(send_email('Subject', 'Body', config))

    def test_missing_recipients(self):
        config = dict(self.config, email_to=[])
        self.assertFalse(send_email('Subject', 'Body', config))

    @patch('directory_sync.notifications.smtplib.SMTP')
    def test_starttls_login_and_send(self, smtp):
        self.assertTrue(send_email('Subject', 'Body', self.config))

        smtp.assert_called_once_with('smtp.example.com', 587)
        server = smtp.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('alerts@example.com', 'password123')
        args = server.sendmail.call_args[0]
        self.assertEqual(args[0], 'alerts@example.com')
        self.assertEqual(args[1], ['admin1@example.com', 'admin2@example.com'])
        self.assertIn('Subject: Subject', args[2])
        server.quit.assert_called_once()

    @patch('directory_sync.notifications.smtplib.SMTP')
    def test_single_recipient_string(self, smtp):
        config = dict(self.config, email_to='ops@example.com', smtp_tls=False)
        self.assertTrue(send_email('Subject', 'Body', config))

        server = smtp.return_value
        server.starttls.assert_not_called()
        self.assertEqual(server.sendmail.call_args[0][1], ['ops@example.com'])

    @patch('directory_sync.notifications.smtplib.SMTP_SSL')
    def test_ssl_port(self, smtp_ssl):
        config = dict(self.config, smtp_port=465)
        self.assertTrue(send_email('Subject', 'Body', config))
        smtp_ssl.assert_called_once_with('smtp.example.com', 465)

    @patch('directory_sync.notifications.smtplib.SMTP')
    def test_smtp_failure_returns_false(self, smtp):
        smtp.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b'bad credentials')

        self.assertFalse(send_email('Subject', 'Body', self.config))
        smtp.return_value.quit.assert_called_once()

    @patch('directory_sync.notifications.smtplib.SMTP')
    def test_connection_refused_returns_false(self, smtp):
        smtp.side_effect = ConnectionRefusedError('refused')
        self.assertFalse(send_email('Subject', 'Body', self.config))


class TestNotificationMessages(unittest.TestCase):
    """Test cases for message composition."""

    def setUp(self):
        self.config = {'enable_email': True, 'email_on_failure': True, 'email_on_success': True}

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_operation_errors_truncated(self, send):
        errors = [f'DELETE u{i}@x.com: HTTP 403' for i in range(15)]

        self.assertTrue(send_operation_errors_notification({'created': 2, 'deleted': 1}, errors, self.config))

        subject, body, _ = send.call_args[0]
        self.assertIn('15 Directory Operations Failed', subject)
        self.assertIn('Created: 2', body)
        self.assertIn('10. DELETE u9@x.com', body)
        self.assertNotIn('u10@x.com', body)
        self.assertIn('... and 5 more errors', body)

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_failure_notifications_can_be_disabled(self, send):
        config = dict(self.config, email_on_failure=False)
        self.assertFalse(send_operation_errors_notification({}, ['x'], config))
        self.assertFalse(send_configuration_error('bad', 'config.yaml', config))
        send.assert_not_called()

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_success_summary(self, send):
        stats = {'created': 3, 'updated': 1, 'deleted': 0, 'unchanged': 7, 'runtime_seconds': 75}

        self.assertTrue(send_success_summary(stats, self.config))

        subject, body, _ = send.call_args[0]
        self.assertIn('Successful Completion', subject)
        self.assertIn('Users created: 3', body)
        self.assertIn('Users unchanged: 7', body)
        self.assertIn('1m 15.0s', body)

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_success_summary_off_by_default(self, send):
        self.assertFalse(send_success_summary({}, {'enable_email': True}))
        send.assert_not_called()

    @patch('directory_sync.notifications.send_email', return_value=True)
    def test_configuration_error_includes_path(self, send):
        send_configuration_error('missing base_url', None, self.config)

        subject, body, _ = send.call_args[0]
        self.assertIn('Configuration Error', subject)
        self.assertIn('Config Path: default', body)
        self.assertIn('missing base_url', body)

    @patch('directory_sync.notifications.send_email', return_value=False)
    def test_configuration_test_reports_failure(self, send):
        self.assertFalse(check_notification_config({'email_to': 'ops@example.com'}))
        self.assertIn('Recipients: ops@example.com', send.call_args[0][1])


if __name__ == '__main__':
    unittest.main()
