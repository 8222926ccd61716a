#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers loading, validation, defaults and environment variable overrides.
"""

import os
import sys
import copy
import tempfile
import unittest
from unittest.mock import patch

import yaml

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.config import (
    DEFAULT_PROTECTED_PATTERNS,
    MAX_BATCH_SIZE,
    ConfigLoader,
    ConfigurationError,
    load_config,
)


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'source': {'csv_path': 'users.csv'},
            'directory': {
                'base_url': 'https://graph.microsoft.com/v1.0',
                'auth': {
                    'method': 'client_credentials',
                    'tenant_id': 'contoso',
                    'client_id': 'app-id',
                    'client_secret': 'app-secret',
                },
            },
        }
        self.temp_dir = tempfile.mkdtemp()
        self.addCleanup(self._cleanup)

    def _cleanup(self):
        for name in os.listdir(self.temp_dir):
            os.unlink(os.path.join(self.temp_dir, name))
        os.rmdir(self.temp_dir)

    def _write(self, config, name='config.yaml'):
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w') as f:
            if isinstance(config, str):
                f.write(config)
            else:
                yaml.dump(config, f)
        return path

    def test_load_valid_config_applies_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(self._write(self.valid_config))

        self.assertEqual(config['batching']['batch_size'], MAX_BATCH_SIZE)
        self.assertEqual(config['batching']['batch_delay_seconds'], 0.5)
        self.assertEqual(config['directory']['timeout_seconds'], 30)
        self.assertEqual(config['directory']['extension_name'], 'com.directorysync.customFields')
        self.assertEqual(config['protection']['protected_email_patterns'], DEFAULT_PROTECTED_PATTERNS)
        self.assertTrue(config['protection']['check_admin_roles'])
        self.assertFalse(config['output']['export_passwords'])
        self.assertEqual(config['licensing']['sku_ids'], [])
        self.assertFalse(config['notifications']['enable_email'])
        self.assertEqual(config['error_handling']['max_retries'], 3)
        self.assertEqual(config['directory']['auth']['token_url'],
                         'https://login.microsoftonline.com/contoso/oauth2/v2.0/token')
        self.assertEqual(config['directory']['auth']['scope'], 'https://graph.microsoft.com/.default')

    def test_explicit_token_url_kept(self):
        self.valid_config['directory']['auth']['token_url'] = 'https://idp.example.com/token'
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(self._write(self.valid_config))
        self.assertEqual(config['directory']['auth']['token_url'], 'https://idp.example.com/token')

    def test_file_not_found(self):
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(os.path.join(self.temp_dir, 'missing.yaml')).load()
        self.assertIn('not found', str(context.exception))

    def test_invalid_yaml(self):
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self._write('directory: [unclosed')).load()

    def test_non_mapping_root(self):
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self._write('- a\n- b\n')).load()

    def test_all_validation_errors_reported(self):
        config = {
            'directory': {'auth': {'method': 'client_credentials'}},
            'batching': {'batch_size': 50, 'batch_delay_seconds': -1},
            'protection': {'protected_emails': 'not-a-list'},
        }
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigurationError) as context:
                ConfigLoader(self._write(config)).load()

        message = str(context.exception)
        self.assertIn('base_url', message)
        self.assertIn('client_id', message)
        self.assertIn('client_secret', message)
        self.assertIn('token_url or tenant_id', message)
        self.assertIn('batch_size', message)
        self.assertIn('batch_delay_seconds', message)
        self.assertIn('protected_emails', message)

    def test_unsupported_auth_method(self):
        config = copy.deepcopy(self.valid_config)
        config['directory']['auth'] = {'method': 'device_code'}
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(self._write(config)).load()
        self.assertIn('Unsupported auth method', str(context.exception))

    def test_token_method_requires_token(self):
        config = copy.deepcopy(self.valid_config)
        config['directory']['auth'] = {'method': 'TOKEN'}
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigurationError):
                ConfigLoader(self._write(config)).load()

    def test_secret_from_environment(self):
        config = copy.deepcopy(self.valid_config)
        del config['directory']['auth']['client_secret']
        env = {'DIRECTORY_CLIENT_SECRET': 'from-env', 'SMTP_PASSWORD': 'smtp-secret'}
        with patch.dict(os.environ, env, clear=True):
            loaded = load_config(self._write(config))

        self.assertEqual(loaded['directory']['auth']['client_secret'], 'from-env')
        self.assertEqual(loaded['notifications']['smtp_password'], 'smtp-secret')

    def test_protection_overrides_from_environment(self):
        env = {
            'PROTECTED_EMAIL_PATTERNS': 'ops@*, svc-*@*',
            'PROTECTED_EMAILS': 'ceo@x.com',
            'CHECK_ADMIN_ROLES': 'false',
            'OPERATOR_EMAIL': 'me@x.com',
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config(self._write(self.valid_config))

        protection = config['protection']
        self.assertEqual(protection['protected_email_patterns'], ['ops@*', 'svc-*@*'])
        self.assertEqual(protection['protected_emails'], ['ceo@x.com'])
        self.assertFalse(protection['check_admin_roles'])
        self.assertEqual(protection['operator_email'], 'me@x.com')

    def test_license_skus_from_environment(self):
        with patch.dict(os.environ, {'LICENSE_SKU_IDS': 'sku-e3, sku-teams,'}, clear=True):
            config = load_config(self._write(self.valid_config))

        self.assertEqual(config['licensing']['sku_ids'], ['sku-e3', 'sku-teams'])

    def test_license_skus_must_be_a_list(self):
        self.valid_config['licensing'] = {'sku_ids': 'sku-e3'}
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigurationError) as context:
                load_config(self._write(self.valid_config))

        self.assertIn('licensing.sku_ids', str(context.exception))

    def test_config_path_from_environment(self):
        path = self._write(self.valid_config, 'env.yaml')
        with patch.dict(os.environ, {'CONFIG_PATH': path}, clear=True):
            loader = ConfigLoader()
        self.assertEqual(loader.config_path, path)


if __name__ == '__main__':
    unittest.main()
