"""
Configuration loading and management for Directory Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 20

DEFAULT_PROTECTED_PATTERNS = [
    'admin@*',
    'administrator@*',
    'root@*',
    'systemadmin@*',
]

DEFAULT_PROTECTED_ROLES = [
    'Global Administrator',
    'Privileged Role Administrator',
    'Security Administrator',
    'User Administrator',
    'Directory Synchronization Accounts',
]


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""
    
    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.auth.client_secret': 'DIRECTORY_CLIENT_SECRET',
        'directory.auth.token': 'DIRECTORY_ACCESS_TOKEN',
        'notifications.smtp_password': 'SMTP_PASSWORD',
        'protection.operator_email': 'OPERATOR_EMAIL',
    }
    
    # Comma separated list overrides
    LIST_ENV_OVERRIDES = {
        'protection.protected_email_patterns': 'PROTECTED_EMAIL_PATTERNS',
        'protection.protected_emails': 'PROTECTED_EMAILS',
        'licensing.sku_ids': 'LICENSE_SKU_IDS',
    }
    
    SUPPORTED_AUTH_METHODS = ('client_credentials', 'token')
    
    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.
        
        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}
    
    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.
        
        Returns:
            Parsed and validated configuration dictionary
            
        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        
        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")
        
        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()
        
        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config
    
    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")
        
        for config_key, env_var in self.LIST_ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                values = [item.strip() for item in env_value.split(',') if item.strip()]
                self._set_nested_value(self.config, config_key, values)
                logger.debug(f"Applied environment override for {config_key}")
        
        check_roles = os.getenv('CHECK_ADMIN_ROLES')
        if check_roles is not None:
            self._set_nested_value(self.config, 'protection.check_admin_roles',
                                   check_roles.strip().lower() != 'false')
    
    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value
    
    def _validate(self):
        """Validate required configuration fields."""
        errors = []
        
        directory = self.config.get('directory') or {}
        if not directory.get('base_url'):
            errors.append("Missing required directory field: base_url")
        
        auth = directory.get('auth') or {}
        method = str(auth.get('method', '')).lower()
        if not auth:
            errors.append("Missing required directory field: auth")
        elif method not in self.SUPPORTED_AUTH_METHODS:
            errors.append(f"Unsupported auth method '{auth.get('method')}', "
                          f"expected one of: {', '.join(self.SUPPORTED_AUTH_METHODS)}")
        elif method == 'client_credentials':
            for field in ('client_id', 'client_secret'):
                if not auth.get(field):
                    errors.append(f"Missing required auth field: {field}")
            if not auth.get('token_url') and not auth.get('tenant_id'):
                errors.append("client_credentials auth requires token_url or tenant_id")
        elif method == 'token' and not auth.get('token'):
            errors.append("Missing required auth field: token")
        
        truststore_type = str(directory.get('truststore_type', 'PEM')).upper()
        if truststore_type not in ('PEM', 'PKCS12'):
            errors.append(f"Unsupported truststore_type '{truststore_type}'")
        
        batching = self.config.get('batching') or {}
        batch_size = batching.get('batch_size', MAX_BATCH_SIZE)
        if not isinstance(batch_size, int) or not 1 <= batch_size <= MAX_BATCH_SIZE:
            errors.append(f"batching.batch_size must be an integer between 1 and {MAX_BATCH_SIZE}")
        
        batch_delay = batching.get('batch_delay_seconds', 0.5)
        if not isinstance(batch_delay, (int, float)) or batch_delay < 0:
            errors.append("batching.batch_delay_seconds must be a non-negative number")
        
        protection = self.config.get('protection') or {}
        for field in ('protected_email_patterns', 'protected_emails', 'protected_domains', 'protected_roles'):
            value = protection.get(field)
            if value is not None and not isinstance(value, list):
                errors.append(f"protection.{field} must be a list")
        
        licensing = self.config.get('licensing') or {}
        sku_ids = licensing.get('sku_ids')
        if sku_ids is not None and not (isinstance(sku_ids, list) and all(isinstance(sku, str) and sku for sku in sku_ids)):
            errors.append("licensing.sku_ids must be a list of SKU ids")
        
        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))
    
    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        source_config = self.config.setdefault('source', {})
        source_config.setdefault('csv_path', 'config/users.csv')
        
        directory_defaults = {
            'timeout_seconds': 30,
            'verify_ssl': True,
            'truststore_type': 'PEM',
            'extension_name': 'com.directorysync.customFields',
        }
        directory_config = self.config.setdefault('directory', {})
        for key, value in directory_defaults.items():
            directory_config.setdefault(key, value)
        
        auth_config = directory_config['auth']
        auth_config['method'] = auth_config['method'].lower()
        if auth_config['method'] == 'client_credentials':
            auth_config.setdefault('scope', 'https://graph.microsoft.com/.default')
            if not auth_config.get('token_url'):
                auth_config['token_url'] = (
                    f"https://login.microsoftonline.com/{auth_config['tenant_id']}/oauth2/v2.0/token"
                )
        
        batching_defaults = {
            'batch_size': MAX_BATCH_SIZE,
            'batch_delay_seconds': 0.5
        }
        batching_config = self.config.setdefault('batching', {})
        for key, value in batching_defaults.items():
            batching_config.setdefault(key, value)
        
        protection_defaults = {
            'protected_email_patterns': list(DEFAULT_PROTECTED_PATTERNS),
            'protected_emails': [],
            'protected_domains': [],
            'protected_roles': list(DEFAULT_PROTECTED_ROLES),
            'check_admin_roles': True,
            'protect_operator': True,
            'operator_email': None,
            'protect_updates': True
        }
        protection_config = self.config.setdefault('protection', {})
        for key, value in protection_defaults.items():
            protection_config.setdefault(key, value)
        
        licensing_config = self.config.setdefault('licensing', {})
        if licensing_config.get('sku_ids') is None:
            licensing_config['sku_ids'] = []
        
        output_defaults = {
            'export_path': 'output/accounts.json',
            'export_passwords': False,
            'passwords_path': 'output/passwords.txt'
        }
        output_config = self.config.setdefault('output', {})
        for key, value in output_defaults.items():
            output_config.setdefault(key, value)
        
        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)
        
        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 2
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)
        
        # Notification defaults
        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.
    
    Args:
        config_path: Path to config file
        
    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
