"""
Configuration loading and management for the LDAP to Moodle sync.

This module handles loading configuration from YAML files and environment variables,
decryption of encrypted secrets, validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from ldap_moodle_sync.crypto import SecretBox, CryptoError, is_encrypted

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'moodle.token': 'MOODLE_TOKEN',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    # Fields that may hold "enc:" encrypted values
    SECRET_FIELDS = (
        'ldap.bind_password',
        'moodle.token',
        'notifications.smtp_password',
    )

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
            raise ConfigurationError(f"Configuration file {self.config_path} must contain a mapping")

        self._apply_env_overrides()
        self._decrypt_secrets()
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

    def _decrypt_secrets(self):
        """Replace "enc:" values of secret fields with their plaintext."""
        encrypted = [key for key in self.SECRET_FIELDS if is_encrypted(self._get_nested_value(self.config, key))]
        if not encrypted:
            return

        try:
            box = SecretBox.from_config(self.config.get('crypto'))
        except CryptoError as e:
            raise ConfigurationError(str(e))
        if box is None:
            raise ConfigurationError(
                f"Encrypted values found ({', '.join(encrypted)}) but no key configured "
                f"(set SYNC_SECRET_KEY or crypto.key_file)")

        for key in encrypted:
            try:
                self._set_nested_value(self.config, key, box.decrypt(self._get_nested_value(self.config, key)))
            except CryptoError as e:
                raise ConfigurationError(f"Cannot decrypt {key}: {e}")
            logger.debug(f"Decrypted {key}")

    def _get_nested_value(self, config: Dict, key_path: str) -> Any:
        current = config
        for key in key_path.split('.'):
            if not isinstance(current, dict) or key not in current:
                return None
            current = current[key]
        return current

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

        ldap_config = self.config.get('ldap') or {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        attributes = ldap_config.get('attributes')
        if attributes is not None and not isinstance(attributes, list):
            errors.append("ldap.attributes must be a list")

        page_size = ldap_config.get('page_size')
        if page_size is not None and (not isinstance(page_size, int) or page_size <= 0):
            errors.append("ldap.page_size must be a positive integer")

        moodle_config = self.config.get('moodle') or {}
        for field in ['base_url', 'token']:
            if not moodle_config.get(field):
                errors.append(f"Missing required Moodle field: {field}")
        base_url = moodle_config.get('base_url') or ''
        if base_url and not base_url.lower().startswith(('http://', 'https://')):
            errors.append("moodle.base_url must start with http:// or https://")

        sync_config = self.config.get('sync') or {}
        mapping = sync_config.get('mapping') or {}
        if not (mapping.get('script') or mapping.get('attributes') or mapping.get('custom_fields')):
            errors.append("sync.mapping must define a script or an attributes table")

        failure_policy = sync_config.get('on_target_fetch_failure', 'abort')
        if failure_policy not in ('abort', 'skip_removals'):
            errors.append("sync.on_target_fetch_failure must be 'abort' or 'skip_removals'")

        exclude = sync_config.get('exclude') or {}
        for user_id in exclude.get('user_ids') or []:
            if not isinstance(user_id, int):
                errors.append(f"sync.exclude.user_ids must contain integers, got {user_id!r}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        defaults = {
            'ldap': {
                'user_base_dn': '',
                'user_filter': '(objectClass=inetOrgPerson)',
                'identifier_attribute': 'uid',
                'attributes': [],
                'modify_timestamp_attribute': 'modifyTimestamp',
                'page_size': 1000,
            },
            'moodle': {
                'auth_method': 'ldap',
                'verify_ssl': True,
                'timeout': 30,
            },
            'sync': {
                'state_file': 'sync_state.yaml',
                'state_name': 'moodle-users',
                'on_target_fetch_failure': 'abort',
                'exclude': {'auth_methods': ['manual'], 'user_ids': [], 'usernames': []},
            },
            'logging': {
                'level': 'INFO',
                'log_dir': 'logs',
                'rotation': 'daily',
                'retention_days': 7,
            },
            'error_handling': {
                'max_retries': 3,
                'retry_wait_seconds': 5,
            },
            'notifications': {
                'enable_email': False,
                'email_on_failure': True,
                'email_on_success': False,
                'smtp_port': 587,
                'smtp_tls': True,
            },
        }

        for section, section_defaults in defaults.items():
            section_config = self.config.get(section)
            if not isinstance(section_config, dict):
                section_config = self.config[section] = {}
            for key, value in section_defaults.items():
                section_config.setdefault(key, value)

        # Clients read retry settings from their own section
        for section in ('ldap', 'moodle'):
            self.config[section].setdefault('error_handling', dict(self.config['error_handling']))


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
