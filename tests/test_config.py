#!/usr/bin/env python3
"""
Unit tests for configuration loading, validation and secret handling.
"""

import os
import sys
import shutil
import tempfile
import unittest
from unittest.mock import patch

import yaml

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_moodle_sync.config import ConfigLoader, ConfigurationError, load_config
from ldap_moodle_sync.crypto import SecretBox, generate_key

PROJECT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='config_test_')
        env_patcher = patch.dict(os.environ)
        env_patcher.start()
        self.addCleanup(env_patcher.stop)
        for name in ('LDAP_BIND_PASSWORD', 'MOODLE_TOKEN', 'SMTP_PASSWORD', 'SYNC_SECRET_KEY', 'CONFIG_PATH'):
            os.environ.pop(name, None)

        self.config = {
            'ldap': {
                'server_url': 'ldaps://ldap.example.edu',
                'bind_dn': 'cn=moodle,ou=services,dc=example,dc=edu',
                'bind_password': 'ldap-secret',
                'user_base_dn': 'ou=people,dc=example,dc=edu',
            },
            'moodle': {
                'base_url': 'https://moodle.example.edu',
                'token': 'moodle-token',
            },
            'sync': {
                'mapping': {'attributes': {'firstname': 'givenName'}},
            },
        }

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_config(self, config=None):
        path = os.path.join(self.temp_dir, 'config.yaml')
        with open(path, 'w') as f:
            yaml.safe_dump(config if config is not None else self.config, f)
        return path

    def test_load_valid_config_applies_defaults(self):
        config = load_config(self.write_config())

        self.assertEqual(config['ldap']['identifier_attribute'], 'uid')
        self.assertEqual(config['ldap']['page_size'], 1000)
        self.assertEqual(config['moodle']['auth_method'], 'ldap')
        self.assertEqual(config['sync']['state_name'], 'moodle-users')
        self.assertEqual(config['sync']['on_target_fetch_failure'], 'abort')
        self.assertEqual(config['sync']['exclude']['auth_methods'], ['manual'])
        self.assertFalse(config['notifications']['enable_email'])
        self.assertEqual(config['moodle']['error_handling'], {'max_retries': 3, 'retry_wait_seconds': 5})

    def test_explicit_values_are_kept(self):
        self.config['sync']['state_name'] = 'moodle-staff'
        self.config['error_handling'] = {'max_retries': 1, 'retry_wait_seconds': 0}

        config = load_config(self.write_config())

        self.assertEqual(config['sync']['state_name'], 'moodle-staff')
        self.assertEqual(config['ldap']['error_handling']['max_retries'], 1)

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError):
            load_config(os.path.join(self.temp_dir, 'missing.yaml'))

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, 'config.yaml')
        with open(path, 'w') as f:
            f.write("ldap: [unclosed\n")

        with self.assertRaises(ConfigurationError):
            load_config(path)

    def test_missing_required_fields_are_all_reported(self):
        del self.config['ldap']['bind_password']
        del self.config['moodle']['token']

        with self.assertRaises(ConfigurationError) as context:
            load_config(self.write_config())

        message = str(context.exception)
        self.assertIn('bind_password', message)
        self.assertIn('token', message)

    def test_mapping_required(self):
        self.config['sync'] = {}
        with self.assertRaises(ConfigurationError) as context:
            load_config(self.write_config())
        self.assertIn('sync.mapping', str(context.exception))

    def test_invalid_values_rejected(self):
        cases = [
            ('moodle', 'base_url', 'moodle.example.edu'),
            ('ldap', 'page_size', 0),
            ('ldap', 'attributes', 'uid,mail'),
            ('sync', 'on_target_fetch_failure', 'ignore'),
            ('sync', 'exclude', {'user_ids': ['admin']}),
        ]
        for section, key, value in cases:
            with self.subTest(key=key):
                config = yaml.safe_load(yaml.safe_dump(self.config))
                config[section][key] = value
                with self.assertRaises(ConfigurationError):
                    load_config(self.write_config(config))

    def test_environment_overrides(self):
        os.environ['LDAP_BIND_PASSWORD'] = 'from-env'
        os.environ['MOODLE_TOKEN'] = 'env-token'

        config = load_config(self.write_config())

        self.assertEqual(config['ldap']['bind_password'], 'from-env')
        self.assertEqual(config['moodle']['token'], 'env-token')

    def test_config_path_from_environment(self):
        os.environ['CONFIG_PATH'] = self.write_config()
        self.assertEqual(ConfigLoader().config_path, os.environ['CONFIG_PATH'])

    def test_encrypted_secrets_are_decrypted(self):
        key = generate_key()
        box = SecretBox(key)
        self.config['ldap']['bind_password'] = box.encrypt('ldap-secret')
        self.config['moodle']['token'] = box.encrypt('moodle-token')
        os.environ['SYNC_SECRET_KEY'] = key

        config = load_config(self.write_config())

        self.assertEqual(config['ldap']['bind_password'], 'ldap-secret')
        self.assertEqual(config['moodle']['token'], 'moodle-token')

    def test_key_file(self):
        key = generate_key()
        key_file = os.path.join(self.temp_dir, 'secret.key')
        with open(key_file, 'w') as f:
            f.write(key + '\n')
        self.config['moodle']['token'] = SecretBox(key).encrypt('moodle-token')
        self.config['crypto'] = {'key_file': key_file}

        config = load_config(self.write_config())

        self.assertEqual(config['moodle']['token'], 'moodle-token')

    def test_encrypted_secret_without_key(self):
        self.config['moodle']['token'] = SecretBox(generate_key()).encrypt('moodle-token')

        with self.assertRaises(ConfigurationError) as context:
            load_config(self.write_config())
        self.assertIn('moodle.token', str(context.exception))

    def test_encrypted_secret_with_wrong_key(self):
        self.config['moodle']['token'] = SecretBox(generate_key()).encrypt('moodle-token')
        os.environ['SYNC_SECRET_KEY'] = generate_key()

        with self.assertRaises(ConfigurationError):
            load_config(self.write_config())

    def test_example_config_is_structurally_valid(self):
        loader = ConfigLoader(os.path.join(PROJECT_DIR, 'config.example.yaml'))
        with open(loader.config_path) as f:
            loader.config = yaml.safe_load(f)

        loader._validate()
        loader._apply_defaults()

        self.assertEqual(loader.config['sync']['exclude']['user_ids'], [1])


if __name__ == '__main__':
    unittest.main()
