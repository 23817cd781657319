#!/usr/bin/env python3
"""
Unit tests for the main sync orchestrator.

Tests exit codes, notifications and the command line entry point with the
LDAP reader, Moodle client and engine mocked out.
"""

import os
import sys
import json
import unittest
from unittest.mock import Mock, patch

# Add parent directory to path to import ldap_moodle_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_moodle_sync.main import (
    SyncOrchestrator,
    main,
    EXIT_OK,
    EXIT_USER_FAILURES,
    EXIT_CONFIG_ERROR,
    EXIT_LDAP_ERROR,
    EXIT_UNEXPECTED_ERROR,
    EXIT_TARGET_ERROR,
)
from ldap_moodle_sync.config import ConfigurationError
from ldap_moodle_sync.engine import SyncStats, TargetFetchError
from ldap_moodle_sync.ldap_client import LDAPConnectionError, LDAPQueryError
from ldap_moodle_sync.mapping import MappingError
from ldap_moodle_sync.models import SourceRecord
from ldap_moodle_sync.state import StateError


class TestSyncOrchestrator(unittest.TestCase):
    """Test cases for SyncOrchestrator class."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_config = {
            'ldap': {
                'server_url': 'ldaps://ldap.example.edu',
                'bind_dn': 'cn=moodle,ou=services,dc=example,dc=edu',
                'bind_password': 'test_password',
                'user_base_dn': 'ou=people,dc=example,dc=edu',
            },
            'moodle': {
                'base_url': 'https://moodle.example.edu',
                'token': 'test_token',
            },
            'sync': {
                'state_file': 'test_state.yaml',
                'state_name': 'moodle-users',
                'on_target_fetch_failure': 'abort',
                'exclude': {'auth_methods': ['manual'], 'user_ids': [1]},
                'mapping': {'attributes': {'firstname': 'givenName'}},
            },
            'logging': {'level': 'INFO', 'log_dir': 'test_logs'},
            'error_handling': {'max_retries': 2, 'retry_wait_seconds': 0},
            'notifications': {'enable_email': False},
        }

        patches = {
            'load_config': patch('ldap_moodle_sync.main.load_config', return_value=self.test_config),
            'setup_logging': patch('ldap_moodle_sync.main.setup_logging'),
            'ldap_client': patch('ldap_moodle_sync.main.LDAPClient'),
            'moodle_client': patch('ldap_moodle_sync.main.MoodleClient'),
            'engine': patch('ldap_moodle_sync.main.ReconciliationEngine'),
            'user_errors': patch('ldap_moodle_sync.main.send_user_errors_notification'),
            'success': patch('ldap_moodle_sync.main.send_success_summary'),
            'failure': patch('ldap_moodle_sync.main.send_failure_notification'),
            'ldap_failure': patch('ldap_moodle_sync.main.send_ldap_connection_failure'),
        }
        self.mocks = {}
        for name, patcher in patches.items():
            self.mocks[name] = patcher.start()
            self.addCleanup(patcher.stop)

        self.stats = SyncStats()
        self.engine = self.mocks['engine'].return_value
        self.engine.run.return_value = self.stats

    def test_successful_sync(self):
        """Test successful synchronization run."""
        self.stats.updated = 3

        exit_code = SyncOrchestrator('config.yaml').run()

        self.assertEqual(exit_code, EXIT_OK)
        self.engine.run.assert_called_once_with(full_sync=False, dry_run=False)
        self.mocks['success'].assert_called_once()
        self.mocks['user_errors'].assert_not_called()
        self.mocks['ldap_client'].return_value.connect.assert_called_once_with(max_retries=2, retry_wait=0)
        self.mocks['ldap_client'].return_value.disconnect.assert_called_once()
        self.mocks['moodle_client'].return_value.close_connection.assert_called_once()

    def test_engine_wiring(self):
        SyncOrchestrator('config.yaml').run(full_sync=True, dry_run=True)

        kwargs = self.mocks['engine'].call_args.kwargs
        self.assertIs(kwargs['source'], self.mocks['ldap_client'].return_value)
        self.assertIs(kwargs['target'], self.mocks['moodle_client'].return_value)
        self.assertEqual(kwargs['state'].path, 'test_state.yaml')
        self.assertEqual(kwargs['state_name'], 'moodle-users')
        self.assertEqual(kwargs['on_target_fetch_failure'], 'abort')
        self.assertEqual(kwargs['policy'].user_ids, {1})
        self.engine.run.assert_called_once_with(full_sync=True, dry_run=True)

    def test_user_failures_exit_code(self):
        self.stats.record_failure('update', 'bob', 'invalidparameter')

        exit_code = SyncOrchestrator('config.yaml').run()

        self.assertEqual(exit_code, EXIT_USER_FAILURES)
        self.mocks['user_errors'].assert_called_once()
        stats_arg = self.mocks['user_errors'].call_args.args[0]
        self.assertEqual(stats_arg['failures'], [('update', 'bob', 'invalidparameter')])

    def test_configuration_error(self):
        self.mocks['load_config'].side_effect = ConfigurationError("Missing required LDAP field")

        self.assertEqual(SyncOrchestrator('config.yaml').run(), EXIT_CONFIG_ERROR)
        self.engine.run.assert_not_called()

    def test_mapping_error(self):
        self.test_config['sync']['mapping'] = {}
        self.assertEqual(SyncOrchestrator('config.yaml').run(), EXIT_CONFIG_ERROR)

    def test_ldap_connection_error(self):
        self.mocks['ldap_client'].return_value.connect.side_effect = LDAPConnectionError("Bind failed")

        self.assertEqual(SyncOrchestrator('config.yaml').run(), EXIT_LDAP_ERROR)
        self.mocks['ldap_failure'].assert_called_once()
        self.mocks['moodle_client'].return_value.close_connection.assert_called_once()

    def test_ldap_query_error(self):
        self.engine.run.side_effect = LDAPQueryError("Search failed")

        self.assertEqual(SyncOrchestrator('config.yaml').run(), EXIT_LDAP_ERROR)
        self.mocks['failure'].assert_called_once()
        self.assertEqual(self.mocks['failure'].call_args.args[0], 'LDAP Query Failed')

    def test_target_fetch_error(self):
        self.engine.run.side_effect = TargetFetchError("Failed to read Moodle users")

        self.assertEqual(SyncOrchestrator('config.yaml').run(), EXIT_TARGET_ERROR)
        self.assertEqual(self.mocks['failure'].call_args.args[0], 'Moodle Users Unavailable')

    def test_state_error(self):
        self.engine.run.side_effect = StateError("Failed to write sync state")
        self.assertEqual(SyncOrchestrator('config.yaml').run(), EXIT_UNEXPECTED_ERROR)

    def test_unexpected_error(self):
        self.engine.run.side_effect = RuntimeError("boom")
        self.assertEqual(SyncOrchestrator('config.yaml').run(), EXIT_UNEXPECTED_ERROR)

    def test_notification_errors_do_not_change_result(self):
        self.mocks['success'].side_effect = OSError("smtp down")
        self.assertEqual(SyncOrchestrator('config.yaml').run(), EXIT_OK)

    @patch('ldap_moodle_sync.main.set_verbosity')
    def test_verbosity_flags(self, mock_set_verbosity):
        SyncOrchestrator('config.yaml').run(debug=True, trace=True)
        mock_set_verbosity.assert_called_once_with(debug=True, trace=True)

    def test_test_mapping(self):
        self.mocks['ldap_client'].return_value.fetch_records.return_value = {
            'jdoe': SourceRecord('jdoe', attributes={'givenName': ['Jane']}),
        }

        results = SyncOrchestrator('config.yaml').test_mapping()

        self.assertEqual(results, [{'username': 'jdoe', 'firstname': 'Jane'}])
        self.mocks['ldap_client'].return_value.disconnect.assert_called_once()

    @patch('ldap_moodle_sync.main.SyncState')
    def test_health_check_all_pass(self, mock_state):
        self.mocks['moodle_client'].return_value.__enter__.return_value.get_site_info.return_value = {
            'sitename': 'Example LMS'}
        mock_state.return_value.get_last_sync.return_value.isoformat.return_value = '1970-01-01T00:00:00+00:00'

        health = SyncOrchestrator('config.yaml').health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(set(health['checks']), {'configuration', 'mapping', 'ldap', 'moodle', 'state'})
        self.assertIn('Example LMS', health['checks']['moodle']['message'])

    def test_health_check_configuration_failure(self):
        self.mocks['load_config'].side_effect = ConfigurationError("bad")

        health = SyncOrchestrator('config.yaml').health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(list(health['checks']), ['configuration'])

    def test_health_check_ldap_failure(self):
        self.mocks['ldap_client'].return_value.connect.side_effect = LDAPConnectionError("down")

        health = SyncOrchestrator('config.yaml').health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['ldap']['status'], 'fail')


class TestCommandLine(unittest.TestCase):
    """Test cases for the command line entry point."""

    @patch('ldap_moodle_sync.main.SyncOrchestrator')
    def test_run_passes_flags(self, mock_orchestrator):
        mock_orchestrator.return_value.run.return_value = EXIT_USER_FAILURES

        with self.assertRaises(SystemExit) as context:
            main(['--config', 'sync.yaml', '--dry-run', '--trace'])

        self.assertEqual(context.exception.code, EXIT_USER_FAILURES)
        mock_orchestrator.assert_called_once_with(config_path='sync.yaml')
        mock_orchestrator.return_value.run.assert_called_once_with(
            full_sync=False, dry_run=True, debug=True, trace=True)

    @patch('ldap_moodle_sync.main.SyncOrchestrator')
    @patch('builtins.print')
    def test_health_check_output(self, mock_print, mock_orchestrator):
        mock_orchestrator.return_value.health_check.return_value = {'status': 'healthy', 'checks': {}}

        with self.assertRaises(SystemExit) as context:
            main(['--health-check'])

        self.assertEqual(context.exception.code, 0)
        self.assertEqual(json.loads(mock_print.call_args.args[0])['status'], 'healthy')

    @patch('builtins.print')
    def test_generate_key(self, mock_print):
        with self.assertRaises(SystemExit) as context:
            main(['--generate-key'])

        self.assertEqual(context.exception.code, 0)
        self.assertEqual(len(mock_print.call_args.args[0]), 44)

    @patch('builtins.print')
    def test_encrypt_requires_key(self, mock_print):
        with patch.dict(os.environ):
            os.environ.pop('SYNC_SECRET_KEY', None)
            with self.assertRaises(SystemExit) as context:
                main(['--encrypt', 'secret'])

        self.assertEqual(context.exception.code, EXIT_CONFIG_ERROR)

    @patch('builtins.print')
    def test_encrypt_with_key(self, mock_print):
        from ldap_moodle_sync.crypto import SecretBox, generate_key
        key = generate_key()

        with patch.dict(os.environ, {'SYNC_SECRET_KEY': key}):
            with self.assertRaises(SystemExit) as context:
                main(['--encrypt', 'secret'])

        self.assertEqual(context.exception.code, 0)
        self.assertEqual(SecretBox(key).decrypt(mock_print.call_args.args[0]), 'secret')

    @patch('ldap_moodle_sync.main.SyncOrchestrator')
    @patch('builtins.print')
    def test_test_mapping_output(self, mock_print, mock_orchestrator):
        mock_orchestrator.return_value.test_mapping.return_value = [{'username': 'jdoe'}]

        with self.assertRaises(SystemExit) as context:
            main(['--test-mapping'])

        self.assertEqual(context.exception.code, 0)
        mock_print.assert_called_once_with('{"username": "jdoe"}')


if __name__ == '__main__':
    unittest.main()
