"""
Main orchestrator for the LDAP to Moodle user sync.

This module loads the configuration, sets up logging, wires the LDAP reader,
the Moodle client, the mapping and the sync state into the reconciliation
engine, and maps the outcome of a run to a process exit code.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_moodle_sync.config import load_config, ConfigurationError
from ldap_moodle_sync.crypto import SecretBox, CryptoError, generate_key
from ldap_moodle_sync.engine import ReconciliationEngine, AccountPolicy, TargetFetchError, SyncError
from ldap_moodle_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from ldap_moodle_sync.logging_setup import setup_logging, set_verbosity, reset_verbosity, security_logger
from ldap_moodle_sync.mapping import create_mapping, MappingError
from ldap_moodle_sync.models import MoodleUser
from ldap_moodle_sync.moodle_client import MoodleClient
from ldap_moodle_sync.notifications import (
    send_failure_notification,
    send_ldap_connection_failure,
    send_user_errors_notification,
    send_success_summary,
    test_notification_config
)
from ldap_moodle_sync.state import SyncState, StateError, EPOCH

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USER_FAILURES = 1
EXIT_CONFIG_ERROR = 2
EXIT_LDAP_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4
EXIT_TARGET_ERROR = 5


class SyncOrchestrator:
    """
    Runs one LDAP to Moodle sync from configuration to exit code.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
        """
        self.config_path = config_path
        self.config = None
        self.ldap_client = None
        self.moodle_client = None
        self.stats = None

    def run(self, full_sync: bool = False, dry_run: bool = False,
            debug: bool = False, trace: bool = False) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._load_configuration()
            setup_logging(self.config.get('logging', {}))
            set_verbosity(debug=debug, trace=trace)
            security_logger.log_configuration_access(self.config_path or 'config.yaml')
            logger.info(f"Starting LDAP to Moodle sync: dry_run={dry_run}, full_sync={full_sync}, "
                        f"debug={debug}, trace={trace}")

            engine = self._build_engine()
            self.stats = engine.run(full_sync=full_sync, dry_run=dry_run)
            stats = self.stats.as_dict()

            if self.stats.failed:
                logger.warning(f"Sync completed with {self.stats.failed} failed user operations")
                self._notify(send_user_errors_notification, stats)
                return EXIT_USER_FAILURES

            logger.info("Sync completed successfully")
            self._notify(send_success_summary, stats)
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except MappingError as e:
            logger.error(f"Mapping error: {e}")
            return EXIT_CONFIG_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._send_ldap_connection_failure(str(e))
            return EXIT_LDAP_ERROR
        except LDAPQueryError as e:
            logger.error(f"LDAP query error: {e}")
            self._notify(send_failure_notification, "LDAP Query Failed", str(e))
            return EXIT_LDAP_ERROR
        except TargetFetchError as e:
            logger.error(f"Moodle error: {e}")
            self._notify(send_failure_notification, "Moodle Users Unavailable", str(e))
            return EXIT_TARGET_ERROR
        except (StateError, SyncError) as e:
            logger.error(f"Sync error: {e}")
            self._notify(send_failure_notification, "Sync Failed", str(e))
            return EXIT_UNEXPECTED_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._notify(send_failure_notification, "Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()
            reset_verbosity()

    def _load_configuration(self):
        """Load and validate configuration."""
        if self.config is not None:
            return
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _connect_ldap(self) -> LDAPClient:
        error_config = self.config.get('error_handling', {})
        self.ldap_client = LDAPClient(self.config['ldap'])
        try:
            self.ldap_client.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except LDAPConnectionError:
            self.ldap_client = None
            raise
        return self.ldap_client

    def _build_engine(self) -> ReconciliationEngine:
        sync_config = self.config.get('sync', {})

        mapping = create_mapping(sync_config.get('mapping'))
        self.moodle_client = MoodleClient(self.config['moodle'])
        self._connect_ldap()

        return ReconciliationEngine(
            source=self.ldap_client,
            target=self.moodle_client,
            mapping=mapping,
            state=SyncState(sync_config.get('state_file', 'sync_state.yaml')),
            policy=AccountPolicy.from_config(sync_config.get('exclude')),
            state_name=sync_config.get('state_name', 'moodle-users'),
            on_target_fetch_failure=sync_config.get('on_target_fetch_failure', 'abort')
        )

    def test_mapping(self) -> list:
        """
        Apply the mapping in 'test' mode to every LDAP entry.

        Returns:
            List of the resulting users as dictionaries
        """
        self._load_configuration()
        mapping = create_mapping(self.config.get('sync', {}).get('mapping'))
        try:
            records = self._connect_ldap().fetch_records(since=EPOCH)
            results = []
            for identifier, record in records.items():
                user = MoodleUser(username=identifier)
                mapping.apply('test', user, record)
                results.append(user.to_dict())
            return results
        finally:
            self._cleanup()

    def _notify(self, sender, *args):
        """Send a notification, logging instead of raising when it fails."""
        try:
            sender(*args, self.config.get('notifications', {}) if self.config else {})
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    def _send_ldap_connection_failure(self, error_message: str):
        try:
            notifications_config = self.config.get('notifications', {})
            retry_count = self.config.get('error_handling', {}).get('max_retries', 3)
            send_ldap_connection_failure(error_message, notifications_config, retry_count)
        except Exception as e:
            logger.error(f"Failed to send LDAP failure notification: {e}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        checks = health_status['checks']

        try:
            create_mapping(self.config.get('sync', {}).get('mapping'))
            checks['mapping'] = {'status': 'pass', 'message': 'Mapping loaded successfully'}
        except Exception as e:
            checks['mapping'] = {'status': 'fail', 'message': f'Mapping error: {e}'}

        try:
            test_client = LDAPClient(self.config['ldap'])
            test_client.connect(max_retries=1, retry_wait=0)
            test_client.disconnect()
            checks['ldap'] = {'status': 'pass', 'message': 'LDAP connection successful'}
        except Exception as e:
            checks['ldap'] = {'status': 'fail', 'message': f'LDAP connection failed: {e}'}

        try:
            with MoodleClient(self.config['moodle']) as client:
                info = client.get_site_info()
            checks['moodle'] = {
                'status': 'pass',
                'message': f"Moodle reachable: {info.get('sitename', 'unknown site')}"
            }
        except Exception as e:
            checks['moodle'] = {'status': 'fail', 'message': f'Moodle check failed: {e}'}

        try:
            last_sync = SyncState(self.config['sync']['state_file']).get_last_sync(
                self.config['sync']['state_name'])
            checks['state'] = {'status': 'pass', 'message': f'Last sync: {last_sync.isoformat()}'}
        except Exception as e:
            checks['state'] = {'status': 'fail', 'message': f'Sync state unreadable: {e}'}

        if any(check['status'] == 'fail' for check in checks.values()):
            health_status['status'] = 'unhealthy'

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
            self.ldap_client = None
        if self.moodle_client:
            self.moodle_client.close_connection()
            self.moodle_client = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Synchronize users from LDAP to Moodle')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--full-sync', action='store_true',
                        help='Compare all LDAP entries instead of those changed since the last run')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show what would change without modifying Moodle')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('--trace', action='store_true', help='Enable trace logging (implies --debug)')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-mapping', action='store_true',
                        help='Print the Moodle users the mapping builds from LDAP')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    parser.add_argument('--encrypt', metavar='VALUE',
                        help='Encrypt a secret for use in the configuration file')
    parser.add_argument('--generate-key', action='store_true',
                        help='Generate a new secret key')
    return parser


def main(argv=None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    if args.generate_key:
        print(generate_key())
        sys.exit(0)

    if args.encrypt is not None:
        try:
            box = SecretBox.from_config()
            if box is None:
                print("Set SYNC_SECRET_KEY to encrypt values")
                sys.exit(EXIT_CONFIG_ERROR)
            print(box.encrypt(args.encrypt))
            sys.exit(0)
        except CryptoError as e:
            print(f"Encryption failed: {e}")
            sys.exit(EXIT_CONFIG_ERROR)

    orchestrator = SyncOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_mapping:
        try:
            for user in orchestrator.test_mapping():
                print(json.dumps(user, default=str))
            sys.exit(0)
        except Exception as e:
            print(f"Mapping test failed: {e}")
            sys.exit(1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
            notifications_config = orchestrator.config.get('notifications', {})
            if test_notification_config(notifications_config):
                print("Test email sent successfully")
                sys.exit(0)
            else:
                print("Failed to send test email")
                sys.exit(1)
        except Exception as e:
            print(f"Error testing email: {e}")
            sys.exit(1)

    else:
        exit_code = orchestrator.run(
            full_sync=args.full_sync,
            dry_run=args.dry_run,
            debug=args.debug or args.trace,
            trace=args.trace
        )
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
