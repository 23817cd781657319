"""
LDAP client for reading the user entries that drive the Moodle sync.

This module connects to the directory with ldap3 and provides the two fetch
passes used by the sync engine: an identifier-only pass for deletion detection
and a full-attribute pass filtered by the last sync timestamp.
"""

import logging
import ssl
import time
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Set

from ldap3 import Server, Connection, SUBTREE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError

from ldap_moodle_sync.models import SourceRecord, normalize_identifier
from ldap_moodle_sync.state import EPOCH

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


def format_generalized_time(timestamp: datetime) -> str:
    """Format a timestamp as LDAP GeneralizedTime (UTC)."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).strftime('%Y%m%d%H%M%SZ')


class LDAPClient:
    """
    LDAP client for the source side of the sync.

    Entries are keyed by the normalized value of the configured identifier
    attribute (lower-cased and trimmed), the same key the Moodle side uses.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=inetOrgPerson)')
        self.identifier_attribute = config.get('identifier_attribute', 'uid')
        self.attributes = list(config.get('attributes') or [])
        self.modify_timestamp_attribute = config.get('modify_timestamp_attribute', 'modifyTimestamp')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.page_size = config.get('page_size', 1000)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait if retry_wait is not None else self.retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} "
                         f"(SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPSocketOpenError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPBindError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except LDAPException as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._drop_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)
            except Exception as e:
                last_exception = e
                logger.error(f"Unexpected error during LDAP connection: {e}")
                self._drop_connection()
                break

        error_msg = f"Failed to connect to LDAP after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except Exception as e:
                logger.debug(f"Ignoring error while dropping LDAP connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """Create TLS configuration for LDAPS or StartTLS, None for plain LDAP."""
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}
        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("LDAP SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def build_filter(self, since: Optional[datetime] = None) -> str:
        """
        Build the user search filter, narrowed to entries modified at or after `since`.

        No timestamp clause is added for the epoch, so a full sync sees every entry.
        """
        if since is None or since <= EPOCH:
            return self.user_filter
        timestamp = format_generalized_time(since)
        return f"(&{self.user_filter}({self.modify_timestamp_attribute}>={timestamp}))"

    def fetch_identifiers(self) -> Set[str]:
        """
        Read the normalized identifiers of all source users (no other attributes).

        Returns:
            Set of normalized identifiers

        Raises:
            LDAPQueryError: If the search fails
        """
        records = self._paged_search(self.build_filter(), [self.identifier_attribute])
        logger.info(f"Read {len(records)} user identifiers from LDAP")
        return set(records.keys())

    def fetch_records(self, since: Optional[datetime] = None,
                      want_attributes: bool = True) -> Dict[str, SourceRecord]:
        """
        Read source users modified at or after `since`.

        Args:
            since: Watermark timestamp (None or epoch for all entries)
            want_attributes: Request the configured attribute list (all user
                attributes when none are configured); False reads identifiers only

        Returns:
            Dictionary mapping normalized identifier to SourceRecord, in the order
            the directory returned them

        Raises:
            LDAPQueryError: If the search fails
        """
        if want_attributes:
            attributes = self.attributes or ['*']
            if self.attributes and self.identifier_attribute not in attributes:
                attributes = attributes + [self.identifier_attribute]
        else:
            attributes = [self.identifier_attribute]

        records = self._paged_search(self.build_filter(since), attributes)
        if records:
            logger.info(f"Read {len(records)} LDAP entries to synchronize")
        else:
            logger.info("No LDAP entries to synchronize found")
        return records

    def _paged_search(self, search_filter: str, attributes: List[str]) -> Dict[str, SourceRecord]:
        """Run a paged subtree search and collect the entries keyed by identifier."""
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        search_base = self.user_base_dn or self._get_domain_base()
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        records = {}
        page_count = 0
        cookie = None

        try:
            while True:
                success = self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )

                # ldap3 reports False for an empty but successful search
                if not success and self.connection.result.get('result', 0) != 0:
                    raise LDAPQueryError(f"Search failed: {self.connection.result}")

                page_count += 1
                page_entries = self._process_search_results(records)
                logger.debug(f"Page {page_count}: Retrieved {page_entries} entries")

                cookie = self._get_paged_cookie()
                if not cookie:
                    break

        except LDAPQueryError:
            raise
        except LDAPException as e:
            raise LDAPQueryError(f"Paginated search failed: {e}")
        except Exception as e:
            raise LDAPQueryError(f"Unexpected error during paginated search: {e}")

        logger.debug(f"Retrieved {len(records)} entries across {page_count} pages")
        return records

    def _get_paged_cookie(self) -> Optional[bytes]:
        controls = self.connection.result.get('controls') or {}
        paged = controls.get(PAGED_RESULTS_OID) or {}
        return (paged.get('value') or {}).get('cookie')

    def _process_search_results(self, records: Dict[str, SourceRecord]) -> int:
        """Add the entries of the last search page to records; returns the page size."""
        entries = self.connection.entries
        for entry in entries:
            record = self._to_source_record(entry)
            if record is None:
                continue
            previous = records.get(record.identifier)
            if previous is not None:
                logger.warning(f"LDAP entries {previous.dn} and {record.dn} share identifier "
                               f"{record.identifier}, keeping {record.dn}")
            records[record.identifier] = record
        return len(entries)

    def _to_source_record(self, entry) -> Optional[SourceRecord]:
        attributes = entry.entry_attributes_as_dict
        dn = str(entry.entry_dn)

        record = SourceRecord('', dn=dn, attributes=attributes)
        identifier = normalize_identifier(record.get(self.identifier_attribute))
        if not identifier:
            logger.error(f"Attribute {self.identifier_attribute} is missing in LDAP entry {dn}")
            return None

        record.identifier = identifier
        return record

    def _get_domain_base(self) -> str:
        """Extract domain base DN from bind DN or server info."""
        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine user base DN")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
