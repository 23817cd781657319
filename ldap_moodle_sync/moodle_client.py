"""
Moodle web service client.

This module talks to the Moodle REST web service (webservice/rest/server.php)
to read the directory-managed users and to create, update and suspend them.
"""

import json
import ssl
import logging
from typing import Dict, Any, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from ldap_moodle_sync.models import MoodleUser
from ldap_moodle_sync.retry import retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

REST_PATH = '/webservice/rest/server.php'


class MoodleAPIError(Exception):
    """Raised when a Moodle web service call fails."""

    def __init__(self, message: str, errorcode: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.errorcode = errorcode
        self.status_code = status_code


class MoodleAuthenticationError(MoodleAPIError):
    """Raised when Moodle rejects the web service token."""
    pass


# Moodle reports token problems as web service exceptions with these codes
AUTH_ERRORCODES = ('invalidtoken', 'accessexception', 'webservicesnotenabled')


class MoodleClient:
    """
    Client for the Moodle REST web service.

    Every call is a form-encoded POST carrying the web service token, the
    function name and the function parameters. Moodle answers with HTTP 200 in
    most error cases, so the JSON body is checked for an exception object.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize Moodle client.

        Args:
            config: Moodle configuration dictionary
        """
        self.config = config
        self.base_url = config['base_url']
        self.token = config['token']
        self.auth_method = config.get('auth_method', 'ldap')
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.timeout = config.get('timeout', 30)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.rest_path = self.parsed_url.path.rstrip('/') + REST_PATH

        self.connection = None
        self.ssl_context = None
        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning("SSL verification disabled for Moodle")
            return

        self.ssl_context = ssl.create_default_context()
        if self.ca_cert_file:
            try:
                self.ssl_context.load_verify_locations(cafile=self.ca_cert_file)
                logger.info(f"Loaded CA certificates for Moodle: {self.ca_cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise MoodleAPIError(f"Failed to load CA certificates {self.ca_cert_file}: {e}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def call(self, function: str, params: Optional[Dict[str, str]] = None) -> Any:
        """
        Call a Moodle web service function.

        Args:
            function: Web service function name, e.g. core_user_get_users
            params: Function parameters already flattened to Moodle's form notation

        Returns:
            Decoded JSON response

        Raises:
            MoodleAPIError: If the request fails or Moodle returns an exception
        """
        body = {
            'wstoken': self.token,
            'wsfunction': function,
            'moodlewsrestformat': 'json',
        }
        body.update(params or {})
        headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json',
        }

        try:
            conn = self._get_connection()
            logger.debug(f"Calling {function} on {self.host}")
            conn.request('POST', self.rest_path, urlencode(body), headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, OSError, HTTPException) as e:
            self.close_connection()
            raise MoodleAPIError(f"Connection error to Moodle calling {function}: {e}") from e

        logger.debug(f"Response status: {response.status} {response.reason}")
        if response.status >= 400:
            if response.status in (401, 403):
                raise MoodleAuthenticationError(f"Authentication failed for Moodle: HTTP {response.status}",
                                                status_code=response.status)
            raise MoodleAPIError(f"HTTP {response.status}: {response.reason}", status_code=response.status)

        try:
            result = json.loads(response_data) if response_data else None
        except json.JSONDecodeError as e:
            raise MoodleAPIError(f"Invalid JSON response from Moodle calling {function}: {e}")

        if isinstance(result, dict) and 'exception' in result:
            errorcode = result.get('errorcode')
            message = result.get('message', result['exception'])
            if errorcode in AUTH_ERRORCODES:
                raise MoodleAuthenticationError(f"{function}: {message}", errorcode=errorcode)
            raise MoodleAPIError(f"{function}: {message}", errorcode=errorcode)

        return result

    def fetch_users(self) -> Optional[Dict[str, MoodleUser]]:
        """
        Read every Moodle user whose auth method marks it as directory-managed.

        Returns:
            Dictionary mapping normalized username to MoodleUser, or None when the
            users could not be fetched (an empty dict means zero managed users)
        """
        params = {
            'criteria[0][key]': 'auth',
            'criteria[0][value]': self.auth_method,
        }

        try:
            result = retry_call(
                lambda: self.call('core_user_get_users', params),
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                on_retry=create_retry_callback("Moodle user fetch")
            )
        except (MoodleAPIError, MaxRetriesExceeded) as e:
            logger.error(f"Failed to fetch Moodle users: {e}")
            return None

        if not isinstance(result, dict):
            logger.error(f"Unexpected core_user_get_users response: {result!r}")
            return None

        for warning in result.get('warnings') or []:
            logger.warning(f"core_user_get_users warning: {warning.get('message', warning)}")

        users = {}
        for data in result.get('users') or []:
            user = MoodleUser.from_api(data)
            if not user.login:
                logger.warning(f"Moodle user {user.id} has no username, skipping")
                continue
            users[user.login] = user

        logger.info(f"Read {len(users)} Moodle users with auth '{self.auth_method}'")
        return users

    def create_user(self, user: MoodleUser) -> MoodleUser:
        """
        Create a user in Moodle.

        Args:
            user: New user (id must be None)

        Returns:
            The same user with the id assigned by Moodle

        Raises:
            MoodleAPIError: If Moodle refuses the user
        """
        if not user.username:
            raise MoodleAPIError("Cannot create user without username")
        if user.id is not None:
            raise MoodleAPIError(f"User {user.username} already has Moodle id {user.id}")

        result = self.call('core_user_create_users', user.to_params('users[0]', include_id=False))

        if not isinstance(result, list) or not result or 'id' not in result[0]:
            raise MoodleAPIError(f"Unexpected core_user_create_users response: {result!r}")

        user.id = int(result[0]['id'])
        logger.debug(f"Created Moodle user {user.username} with id {user.id}")
        return user

    def update_user(self, patch: MoodleUser) -> MoodleUser:
        """
        Apply a sparse update to a Moodle user.

        Args:
            patch: User carrying the Moodle id and only the fields to change

        Returns:
            The patch that was applied

        Raises:
            MoodleAPIError: If the update fails or Moodle returns warnings for it
        """
        if patch.id is None:
            raise MoodleAPIError("Cannot update user without Moodle id")

        result = self.call('core_user_update_users', patch.to_params('users[0]'))

        warnings = result.get('warnings') if isinstance(result, dict) else None
        if warnings:
            messages = '; '.join(str(w.get('message', w)) for w in warnings)
            raise MoodleAPIError(f"Update of user {patch.id} returned warnings: {messages}",
                                 errorcode=warnings[0].get('warningcode'))

        logger.debug(f"Updated Moodle user {patch.id}: {', '.join(patch.changed_fields())}")
        return patch

    def suspend_user(self, user: MoodleUser, reason: str = '') -> None:
        """
        Suspend a Moodle user.

        Args:
            user: User to suspend (must carry its Moodle id)
            reason: Why the user is suspended (logged only, Moodle keeps no reason)
        """
        patch = MoodleUser(id=user.id, suspended=True)
        self.update_user(patch)
        logger.debug(f"Suspended Moodle user {user.username} ({user.id}): {reason}")

    def get_site_info(self) -> Dict[str, Any]:
        """Return core_webservice_get_site_info, used to verify token and connectivity."""
        result = self.call('core_webservice_get_site_info')
        return result if isinstance(result, dict) else {}

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing Moodle connection: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()
