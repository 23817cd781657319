"""
Logging setup and configuration for the LDAP to Moodle sync.

File logging with daily rotation and retention, console output, scrubbing of
credentials, a TRACE level below DEBUG and per-run switching of the package
log level for the --debug / --trace command line flags.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any

TRACE = 5
logging.addLevelName(TRACE, 'TRACE')

PACKAGE_LOGGER = 'ldap_moodle_sync'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'wstoken', 'secret',
        'secret_key', 'credential', 'authorization', 'api_key'
    ]

    def __init__(self):
        super().__init__()
        keywords = '|'.join(sorted((re.escape(k) for k in self.SENSITIVE_KEYWORDS), key=len, reverse=True))
        # key=value, also inside URL query strings and form bodies
        self._assignment = re.compile(rf'(\b(?:{keywords})\s*=\s*)[^\s,&}}\]]+', re.IGNORECASE)
        # "key": "value" and 'key': 'value'
        self._quoted = re.compile(rf'(["\'](?:{keywords})["\']\s*:\s*["\'])[^"\']*(["\'])', re.IGNORECASE)
        self._bearer = re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)\S+', re.IGNORECASE)

    def scrub(self, text: str) -> str:
        text = self._assignment.sub(r'\1****', text)
        text = self._quoted.sub(r'\1****\2', text)
        return self._bearer.sub(r'\1****', text)

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if record.args:
            try:
                record.msg = record.getMessage()
                record.args = None
            except (TypeError, ValueError):
                pass
        record.msg = self.scrub(str(record.msg))
        return True


class LoggingManager:
    """
    Manages logging configuration for the sync application.

    Provides file-based logging with rotation, retention policies, and
    container-friendly console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7
        self.level = logging.INFO

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.level = TRACE if log_level == 'TRACE' else getattr(logging, log_level, logging.INFO)
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'WARNING')).upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )
        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(TRACE)
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        # Third-party libraries stay at the configured level, the package level is switched per run
        root_logger.setLevel(self.level)
        logging.getLogger(PACKAGE_LOGGER).setLevel(self.level)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """Create a midnight-rotating handler, or a plain file handler for rotation 'none'."""
        log_file = os.path.join(self.log_dir, 'app.log')

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Clean up log files older than retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, 'app.log.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def set_verbosity(self, debug: bool = False, trace: bool = False) -> int:
        """
        Switch the package log level for one run.

        Args:
            debug: Log package messages at DEBUG
            trace: Log everything, including third-party libraries, at TRACE

        Returns:
            The level now in effect for the package logger
        """
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        if trace:
            logging.getLogger().setLevel(TRACE)
            package_logger.setLevel(TRACE)
        elif debug:
            package_logger.setLevel(logging.DEBUG)
        else:
            package_logger.setLevel(self.level)
        return package_logger.level

    def reset_verbosity(self) -> None:
        """Restore the configured levels after a run."""
        logging.getLogger().setLevel(self.level)
        logging.getLogger(PACKAGE_LOGGER).setLevel(self.level)


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


def set_verbosity(debug: bool = False, trace: bool = False) -> int:
    return _logging_manager.set_verbosity(debug=debug, trace=trace)


def reset_verbosity() -> None:
    _logging_manager.reset_verbosity()


class SecurityAuditLogger:
    """Special logger for security-related events."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_user_operation(self, operation: str, user_id: str, system: str, success: bool):
        """Log user operations for audit trail."""
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"User operation {status}: {operation} user={user_id} system={system}")

    def log_configuration_access(self, config_file: str):
        """Log configuration file access."""
        self.logger.info(f"Configuration loaded: {config_file}")


# Global security logger instance
security_logger = SecurityAuditLogger()
