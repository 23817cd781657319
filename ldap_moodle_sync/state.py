"""
Persistent sync state for incremental LDAP fetches.

Stores one watermark timestamp per sync domain (e.g. "moodle-users") in a small
YAML file. The watermark is read once at the start of a run and written once at
the end of a successful, non-dry run.
"""

import os
import logging
import tempfile
from datetime import datetime, timezone
from typing import Dict, Optional

import yaml

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class StateError(Exception):
    """Raised when the state file cannot be read or written."""
    pass


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class SyncState:
    """
    File-backed watermark store.

    Watermarks never move backwards: committing a timestamp older than the stored
    one keeps the stored value.
    """

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise StateError(f"Failed to read sync state {self.path}: {e}")
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StateError(f"Sync state {self.path} is not a mapping")
        return data

    def _write(self, data: Dict[str, str]):
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.sync_state_', suffix='.yaml')
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                yaml.safe_dump(data, f, default_flow_style=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StateError(f"Failed to write sync state {self.path}: {e}")

    def get_last_sync(self, name: str) -> datetime:
        """
        Return the stored watermark for a sync domain.

        Args:
            name: Sync domain name

        Returns:
            Timezone-aware UTC timestamp, or the epoch when nothing was stored yet
        """
        value = self._read().get(name)
        if value is None:
            logger.info(f"No previous sync timestamp for '{name}', using epoch")
            return EPOCH
        try:
            timestamp = _parse_timestamp(value)
        except ValueError as e:
            raise StateError(f"Invalid timestamp for '{name}' in {self.path}: {e}")
        logger.debug(f"Last sync timestamp for '{name}': {timestamp.isoformat()}")
        return timestamp

    def get_watermark(self, name: str, full_sync: bool = False) -> datetime:
        """Watermark to fetch from: the epoch for a full sync, else the stored value."""
        if full_sync:
            logger.info("Full sync requested, ignoring stored timestamp")
            return EPOCH
        return self.get_last_sync(name)

    def set_last_sync(self, name: str, timestamp: Optional[datetime] = None) -> datetime:
        """
        Persist the watermark for a sync domain.

        Args:
            name: Sync domain name
            timestamp: New watermark (defaults to now)

        Returns:
            The watermark actually stored
        """
        timestamp = _parse_timestamp(timestamp or datetime.now(timezone.utc))
        data = self._read()

        previous = data.get(name)
        if previous is not None:
            try:
                previous_ts = _parse_timestamp(previous)
            except ValueError:
                previous_ts = None
            if previous_ts is not None and previous_ts > timestamp:
                logger.warning(f"Not moving sync timestamp for '{name}' backwards "
                               f"({previous_ts.isoformat()} > {timestamp.isoformat()})")
                return previous_ts

        data[name] = timestamp.isoformat()
        self._write(data)
        logger.info(f"Stored sync timestamp for '{name}': {data[name]}")
        return timestamp
