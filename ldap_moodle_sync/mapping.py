"""
Mapping of LDAP entries onto Moodle users.

The sync engine never interprets LDAP attributes itself. It hands an empty (or
id-only) MoodleUser plus the SourceRecord to a mapping strategy, which fills in
the Moodle fields. Two strategies are provided: a user-supplied Python script
and a declarative attribute table from the configuration file.
"""

import os
import logging
import importlib.util
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

from ldap_moodle_sync.models import MoodleUser, SourceRecord, FIELDS_BY_NAME

logger = logging.getLogger(__name__)

MODES = ('create', 'update', 'test')


class MappingError(Exception):
    """Raised when a mapping cannot be loaded or fails for a record."""
    pass


class MappingStrategy(ABC):
    """Fills a MoodleUser from a SourceRecord."""

    @abstractmethod
    def apply(self, mode: str, user: MoodleUser, record: SourceRecord) -> None:
        """
        Populate `user` in place.

        Args:
            mode: 'create' for a new user, 'update' for a candidate compared
                against an existing user, 'test' for a dry inspection
            user: Target shape; username (and id for updates) already set
            record: LDAP entry for the user
        """
        pass


class ScriptMapping(MappingStrategy):
    """
    Mapping implemented by a Python script.

    The script defines module-level functions named after the modes:

        def create(user, entry): ...
        def update(user, entry): ...
        def test(user, entry): ...      # optional, falls back to create

    `user` is a MoodleUser and `entry` a SourceRecord.
    """

    def __init__(self, script_path: str):
        self.script_path = script_path
        self.module = self._load(script_path)

    @staticmethod
    def _load(script_path: str):
        if not os.path.isfile(script_path):
            raise MappingError(f"Mapping script not found: {script_path}")

        spec = importlib.util.spec_from_file_location('ldap_moodle_sync_mapping', script_path)
        if spec is None or spec.loader is None:
            raise MappingError(f"Cannot load mapping script: {script_path}")

        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            raise MappingError(f"Failed to load mapping script {script_path}: {e}")

        for mode in ('create', 'update'):
            if not callable(getattr(module, mode, None)):
                raise MappingError(f"Mapping script {script_path} does not define {mode}(user, entry)")

        logger.info(f"Loaded mapping script {script_path}")
        return module

    def apply(self, mode: str, user: MoodleUser, record: SourceRecord) -> None:
        if mode not in MODES:
            raise MappingError(f"Unknown mapping mode: {mode}")

        function = getattr(self.module, mode, None)
        if function is None and mode == 'test':
            function = self.module.create

        username = user.username
        try:
            function(user, record)
        except Exception as e:
            raise MappingError(f"Mapping script {mode}() failed for {record.identifier}: {e}")

        if user.username != username:
            raise MappingError(f"Mapping script {mode}() changed username of {record.identifier} "
                               f"to {user.username!r}; username is taken from the identifier attribute")


class AttributeMapping(MappingStrategy):
    """
    Declarative mapping from configuration.

    Example::

        mapping:
          attributes:
            firstname: givenName
            lastname: sn
            email: mail
          custom_fields:
            studentid: employeeNumber
          defaults:
            lang: de
            mailformat: 1

    `defaults` are only applied when creating users so that later changes made
    in Moodle are not overwritten on every run.
    """

    def __init__(self, config: Dict[str, Any]):
        self.attributes = dict(config.get('attributes') or {})
        self.custom_fields = dict(config.get('custom_fields') or {})
        self.defaults = dict(config.get('defaults') or {})

        unknown = [name for name in list(self.attributes) + list(self.defaults)
                   if name not in FIELDS_BY_NAME]
        if unknown:
            raise MappingError(f"Unknown Moodle user fields in mapping: {', '.join(sorted(unknown))}")

        read_only = [name for name in self.attributes if not FIELDS_BY_NAME[name].writable]
        if read_only:
            raise MappingError(f"Read-only Moodle user fields in mapping: {', '.join(sorted(read_only))}")

        if 'username' in self.attributes:
            raise MappingError("username is taken from the identifier attribute and cannot be mapped")

    def apply(self, mode: str, user: MoodleUser, record: SourceRecord) -> None:
        if mode not in MODES:
            raise MappingError(f"Unknown mapping mode: {mode}")

        if mode in ('create', 'test'):
            for name, value in self.defaults.items():
                user.set_field(name, value)

        for name, ldap_attribute in self.attributes.items():
            value = record.get(ldap_attribute)
            if value is not None:
                user.set_field(name, _as_text(value))

        for shortname, ldap_attribute in self.custom_fields.items():
            value = record.get(ldap_attribute)
            if value is not None:
                user.add_custom_field(shortname, _as_text(value))


def _as_text(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return value


def create_mapping(config: Optional[Dict[str, Any]]) -> MappingStrategy:
    """
    Build the mapping strategy configured under sync.mapping.

    Args:
        config: Mapping configuration; either {'script': path} or an attribute table

    Returns:
        MappingStrategy instance
    """
    config = config or {}
    script = config.get('script')
    if script:
        return ScriptMapping(script)
    if config.get('attributes') or config.get('custom_fields'):
        return AttributeMapping(config)
    raise MappingError("No mapping configured: set sync.mapping.script or sync.mapping.attributes")
