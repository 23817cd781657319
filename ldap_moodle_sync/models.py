"""
Record types shared by the LDAP reader, the Moodle client and the sync engine.

The Moodle user is described by an explicit field-descriptor table rather than
by attribute introspection, so the differ and the request encoder both work off
the same list of fields and the same normalization rules.
"""

import logging
from typing import Dict, List, Any, Optional, Iterable

logger = logging.getLogger(__name__)


def normalize_identifier(value: Any) -> str:
    """Normalize a login identifier for use as the join key on both sides."""
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ''
    if value is None:
        return ''
    return str(value).strip().lower()


def _to_bool(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ('1', 'true', 'yes', 'on'):
            return True
        if text in ('0', 'false', 'no', 'off', ''):
            return False
    return value


def _to_int(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return value


def _to_str(value: Any) -> Any:
    if isinstance(value, bool):
        return '1' if value else '0'
    return str(value)


class FieldDescriptor:
    """
    Describes one scalar field of a Moodle user.

    Attributes:
        name: Attribute name on MoodleUser and parameter name on the wire
        kind: 'str', 'int' or 'bool'
        writable: True if the field is sent on create/update and compared by the differ
    """

    _NORMALIZERS = {
        'str': _to_str,
        'int': _to_int,
        'bool': _to_bool,
    }

    def __init__(self, name: str, kind: str = 'str', writable: bool = True):
        if kind not in self._NORMALIZERS:
            raise ValueError(f"Unknown field kind '{kind}' for field {name}")
        self.name = name
        self.kind = kind
        self.writable = writable

    def get(self, user: 'MoodleUser') -> Any:
        return getattr(user, self.name)

    def set(self, user: 'MoodleUser', value: Any):
        setattr(user, self.name, value)

    def normalize(self, value: Any) -> Any:
        """Bring a value into the canonical form used for comparison."""
        if value is None:
            return None
        return self._NORMALIZERS[self.kind](value)

    def serialize(self, value: Any) -> str:
        """Encode a value as a Moodle REST form parameter."""
        value = self.normalize(value)
        if self.kind == 'bool' and isinstance(value, bool):
            return '1' if value else '0'
        return str(value)

    def __repr__(self):
        return f"FieldDescriptor({self.name!r}, {self.kind!r}, writable={self.writable})"


# Scalar fields of core_user_get_users / core_user_create_users / core_user_update_users.
# Read-only fields are parsed from responses but never sent or compared.
USER_FIELDS: List[FieldDescriptor] = [
    FieldDescriptor('username'),
    FieldDescriptor('auth'),
    FieldDescriptor('firstname'),
    FieldDescriptor('lastname'),
    FieldDescriptor('email'),
    FieldDescriptor('idnumber'),
    FieldDescriptor('institution'),
    FieldDescriptor('department'),
    FieldDescriptor('phone1'),
    FieldDescriptor('phone2'),
    FieldDescriptor('address'),
    FieldDescriptor('city'),
    FieldDescriptor('country'),
    FieldDescriptor('lang'),
    FieldDescriptor('timezone'),
    FieldDescriptor('theme'),
    FieldDescriptor('calendartype'),
    FieldDescriptor('description'),
    FieldDescriptor('mailformat', 'int'),
    FieldDescriptor('suspended', 'bool'),
    FieldDescriptor('fullname', writable=False),
    FieldDescriptor('confirmed', 'bool', writable=False),
    FieldDescriptor('firstaccess', 'int', writable=False),
    FieldDescriptor('lastaccess', 'int', writable=False),
    FieldDescriptor('descriptionformat', 'int', writable=False),
    FieldDescriptor('profileimageurlsmall', writable=False),
    FieldDescriptor('profileimageurl', writable=False),
]

FIELDS_BY_NAME: Dict[str, FieldDescriptor] = {field.name: field for field in USER_FIELDS}

WRITABLE_FIELDS: List[FieldDescriptor] = [field for field in USER_FIELDS if field.writable]


class MoodleUser:
    """
    A Moodle user account, or a sparse patch of one.

    Every scalar listed in USER_FIELDS is an attribute defaulting to None. A None
    value means "not set" and is never sent to Moodle. Custom profile fields are
    kept as a dict of shortname to string value.
    """

    def __init__(self, id: Optional[int] = None, customfields: Optional[Dict[str, str]] = None,
                 **fields):
        self.id = id
        for field in USER_FIELDS:
            setattr(self, field.name, None)
        for name, value in fields.items():
            if name not in FIELDS_BY_NAME:
                raise AttributeError(f"Unknown Moodle user field: {name}")
            setattr(self, name, value)
        self.customfields = {}
        for shortname, value in (customfields or {}).items():
            self.add_custom_field(shortname, value)

    def add_custom_field(self, shortname: str, value: Any):
        """Set a custom profile field, replacing any previous value for the shortname."""
        if not shortname:
            raise ValueError("Custom field shortname must not be empty")
        if value is None:
            self.customfields.pop(shortname, None)
            return
        self.customfields[shortname] = _to_str(value)

    def set_field(self, name: str, value: Any):
        """Set a scalar field by name, rejecting names outside the descriptor table."""
        if name not in FIELDS_BY_NAME:
            raise AttributeError(f"Unknown Moodle user field: {name}")
        setattr(self, name, value)

    @property
    def login(self) -> str:
        return normalize_identifier(self.username)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'MoodleUser':
        """Build a user from a core_user_get_users response entry."""
        user = cls(id=_to_int(data['id']) if data.get('id') is not None else None)
        for field in USER_FIELDS:
            if data.get(field.name) is not None:
                field.set(user, field.normalize(data[field.name]))
        for custom in data.get('customfields') or []:
            shortname = custom.get('shortname')
            if not shortname:
                logger.debug(f"Ignoring custom field without shortname for user {data.get('username')}")
                continue
            user.add_custom_field(shortname, custom.get('value'))
        return user

    def to_params(self, prefix: str, include_id: bool = True) -> Dict[str, str]:
        """
        Encode the set fields as Moodle REST form parameters.

        Args:
            prefix: Parameter prefix, e.g. 'users[0]'
            include_id: Whether to send the Moodle id (required for updates)

        Returns:
            Ordered dictionary of parameter name to string value
        """
        params = {}
        if include_id and self.id is not None:
            params[f"{prefix}[id]"] = str(self.id)
        for field in WRITABLE_FIELDS:
            value = field.get(self)
            if value is not None:
                params[f"{prefix}[{field.name}]"] = field.serialize(value)
        for index, (shortname, value) in enumerate(self.customfields.items()):
            params[f"{prefix}[customfields][{index}][type]"] = shortname
            params[f"{prefix}[customfields][{index}][value]"] = value
        return params

    def to_dict(self) -> Dict[str, Any]:
        """Return the set fields as a plain dictionary (for logging and JSON output)."""
        data = {}
        if self.id is not None:
            data['id'] = self.id
        for field in USER_FIELDS:
            value = field.get(self)
            if value is not None:
                data[field.name] = value
        if self.customfields:
            data['customfields'] = dict(self.customfields)
        return data

    def changed_fields(self) -> List[str]:
        """Names of the writable fields and custom fields set on this (patch) object."""
        names = [field.name for field in WRITABLE_FIELDS if field.get(self) is not None]
        names.extend(f"customfields.{shortname}" for shortname in self.customfields)
        return names

    def __eq__(self, other):
        if not isinstance(other, MoodleUser):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"MoodleUser({self.to_dict()!r})"


class SourceRecord:
    """
    One LDAP entry read for one sync run.

    Attributes are kept as returned by the directory: attribute name to list of
    values, in the order the server sent them.
    """

    def __init__(self, identifier: str, dn: str = '', attributes: Optional[Dict[str, Any]] = None):
        self.identifier = normalize_identifier(identifier)
        self.dn = dn
        self.attributes = {}
        for name, values in (attributes or {}).items():
            if values is None:
                continue
            if not isinstance(values, (list, tuple)):
                values = [values]
            self.attributes[name] = list(values)

    def _lookup(self, name: str) -> Optional[List[Any]]:
        if name in self.attributes:
            return self.attributes[name]
        # LDAP attribute names are case-insensitive
        lowered = name.lower()
        for key, values in self.attributes.items():
            if key.lower() == lowered:
                return values
        return None

    def get(self, name: str, default: Any = None) -> Any:
        """Return the first value of an attribute, or default when it is absent or empty."""
        values = self._lookup(name)
        if not values:
            return default
        return values[0]

    def get_all(self, name: str) -> List[Any]:
        """Return every value of an attribute (empty list when absent)."""
        return list(self._lookup(name) or [])

    def has(self, name: str) -> bool:
        return bool(self._lookup(name))

    def names(self) -> Iterable[str]:
        return self.attributes.keys()

    def __repr__(self):
        return f"SourceRecord({self.identifier!r}, dn={self.dn!r})"
