"""
Minimal patch computation between a Moodle user and its LDAP-derived candidate.
"""

import logging
from typing import Dict, List, Optional

from ldap_moodle_sync.models import MoodleUser, FieldDescriptor, WRITABLE_FIELDS

logger = logging.getLogger(__name__)


class FieldDiffer:
    """
    Computes the sparse update needed to bring a Moodle user in line with a candidate.

    Only writable fields are compared. A field left unset (None) on the candidate
    is treated as "not sourced" and never clears the value held by Moodle. Values
    are normalized per field kind before comparison, so '1', 1 and True are the
    same suspended flag.
    """

    def __init__(self, fields: Optional[List[FieldDescriptor]] = None):
        self.fields = fields if fields is not None else WRITABLE_FIELDS

    def diff(self, current: MoodleUser, candidate: MoodleUser) -> Optional[MoodleUser]:
        """
        Compare two users.

        Args:
            current: User as read from Moodle (must carry its id)
            candidate: User as built from the LDAP record by the mapping step

        Returns:
            Patch holding the id of current plus every differing field, or None
            when nothing differs
        """
        patch = MoodleUser(id=current.id)
        changed = False

        for field in self.fields:
            wanted = field.normalize(field.get(candidate))
            if wanted is None:
                continue
            present = field.normalize(field.get(current))
            if wanted != present:
                field.set(patch, wanted)
                changed = True
                logger.debug(f"User {current.username}: {field.name} {present!r} -> {wanted!r}")

        custom_changes = self.diff_custom_fields(current.customfields, candidate.customfields)
        if custom_changes:
            patch.customfields.update(custom_changes)
            changed = True
            logger.debug(f"User {current.username}: custom fields changed {sorted(custom_changes)}")

        return patch if changed else None

    @staticmethod
    def diff_custom_fields(current: Dict[str, str], candidate: Dict[str, str]) -> Dict[str, str]:
        """
        Custom fields to send: changed values and fields new in the candidate.

        Fields only present on the Moodle side are left untouched.
        """
        changes = {}
        for shortname, value in candidate.items():
            if value is None:
                continue
            if shortname not in current or str(current[shortname]) != str(value):
                changes[shortname] = str(value)
        return changes
