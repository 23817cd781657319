"""
LDAP Moodle Sync - Keep Moodle user accounts in line with an LDAP directory.

This package reads users from LDAP, compares them with the directory-managed
users of a Moodle site and creates, updates or suspends Moodle accounts through
the Moodle REST web service.
"""

__version__ = "1.0.0"
__author__ = "LDAP Sync Team"
