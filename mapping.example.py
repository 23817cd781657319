"""
Example mapping script for ldap-moodle-sync.

`user` is a ldap_moodle_sync.models.MoodleUser whose username (and id for
updates) is already set; `entry` is a ldap_moodle_sync.models.SourceRecord.
Leave a field unset (None) to keep whatever Moodle holds for it.
"""


def _common(user, entry):
    user.firstname = entry.get('givenName')
    user.lastname = entry.get('sn')
    user.email = entry.get('mail')
    user.idnumber = entry.get('employeeNumber')
    user.department = entry.get('ou')
    user.suspended = False

    faculty = entry.get('ou')
    if faculty:
        user.add_custom_field('faculty', faculty)


def create(user, entry):
    _common(user, entry)
    user.lang = (entry.get('preferredLanguage') or 'en')[:2].lower()
    user.mailformat = 1


def update(user, entry):
    _common(user, entry)


def test(user, entry):
    create(user, entry)
