#!/usr/bin/env python3
"""
Validation script for the LDAP to Moodle sync.

Checks that the dependencies are installed, that the package modules import,
and that the offline parts (mapping, differ, sync state) work with the
example files shipped next to this script.
"""

import os
import sys
import json
import tempfile
import importlib
import subprocess
from datetime import datetime, timezone

HERE = os.path.dirname(os.path.abspath(__file__))


def check_dependency(package_name, import_name=None):
    """Check if a package/module can be imported."""
    if import_name is None:
        import_name = package_name

    try:
        importlib.import_module(import_name)
        return True, f"✓ {package_name} available"
    except ImportError as e:
        return False, f"✗ {package_name} missing: {e}"


def validate_dependencies():
    """Validate all required dependencies."""
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("cryptography", "cryptography"),
    ]
    test_dependencies = [
        ("pytest", "pytest"),
        ("pytest-mock", "pytest_mock"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        if not ok:
            all_ok = False

    print("\n  Test dependencies:")
    for pkg_name, import_name in test_dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")

    return all_ok


def validate_core_modules():
    """Validate core application modules."""
    print("\n=== Core Module Validation ===")

    modules = [
        "ldap_moodle_sync.config",
        "ldap_moodle_sync.crypto",
        "ldap_moodle_sync.differ",
        "ldap_moodle_sync.engine",
        "ldap_moodle_sync.ldap_client",
        "ldap_moodle_sync.logging_setup",
        "ldap_moodle_sync.main",
        "ldap_moodle_sync.mapping",
        "ldap_moodle_sync.models",
        "ldap_moodle_sync.moodle_client",
        "ldap_moodle_sync.notifications",
        "ldap_moodle_sync.retry",
        "ldap_moodle_sync.state",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_functionality():
    """Validate the offline parts of the sync."""
    print("\n=== Functionality Validation ===")

    try:
        from ldap_moodle_sync.differ import FieldDiffer
        from ldap_moodle_sync.mapping import ScriptMapping
        from ldap_moodle_sync.models import MoodleUser, SourceRecord
        from ldap_moodle_sync.state import SyncState

        record = SourceRecord('jdoe', dn='uid=jdoe,ou=people,dc=example,dc=edu', attributes={
            'uid': ['jdoe'], 'givenName': ['Jane'], 'sn': ['Doe'], 'mail': ['jane.doe@example.edu']
        })
        mapping = ScriptMapping(os.path.join(HERE, 'mapping.example.py'))
        candidate = MoodleUser(id=2, username='jdoe')
        mapping.apply('update', candidate, record)
        print("  ✓ Example mapping script")

        current = MoodleUser(id=2, username='jdoe', firstname='Jane', lastname='Doe',
                             email='jane@old.example.edu', suspended=False)
        patch = FieldDiffer().diff(current, candidate)
        if patch is None or patch.email != 'jane.doe@example.edu':
            raise AssertionError("differ did not report the changed email")
        print("  ✓ Field differ")

        with tempfile.TemporaryDirectory() as tmp:
            state = SyncState(os.path.join(tmp, 'state.yaml'))
            now = datetime.now(timezone.utc).replace(microsecond=0)
            state.set_last_sync('moodle-users', now)
            if state.get_last_sync('moodle-users') != now:
                raise AssertionError("sync state did not round-trip")
        print("  ✓ Sync state")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    try:
        result = subprocess.run([sys.executable, "-m", "ldap_moodle_sync.main", "--help"],
                                capture_output=True, text=True)
        if result.returncode == 0:
            print("  ✓ Help command working")
        else:
            print("  ✗ Help command failed")
            return False

        result = subprocess.run([sys.executable, "-m", "ldap_moodle_sync.main", "--health-check",
                                 "--config", os.path.join(HERE, "config.example.yaml")],
                                capture_output=True, text=True)
        try:
            health_data = json.loads(result.stdout)
        except json.JSONDecodeError:
            print("  ✗ Health check didn't return valid JSON")
            return False
        if 'status' in health_data and 'checks' in health_data:
            print(f"  ✓ Health check command working (status: {health_data['status']})")
        else:
            print("  ✗ Health check returned invalid JSON")
            return False

        return True

    except Exception as e:
        print(f"  ✗ CLI validation failed: {e}")
        return False


def main():
    """Run all validations."""
    print("LDAP Moodle Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and adjust it")
        print("  2. Copy mapping.example.py and adapt the field mapping")
        print("  3. Check the mapping with: ldap-moodle-sync --test-mapping")
        print("  4. Preview changes with: ldap-moodle-sync --dry-run")
        print("  5. Run sync: ldap-moodle-sync")
        return 0
    else:
        print("✗ Some validations failed!")
        print("Please resolve the issues above before using the application.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
