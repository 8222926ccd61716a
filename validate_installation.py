#!/usr/bin/env python3
"""
Validation script for Directory Sync.

Checks that dependencies are installed, that the package imports, and that
planning works offline against an in-memory snapshot.
"""

import sys
import subprocess
import importlib


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
        ("httpx", "httpx"),
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
        all_ok = all_ok and ok

    print("\n  Test dependencies:")
    for pkg_name, import_name in test_dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")

    return all_ok


def validate_core_modules():
    """Validate core application modules."""
    print("\n=== Core Module Validation ===")

    modules = [
        "directory_sync.config",
        "directory_sync.csv_loader",
        "directory_sync.delta",
        "directory_sync.protection",
        "directory_sync.managers",
        "directory_sync.reconciler",
        "directory_sync.gateway.graph",
        "directory_sync.main",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        all_ok = all_ok and ok

    return all_ok


def validate_planning():
    """Plan a small reconciliation without contacting a directory."""
    print("\n=== Planning Validation ===")

    try:
        from directory_sync.delta import calculate_delta
        from directory_sync.models import DesiredRecord, ObservedRecord
        from directory_sync.protection import AccountProtectionFilter, EmailPatternRule
        from directory_sync.reconciler import generate_password
        from directory_sync.report import generate_summary

        desired = [DesiredRecord('new@example.com'), DesiredRecord('kept@example.com')]
        observed = [
            ObservedRecord('1', 'kept@example.com'),
            ObservedRecord('2', 'old@example.com'),
            ObservedRecord('3', 'admin@example.com'),
        ]
        protection = AccountProtectionFilter([EmailPatternRule(['admin@*'])])
        delta = calculate_delta(desired, [], observed, protection)

        if generate_summary(delta) != 'CREATE: 1 | DELETE: 1 | UNCHANGED: 1' or len(delta.protected) != 1:
            print(f"  ✗ Unexpected plan: {generate_summary(delta)}")
            return False
        print("  ✓ Delta calculation and protection")

        generate_password()
        print("  ✓ Password generation")
        return True

    except Exception as e:
        print(f"  ✗ Planning validation failed: {e}")
        return False


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    result = subprocess.run([sys.executable, "-m", "directory_sync.main", "--help"],
                            capture_output=True, text=True)
    if result.returncode != 0:
        print("  ✗ Help command failed")
        return False
    print("  ✓ Help command working")

    result = subprocess.run([sys.executable, "-m", "directory_sync.main", "--dry-run",
                             "--config", "/nonexistent/config.yaml"],
                            capture_output=True, text=True)
    if result.returncode != 2:
        print(f"  ✗ Missing configuration returned exit code {result.returncode}, expected 2")
        return False
    print("  ✓ Configuration errors reported with exit code 2")
    return True


def main():
    """Run all validations."""
    print("Directory Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_planning(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Configure the directory and protection settings in config.yaml")
        print("  2. Test with: python -m directory_sync.main --health-check")
        print("  3. Preview with: python -m directory_sync.main --dry-run")
        print("  4. Apply with: python -m directory_sync.main --force")
        return 0

    print("✗ Some validations failed!")
    print("Please resolve the issues above before using the application.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
