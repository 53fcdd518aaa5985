#!/usr/bin/env python3
"""
Verify the gcpublish operator setup is complete and working.

This script checks:
1. config.yaml loads
2. PowerShell is installed and the configured modules are present
3. Azure credentials can obtain a management token
4. The storage account and package container are reachable
5. The policy API can be listed at the configured subscription

Usage:
    python3 scripts/verify_setup.py
"""

import shutil
import sys

from azure.core.exceptions import AzureError, ResourceNotFoundError

from gcpublish.config import load_config
from gcpublish.environment import installed_versions
from gcpublish.errors import GcPublishError
from gcpublish.powershell import PowerShellRunner
from gcpublish.session import AzureSession


# ANSI colors
RED = '\033[0;31m'
GREEN = '\033[0;32m'
YELLOW = '\033[1;33m'
BLUE = '\033[0;34m'
NC = '\033[0m'

MANAGEMENT_SCOPE = "https://management.azure.com/.default"


def error(msg):
    """Print error and continue (don't exit)"""
    print(f"{RED}✗ {msg}{NC}")
    return False


def success(msg):
    print(f"{GREEN}✓ {msg}{NC}")
    return True


def info(msg):
    print(f"{BLUE}→ {msg}{NC}")


def warning(msg):
    print(f"{YELLOW}⚠ {msg}{NC}")


def check_config():
    """Load config.yaml"""
    info("Loading gcpublish config...")
    try:
        config = load_config()
    except (FileNotFoundError, GcPublishError) as e:
        error(str(e))
        return None
    success(f"subscription_id={config.subscription_id}")
    success(f"storage_account={config.storage_account}")
    success(f"scope={config.scope}")
    return config


def check_powershell(config):
    """Check pwsh and module versions"""
    info("Checking PowerShell...")

    if not shutil.which(config.powershell_executable):
        return error(f"{config.powershell_executable} not found on PATH")
    success(f"{config.powershell_executable} found")

    runner = PowerShellRunner(config.powershell_executable)
    all_ok = True
    for requirement in config.modules:
        try:
            versions = installed_versions(runner, requirement.name)
        except GcPublishError as e:
            all_ok = error(f"Could not query {requirement.name}: {e}")
            continue
        if requirement.is_satisfied_by(versions):
            success(f"{requirement.describe()} ({', '.join(versions)})")
        else:
            all_ok = error(f"{requirement.describe()} not satisfied (installed: {', '.join(versions) or 'none'})")

    if not all_ok:
        warning("Run: gcpublish env prepare")
    return all_ok


def check_credentials(session):
    """Obtain a management token"""
    info("Checking Azure credentials...")
    try:
        session.credential.get_token(MANAGEMENT_SCOPE)
    except AzureError as e:
        return error(f"Could not obtain a token: {e}")
    return success("Obtained management token")


def check_storage(session, config):
    """Check the package container"""
    info("Checking storage...")
    try:
        container = session.blob_service.get_container_client(config.container)
        properties = container.get_container_properties()
    except ResourceNotFoundError:
        warning(f"Container {config.container} does not exist (publish will create it)")
        return True
    except AzureError as e:
        error(f"Storage account {config.storage_account} not reachable: {e}")
        warning("Check the identity has Storage Blob Data Contributor on the account")
        return False
    success(f"Container {config.container} exists (last modified {properties.last_modified})")
    return True


def check_policy(session):
    """List a policy definition to confirm read access"""
    info("Checking policy access...")
    try:
        next(iter(session.policy.policy_definitions.list(top=1)), None)
    except AzureError as e:
        error(f"Cannot list policy definitions: {e}")
        warning("Check the identity has Resource Policy Contributor at the scope")
        return False
    return success("Policy definitions readable")


def main():
    """Run all checks"""
    print("")
    print("=" * 60)
    print("gcpublish Setup Verification")
    print("=" * 60)

    print("\nConfig:")
    print("-" * 60)
    config = check_config()
    if config is None:
        print(f"\n{RED}✗ Setup verification FAILED{NC}")
        print("Run: gcpublish init")
        sys.exit(1)

    session = AzureSession.from_config(config)
    checks = [
        ("PowerShell", check_powershell, [config]),
        ("Credentials", check_credentials, [session]),
        ("Storage", check_storage, [session, config]),
        ("Policy", check_policy, [session]),
    ]

    all_passed = True
    for name, check_func, args in checks:
        print(f"\n{name}:")
        print("-" * 60)
        if not check_func(*args):
            all_passed = False

    print("")
    print("=" * 60)
    if all_passed:
        print(f"{GREEN}✓ All checks passed!{NC}")
        print("=" * 60)
        print("")
        print("Next steps:")
        print("  gcpublish run --account-name <service-account>")
        print("")
    else:
        print(f"{RED}✗ Some checks failed{NC}")
        print("=" * 60)
        print("")
        print("Fix the errors above and run again:")
        print("  python3 scripts/verify_setup.py")
        print("")
        sys.exit(1)


if __name__ == "__main__":
    main()
