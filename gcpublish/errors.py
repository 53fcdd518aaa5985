"""
Error classes for gcpublish steps.

The taxonomy mirrors how an operator has to react:
- PreconditionError: something a previous step should have produced is missing.
  Fatal; the message names the path or step to re-run.
- PlatformError: an Azure call failed. Fatal; the platform message is kept verbatim.
- AccessDeniedError: the local evaluation engine hit a locked cache. Recovered
  once by clearing the cache, fatal on the second occurrence.

Non-compliance is not an error. Steps report it as a falsy status and a warning.
"""

from pathlib import Path
from typing import Iterable, List


class GcPublishError(Exception):
    """Base exception for gcpublish."""
    pass


class ConfigError(GcPublishError):
    """Configuration validation error."""
    pass


class PreconditionError(GcPublishError):
    """
    A required file, module or resource is missing.

    Examples:
    - Compiled MOF not found (re-run `gcpublish compile`)
    - Package archive not found (re-run `gcpublish package`)
    - PowerShell executable or module not installed
    """
    pass


class PackageExistsError(PreconditionError):
    """Package archive already exists and overwrite was not requested."""
    pass


class PlatformError(GcPublishError):
    """
    A call into the Azure platform failed.

    The underlying SDK message is surfaced unchanged so the operator sees
    exactly what the service reported.
    """
    pass


class AccessDeniedError(GcPublishError):
    """Access to a path was denied during local evaluation."""

    def __init__(self, message: str, path: Path | None = None):
        super().__init__(message)
        self.path = path


class CacheClearError(GcPublishError):
    """One or more engine cache directories could not be removed."""

    def __init__(self, failed_paths: Iterable[Path]):
        self.failed_paths: List[Path] = list(failed_paths)
        joined = ", ".join(str(p) for p in self.failed_paths)
        super().__init__(f"Could not clear engine cache: {joined}")


class PowerShellError(GcPublishError):
    """A PowerShell invocation exited with a non-zero code or returned unusable output."""

    def __init__(self, message: str, returncode: int, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
