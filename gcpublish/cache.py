"""
Local compliance-cache invalidation.

The GuestConfiguration module extracts packages into a cache under each
installed module version and does not always overwrite a previous
extraction cleanly (file locks held by an earlier run, antivirus scans).
Before a local evaluation, and after an access-denied failure that points
into that cache, the cached extraction for the package is removed.

Removal strips read-only attributes first. If deletion still fails, the
configured AccessEscalator takes ownership of the tree and grants the
current user full control, and deletion is retried once. The escalation is
platform specific and kept behind the AccessEscalator protocol:
- WindowsAclEscalator: takeown + icacls
- PosixPermissionEscalator: recursive owner rwx
- NoOpEscalator: does nothing (the retry then fails as before)
"""

import getpass
import logging
import os
import re
import shutil
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Protocol, Tuple, TypeVar, runtime_checkable

from gcpublish.environment import parse_version
from gcpublish.errors import AccessDeniedError, CacheClearError, GcPublishError, PowerShellError


logger = logging.getLogger(__name__)

T = TypeVar("T")

ENGINE_MODULE = "GuestConfiguration"
DEFAULT_CACHE_SUBDIR = "gcworker/packages"

ACCESS_DENIED_PATTERN = re.compile(
    r"access (to the path .*)?is denied|unauthorizedaccess|permission denied",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class PackageId:
    """Logical package name plus version."""

    name: str
    version: str

    @property
    def key(self) -> str:
        return f"{self.name}-{self.version}"

    @property
    def cache_keys(self) -> Tuple[str, str]:
        """Directory names the engine may have used for this package."""
        return (self.name, self.key)

    def __str__(self) -> str:
        return self.key


def discover_engine_dirs(module_roots: Iterable[Path], module_name: str = ENGINE_MODULE) -> List[Path]:
    """
    Find every installed version directory of the evaluation engine module.

    Args:
        module_roots: PowerShell module roots (entries of $PSModulePath)
        module_name: Engine module name

    Returns:
        Version directories such as <root>/GuestConfiguration/4.5.0, oldest first
    """
    found = []
    for root in module_roots:
        base = Path(root) / module_name
        if not base.is_dir():
            continue
        for child in base.iterdir():
            if child.is_dir() and child.name[:1].isdigit():
                found.append(child)
    return sorted(found, key=lambda p: (parse_version(p.name), str(p)))


# =============================================================================
# Access escalation
# =============================================================================

@runtime_checkable
class AccessEscalator(Protocol):
    """Grants the current user full control over a directory tree."""

    def grant_full_control(self, path: Path) -> None:
        """
        Take ownership of path recursively and grant full control.

        Raises:
            AccessDeniedError: If escalation fails
        """
        ...


class WindowsAclEscalator:
    """Escalates with takeown and icacls."""

    def __init__(self, user: Optional[str] = None, run: Optional[Callable[..., Any]] = None):
        self.user = user
        self._run = run or subprocess.run

    def _current_user(self) -> str:
        if self.user:
            return self.user
        domain = os.environ.get("USERDOMAIN")
        name = os.environ.get("USERNAME") or getpass.getuser()
        return f"{domain}\\{name}" if domain else name

    def grant_full_control(self, path: Path) -> None:
        commands = [
            ["takeown", "/F", str(path), "/R", "/D", "Y"],
            ["icacls", str(path), "/grant", f"{self._current_user()}:(OI)(CI)F", "/T", "/C", "/Q"],
        ]
        for command in commands:
            result = self._run(command, capture_output=True, text=True, check=False)
            if result.returncode != 0:
                detail = (result.stderr or result.stdout or "").strip()
                raise AccessDeniedError(
                    f"{command[0]} failed on {path} (exit {result.returncode}): {detail}",
                    path,
                )


class PosixPermissionEscalator:
    """Adds owner read/write/execute to every entry in the tree."""

    def grant_full_control(self, path: Path) -> None:
        def fail(entry, error):
            raise AccessDeniedError(f"Could not change permissions on {entry}: {error}", path)

        add_owner_permissions(path, fail)


class NoOpEscalator:
    """Escalation disabled."""

    def grant_full_control(self, path: Path) -> None:
        logger.debug(f"Access escalation disabled, leaving {path} unchanged")


def default_escalator() -> AccessEscalator:
    if os.name == "nt":
        return WindowsAclEscalator()
    return PosixPermissionEscalator()


def add_owner_permissions(path: Path, on_error: Callable[[str, OSError], None]) -> None:
    """
    Give the owner access to every entry under path.

    Directories are unlocked before the walk descends into them, so a
    directory with mode 000 is still listed and its contents reached.
    on_error receives entries that could not be changed or listed.
    """
    def chmod(entry: str, extra: int) -> None:
        if os.path.islink(entry):
            return
        try:
            os.chmod(entry, os.stat(entry).st_mode | stat.S_IWRITE | extra)
        except OSError as e:
            on_error(entry, e)

    chmod(str(path), stat.S_IRWXU)
    for root, dirs, files in os.walk(path, onerror=lambda e: on_error(e.filename, e)):
        for name in dirs:
            chmod(os.path.join(root, name), stat.S_IRWXU)
        for name in files:
            chmod(os.path.join(root, name), stat.S_IRUSR | stat.S_IWUSR)


def strip_restrictive_attributes(path: Path) -> None:
    """Clear read-only attributes (Windows) / add owner write (POSIX) recursively."""
    def skip(entry, error):
        logger.debug(f"Could not clear attributes on {entry}: {error}")

    add_owner_permissions(path, skip)


# =============================================================================
# Invalidation
# =============================================================================

class CacheInvalidator:
    """
    Removes cached extractions of a package from every engine install.

    Args:
        engine_dirs: Engine version directories (see discover_engine_dirs)
        cache_subdir: Packages cache location relative to an engine directory
        escalator: AccessEscalator used when plain deletion fails
        remove: Tree removal function, shutil.rmtree by default
    """

    def __init__(
        self,
        engine_dirs: Iterable[Path],
        cache_subdir: str = DEFAULT_CACHE_SUBDIR,
        escalator: Optional[AccessEscalator] = None,
        remove: Optional[Callable[[Path], None]] = None,
    ):
        self.engine_dirs = [Path(d) for d in engine_dirs]
        self.cache_subdir = cache_subdir
        self.escalator = escalator or default_escalator()
        self._remove = remove or shutil.rmtree

    def cache_roots(self) -> List[Path]:
        return [engine_dir / self.cache_subdir for engine_dir in self.engine_dirs]

    def cache_paths(self, package_id: PackageId) -> List[Path]:
        """Existing cache directories for package_id."""
        paths = []
        for cache_root in self.cache_roots():
            for key in package_id.cache_keys:
                candidate = cache_root / key
                if candidate.is_dir():
                    paths.append(candidate)
        return paths

    def clear(self, package_id: PackageId) -> List[Path]:
        """
        Delete every cached extraction of package_id.

        Returns:
            Directories that were removed (empty when nothing was cached)

        Raises:
            CacheClearError: If any directory survived escalation; lists all of them
        """
        cleared: List[Path] = []
        failed: List[Path] = []

        for path in self.cache_paths(package_id):
            if self._remove_tree(path):
                cleared.append(path)
            else:
                failed.append(path)

        if failed:
            logger.error(
                f"Failed to clear {len(failed)} cache director{'y' if len(failed) == 1 else 'ies'}",
                extra={"event": "cache_clear_failed", "metadata": {"failed": [str(p) for p in failed]}},
            )
            raise CacheClearError(failed)

        if cleared:
            logger.info(
                f"Cleared {len(cleared)} cached extraction(s) of {package_id}",
                extra={"event": "cache_cleared", "metadata": {"cleared": [str(p) for p in cleared]}},
            )
        return cleared

    def _remove_tree(self, path: Path) -> bool:
        strip_restrictive_attributes(path)
        try:
            self._remove(path)
            return True
        except OSError as e:
            if not path.exists():
                return True
            logger.warning(f"Could not remove {path}: {e}. Taking ownership and retrying")

        try:
            self.escalator.grant_full_control(path)
            self._remove(path)
        except (OSError, GcPublishError) as e:
            if not path.exists():
                return True
            logger.error(f"Could not remove {path} after escalation: {e}")
            return False
        return True


# =============================================================================
# Evaluation retry
# =============================================================================

def _normalize(text: str) -> str:
    return text.replace("\\", "/").lower()


def is_access_denied(error: BaseException, cache_roots: Iterable[Path]) -> bool:
    """
    True when error is an access-denied failure that references an engine cache path.
    """
    parts = [str(error)]
    if isinstance(error, PowerShellError) and error.stderr:
        parts.append(error.stderr)
    if isinstance(error, AccessDeniedError) and error.path is not None:
        parts.append(str(error.path))
    if isinstance(error, OSError) and error.filename:
        parts.append(str(error.filename))
    text = " ".join(parts)

    denied = isinstance(error, (PermissionError, AccessDeniedError)) or bool(ACCESS_DENIED_PATTERN.search(text))
    if not denied:
        return False

    normalized = _normalize(text)
    return any(_normalize(str(root)) in normalized for root in cache_roots)


def evaluate_with_retry(
    evaluate: Callable[[], T],
    invalidator: CacheInvalidator,
    package_id: PackageId,
) -> T:
    """
    Run a local evaluation, recovering once from a locked engine cache.

    An access-denied failure that references the cache clears the cache for
    package_id and runs the evaluation a second time. Any other failure, a
    failed cache clear, or a second failure propagates.
    """
    try:
        return evaluate()
    except (OSError, GcPublishError) as e:
        if not is_access_denied(e, invalidator.cache_roots()):
            raise
        logger.warning(
            f"Evaluation of {package_id} hit a locked cache, clearing and retrying once: {e}",
            extra={"event": "evaluation_retry", "metadata": {"package": str(package_id)}},
        )

    invalidator.clear(package_id)
    return evaluate()
