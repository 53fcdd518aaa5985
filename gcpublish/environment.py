"""
Environment preparation shared by every step.

Each step declares which PowerShell modules it needs; the CLI resolves the
version requirements from config once and calls ensure_modules() before the
step runs. A module is installed only when no installed version satisfies
the requirement.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from gcpublish.errors import PreconditionError
from gcpublish.powershell import PowerShellRunner, ps_quote


logger = logging.getLogger(__name__)


def parse_version(version: str) -> Tuple[int, ...]:
    """Parse a PowerShell module version ("2.0.7", "4.5.0-preview1") into a comparable tuple."""
    core = version.strip().split("-", 1)[0]
    parts = []
    for piece in core.split("."):
        match = re.match(r"\d+", piece)
        parts.append(int(match.group()) if match else 0)
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


@dataclass(frozen=True)
class ModuleRequirement:
    """A PowerShell module dependency with an optional exact or minimum version."""

    name: str
    required_version: Optional[str] = None
    minimum_version: Optional[str] = None

    def __post_init__(self):
        if self.required_version and self.minimum_version:
            raise ValueError(
                f"Module {self.name}: required_version and minimum_version are mutually exclusive"
            )

    def is_satisfied_by(self, installed_versions: Iterable[str]) -> bool:
        installed = [parse_version(v) for v in installed_versions]
        if not installed:
            return False
        if self.required_version:
            return parse_version(self.required_version) in installed
        if self.minimum_version:
            minimum = parse_version(self.minimum_version)
            return any(v >= minimum for v in installed)
        return True

    def describe(self) -> str:
        if self.required_version:
            return f"{self.name} =={self.required_version}"
        if self.minimum_version:
            return f"{self.name} >={self.minimum_version}"
        return self.name


def installed_versions(runner: PowerShellRunner, name: str) -> List[str]:
    """List installed versions of a module (empty when not installed)."""
    data = runner.run_json(
        f"@(Get-Module -ListAvailable -Name {ps_quote(name)} | "
        "ForEach-Object { $_.Version.ToString() })"
    )
    if data is None:
        return []
    if isinstance(data, str):
        return [data]
    return [str(v) for v in data]


def install_module(runner: PowerShellRunner, requirement: ModuleRequirement) -> None:
    script = (
        f"Install-Module -Name {ps_quote(requirement.name)} -Scope CurrentUser "
        "-Force -AllowClobber -Repository PSGallery"
    )
    if requirement.required_version:
        script += f" -RequiredVersion {ps_quote(requirement.required_version)}"
    elif requirement.minimum_version:
        script += f" -MinimumVersion {ps_quote(requirement.minimum_version)}"
    runner.run(script)


def ensure_modules(runner: PowerShellRunner, requirements: Iterable[ModuleRequirement]) -> List[str]:
    """
    Make sure every requirement is satisfied, installing what is missing.

    Args:
        runner: PowerShell runner
        requirements: Modules to check, in order

    Returns:
        Names of the modules that were installed by this call

    Raises:
        PreconditionError: If a module is still unsatisfied after installation
    """
    installed_now = []
    for requirement in requirements:
        if requirement.is_satisfied_by(installed_versions(runner, requirement.name)):
            logger.debug(f"Module {requirement.describe()} already installed")
            continue

        logger.info(
            f"Installing PowerShell module {requirement.describe()}",
            extra={"event": "module_install", "metadata": {"module": requirement.name}},
        )
        install_module(runner, requirement)

        if not requirement.is_satisfied_by(installed_versions(runner, requirement.name)):
            raise PreconditionError(
                f"PowerShell module {requirement.describe()} is not available after installation"
            )
        installed_now.append(requirement.name)

    return installed_now


def module_base(runner: PowerShellRunner, name: str) -> Optional[Path]:
    """Install folder of the newest installed version of a module, or None."""
    data = runner.run_json(
        f"Get-Module -ListAvailable -Name {ps_quote(name)} | "
        "Sort-Object Version -Descending | Select-Object -First 1 -ExpandProperty ModuleBase"
    )
    return Path(data) if data else None
