"""
Local evaluation engines.

GuestConfigurationEngine evaluates a packaged archive the way the Azure
guest configuration agent would. DscRunner tests or applies a folder of
compiled MOFs with the local configuration manager.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from gcpublish.errors import PowerShellError, PreconditionError
from gcpublish.powershell import PowerShellRunner, ps_quote


logger = logging.getLogger(__name__)


def _as_list(value: Any) -> List[Any]:
    # ConvertTo-Json collapses single-element arrays
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "compliant")
    return bool(value)


@dataclass
class ComplianceReport:
    """Result of evaluating a package locally."""

    compliant: bool
    resources: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def non_compliant_resources(self) -> List[Dict[str, Any]]:
        return [r for r in self.resources if not _truthy(r.get("complianceStatus"))]

    def to_dict(self) -> Dict[str, Any]:
        return {"compliant": self.compliant, "resources": self.resources}

    @classmethod
    def from_engine_output(cls, data: Any) -> "ComplianceReport":
        if not isinstance(data, dict):
            raise PowerShellError(f"Unexpected compliance status output: {data!r}", returncode=0)
        return cls(
            compliant=_truthy(data.get("complianceStatus")),
            resources=_as_list(data.get("resources")),
        )


class GuestConfigurationEngine:
    """Wraps the GuestConfiguration module's local evaluation cmdlets."""

    module_name = "GuestConfiguration"

    def __init__(self, runner: PowerShellRunner):
        self.runner = runner

    def compliance_status(self, package_path: Path) -> ComplianceReport:
        """Evaluate package_path and return its compliance report."""
        data = self.runner.run_json(
            f"Import-Module {self.module_name}; "
            f"Get-GuestConfigurationPackageComplianceStatus -Path {ps_quote(package_path)}"
        )
        report = ComplianceReport.from_engine_output(data)
        logger.debug(
            f"Local evaluation of {package_path.name}: compliant={report.compliant}",
            extra={"event": "local_evaluation", "metadata": report.to_dict()},
        )
        return report

    def remediate(self, package_path: Path) -> None:
        """Apply package_path to the local machine."""
        self.runner.run(
            f"Import-Module {self.module_name}; "
            f"Start-GuestConfigurationPackageRemediation -Path {ps_quote(package_path)}"
        )


@dataclass
class DscTestResult:
    """Result of Test-DscConfiguration over a folder of MOFs."""

    in_desired_state: bool
    resources_not_in_desired_state: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "in_desired_state": self.in_desired_state,
            "resources_not_in_desired_state": self.resources_not_in_desired_state,
        }


class DscRunner:
    """Tests and applies compiled MOFs with the local configuration manager."""

    def __init__(self, runner: PowerShellRunner):
        self.runner = runner

    def _require_mofs(self, folder: Path) -> None:
        if not folder.is_dir() or not any(folder.glob("*.mof")):
            raise PreconditionError(
                f"No compiled MOF files in {folder}. Run 'gcpublish compile' first."
            )

    def test(self, folder: Path) -> DscTestResult:
        self._require_mofs(folder)
        data = self.runner.run_json(
            f"Test-DscConfiguration -Path {ps_quote(folder)} | "
            "Select-Object InDesiredState, ResourcesNotInDesiredState"
        )
        nodes = _as_list(data)
        in_desired_state = bool(nodes) and all(_truthy(n.get("InDesiredState")) for n in nodes)
        failing = []
        for node in nodes:
            for resource in _as_list(node.get("ResourcesNotInDesiredState")):
                if isinstance(resource, dict):
                    failing.append(str(resource.get("ResourceId") or resource.get("InstanceName")))
                else:
                    failing.append(str(resource))
        return DscTestResult(in_desired_state=in_desired_state, resources_not_in_desired_state=failing)

    def apply(self, folder: Path) -> None:
        self._require_mofs(folder)
        self.runner.run(f"Start-DscConfiguration -Path {ps_quote(folder)} -Wait -Force")
