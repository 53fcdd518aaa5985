"""
Package step: bundle a compiled MOF into a guest configuration package.

Archive layout (<output_dir>/<name>-<version>.zip):

    <name>.mof           the compiled descriptor
    metaconfig.json      {"Type": "Audit" | "AuditAndSet", "Version": <version>}
    Modules/<module>/    DSC resource modules the descriptor binds to

When an evaluation engine is supplied the package is verified locally after
it is written, and optionally applied to the local machine.
"""

import json
import logging
import os
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from gcpublish.cache import CacheInvalidator, PackageId, evaluate_with_retry
from gcpublish.evaluation import ComplianceReport, GuestConfigurationEngine
from gcpublish.errors import PackageExistsError, PreconditionError
from gcpublish.policy import EnforcementMode
from gcpublish.steps.base import Step
from gcpublish.utils import get_file_checksum


@dataclass
class PackageResult:
    package_path: Path
    content_hash: str
    compliant: Optional[bool] = None
    report: Optional[ComplianceReport] = None
    applied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package_path": str(self.package_path),
            "content_hash": self.content_hash,
            "compliant": self.compliant,
            "report": self.report.to_dict() if self.report else None,
            "applied": self.applied,
        }


def package_path_for(output_dir: Path, name: str, version: str) -> Path:
    return output_dir / f"{name}-{version}.zip"


def _module_archive_name(module_dir: Path) -> str:
    # <root>/PSDscResources/2.12.0.0 is bundled as Modules/PSDscResources
    if module_dir.name[:1].isdigit():
        return module_dir.parent.name
    return module_dir.name


class PackageStep(Step):
    """Builds, verifies and optionally applies a guest configuration package."""

    name = "package"
    required_modules = ["GuestConfiguration", "PSDscResources"]

    def __init__(
        self,
        descriptor_path: Path,
        package_name: str,
        version: str,
        output_dir: Path,
        mode: EnforcementMode = EnforcementMode.AUDIT,
        force: bool = False,
        module_dirs: Iterable[Path] = (),
        engine: Optional[GuestConfigurationEngine] = None,
        invalidator: Optional[CacheInvalidator] = None,
        apply: bool = False,
        logger: logging.Logger | None = None,
    ):
        super().__init__(logger)
        self.descriptor_path = Path(descriptor_path)
        self.package_name = package_name
        self.version = version
        self.output_dir = Path(output_dir)
        self.mode = EnforcementMode(mode)
        self.force = force
        self.module_dirs: List[Path] = [Path(d) for d in module_dirs]
        self.engine = engine
        self.invalidator = invalidator
        self.apply = apply

    @property
    def package_id(self) -> PackageId:
        return PackageId(self.package_name, self.version)

    @property
    def package_path(self) -> Path:
        return package_path_for(self.output_dir, self.package_name, self.version)

    def validate(self) -> None:
        if not self.package_name or any(c in self.package_name for c in "/\\ "):
            raise PreconditionError(f"Invalid package name: {self.package_name!r}")
        if not self.version:
            raise PreconditionError("Package version is required")

        if not self.descriptor_path.is_file():
            raise PreconditionError(
                f"Compiled descriptor not found: {self.descriptor_path}. Run 'gcpublish compile' first."
            )

        for module_dir in self.module_dirs:
            if not module_dir.is_dir():
                raise PreconditionError(f"Module directory not found: {module_dir}")

        if self.apply and self.engine is None:
            raise PreconditionError("Applying a package requires the local evaluation engine")

        if self.package_path.exists() and not self.force:
            raise PackageExistsError(
                f"Package {self.package_path} already exists. Use --force to overwrite."
            )

        self.output_dir.mkdir(parents=True, exist_ok=True)

    def execute(self) -> PackageResult:
        self._write_archive()
        content_hash = get_file_checksum(self.package_path)
        self.logger.info(
            f"Created package {self.package_path.name}",
            extra={
                "step": self.name,
                "event": "package_written",
                "metadata": {"path": str(self.package_path), "content_hash": content_hash},
            },
        )

        result = PackageResult(package_path=self.package_path, content_hash=content_hash)
        if self.engine is None:
            return result

        report = self._evaluate(lambda: self.engine.compliance_status(self.package_path))
        result.report = report
        result.compliant = report.compliant
        if not report.compliant:
            names = [str(r.get("resourceId") or r.get("name") or r) for r in report.non_compliant_resources]
            self.logger.warning(
                f"Package {self.package_id} is not compliant on this machine: {', '.join(names) or 'no details'}",
                extra={"step": self.name, "event": "non_compliant", "metadata": report.to_dict()},
            )

        if self.apply:
            self._evaluate(lambda: self.engine.remediate(self.package_path))
            result.applied = True
            self.logger.info(f"Applied package {self.package_id} locally")

        return result

    def _evaluate(self, evaluate):
        if self.invalidator is None:
            return evaluate()
        self.invalidator.clear(self.package_id)
        return evaluate_with_retry(evaluate, self.invalidator, self.package_id)

    def _write_archive(self) -> None:
        tmp_path = self.package_path.with_name(f".{self.package_path.name}.tmp")
        metaconfig = {"Type": self.mode.package_type, "Version": self.version}

        try:
            with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                archive.write(self.descriptor_path, f"{self.package_name}.mof")
                archive.writestr("metaconfig.json", json.dumps(metaconfig, indent=2))
                for module_dir in self.module_dirs:
                    prefix = f"Modules/{_module_archive_name(module_dir)}"
                    for file_path in sorted(module_dir.rglob("*")):
                        if file_path.is_file():
                            archive.write(file_path, f"{prefix}/{file_path.relative_to(module_dir).as_posix()}")
            os.replace(tmp_path, self.package_path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
