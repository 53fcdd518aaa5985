"""
Pipeline runner for gcpublish.

Runs compile → package → publish in order for one service account
configuration. Each step still works on its own; this only chains their
outputs and stops at the first failure.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from gcpublish.cache import CacheInvalidator, default_escalator, discover_engine_dirs
from gcpublish.config import GcPublishConfig
from gcpublish.configuration import build_service_account_configuration
from gcpublish.environment import ensure_modules, module_base
from gcpublish.errors import PreconditionError
from gcpublish.evaluation import GuestConfigurationEngine
from gcpublish.policy import EnforcementMode
from gcpublish.powershell import PowerShellRunner
from gcpublish.steps.base import Step
from gcpublish.steps.compile import CompileStep
from gcpublish.steps.package import PackageStep


# DSC resource modules the compiled descriptor binds to
BUNDLED_MODULES = ["PSDscResources"]


def local_engine(
    config: GcPublishConfig,
    runner: PowerShellRunner,
) -> Tuple[GuestConfigurationEngine, CacheInvalidator]:
    """Evaluation engine plus an invalidator for every installed engine version."""
    engine_dirs = discover_engine_dirs(config.get_module_roots())
    invalidator = CacheInvalidator(engine_dirs, cache_subdir=config.cache_subdir, escalator=default_escalator())
    return GuestConfigurationEngine(runner), invalidator


def bundled_module_dirs(runner: PowerShellRunner) -> List[Path]:
    """Install folders of the resource modules shipped inside each package."""
    dirs = []
    for name in BUNDLED_MODULES:
        base = module_base(runner, name)
        if base is None:
            raise PreconditionError(f"PowerShell module {name} is not installed. Run 'gcpublish env prepare' first.")
        dirs.append(base)
    return dirs


def prepare_step(step: Type[Step] | Step, config: GcPublishConfig, runner: PowerShellRunner) -> List[str]:
    """Install the PowerShell modules a step declares; returns the names installed."""
    if not step.required_modules:
        return []
    return ensure_modules(runner, config.modules_for(step.required_modules))


@dataclass
class PipelineResult:
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    steps: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "steps": {name: result.to_dict() for name, result in self.steps.items()},
        }


class Pipeline:
    """
    Chains the compile, package and publish steps.

    Args:
        config: Resolved configuration
        session_factory: Builds the Azure session for the publish step
        runner: PowerShell runner for module preparation and local evaluation
    """

    def __init__(
        self,
        config: GcPublishConfig,
        session_factory: Callable[[GcPublishConfig], Any],
        runner: Optional[PowerShellRunner] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.session_factory = session_factory
        self.runner = runner or PowerShellRunner(config.powershell_executable)
        self.logger = logger or logging.getLogger("gcpublish.pipeline")

    def build_steps(
        self,
        account_name: str,
        package_name: str,
        version: str,
        mode: EnforcementMode,
        force: bool,
        verify: bool,
    ) -> List[Step]:
        document = build_service_account_configuration(account_name, configuration_name=package_name)
        compile_step = CompileStep(document, self.config.output_path / "mof")

        engine, invalidator = local_engine(self.config, self.runner) if verify else (None, None)
        module_dirs = bundled_module_dirs(self.runner) if verify else []
        package_step = PackageStep(
            descriptor_path=compile_step.target_dir / f"{document.node_name}.mof",
            package_name=package_name,
            version=version,
            output_dir=self.config.output_path / "packages",
            mode=mode,
            force=force,
            module_dirs=module_dirs,
            engine=engine,
            invalidator=invalidator,
        )
        return [compile_step, package_step]

    def run(
        self,
        account_name: str,
        package_name: str,
        version: str,
        mode: EnforcementMode = EnforcementMode.AUDIT,
        force: bool = False,
        verify: bool = True,
        publish_options: Optional[Dict[str, Any]] = None,
    ) -> PipelineResult:
        """
        Run all steps; the first failing step's exception propagates.

        publish_options are PublishStep keyword arguments. They override the
        settings taken from config (container, scope, location and so on);
        the package identity and mode always come from this call.
        """
        from gcpublish.steps.publish import PublishStep

        started_at = datetime.now(timezone.utc)
        start_time = time.time()
        results: Dict[str, Any] = {}

        self.logger.info(
            f"Starting pipeline for {package_name} {version}",
            extra={"event": "pipeline_started", "metadata": {"mode": mode.value, "verify": verify}},
        )

        if verify:
            prepare_step(PackageStep, self.config, self.runner)
        for step in self.build_steps(account_name, package_name, version, mode, force, verify):
            results[step.name] = step.run()

        settings = {
            "container": self.config.container,
            "options": self.config.policy,
            "use_sas": self.config.use_sas,
            "sas_expiry_hours": self.config.sas_expiry_hours,
            "management_group_id": self.config.management_group_id,
            "scope": self.config.scope,
            "location": self.config.location,
        }
        settings.update(publish_options or {})
        settings.update(
            session=self.session_factory(self.config),
            package_path=results["package"].package_path,
            package_name=package_name,
            version=version,
            mode=mode,
        )
        publish = PublishStep(**settings)
        results[publish.name] = publish.run()

        duration = time.time() - start_time
        self.logger.info(
            "Pipeline completed",
            extra={"event": "pipeline_completed", "metadata": {"duration_seconds": duration}},
        )
        return PipelineResult(
            started_at=started_at,
            ended_at=datetime.now(timezone.utc),
            duration_seconds=duration,
            steps=results,
        )
