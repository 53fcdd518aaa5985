"""gcpublish steps: compile, package, publish, monitor."""

from gcpublish.steps.base import Step
from gcpublish.steps.compile import CompileResult, CompileStep
from gcpublish.steps.package import PackageResult, PackageStep

__all__ = ["Step", "CompileStep", "CompileResult", "PackageStep", "PackageResult"]
