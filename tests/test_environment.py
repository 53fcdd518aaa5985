"""Tests for PowerShell module preparation."""

import pytest
from pathlib import Path

from gcpublish.environment import (
    ModuleRequirement,
    ensure_modules,
    install_module,
    installed_versions,
    module_base,
    parse_version,
)
from gcpublish.errors import PreconditionError


class FakeModuleRunner:
    """Tracks installed module versions; Install-Module adds `install_as`."""

    def __init__(self, installed=None, install_as=None):
        self.installed = {k: list(v) for k, v in (installed or {}).items()}
        self.install_as = install_as or {}
        self.scripts = []

    def run_json(self, script, depth=10):
        self.scripts.append(script)
        name = script.split("-Name '", 1)[1].split("'", 1)[0]
        versions = self.installed.get(name, [])
        if not versions:
            return None
        return versions[0] if len(versions) == 1 else versions

    def run(self, script):
        self.scripts.append(script)
        name = script.split("-Name '", 1)[1].split("'", 1)[0]
        if name in self.install_as:
            self.installed.setdefault(name, []).append(self.install_as[name])
        return ""


class TestParseVersion:
    def test_trailing_zeros_ignored(self):
        assert parse_version("2.12.0.0") == parse_version("2.12")

    def test_prerelease_suffix_dropped(self):
        assert parse_version("4.5.0-preview1") == (4, 5)

    def test_ordering(self):
        assert parse_version("2.10.0") > parse_version("2.9.1")


class TestModuleRequirement:
    def test_exact_version(self):
        req = ModuleRequirement("PSDesiredStateConfiguration", required_version="2.0.7")
        assert req.is_satisfied_by(["1.1", "2.0.7"])
        assert not req.is_satisfied_by(["2.0.5", "2.0.8"])

    def test_minimum_version(self):
        req = ModuleRequirement("GuestConfiguration", minimum_version="4.5.0")
        assert req.is_satisfied_by(["4.5.0.0"])
        assert req.is_satisfied_by(["4.6.1"])
        assert not req.is_satisfied_by(["4.4.0"])

    def test_any_version(self):
        req = ModuleRequirement("PSDscResources")
        assert req.is_satisfied_by(["0.1"])
        assert not req.is_satisfied_by([])

    def test_required_and_minimum_exclusive(self):
        with pytest.raises(ValueError, match="mutually exclusive"):
            ModuleRequirement("X", required_version="1.0", minimum_version="1.0")

    def test_describe(self):
        assert ModuleRequirement("X", minimum_version="1.2").describe() == "X >=1.2"
        assert ModuleRequirement("X", required_version="1.2").describe() == "X ==1.2"


class TestInstalledVersions:
    def test_single_version_is_listed(self):
        runner = FakeModuleRunner({"GuestConfiguration": ["4.5.0"]})
        assert installed_versions(runner, "GuestConfiguration") == ["4.5.0"]

    def test_not_installed(self):
        assert installed_versions(FakeModuleRunner(), "GuestConfiguration") == []


class TestInstallModule:
    def test_required_version_flag(self):
        runner = FakeModuleRunner()
        install_module(runner, ModuleRequirement("PSDesiredStateConfiguration", required_version="2.0.7"))
        assert "-RequiredVersion '2.0.7'" in runner.scripts[-1]
        assert "-Scope CurrentUser" in runner.scripts[-1]

    def test_minimum_version_flag(self):
        runner = FakeModuleRunner()
        install_module(runner, ModuleRequirement("GuestConfiguration", minimum_version="4.5.0"))
        assert "-MinimumVersion '4.5.0'" in runner.scripts[-1]


class TestEnsureModules:
    def test_satisfied_modules_are_not_installed(self):
        runner = FakeModuleRunner({"GuestConfiguration": ["4.6.0"]})

        installed = ensure_modules(runner, [ModuleRequirement("GuestConfiguration", minimum_version="4.5.0")])

        assert installed == []
        assert not any(s.startswith("Install-Module") for s in runner.scripts)

    def test_missing_module_is_installed(self):
        runner = FakeModuleRunner(install_as={"PSDscResources": "2.12.0.0"})

        installed = ensure_modules(runner, [ModuleRequirement("PSDscResources", minimum_version="2.12.0")])

        assert installed == ["PSDscResources"]

    def test_outdated_exact_version_is_installed(self):
        runner = FakeModuleRunner(
            {"PSDesiredStateConfiguration": ["1.1"]},
            install_as={"PSDesiredStateConfiguration": "2.0.7"},
        )
        requirement = ModuleRequirement("PSDesiredStateConfiguration", required_version="2.0.7")

        assert ensure_modules(runner, [requirement]) == ["PSDesiredStateConfiguration"]

    def test_still_missing_after_install_raises(self):
        runner = FakeModuleRunner()

        with pytest.raises(PreconditionError, match="not available after installation"):
            ensure_modules(runner, [ModuleRequirement("GuestConfiguration")])


class TestModuleBase:
    def test_returns_path(self):
        class Runner:
            def run_json(self, script, depth=10):
                return "/modules/PSDscResources/2.12.0.0"

        assert module_base(Runner(), "PSDscResources") == Path("/modules/PSDscResources/2.12.0.0")

    def test_not_installed(self):
        class Runner:
            def run_json(self, script, depth=10):
                return None

        assert module_base(Runner(), "PSDscResources") is None
