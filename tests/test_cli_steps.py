"""CLI tests for the step commands (config is patched in conftest)."""

import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from gcpublish.cli import main
from gcpublish.errors import CacheClearError, PlatformError
from gcpublish.evaluation import ComplianceReport, DscTestResult, GuestConfigurationEngine
from gcpublish.pipeline import PipelineResult
from gcpublish.steps.monitor import ComplianceRecord, MonitorResult
from gcpublish.steps.publish import PublishResult


@pytest.fixture
def runner():
    return CliRunner()


def compile_and_package(runner, *package_args):
    result = runner.invoke(main, ["compile", "--account-name", "svc-app"])
    assert result.exit_code == 0, result.output
    return runner.invoke(main, ["package", "--name", "ServiceAccountCheck", "--skip-verify", *package_args])


class TestCompile:
    def test_compile(self, runner, test_config):
        result = runner.invoke(main, ["compile", "--account-name", "svc-app"])

        assert result.exit_code == 0
        assert "Compiled ServiceAccountCheck" in result.output
        assert (test_config.output_path / "mof" / "ServiceAccountCheck" / "localhost.mof").exists()

    def test_invalid_account_name(self, runner):
        result = runner.invoke(main, ["compile", "--account-name", "svc@app"])

        assert result.exit_code == 1
        assert "✗" in result.output
        assert "Compile failed" in result.output

    def test_from_file(self, runner, tmp_path, test_config):
        path = tmp_path / "web.yaml"
        path.write_text("name: Web\nnode_name: web01\nresources:\n  - account_name: svc-web\n")

        result = runner.invoke(main, ["compile", "--from-file", str(path)])

        assert result.exit_code == 0
        assert (test_config.output_path / "mof" / "Web" / "web01.mof").exists()

    def test_needs_exactly_one_source(self, runner):
        result = runner.invoke(main, ["compile"])
        assert result.exit_code == 2
        assert "exactly one of --account-name or --from-file" in result.output


class TestPackage:
    def test_package_after_compile(self, runner, test_config):
        result = compile_and_package(runner)

        assert result.exit_code == 0, result.output
        assert (test_config.output_path / "packages" / "ServiceAccountCheck-1.0.0.zip").exists()
        assert "SHA256:" in result.output

    def test_package_exists(self, runner):
        compile_and_package(runner)
        result = runner.invoke(main, ["package", "--name", "ServiceAccountCheck", "--skip-verify"])

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_force(self, runner):
        compile_and_package(runner)
        result = runner.invoke(main, ["package", "--name", "ServiceAccountCheck", "--skip-verify", "--force"])

        assert result.exit_code == 0

    def test_without_compile(self, runner):
        result = runner.invoke(main, ["package", "--name", "ServiceAccountCheck", "--skip-verify"])

        assert result.exit_code == 1
        assert "gcpublish compile" in result.output

    def test_verify_uses_local_engine(self, runner, tmp_path):
        engine = MagicMock()
        engine.compliance_status.return_value = ComplianceReport(compliant=False)
        module_dir = tmp_path / "PSDscResources"
        module_dir.mkdir()

        runner.invoke(main, ["compile", "--account-name", "svc-app"])
        with patch("gcpublish.pipeline.prepare_step", return_value=["GuestConfiguration"]) as prepare, \
                patch("gcpublish.pipeline.local_engine", return_value=(engine, None)), \
                patch("gcpublish.pipeline.bundled_module_dirs", return_value=[module_dir]):
            result = runner.invoke(main, ["package", "--name", "ServiceAccountCheck"])

        assert result.exit_code == 0, result.output
        prepare.assert_called_once()
        engine.compliance_status.assert_called_once()
        assert "Installed PowerShell module GuestConfiguration" in result.output
        assert "not compliant" in result.output

    def _package_with_engine(self, runner, tmp_path, engine):
        module_dir = tmp_path / "PSDscResources"
        module_dir.mkdir()

        runner.invoke(main, ["compile", "--account-name", "svc-app"])
        with patch("gcpublish.pipeline.prepare_step", return_value=[]), \
                patch("gcpublish.pipeline.local_engine", return_value=(engine, None)), \
                patch("gcpublish.pipeline.bundled_module_dirs", return_value=[module_dir]):
            return runner.invoke(main, ["package", "--name", "ServiceAccountCheck"])

    def test_empty_engine_output_fails_cleanly(self, runner, tmp_path):
        engine = GuestConfigurationEngine(MagicMock(**{"run_json.return_value": None}))

        result = self._package_with_engine(runner, tmp_path, engine)

        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        assert "Unexpected compliance status output" in result.output

    def test_access_denied_after_retry_fails_cleanly(self, runner, tmp_path):
        engine = MagicMock()
        engine.compliance_status.side_effect = PermissionError(13, "Permission denied", "/cache/Modules")

        result = self._package_with_engine(runner, tmp_path, engine)

        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        assert "Package failed" in result.output

    def test_apply_and_skip_verify_conflict(self, runner):
        result = runner.invoke(main, ["package", "--name", "X", "--skip-verify", "--apply"])
        assert result.exit_code == 2


class TestClearCache:
    def test_reports_cleared(self, runner):
        invalidator = MagicMock()
        invalidator.clear.return_value = [Path("/modules/GuestConfiguration/4.5.0/gcworker/packages/Pkg")]

        with patch("gcpublish.pipeline.local_engine", return_value=(None, invalidator)):
            result = runner.invoke(main, ["clear-cache", "--name", "Pkg", "--version", "1.0.0"])

        assert result.exit_code == 0
        assert "Cleared /modules/GuestConfiguration/4.5.0/gcworker/packages/Pkg" in result.output

    def test_failure(self, runner):
        invalidator = MagicMock()
        invalidator.clear.side_effect = CacheClearError([Path("/locked/Pkg")])

        with patch("gcpublish.pipeline.local_engine", return_value=(None, invalidator)):
            result = runner.invoke(main, ["clear-cache", "--name", "Pkg", "--version", "1.0.0"])

        assert result.exit_code == 1
        assert "/locked/Pkg" in result.output


class TestDsc:
    def test_test_not_in_desired_state(self, runner, tmp_path):
        with patch("gcpublish.evaluation.DscRunner.test", return_value=DscTestResult(False, ["[User]ServiceAccount"])):
            result = runner.invoke(main, ["dsc", "test", "--path", str(tmp_path)])

        assert result.exit_code == 0
        assert "Not in desired state" in result.output
        assert "[User]ServiceAccount" in result.output

    def test_apply_without_mofs(self, runner, tmp_path):
        result = runner.invoke(main, ["dsc", "apply", "--path", str(tmp_path)])

        assert result.exit_code == 1
        assert "DSC apply failed" in result.output


class TestPublish:
    def test_publish(self, runner, tmp_path):
        result_record = PublishResult(
            blob_url="https://teststorage.blob.core.windows.net/guestconfiguration/ServiceAccountCheck-1.0.0.zip",
            content_uri="https://teststorage.blob.core.windows.net/guestconfiguration/ServiceAccountCheck-1.0.0.zip",
            content_hash="ABC",
            definition_id="/subscriptions/s/providers/Microsoft.Authorization/policyDefinitions/pid",
            definition_path=tmp_path / "policy.json",
            assignment_id="/subscriptions/s/providers/Microsoft.Authorization/policyAssignments/ServiceAccountCheck",
        )
        with patch("gcpublish.session.AzureSession.from_config", return_value=MagicMock()), \
                patch("gcpublish.steps.publish.PublishStep.run", return_value=result_record):
            result = runner.invoke(main, ["publish", "--name", "ServiceAccountCheck"])

        assert result.exit_code == 0, result.output
        assert "Registered /subscriptions/s/providers/Microsoft.Authorization/policyDefinitions/pid" in result.output
        assert "Assigned" in result.output

    def test_platform_failure(self, runner):
        with patch("gcpublish.session.AzureSession.from_config", return_value=MagicMock()), \
                patch("gcpublish.steps.publish.PublishStep.run", side_effect=PlatformError("Uploading x failed: denied")):
            result = runner.invoke(main, ["publish", "--name", "ServiceAccountCheck"])

        assert result.exit_code == 1
        assert "Publish failed: Uploading x failed: denied" in result.output


class TestMonitor:
    def _result(self):
        return MonitorResult(
            records=[ComplianceRecord(datetime(2024, 3, 1, tzinfo=timezone.utc), "/vm/vm1", "NonCompliant")],
            summary={"NonCompliant": 1},
            non_compliant_machines=[{"machine": "vm1", "resourceGroup": "rg"}],
        )

    def test_monitor(self, runner):
        with patch("gcpublish.session.AzureSession.from_config", return_value=MagicMock()), \
                patch("gcpublish.steps.monitor.MonitorStep.run", return_value=self._result()):
            result = runner.invoke(main, ["monitor", "--assignment-name", "ServiceAccountCheck"])

        assert result.exit_code == 0
        assert "NonCompliant: 1" in result.output
        assert "is not compliant" in result.output
        assert "vm1 (rg)" in result.output

    def test_json(self, runner):
        with patch("gcpublish.session.AzureSession.from_config", return_value=MagicMock()), \
                patch("gcpublish.steps.monitor.MonitorStep.run", return_value=self._result()):
            result = runner.invoke(main, ["monitor", "--assignment-name", "ServiceAccountCheck", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["compliant"] is False


class TestRun:
    def test_run(self, runner):
        pipeline_result = PipelineResult(
            started_at=datetime.now(timezone.utc),
            ended_at=datetime.now(timezone.utc),
            duration_seconds=3.0,
            steps={"compile": MagicMock(), "package": MagicMock(), "publish": MagicMock()},
        )
        with patch("gcpublish.pipeline.Pipeline.run", return_value=pipeline_result) as run:
            result = runner.invoke(main, ["run", "--account-name", "svc-app", "--skip-verify", "--no-assign"])

        assert result.exit_code == 0, result.output
        assert "publish completed" in result.output
        kwargs = run.call_args.kwargs
        assert kwargs["verify"] is False
        assert kwargs["publish_options"]["assign"] is False


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output
