"""Tests for the PowerShell tool adapter."""

import pytest
from types import SimpleNamespace

from gcpublish.errors import PowerShellError, PreconditionError
from gcpublish.powershell import PowerShellRunner, ps_quote


def completed(returncode=0, stdout="", stderr=""):
    return SimpleNamespace(returncode=returncode, stdout=stdout, stderr=stderr)


class TestQuote:
    def test_wraps_in_single_quotes(self):
        assert ps_quote("C:\\out\\pkg.zip") == "'C:\\out\\pkg.zip'"

    def test_doubles_embedded_quotes(self):
        assert ps_quote("it's") == "'it''s'"


class TestRun:
    def test_returns_stdout(self, fake_run):
        fake_run.queue(completed(stdout="hello\n"))
        runner = PowerShellRunner(run=fake_run)

        assert runner.run("Write-Output hello") == "hello\n"

    def test_command_is_non_interactive_and_stops_on_error(self, fake_run):
        runner = PowerShellRunner("pwsh-preview", run=fake_run)
        runner.run("Get-Date")

        command = fake_run.calls[0]
        assert command[0] == "pwsh-preview"
        assert "-NonInteractive" in command
        assert command[-1] == "$ErrorActionPreference = 'Stop'; Get-Date"

    def test_nonzero_exit_raises(self, fake_run):
        fake_run.queue(completed(returncode=1, stderr="Install-Module: no match"))
        runner = PowerShellRunner(run=fake_run)

        with pytest.raises(PowerShellError, match="exited with code 1: Install-Module: no match") as exc_info:
            runner.run("Install-Module Nope")
        assert exc_info.value.stderr == "Install-Module: no match"

    def test_missing_executable_is_precondition(self, fake_run):
        fake_run.queue(FileNotFoundError("pwsh"))
        runner = PowerShellRunner(run=fake_run)

        with pytest.raises(PreconditionError, match="PowerShell executable not found: pwsh"):
            runner.run("Get-Date")


class TestRunJson:
    def test_parses_output(self, fake_run):
        fake_run.queue(completed(stdout='{"complianceStatus": true}\n'))
        runner = PowerShellRunner(run=fake_run)

        assert runner.run_json("Get-Thing") == {"complianceStatus": True}
        assert fake_run.scripts[0].endswith("Get-Thing | ConvertTo-Json -Depth 10 -Compress")

    def test_empty_output_is_none(self, fake_run):
        runner = PowerShellRunner(run=fake_run)
        assert runner.run_json("Get-Nothing") is None

    def test_invalid_json_raises(self, fake_run):
        fake_run.queue(completed(stdout="WARNING: not json"))
        runner = PowerShellRunner(run=fake_run)

        with pytest.raises(PowerShellError, match="invalid JSON"):
            runner.run_json("Get-Thing")
