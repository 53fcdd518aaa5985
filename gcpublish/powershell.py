"""PowerShell tool adapter for gcpublish.

The guest configuration and DSC engines only exist as PowerShell modules,
so local evaluation, DSC test/apply and module installation go through
`pwsh -Command`. Results are exchanged as JSON via ConvertTo-Json.
"""

import json
import logging
import subprocess
from typing import Any, Callable, List, Optional

from gcpublish.errors import PowerShellError, PreconditionError


logger = logging.getLogger(__name__)


def ps_quote(value: object) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + str(value).replace("'", "''") + "'"


class PowerShellRunner:
    """
    Runs PowerShell scripts in a fresh non-interactive process.

    Args:
        executable: PowerShell executable name or path (pwsh, powershell.exe)
        run: subprocess.run-compatible callable, replaceable in tests
    """

    def __init__(self, executable: str = "pwsh", run: Optional[Callable[..., Any]] = None):
        self.executable = executable
        self._run = run or subprocess.run

    def command(self, script: str) -> List[str]:
        return [
            self.executable,
            "-NoLogo",
            "-NoProfile",
            "-NonInteractive",
            "-Command",
            "$ErrorActionPreference = 'Stop'; " + script,
        ]

    def run(self, script: str) -> str:
        """
        Run a script and return its stdout.

        Raises:
            PreconditionError: If the PowerShell executable is not installed
            PowerShellError: If the script exits non-zero
        """
        command = self.command(script)
        logger.debug(f"Executing: {self.executable} -Command {script}")

        try:
            result = self._run(command, capture_output=True, text=True, check=False)
        except FileNotFoundError:
            raise PreconditionError(
                f"PowerShell executable not found: {self.executable}. "
                "Install PowerShell 7 or set powershell_executable in config.yaml."
            )

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            error_msg = f"PowerShell exited with code {result.returncode}"
            if stderr:
                error_msg += f": {stderr[:2000]}"
            raise PowerShellError(error_msg, result.returncode, stderr)

        return result.stdout or ""

    def run_json(self, script: str, depth: int = 10) -> Any:
        """Run a script whose output is piped through ConvertTo-Json and parse it."""
        output = self.run(f"{script} | ConvertTo-Json -Depth {depth} -Compress").strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise PowerShellError(f"PowerShell returned invalid JSON: {e}", 0, output[:500])
