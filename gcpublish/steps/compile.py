"""
Compile step: render a configuration document to a MOF descriptor.

The descriptor lands at <output_root>/<configuration>/<node>.mof. Stale
descriptors in that folder are removed first so the folder holds exactly
the descriptor for the current node.
"""

import getpass
import logging
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from gcpublish.configuration import ConfigurationDocument
from gcpublish.errors import PreconditionError
from gcpublish.mof import render_mof
from gcpublish.steps.base import Step


@dataclass
class CompileResult:
    descriptor_path: Path
    node_name: str
    configuration_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "descriptor_path": str(self.descriptor_path),
            "node_name": self.node_name,
            "configuration_name": self.configuration_name,
        }


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def descriptor_path_for(output_root: Path, configuration_name: str, node_name: str) -> Path:
    """Fixed per-node descriptor location."""
    return output_root / configuration_name / f"{node_name}.mof"


class CompileStep(Step):
    """Compiles a ConfigurationDocument into a MOF."""

    name = "compile"

    def __init__(
        self,
        document: ConfigurationDocument,
        output_root: Path,
        logger: logging.Logger | None = None,
    ):
        super().__init__(logger)
        self.document = document
        self.output_root = Path(output_root)

    @property
    def target_dir(self) -> Path:
        return self.output_root / self.document.name

    def validate(self) -> None:
        self.document.validate()

        if self.output_root.exists() and not self.output_root.is_dir():
            raise PreconditionError(f"Output root is not a directory: {self.output_root}")
        self.target_dir.mkdir(parents=True, exist_ok=True)

    def execute(self) -> CompileResult:
        for stale in self.target_dir.glob("*.mof"):
            self.logger.debug(f"Removing stale descriptor {stale}")
            stale.unlink()

        descriptor = descriptor_path_for(self.output_root, self.document.name, self.document.node_name)
        descriptor.write_text(
            render_mof(
                self.document,
                generated_by=_current_user(),
                generation_host=socket.gethostname(),
            ),
            encoding="utf-8",
        )

        self.logger.info(
            f"Compiled {self.document.name} for {self.document.node_name}",
            extra={"step": self.name, "event": "descriptor_written", "metadata": {"path": str(descriptor)}},
        )
        return CompileResult(
            descriptor_path=descriptor,
            node_name=self.document.node_name,
            configuration_name=self.document.name,
        )
