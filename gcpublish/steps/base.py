"""
Base class for gcpublish steps.

Every step validates its preconditions, executes, and returns a small
result record. Failures are raised, never returned: the step logs the
failure with its structured context and re-raises it to the caller.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, List


class Step(ABC):
    """
    Abstract base class for pipeline steps.

    Each step must implement:
    - validate(): Check preconditions before execution
    - execute(): Run the step and return its result record

    Subclasses list the PowerShell modules they need in required_modules;
    the CLI prepares them before the step runs.
    """

    name: ClassVar[str] = "step"
    required_modules: ClassVar[List[str]] = []

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(f"gcpublish.steps.{self.name}")

    @abstractmethod
    def validate(self) -> None:
        """
        Validate step preconditions.

        Raises:
            PreconditionError: If something a previous step produces is missing
        """
        pass

    @abstractmethod
    def execute(self) -> Any:
        """Execute the step and return its result record."""
        pass

    def run(self) -> Any:
        """
        Run the complete step lifecycle.

        Returns:
            The step's result record
        """
        self.logger.info(
            f"Starting step: {self.name}",
            extra={"step": self.name, "event": "step_started"},
        )
        start_time = time.time()

        try:
            self.validate()
            result = self.execute()
        except Exception as e:
            self.logger.error(
                f"Step {self.name} failed: {e}",
                extra={
                    "step": self.name,
                    "event": "step_failed",
                    "metadata": {"error": str(e), "duration_seconds": time.time() - start_time},
                },
            )
            raise

        duration = time.time() - start_time
        metadata: Dict[str, Any] = {"duration_seconds": duration}
        if hasattr(result, "to_dict"):
            metadata["result"] = result.to_dict()
        self.logger.info(
            f"Step {self.name} completed",
            extra={"step": self.name, "event": "step_completed", "metadata": metadata},
        )
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"
