"""
Adapter base — the protocol contract between the scheduler and job executors.

The scheduler emits an Action for each activated job (job name, command
spec, environment) and expects a Receipt back (exit code, artifacts,
optional findings). It never interprets the command itself.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import BaseModel

from pipewright.core.models.action import Action, Receipt


class ExecutionContext(BaseModel):
    """Everything an adapter needs to execute a job."""

    action: Action
    project_root: str = "."
    dry_run: bool = False

    @property
    def working_dir(self) -> str:
        """Resolved working directory for the job."""
        if self.action.cwd:
            return str(Path(self.project_root) / self.action.cwd)
        return self.project_root


class Adapter(ABC):
    """Abstract base class for job executors.

    Adapters run jobs and return receipts. They NEVER raise exceptions;
    failures are captured in the Receipt.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The adapter identifier (e.g., 'shell', 'mock')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the underlying executor is available. Never raises."""

    @abstractmethod
    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        """Validate that the job can be executed.

        Returns:
            (is_valid, error_message). error_message is empty if valid.
        """

    @abstractmethod
    def execute(self, context: ExecutionContext) -> Receipt:
        """Execute the job and return a receipt. MUST never raise."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
