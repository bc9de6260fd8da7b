"""
Error taxonomy — every failure the orchestrator can report.

Each error carries a stable ``kind`` (used in run records and JSON
output) and a ``detail``: the first offending item, such as the
unresolved key name, a cycle member, or the failing step id.

Propagation:
    ConfigError, TemplateError, CycleError, RuleEvaluationError
        abort a run before any job executes.
    JobFailure
        halts later stages; completed work is kept.
    TransientInfraError
        retried by the provisioning executor, then becomes FatalInfraError.
    FatalInfraError
        aborts the remaining provisioning plan; surfaces as a job failure.
    TargetBusy
        surfaced immediately, never retried silently.
"""

from __future__ import annotations

from pydantic import BaseModel


class ErrorInfo(BaseModel):
    """Serializable form of an error, stored on job results and runs."""

    kind: str
    detail: str = ""
    message: str = ""

    def __str__(self) -> str:
        if self.detail:
            return f"{self.kind}: {self.message} [{self.detail}]"
        return f"{self.kind}: {self.message}"


class PipewrightError(Exception):
    """Base class for all orchestrator errors."""

    kind = "PipewrightError"

    def __init__(self, message: str, detail: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(kind=self.kind, detail=self.detail, message=self.message)


class ConfigError(PipewrightError):
    """Pipeline configuration or variable layering is invalid."""

    kind = "ConfigError"


class TemplateError(PipewrightError):
    """A template references a variable that is not defined."""

    kind = "TemplateError"


class CycleError(PipewrightError):
    """A dependency cycle among job needs or provisioning steps."""

    kind = "CycleError"


class RuleEvaluationError(PipewrightError):
    """A job rule is malformed and cannot be evaluated."""

    kind = "RuleEvaluationError"


class JobFailure(PipewrightError):
    """A job exited non-zero or was blocked by a gate."""

    kind = "JobFailure"


class TransientInfraError(PipewrightError):
    """A provisioning step failed in a way that may succeed on retry."""

    kind = "TransientInfraError"


class FatalInfraError(PipewrightError):
    """A provisioning step failed and must not be retried."""

    kind = "FatalInfraError"


class TargetBusy(PipewrightError):
    """Another provisioning plan currently holds the target."""

    kind = "TargetBusy"


class RunNotFound(PipewrightError):
    """No readable run record exists for the requested id."""

    kind = "RunNotFound"


class RunStateError(PipewrightError):
    """The requested operation does not fit the run's current state."""

    kind = "RunStateError"
