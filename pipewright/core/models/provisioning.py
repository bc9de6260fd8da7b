"""
Provisioning models — idempotent infrastructure steps and their outcomes.

A step declares the state it wants (``desired``) and how a target can
observe and reach it (``check`` / ``apply``). The executor compares
observed against desired, applies only when they differ, and re-checks
to confirm convergence.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from pipewright.core.errors import ErrorInfo


class ProvisioningStep(BaseModel):
    """One idempotent unit of infrastructure state change."""

    model_config = ConfigDict(extra="forbid")

    id: str
    depends_on: list[str] = Field(default_factory=list)
    description: str = ""
    desired: dict[str, Any] = Field(default_factory=dict)
    check: str = ""                 # command printing observed state as JSON
    apply: str = ""                 # command converging the target
    transient_exit_codes: list[int] = Field(default_factory=lambda: [75])
    timeout: int = 300


class ProvisioningPlanSpec(BaseModel):
    """A named, declared sequence of steps against one target."""

    model_config = ConfigDict(extra="forbid")

    name: str = ""
    target: str
    steps: list[ProvisioningStep] = Field(default_factory=list)


class TargetSpec(BaseModel):
    """A provisioning target, owned externally and referenced by id."""

    model_config = ConfigDict(extra="forbid")

    name: str = ""
    kind: Literal["command", "memory"] = "command"
    address: str = ""
    env: dict[str, str] = Field(default_factory=dict)
    description: str = ""


class ApplyResult(BaseModel):
    """Target response to ``apply``: success or failure plus a diagnostic."""

    ok: bool
    diagnostic: str = ""
    transient: bool = False


class Outcome(StrEnum):
    """Per-step result of an executor pass."""

    NOOP = "noop"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"             # not attempted: an earlier step aborted the plan


class StepOutcome(BaseModel):
    """Recorded outcome of one provisioning step."""

    step_id: str
    target: str
    outcome: Outcome
    attempts: int = 0
    diagnostic: str = ""
    observed: dict[str, Any] = Field(default_factory=dict)
    error: ErrorInfo | None = None
