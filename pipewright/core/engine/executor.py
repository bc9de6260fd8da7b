"""
Idempotent executor — converges a target one planned step at a time.

For each step, in plan order:

    observed = check(target)
    observed satisfies desired  → NOOP
    otherwise                   → apply, re-check → APPLIED | FAILED

Transient failures (including a re-check that has not converged yet)
are retried with exponential backoff up to the policy bound; exhaustion
becomes a FatalInfraError. A fatal failure aborts the plan: the failing
step is FAILED and every later step is SKIPPED. Steps already applied
are never rolled back.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from pipewright.adapters.targets.base import ProvisioningTarget
from pipewright.core.errors import ErrorInfo, FatalInfraError, TransientInfraError
from pipewright.core.models.provisioning import Outcome, ProvisioningStep, StepOutcome
from pipewright.core.reliability.retry import RetryPolicy
from pipewright.core.services.templates import render_text, render_value

logger = logging.getLogger(__name__)


@dataclass
class ProvisioningReport:
    """Result of executing a provisioning plan against one target."""

    target: str = ""
    outcomes: list[StepOutcome] = field(default_factory=list)
    error: ErrorInfo | None = None
    dry_run: bool = False

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def applied(self) -> int:
        return sum(1 for o in self.outcomes if o.outcome == Outcome.APPLIED)

    @property
    def noop(self) -> int:
        return sum(1 for o in self.outcomes if o.outcome == Outcome.NOOP)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.outcome == Outcome.FAILED)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def status(self) -> str:
        if self.error is not None:
            return "failed"
        if self.applied == 0:
            return "unchanged"
        return "changed"

    def raise_for_failure(self) -> None:
        if self.error is not None:
            raise FatalInfraError(self.error.message, detail=self.error.detail)

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "status": self.status,
            "dry_run": self.dry_run,
            "total": self.total,
            "applied": self.applied,
            "noop": self.noop,
            "failed": self.failed,
            "error": self.error.model_dump(mode="json") if self.error else None,
            "outcomes": [o.model_dump(mode="json") for o in self.outcomes],
        }


def satisfies(desired: Mapping[str, Any], observed: Mapping[str, Any]) -> bool:
    """Whether every desired key is present in ``observed`` with an equal value.

    An empty desired document is never satisfied: such a step cannot be
    observed and is applied on every pass.
    """
    if not desired:
        return False
    return all(key in observed and observed[key] == value for key, value in desired.items())


def _converge(
    step: ProvisioningStep,
    target: ProvisioningTarget,
    policy: RetryPolicy,
    dry_run: bool,
) -> StepOutcome:
    attempt = 0
    applied = False
    observed: dict[str, Any] = {}

    while True:
        attempt += 1
        try:
            observed = target.check(step)
            if satisfies(step.desired, observed):
                return StepOutcome(
                    step_id=step.id,
                    target=target.target_id,
                    outcome=Outcome.APPLIED if applied else Outcome.NOOP,
                    attempts=attempt,
                    observed=observed,
                    diagnostic="converged" if applied else "already in desired state",
                )

            if dry_run:
                return StepOutcome(
                    step_id=step.id,
                    target=target.target_id,
                    outcome=Outcome.SKIPPED,
                    attempts=attempt,
                    observed=observed,
                    diagnostic="[dry-run] would apply",
                )

            result = target.apply(step)
            applied = True
            if not result.ok:
                error_cls = TransientInfraError if result.transient else FatalInfraError
                raise error_cls(result.diagnostic or "apply failed", detail=step.id)

            if not step.desired:
                return StepOutcome(
                    step_id=step.id,
                    target=target.target_id,
                    outcome=Outcome.APPLIED,
                    attempts=attempt,
                    diagnostic=result.diagnostic,
                )

            observed = target.check(step)
            if satisfies(step.desired, observed):
                return StepOutcome(
                    step_id=step.id,
                    target=target.target_id,
                    outcome=Outcome.APPLIED,
                    attempts=attempt,
                    observed=observed,
                    diagnostic=result.diagnostic,
                )
            raise TransientInfraError("target did not converge after apply", detail=step.id)

        except TransientInfraError as e:
            if policy.should_retry(attempt):
                logger.warning("Step '%s' transient failure: %s", step.id, e.message)
                policy.wait(attempt, what=f"step '{step.id}'")
                continue
            fatal = FatalInfraError(
                f"{e.message} (gave up after {attempt} attempts)",
                detail=step.id,
            )
            return _failed(step, target, attempt, fatal, observed)

        except FatalInfraError as e:
            return _failed(step, target, attempt, e, observed)


def _failed(
    step: ProvisioningStep,
    target: ProvisioningTarget,
    attempts: int,
    error: FatalInfraError,
    observed: dict[str, Any],
) -> StepOutcome:
    return StepOutcome(
        step_id=step.id,
        target=target.target_id,
        outcome=Outcome.FAILED,
        attempts=attempts,
        diagnostic=error.message,
        observed=observed,
        error=error.to_info(),
    )


def execute(
    planned_steps: Sequence[ProvisioningStep],
    target: ProvisioningTarget,
    policy: RetryPolicy | None = None,
    dry_run: bool = False,
    on_outcome: Callable[[StepOutcome], None] | None = None,
) -> ProvisioningReport:
    """Apply planned steps to ``target`` in order.

    Args:
        planned_steps: Steps in dependency order (see ``planner.plan``).
        target: The provisioning target.
        policy: Retry policy for transient failures.
        dry_run: Check only; steps needing change are reported SKIPPED.
        on_outcome: Called with each outcome as soon as it is known.

    Returns:
        ProvisioningReport. A fatal failure is reported in ``error``
        rather than raised.
    """
    policy = policy or RetryPolicy()
    report = ProvisioningReport(target=target.target_id, dry_run=dry_run)

    def record(outcome: StepOutcome) -> None:
        report.outcomes.append(outcome)
        if on_outcome is not None:
            on_outcome(outcome)

    for index, step in enumerate(planned_steps):
        outcome = _converge(step, target, policy, dry_run)

        if outcome.outcome == Outcome.FAILED:
            logger.error("✗ %s:%s → %s", target.target_id, step.id, outcome.diagnostic)
            report.error = outcome.error
            record(outcome)
            for rest in planned_steps[index + 1:]:
                record(
                    StepOutcome(
                        step_id=rest.id,
                        target=target.target_id,
                        outcome=Outcome.SKIPPED,
                        diagnostic=f"not attempted: step '{step.id}' failed",
                    )
                )
            break

        marker = "✓" if outcome.outcome == Outcome.APPLIED else "⊘"
        logger.info("%s %s:%s → %s", marker, target.target_id, step.id, outcome.outcome.value)
        record(outcome)

    return report


def render_steps(
    steps: Sequence[ProvisioningStep],
    variables: Mapping[str, Any],
) -> list[ProvisioningStep]:
    """Interpolate variables into each step's desired document and commands.

    Raises:
        TemplateError: On the first unresolved reference.
    """
    return [
        step.model_copy(
            update={
                "desired": render_value(step.desired, variables),
                "check": render_text(step.check, variables),
                "apply": render_text(step.apply, variables),
            }
        )
        for step in steps
    ]
