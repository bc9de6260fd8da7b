"""
Rule evaluator — decides whether a job runs, is skipped, or waits.

Rules are ordered ``(predicate, decision)`` pairs. Evaluation stops at
the first predicate that matches the run context and returns its
decision; when none match, the job's declared default applies.
A job declared ``manual: true`` turns a RUN decision into MANUAL.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from fnmatch import fnmatchcase

from pipewright.core.engine.changes import matches_any
from pipewright.core.errors import RuleEvaluationError
from pipewright.core.models.job import Decision, JobSpec, Predicate, RuleClause
from pipewright.core.models.run import RunContext, TriggerKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Evaluation:
    """Outcome of evaluating one rule list."""

    decision: Decision
    matched: int | None = None      # index of the matching clause, None = default
    checks: int = 0                 # predicates evaluated

    @property
    def reason(self) -> str:
        if self.matched is None:
            return f"no rule matched, default {self.decision.value}"
        return f"rule {self.matched} matched → {self.decision.value}"


def validate_predicate(predicate: Predicate, where: str) -> None:
    """Reject predicates that can never be evaluated meaningfully.

    Raises:
        RuleEvaluationError: ``detail`` names the offending rule.
    """
    conditions = predicate.conditions
    if predicate.always and conditions:
        raise RuleEvaluationError(
            f"{where}: 'always' cannot be combined with {', '.join(conditions)}",
            detail=where,
        )
    if not predicate.always and not conditions:
        raise RuleEvaluationError(f"{where}: rule has no conditions", detail=where)
    if predicate.changes is not None and not predicate.changes:
        raise RuleEvaluationError(f"{where}: 'changes' must list at least one glob", detail=where)
    if predicate.units is not None and not predicate.units:
        raise RuleEvaluationError(f"{where}: 'units' must list at least one unit", detail=where)
    if predicate.trigger is not None and predicate.trigger not in {t.value for t in TriggerKind}:
        raise RuleEvaluationError(
            f"{where}: unknown trigger '{predicate.trigger}'",
            detail=where,
        )


def validate_rules(job: JobSpec) -> None:
    """Validate every clause of a job's rule list."""
    for index, clause in enumerate(job.rules or []):
        validate_predicate(clause.predicate, f"{job.name}.rules[{index}]")


def predicate_matches(predicate: Predicate, context: RunContext) -> bool:
    """Whether every condition of ``predicate`` holds for ``context``."""
    if predicate.always:
        return True
    if predicate.changes is not None:
        if not any(matches_any(path, predicate.changes) for path in context.change_set):
            return False
    if predicate.units is not None:
        if not context.affected_units.intersection(predicate.units):
            return False
    if predicate.branch is not None:
        if not fnmatchcase(context.ref, predicate.branch):
            return False
    if predicate.trigger is not None:
        if context.trigger.value != predicate.trigger:
            return False
    if predicate.variables is not None:
        for key, expected in predicate.variables.items():
            actual = context.variables.get(key)
            if actual is None or str(actual) != expected:
                return False
    return True


def evaluate(
    rules: Sequence[RuleClause],
    context: RunContext,
    default: Decision = Decision.SKIP,
) -> Evaluation:
    """Evaluate an ordered rule list, first match wins."""
    checks = 0
    for index, clause in enumerate(rules):
        checks += 1
        if predicate_matches(clause.predicate, context):
            return Evaluation(decision=clause.when, matched=index, checks=checks)
    return Evaluation(decision=default, matched=None, checks=checks)


def evaluate_job(job: JobSpec, context: RunContext) -> Evaluation:
    """Activation decision for one job, honoring its manual flag."""
    validate_rules(job)
    result = evaluate(job.rules or [], context, job.default_decision)
    if job.manual and result.decision == Decision.RUN:
        result = Evaluation(decision=Decision.MANUAL, matched=result.matched, checks=result.checks)
    logger.debug("Job '%s': %s", job.name, result.reason)
    return result
