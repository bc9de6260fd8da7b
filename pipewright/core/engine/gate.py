"""
Security gate — blocks a run on findings at or above a severity threshold.

Severities compare ordinally: LOW < MEDIUM < HIGH < CRITICAL. A block
counts as a failed job for the stage that produced the findings, which
halts every later stage.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from pipewright.core.models.job import Finding, Severity

logger = logging.getLogger(__name__)


class Verdict(StrEnum):
    PASS = "pass"
    BLOCK = "block"


@dataclass(frozen=True)
class GateResult:
    verdict: Verdict
    threshold: Severity
    blocking: list[Finding] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.verdict == Verdict.BLOCK

    def describe(self) -> str:
        if not self.blocked:
            return f"security gate passed (threshold {self.threshold.value})"
        worst = self.blocking[0]
        return (
            f"security gate blocked: {worst.id} severity {worst.severity.value} "
            f">= threshold {self.threshold.value}"
            + (f" (+{len(self.blocking) - 1} more)" if len(self.blocking) > 1 else "")
        )


def evaluate(findings: Iterable[Finding], threshold: Severity | str) -> GateResult:
    """Pass or block a set of findings against ``threshold``.

    Blocking findings are ordered worst first, then by id.
    """
    threshold = Severity.parse(threshold)
    blocking = [f for f in findings if f.severity.rank >= threshold.rank]
    blocking.sort(key=lambda f: (-f.severity.rank, f.id))

    result = GateResult(
        verdict=Verdict.BLOCK if blocking else Verdict.PASS,
        threshold=threshold,
        blocking=blocking,
    )
    if result.blocked:
        logger.warning(result.describe())
    return result
