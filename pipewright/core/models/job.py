"""
Job models — declared jobs, their trigger rules, and their results.

A job belongs to exactly one stage and is gated by an ordered rule
list: the first clause whose predicate matches the run context
decides whether the job runs, is skipped, or waits for approval.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from pipewright.core.errors import ErrorInfo


class Decision(StrEnum):
    """Activation decision produced by the rule evaluator."""

    RUN = "run"
    SKIP = "skip"
    MANUAL = "manual"


class JobStatus(StrEnum):
    """Per-job state machine.

    pending → skipped | running → succeeded | failed
    pending → manual_pending → running → ...
    """

    PENDING = "pending"
    SKIPPED = "skipped"
    MANUAL_PENDING = "manual_pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SKIPPED, JobStatus.SUCCEEDED, JobStatus.FAILED)


class Severity(StrEnum):
    """Fixed vulnerability severity scale, LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: str | Severity) -> Severity:
        return cls(str(value).strip().lower())


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class Finding(BaseModel):
    """A single vulnerability finding reported by a scanning job."""

    id: str
    severity: Severity
    title: str = ""


class Predicate(BaseModel):
    """Conditions over the run context. All given conditions must hold.

    ``changes`` matches when any changed path matches any glob;
    ``units`` when any listed unit is affected; ``branch`` is a glob
    over the ref; ``variables`` compares resolved values by equality.
    """

    model_config = ConfigDict(extra="forbid")

    always: bool = False
    changes: list[str] | None = None
    units: list[str] | None = None
    branch: str | None = None
    trigger: str | None = None
    variables: dict[str, str] | None = None

    @property
    def conditions(self) -> list[str]:
        """Names of the conditions this predicate checks."""
        names = []
        for name in ("changes", "units", "branch", "trigger", "variables"):
            if getattr(self, name) is not None:
                names.append(name)
        return names


class RuleClause(BaseModel):
    """One ordered ``(predicate, decision)`` pair."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    predicate: Predicate = Field(alias="if")
    when: Decision = Decision.RUN


class JobSpec(BaseModel):
    """A declared job.

    ``needs`` may only reference jobs in the same or an earlier stage.
    ``provision`` names a provisioning plan applied when the job runs.
    ``findings`` is a report path the executor reads vulnerability
    findings from (scanning jobs).
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    stage: str
    command: str = ""
    adapter: str = "shell"
    rules: list[RuleClause] | None = None
    default: Decision | None = None
    needs: list[str] = Field(default_factory=list)
    manual: bool = False
    allow_failure: bool = False
    environment: str | None = None
    provision: str | None = None
    findings: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None
    timeout: int = 3600

    @property
    def default_decision(self) -> Decision:
        """Decision used when no rule clause matches.

        Jobs without rules always run; jobs with rules default to skip.
        """
        if self.default is not None:
            return self.default
        return Decision.RUN if self.rules is None else Decision.SKIP


class JobResult(BaseModel):
    """The recorded state of one job in a run."""

    job: str
    stage: str = ""
    status: JobStatus = JobStatus.PENDING
    decision: Decision | None = None
    reason: str = ""
    exit_code: int | None = None
    artifacts: list[str] = Field(default_factory=list)
    findings: list[Finding] = Field(default_factory=list)
    error: ErrorInfo | None = None
    allow_failure: bool = False
    gate_blocked: bool = False
    approved_by: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    duration_ms: int = 0

    @property
    def blocking_failure(self) -> bool:
        """A failure that halts later stages.

        A security gate block halts the run even for ``allow_failure`` jobs.
        """
        if self.status != JobStatus.FAILED:
            return False
        return self.gate_blocked or not self.allow_failure
