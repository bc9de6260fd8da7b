"""
Run models — trigger input, run context, and the persisted run record.

A RunContext is built once per trigger event and never changes. The
RunRecord is the externally observable state of a run: an append-only
list of entries (rule decisions, job results, step outcomes, approvals)
from which every later gating decision is derived. It is what lets a
run sit in ``awaiting_approval`` across process restarts.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, PrivateAttr

from pipewright.core.errors import ErrorInfo
from pipewright.core.models.job import JobResult, JobStatus
from pipewright.core.models.provisioning import StepOutcome

if TYPE_CHECKING:
    from pipewright.core.config.variables import VariableSet


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class TriggerKind(StrEnum):
    PUSH = "push"
    MANUAL = "manual"


class TriggerEvent(BaseModel):
    """Input from a version-control hook."""

    ref: str
    changes: list[str] = Field(default_factory=list)
    trigger: TriggerKind = TriggerKind.PUSH


class ApprovalSignal(BaseModel):
    """External approval that releases a manual-pending job."""

    run_id: str
    job: str
    approver: str
    timestamp: str = Field(default_factory=_now_iso)


@dataclass(frozen=True)
class RunContext:
    """Immutable per-run view consumed by the rule evaluator and scheduler."""

    run_id: str
    ref: str
    change_set: frozenset[str]
    trigger: TriggerKind
    variables: VariableSet
    environment: str = ""
    affected_units: frozenset[str] = frozenset()
    environment_variables: Mapping[str, VariableSet] = field(default_factory=dict)

    def variables_for(self, environment: str | None) -> VariableSet:
        """Variable set for a job's environment, falling back to the run's."""
        if environment and environment in self.environment_variables:
            return self.environment_variables[environment]
        return self.variables


class RunStatus(StrEnum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    AWAITING_APPROVAL = "awaiting_approval"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class RunEntry(BaseModel):
    """One line of the append-only run log."""

    seq: int
    kind: str                       # decision | job_result | step_outcome | approval | stage | run
    timestamp: str = Field(default_factory=_now_iso)
    job: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class RunRecord(BaseModel):
    """Persisted state of a run — serialized to <state_dir>/runs/<run_id>.json."""

    schema_version: int = 1

    run_id: str
    pipeline: str = ""
    config_path: str = ""
    config_digest: str = ""
    status: RunStatus = RunStatus.RUNNING
    error: ErrorInfo | None = None

    ref: str = ""
    trigger: TriggerKind = TriggerKind.PUSH
    environment: str = ""
    changes: list[str] = Field(default_factory=list)
    affected_units: list[str] = Field(default_factory=list)
    unmatched_paths: list[str] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)   # redacted

    # Variable sets as resolved at start; resumes read these, never the layer files.
    pinned_variables: dict[str, Any] | None = None
    pinned_environments: dict[str, dict[str, Any]] = Field(default_factory=dict)

    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    entries: list[RunEntry] = Field(default_factory=list)

    # job_results() fold over entries[:_results_seen]
    _results: dict[str, JobResult] = PrivateAttr(default_factory=dict)
    _results_seen: int = PrivateAttr(default=0)

    def touch(self) -> None:
        self.updated_at = _now_iso()

    def append(
        self,
        kind: str,
        job: str | None = None,
        data: dict[str, Any] | None = None,
        **fields: Any,
    ) -> RunEntry:
        """Append an entry to the run log. Entries are never modified."""
        entry = RunEntry(
            seq=len(self.entries),
            kind=kind,
            job=job,
            data={**(data or {}), **fields},
        )
        self.entries.append(entry)
        return entry

    def record_result(self, result: JobResult) -> None:
        self.append("job_result", job=result.job, data=result.model_dump(mode="json"))

    def record_outcome(self, job: str, outcome: StepOutcome) -> None:
        self.append("step_outcome", job=job, data=outcome.model_dump(mode="json"))

    def record_approval(self, signal: ApprovalSignal) -> None:
        self.append("approval", job=signal.job, data=signal.model_dump(mode="json"))

    # ── Derived views (latest entry wins) ───────────────────────────

    def job_results(self) -> dict[str, JobResult]:
        """Current result per job, from the latest ``job_result`` entry.

        Entries are append-only, so only those added since the previous
        call are read.
        """
        if self._results_seen > len(self.entries):
            self._results, self._results_seen = {}, 0
        results = dict(self._results)
        for entry in self.entries[self._results_seen:]:
            if entry.kind == "job_result" and entry.job:
                results[entry.job] = JobResult.model_validate(entry.data)
        self._results, self._results_seen = results, len(self.entries)
        return dict(results)

    def decisions(self) -> dict[str, str]:
        """Rule decision per job."""
        return {
            e.job: e.data["decision"]
            for e in self.entries
            if e.kind == "decision" and e.job
        }

    def step_outcomes(self, job: str | None = None) -> list[StepOutcome]:
        return [
            StepOutcome.model_validate(e.data)
            for e in self.entries
            if e.kind == "step_outcome" and (job is None or e.job == job)
        ]

    def approvals(self) -> dict[str, ApprovalSignal]:
        return {
            e.job: ApprovalSignal.model_validate(e.data)
            for e in self.entries
            if e.kind == "approval" and e.job
        }

    def jobs_in(self, status: JobStatus) -> list[str]:
        return sorted(n for n, r in self.job_results().items() if r.status == status)
