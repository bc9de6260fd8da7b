"""
Stage scheduler — runs activated jobs stage by stage.

Stages are barriers: a stage starts only once every job of every
earlier stage is terminal or manual-pending. Inside a stage, jobs whose
``needs`` are satisfied run in parallel waves on a thread pool bounded
by ``workers``.

    for each stage:
        cancel requested?          → skip the rest, run cancelled
        decide (rules)             → skipped | manual_pending | runnable
        run waves of ready jobs    → succeeded | failed
        security gate per result   → failed (gate_blocked) on block
        blocking failure?          → later stages skipped, run failed

Every decision and result is appended to the RunRecord, which is the
only state the scheduler reads back. That is what makes ``advance``
resumable: after an approval it is called again on the same record,
settled stages are passed over, and approved jobs run.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, datetime
from pathlib import Path

from pipewright.adapters.registry import AdapterRegistry
from pipewright.adapters.targets.base import ProvisioningTarget
from pipewright.core.config.variables import SecretResolver, VariableSet
from pipewright.core.engine import gate
from pipewright.core.engine.executor import execute, render_steps
from pipewright.core.engine.planner import plan
from pipewright.core.engine.rules import evaluate_job
from pipewright.core.errors import (
    ConfigError,
    CycleError,
    ErrorInfo,
    JobFailure,
    TargetBusy,
    TemplateError,
)
from pipewright.core.models.action import Action
from pipewright.core.models.job import Decision, JobResult, JobSpec, JobStatus
from pipewright.core.models.pipeline import PipelineConfig
from pipewright.core.models.provisioning import StepOutcome, TargetSpec
from pipewright.core.models.run import RunContext, RunRecord, RunStatus
from pipewright.core.persistence.run_store import RunStore
from pipewright.core.reliability.retry import RetryPolicy
from pipewright.core.reliability.target_lock import TargetLocks

logger = logging.getLogger(__name__)

# Builds the provisioning target for a plan, given the job's variables.
TargetFactory = Callable[[TargetSpec, VariableSet], ProvisioningTarget]

_READY = "ready"
_WAITING = "waiting"
_BLOCKED = "blocked"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class StageScheduler:
    """Drives one run's record forward as far as it can go.

    Args:
        config: The validated pipeline.
        context: Immutable run context.
        record: The run record; read for state and appended to.
        registry: Job adapter registry.
        target_factory: Builds provisioning targets for deploy jobs.
        project_root: Working directory for job commands.
        store: Persists the record after every change (optional).
        locks: Per-target mutual exclusion.
        retry_policy: Retry policy for transient provisioning failures.
        secret_resolver: Materializes secrets into job environments.
        dry_run: Validate jobs and check targets without changing anything.
        lock_timeout: Seconds to queue on a busy target before TargetBusy.
    """

    def __init__(
        self,
        config: PipelineConfig,
        context: RunContext,
        record: RunRecord,
        registry: AdapterRegistry,
        target_factory: TargetFactory,
        project_root: Path | str = ".",
        store: RunStore | None = None,
        locks: TargetLocks | None = None,
        retry_policy: RetryPolicy | None = None,
        secret_resolver: SecretResolver | None = None,
        dry_run: bool = False,
        lock_timeout: float = 0.0,
    ):
        self._config = config
        self._context = context
        self._record = record
        self._registry = registry
        self._target_factory = target_factory
        self._project_root = str(project_root)
        self._store = store
        self._locks = locks or TargetLocks()
        self._retry_policy = retry_policy or RetryPolicy()
        self._secret_resolver = secret_resolver
        self._dry_run = dry_run
        self._lock_timeout = lock_timeout
        self._lock = threading.RLock()

    @property
    def record(self) -> RunRecord:
        return self._record

    # ── Record helpers (all mutation goes through here) ─────────────

    def _save(self) -> None:
        if self._store is not None:
            self._store.save(self._record)

    def _set_result(self, result: JobResult) -> None:
        with self._lock:
            self._record.record_result(result)
            self._save()

    def _record_outcome(self, job: str, outcome: StepOutcome) -> None:
        with self._lock:
            self._record.record_outcome(job, outcome)
            self._save()

    def _append(self, kind: str, job: str | None = None, **data) -> None:
        with self._lock:
            self._record.append(kind, job=job, **data)
            self._save()

    def _finish(self, status: RunStatus, error: ErrorInfo | None = None) -> RunStatus:
        with self._lock:
            self._record.status = status
            if error is not None:
                self._record.error = error
            self._record.append("run", status=status.value)
            self._save()
        logger.info("Run %s → %s", self._record.run_id, status.value)
        return status

    # ── Public API ──────────────────────────────────────────────────

    def advance(self) -> RunStatus:
        """Run every stage that can make progress and return the run status."""
        halted_by: JobResult | None = None

        for stage in self._config.stages:
            jobs = self._config.jobs_in_stage(stage)

            if halted_by is not None:
                self._skip_unfinished(jobs, f"run halted: job '{halted_by.job}' failed")
                continue

            if self._has_work(jobs):
                if self._cancel_requested():
                    return self.cancel()
                self._append("stage", stage=stage, event="started")
                self._run_stage(jobs)
                self._append("stage", stage=stage, event="settled")

            results = self._record.job_results()
            for job in jobs:
                result = results.get(job.name)
                if result is not None and result.blocking_failure:
                    halted_by = result
                    break
            if halted_by is not None:
                self._skip_unfinished(
                    jobs,
                    f"run halted: job '{halted_by.job}' failed",
                    include_manual=False,
                )

            if halted_by is None and self._has_held(jobs, results):
                return self._finish(RunStatus.AWAITING_APPROVAL)

        if halted_by is not None:
            error = halted_by.error or JobFailure(
                f"Job '{halted_by.job}' failed", detail=halted_by.job
            ).to_info()
            return self._finish(RunStatus.FAILED, error)

        if self._record.jobs_in(JobStatus.MANUAL_PENDING):
            return self._finish(RunStatus.AWAITING_APPROVAL)
        return self._finish(RunStatus.SUCCEEDED)

    # ── Stage bookkeeping ───────────────────────────────────────────

    def _has_work(self, jobs: list[JobSpec]) -> bool:
        """Whether any job in the stage can still change state."""
        results = self._record.job_results()
        approvals = self._record.approvals()
        for job in jobs:
            result = results.get(job.name)
            if result is None or result.status in (JobStatus.PENDING, JobStatus.RUNNING):
                return True
            if result.status == JobStatus.MANUAL_PENDING and job.name in approvals:
                return True
        return False

    def _has_held(self, jobs: list[JobSpec], results: dict[str, JobResult]) -> bool:
        return any(
            job.name in results and results[job.name].status == JobStatus.PENDING
            for job in jobs
        )

    def _skip_unfinished(
        self,
        jobs: list[JobSpec],
        reason: str,
        include_manual: bool = True,
    ) -> None:
        results = self._record.job_results()
        for job in jobs:
            result = results.get(job.name)
            if result is not None and result.status.terminal:
                continue
            if result is not None and result.status == JobStatus.MANUAL_PENDING and not include_manual:
                continue
            self._set_result(
                JobResult(
                    job=job.name,
                    stage=job.stage,
                    status=JobStatus.SKIPPED,
                    decision=result.decision if result else None,
                    reason=reason,
                    allow_failure=job.allow_failure,
                )
            )

    def _cancel_requested(self) -> bool:
        return self._store is not None and self._store.cancel_requested(self._record.run_id)

    def cancel(self) -> RunStatus:
        """Skip every unfinished job (manual-pending included) and end the run."""
        for stage in self._config.stages:
            self._skip_unfinished(self._config.jobs_in_stage(stage), "run cancelled")
        if self._store is not None:
            self._store.clear_cancel(self._record.run_id)
        logger.warning("Run %s cancelled", self._record.run_id)
        return self._finish(RunStatus.CANCELLED)

    # ── Decisions ───────────────────────────────────────────────────

    def _decide(self, jobs: list[JobSpec]) -> dict[str, Decision]:
        """Evaluate rules once per job; return runnable jobs and their decision."""
        results = self._record.job_results()
        decisions = self._record.decisions()
        approvals = self._record.approvals()
        runnable: dict[str, Decision] = {}

        for job in jobs:
            result = results.get(job.name)
            if result is not None and result.status.terminal:
                continue

            if job.name in decisions:
                decision = Decision(decisions[job.name])
            else:
                evaluation = evaluate_job(job, self._context)
                decision = evaluation.decision
                self._append(
                    "decision",
                    job=job.name,
                    decision=decision.value,
                    reason=evaluation.reason,
                    matched=evaluation.matched,
                )
                if decision == Decision.SKIP:
                    self._set_result(
                        JobResult(
                            job=job.name,
                            stage=job.stage,
                            status=JobStatus.SKIPPED,
                            decision=decision,
                            reason=evaluation.reason,
                            allow_failure=job.allow_failure,
                        )
                    )
                    continue

            if decision == Decision.MANUAL and job.name not in approvals:
                if result is None or result.status != JobStatus.MANUAL_PENDING:
                    self._set_result(
                        JobResult(
                            job=job.name,
                            stage=job.stage,
                            status=JobStatus.MANUAL_PENDING,
                            decision=decision,
                            reason="awaiting approval",
                            allow_failure=job.allow_failure,
                        )
                    )
                    logger.info("Job '%s' is waiting for approval", job.name)
                continue

            runnable[job.name] = decision

        return runnable

    def _needs_state(self, job: JobSpec, results: dict[str, JobResult]) -> tuple[str, str]:
        """Whether a job's ``needs`` let it run now, never, or later."""
        waiting_on = ""
        for need in job.needs:
            other = results.get(need)
            if other is None or other.status in (
                JobStatus.PENDING,
                JobStatus.RUNNING,
                JobStatus.MANUAL_PENDING,
            ):
                waiting_on = waiting_on or need
            elif other.status == JobStatus.FAILED:
                return _BLOCKED, f"needs '{need}', which failed"
            elif other.status == JobStatus.SKIPPED and other.decision != Decision.SKIP:
                return _BLOCKED, f"needs '{need}', which did not run"
        if waiting_on:
            return _WAITING, f"waiting for '{waiting_on}'"
        return _READY, ""

    # ── Execution ───────────────────────────────────────────────────

    def _run_stage(self, jobs: list[JobSpec]) -> None:
        runnable = self._decide(jobs)
        by_name = {job.name: job for job in jobs}
        remaining = [by_name[name] for name in runnable]

        while remaining:
            results = self._record.job_results()
            wave: list[JobSpec] = []
            still_waiting: list[JobSpec] = []

            for job in remaining:
                state, reason = self._needs_state(job, results)
                if state == _READY:
                    wave.append(job)
                elif state == _BLOCKED:
                    self._set_result(
                        JobResult(
                            job=job.name,
                            stage=job.stage,
                            status=JobStatus.SKIPPED,
                            decision=runnable[job.name],
                            reason=reason,
                            allow_failure=job.allow_failure,
                        )
                    )
                else:
                    still_waiting.append(job)

            if not wave:
                if len(still_waiting) == len(remaining):
                    self._hold(still_waiting, runnable, results)
                    return
                remaining = still_waiting
                continue

            self._run_wave(wave, runnable)
            remaining = still_waiting

    def _hold(
        self,
        jobs: list[JobSpec],
        runnable: dict[str, Decision],
        results: dict[str, JobResult],
    ) -> None:
        """Park jobs whose needs await approval; they are re-evaluated on resume."""
        for job in jobs:
            _state, reason = self._needs_state(job, results)
            current = results.get(job.name)
            if current is not None and current.status == JobStatus.PENDING and current.reason == reason:
                continue
            self._set_result(
                JobResult(
                    job=job.name,
                    stage=job.stage,
                    status=JobStatus.PENDING,
                    decision=runnable[job.name],
                    reason=reason,
                    allow_failure=job.allow_failure,
                )
            )
            logger.info("Job '%s' held: %s", job.name, reason)

    def _run_wave(self, wave: list[JobSpec], runnable: dict[str, Decision]) -> None:
        approvals = self._record.approvals()
        for job in wave:
            self._set_result(
                JobResult(
                    job=job.name,
                    stage=job.stage,
                    status=JobStatus.RUNNING,
                    decision=runnable[job.name],
                    allow_failure=job.allow_failure,
                    started_at=_now_iso(),
                )
            )

        workers = max(1, min(self._config.workers, len(wave)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(
                    self._execute_job,
                    job,
                    runnable[job.name],
                    approvals[job.name].approver if job.name in approvals else None,
                ): job
                for job in wave
            }
            for future in as_completed(futures):
                # Dependents in later waves must see a gate block as a failure.
                result = self._gate(futures[future], future.result())
                self._set_result(result)
                marker = "✓" if result.status == JobStatus.SUCCEEDED else "✗"
                logger.info("%s %s → %s", marker, result.job, result.status.value)

    def _execute_job(
        self,
        job: JobSpec,
        decision: Decision,
        approved_by: str | None,
    ) -> JobResult:
        """Run one job; never raises."""
        started = _now_iso()
        t0 = time.monotonic()
        variables = self._context.variables_for(job.environment)
        result = JobResult(
            job=job.name,
            stage=job.stage,
            status=JobStatus.SUCCEEDED,
            decision=decision,
            allow_failure=job.allow_failure,
            approved_by=approved_by,
            started_at=started,
        )

        if job.command:
            try:
                env = variables.as_environment(self._secret_resolver)
            except ConfigError as e:
                result.status = JobStatus.FAILED
                result.reason = e.message
                result.error = e.to_info()
                result.ended_at = _now_iso()
                return result
            env.update(job.env)
            action = Action(
                id=f"{self._record.run_id}:{job.name}",
                job=job.name,
                adapter=job.adapter,
                command=job.command,
                env=env,
                cwd=job.cwd,
                timeout=job.timeout,
                params={"findings": job.findings} if job.findings else {},
            )
            receipt = self._registry.execute_action(
                action,
                project_root=self._project_root,
                dry_run=self._dry_run,
            )
            result.exit_code = receipt.exit_code
            result.artifacts = list(receipt.artifacts)
            result.findings = list(receipt.findings)
            if receipt.failed:
                detail = f"exit code {receipt.exit_code}" if receipt.exit_code is not None else job.name
                result.status = JobStatus.FAILED
                result.reason = receipt.error or "job failed"
                result.error = JobFailure(
                    f"Job '{job.name}' failed: {result.reason}",
                    detail=detail,
                ).to_info()

        if result.status == JobStatus.SUCCEEDED and job.provision:
            error = self._provision(job, variables)
            if error is not None:
                result.status = JobStatus.FAILED
                result.reason = error.message
                result.error = error

        result.ended_at = _now_iso()
        result.duration_ms = int((time.monotonic() - t0) * 1000)
        return result

    def _provision(self, job: JobSpec, variables: VariableSet) -> ErrorInfo | None:
        """Apply the job's provisioning plan under the target's lock."""
        spec = self._config.provisioning[job.provision]
        target_spec = self._config.targets[spec.target]
        run_id = self._record.run_id

        try:
            steps = render_steps(plan(spec.steps), variables)
            target = self._target_factory(target_spec, variables)
            with self._locks.hold(target.target_id, run_id, timeout=self._lock_timeout):
                report = execute(
                    steps,
                    target,
                    self._retry_policy,
                    dry_run=self._dry_run,
                    on_outcome=lambda outcome: self._record_outcome(job.name, outcome),
                )
        except (TargetBusy, TemplateError, CycleError, ConfigError) as e:
            logger.error("Job '%s' provisioning failed: %s", job.name, e.message)
            return e.to_info()

        logger.info(
            "Plan '%s' on %s: %d applied, %d unchanged",
            spec.name,
            target_spec.name,
            report.applied,
            report.noop,
        )
        return report.error

    # ── Security gate ───────────────────────────────────────────────

    def _gate(self, job: JobSpec, result: JobResult) -> JobResult:
        """Fail a finished job whose findings breach the threshold."""
        if not result.findings or result.status not in (JobStatus.SUCCEEDED, JobStatus.FAILED):
            return result

        threshold = self._config.security.threshold
        verdict = gate.evaluate(result.findings, threshold)
        self._append(
            "gate",
            job=job.name,
            verdict=verdict.verdict.value,
            threshold=threshold.value,
            blocking=[f.id for f in verdict.blocking],
        )
        if not verdict.blocked:
            return result

        return result.model_copy(
            update={
                "status": JobStatus.FAILED,
                "gate_blocked": True,
                "reason": verdict.describe(),
                "error": JobFailure(
                    f"Job '{job.name}' blocked by {verdict.describe()}",
                    detail=verdict.blocking[0].id,
                ).to_info(),
            }
        )
