"""
Approve use case — release a manual-pending job and resume its run.

The approval is appended to the run record first, then the scheduler
is rebuilt from the persisted record and advanced. Nothing is held in
memory between the original run and the approval.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pipewright.adapters.registry import AdapterRegistry
from pipewright.adapters.targets.pool import TargetPool
from pipewright.core.config.variables import SecretResolver, environ_secret_resolver
from pipewright.core.errors import PipewrightError, RunStateError
from pipewright.core.models.job import JobStatus
from pipewright.core.models.run import ApprovalSignal, RunStatus
from pipewright.core.persistence.audit import AuditEntry
from pipewright.core.reliability.retry import RetryPolicy
from pipewright.core.use_cases.run import RunResult
from pipewright.core.use_cases.session import PipelineSession, load_run, open_session

logger = logging.getLogger(__name__)


def approve_run(
    signal: ApprovalSignal,
    config_path: Path | None = None,
    mock_mode: bool = False,
    registry: AdapterRegistry | None = None,
    targets: TargetPool | None = None,
    secret_resolver: SecretResolver | None = environ_secret_resolver,
    retry_policy: RetryPolicy | None = None,
) -> RunResult:
    """Apply an approval signal and drive the run forward.

    Fails (without touching the record) when the run is already
    finished, the job is not waiting for approval, the pipeline
    changed since the run started, or another request is changing
    the same run.
    """
    result = RunResult()

    try:
        session = open_session(
            config_path,
            mock_mode=mock_mode,
            registry=registry,
            targets=targets,
            secret_resolver=secret_resolver,
            retry_policy=retry_policy,
        )
        with session.store.claim(signal.run_id):
            _approve(session, signal, result)
    except PipewrightError as e:
        result.error = str(e.to_info())
        result.error_kind = e.kind
    return result


def _approve(session: PipelineSession, signal: ApprovalSignal, result: RunResult) -> None:
    record = load_run(session, signal.run_id)
    result.record = record

    if record.status != RunStatus.AWAITING_APPROVAL:
        raise RunStateError(
            f"Run {record.run_id} is {record.status.value}, not awaiting approval",
            detail=record.run_id,
        )
    current = record.job_results().get(signal.job)
    if current is None or current.status != JobStatus.MANUAL_PENDING:
        state = current.status.value if current else "not started"
        raise RunStateError(
            f"Job '{signal.job}' is not waiting for approval ({state})",
            detail=signal.job,
        )

    context = session.build_context(record)

    record.record_approval(signal)
    record.status = RunStatus.RUNNING
    session.store.save(record)
    logger.info("Job '%s' in run %s approved by %s", signal.job, record.run_id, signal.approver)

    session.scheduler(context, record).advance()
    session.audit.write(
        AuditEntry.for_run(record, "approve", job=signal.job, approver=signal.approver)
    )
