"""
Cancel use case.

A run that is executing is cancelled at its next stage boundary: we
only drop a marker file that its scheduler polls. A run paused for
approval has no process driving it, so it is cancelled here directly,
under the run's claim. If an approval holds the claim, the run is
being resumed and the marker is dropped instead. Terminal runs are
left unchanged.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pipewright.core.errors import PipewrightError, RunStateError
from pipewright.core.models.run import RunStatus
from pipewright.core.persistence.audit import AuditEntry
from pipewright.core.use_cases.run import RunResult
from pipewright.core.use_cases.session import open_session

logger = logging.getLogger(__name__)


def cancel_run(run_id: str, config_path: Path | None = None) -> RunResult:
    """Request cancellation of a run."""
    result = RunResult()

    try:
        session = open_session(config_path)
        store = session.store
        result.record = store.load(run_id)
    except PipewrightError as e:
        result.error = str(e.to_info())
        result.error_kind = e.kind
        return result

    if result.record.status == RunStatus.RUNNING:
        store.request_cancel(run_id)
        return result

    try:
        with store.claim(run_id):
            # Re-read under the claim; an approval may have resumed or finished it.
            record = result.record = store.load(run_id)
            if record.status.terminal:
                logger.info("Run %s is already %s", run_id, record.status.value)
                return result
            if record.status == RunStatus.RUNNING:
                store.request_cancel(run_id)
                return result

            context = session.build_context(record)
            session.scheduler(context, record).cancel()
    except RunStateError:
        logger.info("Run %s is being resumed; cancelling at its next stage", run_id)
        store.request_cancel(run_id)
        return result
    except PipewrightError as e:
        result.error = str(e.to_info())
        result.error_kind = e.kind
        return result

    session.audit.write(AuditEntry.for_run(record, "cancel"))
    return result
