"""
Run use case — one trigger event from configuration to settled run.

    load pipeline → resolve variables → render templates → detect changes
    → evaluate rules → schedule stages → persist → audit

Configuration, template, rule and cycle errors abort the run before any
job executes; they are still recorded as a ``failed`` run so the
failure is observable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from pipewright.adapters.registry import AdapterRegistry
from pipewright.adapters.targets.pool import TargetPool
from pipewright.core.config.variables import (
    SecretResolver,
    VariableSet,
    environ_secret_resolver,
)
from pipewright.core.engine.changes import detect_changes
from pipewright.core.errors import PipewrightError
from pipewright.core.models.run import RunRecord, RunStatus, TriggerEvent
from pipewright.core.persistence.audit import AuditEntry, AuditWriter
from pipewright.core.persistence.run_store import RunStore
from pipewright.core.reliability.retry import RetryPolicy
from pipewright.core.services.git_changes import changed_paths
from pipewright.core.services.templates import render_file
from pipewright.core.use_cases.session import (
    PipelineSession,
    generate_run_id,
    locate_config,
    open_session,
    state_dir_for,
)

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Result of starting or resuming a run."""

    record: RunRecord | None = None
    rendered: list[str] | None = None
    error: str | None = None
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return (
            self.error is None
            and self.record is not None
            and self.record.status in (RunStatus.SUCCEEDED, RunStatus.AWAITING_APPROVAL)
        )

    def to_dict(self) -> dict:
        result: dict = {}
        if self.error:
            result["error"] = self.error
            result["error_kind"] = self.error_kind
        if self.record is not None:
            result["run"] = summarize(self.record)
        if self.rendered:
            result["rendered"] = self.rendered
        return result


def summarize(record: RunRecord) -> dict:
    """Run record as reported by the CLI and the HTTP API."""
    return {
        "run_id": record.run_id,
        "pipeline": record.pipeline,
        "status": record.status.value,
        "error": record.error.model_dump(mode="json") if record.error else None,
        "ref": record.ref,
        "trigger": record.trigger.value,
        "environment": record.environment,
        "affected_units": record.affected_units,
        "unmatched_paths": record.unmatched_paths,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
        "jobs": {
            name: result.model_dump(mode="json")
            for name, result in sorted(record.job_results().items())
        },
        "steps": [o.model_dump(mode="json") for o in record.step_outcomes()],
    }


def render_templates(session: PipelineSession, variables: VariableSet) -> list[str]:
    """Render every declared template with the run's variables."""
    outputs = []
    for spec in session.config.templates:
        output = render_file(session.root / spec.source, variables, session.root / spec.output)
        outputs.append(str(output))
    return outputs


def start_run(
    event: TriggerEvent,
    config_path: Path | None = None,
    environment: str | None = None,
    run_id: str | None = None,
    base_ref: str | None = None,
    dry_run: bool = False,
    mock_mode: bool = False,
    registry: AdapterRegistry | None = None,
    targets: TargetPool | None = None,
    secret_resolver: SecretResolver | None = environ_secret_resolver,
    retry_policy: RetryPolicy | None = None,
) -> RunResult:
    """Start a run for a trigger event.

    Args:
        event: Ref, changed paths and trigger kind.
        config_path: Explicit pipeline.yml (default: search upward).
        environment: Environment whose variable layer overrides defaults.
        run_id: Use this id instead of generating one.
        base_ref: When ``event.changes`` is empty, compute it from git
            against this revision.
        dry_run: Validate jobs and check targets without changing anything.
        mock_mode: Mock job adapters and in-memory targets.

    Returns:
        RunResult with the settled (or paused) run record.
    """
    result = RunResult()
    record = RunRecord(
        run_id=run_id or generate_run_id(),
        ref=event.ref,
        trigger=event.trigger,
        environment=environment or "",
        changes=sorted(set(event.changes)),
    )
    result.record = record

    try:
        path = locate_config(config_path)
    except PipewrightError as e:
        result.error = str(e.to_info())
        result.error_kind = e.kind
        return result
    record.config_path = str(path)

    try:
        session = open_session(
            path,
            mock_mode=mock_mode,
            dry_run=dry_run,
            registry=registry,
            targets=targets,
            secret_resolver=secret_resolver,
            retry_policy=retry_policy,
        )
        record.pipeline = session.config.name
        record.config_digest = session.digest

        if not record.changes and base_ref:
            record.changes = sorted(set(changed_paths(session.root, base=base_ref)))

        session.pin_variables(record)
        context = session.build_context(record)
        report = detect_changes(record.changes, session.config.units)
        record.affected_units = sorted(report.affected)
        record.unmatched_paths = sorted(report.unmatched)

        result.rendered = render_templates(session, context.variables)
    except PipewrightError as e:
        logger.error("Run %s aborted before any job: %s", record.run_id, e.message)
        return _abort(result, record, e, path)

    store = session.store
    record.append("run", status=RunStatus.RUNNING.value, ref=record.ref)
    store.save(record)
    logger.info(
        "Run %s started: ref=%s, %d changed paths, units=%s",
        record.run_id,
        record.ref,
        len(record.changes),
        record.affected_units or "none",
    )

    try:
        session.scheduler(context, record).advance()
    except PipewrightError as e:
        return _abort(result, record, e, path, store=store)

    session.audit.write(AuditEntry.for_run(record, "run", dry_run=dry_run))
    return result


def _abort(
    result: RunResult,
    record: RunRecord,
    error: PipewrightError,
    config_path: Path,
    store: RunStore | None = None,
) -> RunResult:
    """Record a run that failed before (or outside) job execution."""
    record.status = RunStatus.FAILED
    record.error = error.to_info()
    record.append("run", status=RunStatus.FAILED.value, error=str(record.error))
    state_dir = store.state_dir if store is not None else state_dir_for(config_path)
    (store or RunStore(state_dir)).save(record)
    AuditWriter(state_dir=state_dir).write(AuditEntry.for_run(record, "run"))
    result.error = str(record.error)
    result.error_kind = error.kind
    return result
