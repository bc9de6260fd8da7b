"""
Pipeline session — what every use case needs before it can act.

Loads the pipeline, locates the state directory, and rebuilds the
immutable RunContext and the StageScheduler for a run record. Variables
are resolved once when a run starts and pinned on its record, so a
resumed run sees exactly what the original process saw.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from pipewright.adapters.registry import AdapterRegistry
from pipewright.adapters.targets.pool import TargetPool
from pipewright.core.config.loader import (
    config_digest,
    find_pipeline_file,
    load_pipeline,
    pipeline_root,
    resolve_environments,
)
from pipewright.core.config.variables import SecretResolver, VariableSet, environ_secret_resolver
from pipewright.core.engine.changes import detect_changes
from pipewright.core.engine.scheduler import StageScheduler
from pipewright.core.errors import ConfigError, PipewrightError
from pipewright.core.models.pipeline import PipelineConfig
from pipewright.core.models.run import RunContext, RunRecord
from pipewright.core.persistence.audit import AuditWriter
from pipewright.core.persistence.run_store import DEFAULT_STATE_DIR, RunStore
from pipewright.core.reliability.retry import RetryPolicy
from pipewright.core.reliability.target_lock import TargetLocks

logger = logging.getLogger(__name__)


def generate_run_id() -> str:
    """Generate a unique run id."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"run-{now}-{short}"


def default_registry(mock_mode: bool = False) -> AdapterRegistry:
    """Registry with the built-in job adapters."""
    from pipewright.adapters.shell.command import ShellCommandAdapter

    registry = AdapterRegistry(mock_mode=mock_mode)
    registry.register(ShellCommandAdapter())
    return registry


def locate_config(config_path: Path | None) -> Path:
    """Explicit path, or search upward from the working directory.

    Raises:
        ConfigError: If no pipeline file can be found.
    """
    path = config_path or find_pipeline_file()
    if path is None:
        raise ConfigError("No pipeline.yml found. Create one or specify --config.")
    return path


def state_dir_for(config_path: Path | None) -> Path:
    """State directory, even when the pipeline itself cannot be loaded."""
    path = config_path or find_pipeline_file()
    root = pipeline_root(path) if path else Path.cwd()
    if path is not None and path.is_file():
        try:
            return root / load_pipeline(path).state_dir
        except PipewrightError as e:
            logger.debug("Using default state dir, pipeline does not load: %s", e.message)
    return root / DEFAULT_STATE_DIR


@dataclass
class PipelineSession:
    """A loaded pipeline plus its on-disk state."""

    config_path: Path
    config: PipelineConfig
    root: Path
    digest: str
    registry: AdapterRegistry
    targets: TargetPool
    secret_resolver: SecretResolver | None = environ_secret_resolver
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    locks: TargetLocks | None = None
    dry_run: bool = False

    @property
    def state_dir(self) -> Path:
        return self.root / self.config.state_dir

    @property
    def store(self) -> RunStore:
        return RunStore(self.state_dir)

    @property
    def audit(self) -> AuditWriter:
        return AuditWriter(state_dir=self.state_dir)

    def pin_variables(self, record: RunRecord) -> None:
        """Resolve the variable layers once and store them on a new run.

        Raises:
            ConfigError: If a layer is missing or does not resolve.
        """
        base, per_env = resolve_environments(self.config, self.root, record.environment or None)
        record.pinned_variables = base.snapshot()
        record.pinned_environments = {name: values.snapshot() for name, values in per_env.items()}
        record.variables = base.redacted()

    def build_context(self, record: RunRecord) -> RunContext:
        """Rebuild the run context from a record's pinned variables.

        Layer files are not read again, so a run resumed after an
        approval sees the values it started with.

        Raises:
            ConfigError: If the record has no pinned variables.
        """
        if record.pinned_variables is None:
            raise ConfigError(
                f"Run {record.run_id} has no recorded variables; start a new run",
                detail=record.run_id,
            )
        base = VariableSet.from_snapshot(record.pinned_variables)
        per_env = {
            name: VariableSet.from_snapshot(values)
            for name, values in record.pinned_environments.items()
        }
        report = detect_changes(record.changes, self.config.units)
        return RunContext(
            run_id=record.run_id,
            ref=record.ref,
            change_set=frozenset(record.changes),
            trigger=record.trigger,
            variables=base,
            environment=record.environment,
            affected_units=report.affected,
            environment_variables=per_env,
        )

    def scheduler(self, context: RunContext, record: RunRecord) -> StageScheduler:
        store = self.store
        return StageScheduler(
            config=self.config,
            context=context,
            record=record,
            registry=self.registry,
            target_factory=self.targets,
            project_root=self.root,
            store=store,
            locks=self.locks or TargetLocks(store.locks_dir, holder_settled=store.is_settled),
            retry_policy=self.retry_policy,
            secret_resolver=self.secret_resolver,
            dry_run=self.dry_run,
        )


def open_session(
    config_path: Path | None = None,
    mock_mode: bool = False,
    dry_run: bool = False,
    registry: AdapterRegistry | None = None,
    targets: TargetPool | None = None,
    secret_resolver: SecretResolver | None = environ_secret_resolver,
    retry_policy: RetryPolicy | None = None,
) -> PipelineSession:
    """Load the pipeline and wire up its collaborators.

    Raises:
        ConfigError, CycleError, RuleEvaluationError: On an invalid pipeline.
    """
    path = locate_config(config_path)
    config = load_pipeline(path)
    root = pipeline_root(path)

    if retry_policy is None:
        retry_policy = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay=config.retry.base_delay,
            max_delay=config.retry.max_delay,
        )

    return PipelineSession(
        config_path=path,
        config=config,
        root=root,
        digest=config_digest(path),
        registry=registry or default_registry(mock_mode),
        targets=targets or TargetPool(root, secret_resolver=secret_resolver, mock=mock_mode),
        secret_resolver=secret_resolver,
        retry_policy=retry_policy,
        dry_run=dry_run,
    )


def load_run(session: PipelineSession, run_id: str) -> RunRecord:
    """Load a run for resumption.

    Raises:
        RunNotFound: If there is no such run.
        ConfigError: If pipeline.yml changed since the run started.
    """
    record = session.store.load(run_id)
    if record.config_digest and record.config_digest != session.digest:
        raise ConfigError(
            f"Pipeline definition changed since run {run_id} started; start a new run",
            detail=str(session.config_path),
        )
    return record
