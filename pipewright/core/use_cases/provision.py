"""
Provision use case — plan or apply one provisioning plan outside a run.

``plan`` orders the steps and, with ``check``, asks the target which
steps would be no-ops and which would apply, without mutating it.
``apply`` converges the target under its lock, like a deploy job does.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from pipewright.adapters.targets.pool import TargetPool
from pipewright.core.config.loader import resolve_variables
from pipewright.core.config.variables import SecretResolver, environ_secret_resolver
from pipewright.core.engine.executor import ProvisioningReport, execute, render_steps
from pipewright.core.engine.planner import plan
from pipewright.core.errors import ConfigError, PipewrightError
from pipewright.core.persistence.audit import AuditEntry
from pipewright.core.reliability.retry import RetryPolicy
from pipewright.core.reliability.target_lock import TargetLocks
from pipewright.core.use_cases.session import open_session

logger = logging.getLogger(__name__)


@dataclass
class ProvisionResult:
    plan: str = ""
    target: str = ""
    order: list[str] = field(default_factory=list)
    report: ProvisioningReport | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and (self.report is None or self.report.ok)

    def to_dict(self) -> dict:
        result: dict = {"plan": self.plan, "target": self.target, "order": self.order}
        if self.error:
            result["error"] = self.error
        if self.report is not None:
            result["report"] = self.report.to_dict()
        return result


def provision(
    plan_name: str,
    config_path: Path | None = None,
    environment: str | None = None,
    apply: bool = False,
    check: bool = False,
    mock_mode: bool = False,
    targets: TargetPool | None = None,
    secret_resolver: SecretResolver | None = environ_secret_resolver,
    retry_policy: RetryPolicy | None = None,
) -> ProvisionResult:
    """Plan, check, or apply a provisioning plan.

    Args:
        plan_name: Key under ``provisioning:`` in pipeline.yml.
        environment: Variable layer used to render steps.
        apply: Converge the target.
        check: Without ``apply``, check each step against the target.
    """
    result = ProvisionResult(plan=plan_name)

    try:
        session = open_session(
            config_path,
            mock_mode=mock_mode,
            targets=targets,
            secret_resolver=secret_resolver,
            retry_policy=retry_policy,
        )
        spec = session.config.provisioning.get(plan_name)
        if spec is None:
            raise ConfigError(f"Unknown provisioning plan '{plan_name}'", detail=plan_name)
        result.target = spec.target

        variables = resolve_variables(session.config, session.root, environment)
        steps = render_steps(plan(spec.steps), variables)
        result.order = [s.id for s in steps]

        if not apply and not check:
            return result

        target = session.targets(session.config.targets[spec.target], variables)
        if not apply:
            result.report = execute(steps, target, session.retry_policy, dry_run=True)
            return result

        op_id = f"prov-{uuid.uuid4().hex[:8]}"
        store = session.store
        locks = TargetLocks(store.locks_dir, holder_settled=store.is_settled)
        with locks.hold(target.target_id, op_id):
            result.report = execute(steps, target, session.retry_policy)
    except PipewrightError as e:
        result.error = str(e.to_info())
        return result

    report = result.report
    session.audit.write(
        AuditEntry(
            run_id=op_id,
            operation="provision",
            pipeline=session.config.name,
            environment=environment or "",
            status=report.status,
            errors=[str(report.error)] if report.error else [],
            context={"plan": plan_name, "target": spec.target, "applied": report.applied, "noop": report.noop},
        )
    )
    return result
