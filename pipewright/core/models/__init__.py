"""
Domain models — Pydantic types for the orchestrator.

All models are re-exported here for convenient access:

    from pipewright.core.models import JobSpec, JobResult, RunRecord, ProvisioningStep
"""

from pipewright.core.models.action import Action, Receipt
from pipewright.core.models.job import (
    Decision,
    Finding,
    JobResult,
    JobSpec,
    JobStatus,
    Predicate,
    RuleClause,
    Severity,
)
from pipewright.core.models.pipeline import (
    PipelineConfig,
    RetryConfig,
    SecurityConfig,
    TemplateSpec,
    VariablesConfig,
)
from pipewright.core.models.provisioning import (
    ApplyResult,
    Outcome,
    ProvisioningPlanSpec,
    ProvisioningStep,
    StepOutcome,
    TargetSpec,
)
from pipewright.core.models.run import (
    ApprovalSignal,
    RunContext,
    RunEntry,
    RunRecord,
    RunStatus,
    TriggerEvent,
    TriggerKind,
)

__all__ = [
    # action.py
    "Action",
    "Receipt",
    # job.py
    "Decision",
    "Finding",
    "JobResult",
    "JobSpec",
    "JobStatus",
    "Predicate",
    "RuleClause",
    "Severity",
    # pipeline.py
    "PipelineConfig",
    "RetryConfig",
    "SecurityConfig",
    "TemplateSpec",
    "VariablesConfig",
    # provisioning.py
    "ApplyResult",
    "Outcome",
    "ProvisioningPlanSpec",
    "ProvisioningStep",
    "StepOutcome",
    "TargetSpec",
    # run.py
    "ApprovalSignal",
    "RunContext",
    "RunEntry",
    "RunRecord",
    "RunStatus",
    "TriggerEvent",
    "TriggerKind",
]
