"""
Pipeline model — the validated contents of pipeline.yml.

    name: shop
    stages: [build, test, deploy]
    workers: 4
    units:
      serviceA: ["serviceA/**"]
    security:
      threshold: high
    variables:
      defaults: vars/defaults.yml
      environments:
        production: vars/production.yml
      required: [REGISTRY]
    jobs:
      - name: build-a
        stage: build
        command: make -C serviceA
        rules:
          - if: {changes: ["serviceA/**"], branch: main}
            when: run
    targets:
      web: {kind: command, address: web-1}
    provisioning:
      web-stack:
        target: web
        steps: [...]
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pipewright.core.models.job import JobSpec, Severity
from pipewright.core.models.provisioning import ProvisioningPlanSpec, TargetSpec

DEFAULT_STAGES = ["build", "test", "deploy"]


class SecurityConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    threshold: Severity = Severity.HIGH

    @field_validator("threshold", mode="before")
    @classmethod
    def _lower(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class VariablesConfig(BaseModel):
    """Where variable layers come from.

    Layer order: ``defaults`` file, inline ``values``, then the
    environment's file. Paths are relative to pipeline.yml.
    """

    model_config = ConfigDict(extra="forbid")

    defaults: str | None = None
    values: dict[str, Any] = Field(default_factory=dict)
    environments: dict[str, str] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class TemplateSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: str
    output: str


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)


class PipelineConfig(BaseModel):
    """Root pipeline definition."""

    model_config = ConfigDict(extra="forbid")

    name: str = "pipeline"
    stages: list[str] = Field(default_factory=lambda: list(DEFAULT_STAGES))
    workers: int = Field(default=4, ge=1)
    units: dict[str, list[str]] = Field(default_factory=dict)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    variables: VariablesConfig = Field(default_factory=VariablesConfig)
    templates: list[TemplateSpec] = Field(default_factory=list)
    jobs: list[JobSpec] = Field(default_factory=list)
    targets: dict[str, TargetSpec] = Field(default_factory=dict)
    provisioning: dict[str, ProvisioningPlanSpec] = Field(default_factory=dict)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    state_dir: str = ".state"

    @model_validator(mode="after")
    def _name_entries(self) -> PipelineConfig:
        """Fill names of targets and plans from their mapping keys."""
        for key, target in self.targets.items():
            if not target.name:
                target.name = key
        for key, plan in self.provisioning.items():
            if not plan.name:
                plan.name = key
        return self

    # ── Lookups ─────────────────────────────────────────────────────

    def get_job(self, name: str) -> JobSpec | None:
        for job in self.jobs:
            if job.name == name:
                return job
        return None

    def jobs_in_stage(self, stage: str) -> list[JobSpec]:
        return [j for j in self.jobs if j.stage == stage]

    def stage_index(self, stage: str) -> int:
        return self.stages.index(stage)

    @property
    def environments(self) -> list[str]:
        """Environments referenced by layer files or jobs, in first-seen order."""
        names = list(self.variables.environments)
        for job in self.jobs:
            if job.environment and job.environment not in names:
                names.append(job.environment)
        return names
