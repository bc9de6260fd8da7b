"""
Config check use case — validate pipeline.yml and report issues.

Errors are what ``load_pipeline`` and variable resolution reject;
warnings are legal but probably unintended declarations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from pipewright.core.config.loader import (
    find_pipeline_file,
    load_pipeline,
    pipeline_root,
    resolve_environments,
)
from pipewright.core.errors import PipewrightError
from pipewright.core.models.pipeline import PipelineConfig


@dataclass
class ConfigCheckResult:
    """Result of configuration validation."""

    valid: bool = False
    config: PipelineConfig | None = None
    config_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "config_path": str(self.config_path) if self.config_path else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "pipeline": self.config.name if self.config else None,
            "stages": self.config.stages if self.config else [],
            "job_count": len(self.config.jobs) if self.config else 0,
            "target_count": len(self.config.targets) if self.config else 0,
        }


def check_config(config_path: Path | None = None) -> ConfigCheckResult:
    """Validate the pipeline definition and report issues."""
    result = ConfigCheckResult()

    if config_path is None:
        config_path = find_pipeline_file()
    if config_path is None:
        result.errors.append("No pipeline.yml found.")
        return result
    result.config_path = config_path

    try:
        config = load_pipeline(config_path)
        result.config = config
        root = pipeline_root(config_path)
        resolve_environments(config, root)
    except PipewrightError as e:
        result.errors.append(str(e.to_info()))
        return result

    if not config.jobs:
        result.warnings.append("No jobs defined. Every run will be empty.")

    for stage in config.stages:
        if not config.jobs_in_stage(stage):
            result.warnings.append(f"Stage '{stage}' has no jobs.")

    used_units = {
        unit
        for job in config.jobs
        for clause in job.rules or []
        for unit in clause.predicate.units or []
    }
    for unit in sorted(used_units - set(config.units)):
        result.warnings.append(f"Rules reference unit '{unit}', which is not declared.")

    for job in config.jobs:
        if not job.command and not job.provision:
            result.warnings.append(f"Job '{job.name}' has neither a command nor a provisioning plan.")
        if job.environment and job.environment not in config.variables.environments:
            result.warnings.append(
                f"Job '{job.name}' uses environment '{job.environment}' with no variable layer."
            )

    for spec in config.templates:
        if not (root / spec.source).is_file():
            result.errors.append(f"Template source not found: {spec.source}")

    result.valid = len(result.errors) == 0
    return result
