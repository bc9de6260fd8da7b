"""
Configuration loader — reads pipeline.yml into a validated PipelineConfig.

Everything that can be checked without running a job is checked here,
so configuration mistakes abort a run before anything side-effecting
happens.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from pipewright.core.config.variables import VariableSet, load_layer, resolve
from pipewright.core.engine.planner import plan, stable_topological_order
from pipewright.core.engine.rules import validate_rules
from pipewright.core.errors import ConfigError
from pipewright.core.models.pipeline import PipelineConfig

logger = logging.getLogger(__name__)

# Default config filename
PIPELINE_CONFIG_FILE = "pipeline.yml"


def find_pipeline_file(start_dir: Path | None = None) -> Path | None:
    """Search for pipeline.yml starting from the given directory, walking up.

    Returns:
        Path to pipeline.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / PIPELINE_CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def _first_problem(error: ValidationError) -> tuple[str, str]:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "<root>"
    return location, first.get("msg", "invalid value")


def load_pipeline(path: Path | None = None) -> PipelineConfig:
    """Load and validate a pipeline definition.

    Args:
        path: Explicit path to pipeline.yml. If None, searches upward.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid.
        CycleError: If job ``needs`` form a cycle.
        RuleEvaluationError: If a job's rule list is malformed.
    """
    if path is None:
        path = find_pipeline_file()

    if path is None:
        raise ConfigError(
            f"No {PIPELINE_CONFIG_FILE} found. Create one or specify --config.",
            detail=PIPELINE_CONFIG_FILE,
        )

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}", detail=str(path))

    logger.debug("Loading pipeline config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}", detail=str(path)) from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}", detail=str(path)) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Expected a YAML mapping in {path}, got {type(data).__name__}",
            detail=str(path),
        )

    try:
        config = PipelineConfig.model_validate(data)
    except ValidationError as e:
        location, message = _first_problem(e)
        raise ConfigError(
            f"Invalid pipeline configuration in {path}: {location}: {message}",
            detail=location,
        ) from e

    validate_pipeline(config)
    logger.info("Loaded pipeline '%s' with %d jobs", config.name, len(config.jobs))
    return config


def validate_pipeline(config: PipelineConfig) -> None:
    """Cross-reference checks the schema alone cannot express."""
    seen_stages: set[str] = set()
    for stage in config.stages:
        if stage in seen_stages:
            raise ConfigError(f"Duplicate stage: '{stage}'", detail=stage)
        seen_stages.add(stage)

    names: set[str] = set()
    for job in config.jobs:
        if job.name in names:
            raise ConfigError(f"Duplicate job name: '{job.name}'", detail=job.name)
        names.add(job.name)
        if job.stage not in seen_stages:
            raise ConfigError(
                f"Job '{job.name}' uses unknown stage '{job.stage}'",
                detail=job.name,
            )

    for job in config.jobs:
        for need in job.needs:
            other = config.get_job(need)
            if other is None:
                raise ConfigError(f"Job '{job.name}' needs unknown job '{need}'", detail=need)
            if config.stage_index(other.stage) > config.stage_index(job.stage):
                raise ConfigError(
                    f"Job '{job.name}' (stage {job.stage}) needs '{need}' "
                    f"from later stage {other.stage}",
                    detail=need,
                )
        validate_rules(job)
        if job.provision is not None and job.provision not in config.provisioning:
            raise ConfigError(
                f"Job '{job.name}' references unknown provisioning plan '{job.provision}'",
                detail=job.provision,
            )

    stable_topological_order([(j.name, j.needs) for j in config.jobs], what="job")

    for name, spec in config.provisioning.items():
        if spec.target not in config.targets:
            raise ConfigError(
                f"Provisioning plan '{name}' references unknown target '{spec.target}'",
                detail=spec.target,
            )
        plan(spec.steps)


def config_digest(path: Path) -> str:
    """sha256 of the pipeline file bytes."""
    return hashlib.sha256(path.read_bytes()).hexdigest()


def pipeline_root(config_path: Path) -> Path:
    """Directory relative paths in the pipeline file resolve against."""
    return config_path.parent.resolve()


def resolve_variables(
    config: PipelineConfig,
    root: Path,
    environment: str | None = None,
) -> VariableSet:
    """Resolve the variable set for one environment (or the base set).

    Layers, lowest precedence first: ``defaults`` file, inline
    ``values``, then the environment's layer file.
    """
    layers = []
    if config.variables.defaults:
        layers.append(load_layer(root / config.variables.defaults))
    layers.append(config.variables.values)
    if environment:
        env_file = config.variables.environments.get(environment)
        if env_file:
            layers.append(load_layer(root / env_file))
    return resolve(layers, required=config.variables.required)


def resolve_environments(
    config: PipelineConfig,
    root: Path,
    environment: str | None = None,
) -> tuple[VariableSet, dict[str, VariableSet]]:
    """Resolve the run's variable set and one per referenced environment.

    All environments are resolved up front so a bad layer fails the run
    before any job executes.
    """
    base = resolve_variables(config, root, environment)
    per_env = {env: resolve_variables(config, root, env) for env in config.environments}
    return base, per_env
