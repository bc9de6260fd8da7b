"""
Shared test fixtures and configuration.
"""

from __future__ import annotations

import textwrap
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from pipewright.adapters.mock import MockAdapter
from pipewright.adapters.registry import AdapterRegistry
from pipewright.adapters.targets.pool import TargetPool
from pipewright.core.config.variables import VariableSet
from pipewright.core.engine.scheduler import StageScheduler
from pipewright.core.models.pipeline import PipelineConfig
from pipewright.core.models.run import RunContext, RunRecord, TriggerKind
from pipewright.core.persistence.run_store import RunStore
from pipewright.core.reliability.retry import RetryPolicy
from pipewright.core.reliability.target_lock import TargetLocks

# A two-service shop: build per service, one scan, staged deploys.
SHOP_PIPELINE = textwrap.dedent("""\
    name: shop
    stages: [build, test, deploy]
    workers: 2
    units:
      serviceA: ["serviceA/**"]
      serviceB: ["serviceB/**"]
    security:
      threshold: high
    variables:
      values:
        REGISTRY: registry.local
        REPLICAS: 2
      environments:
        staging: vars/staging.yml
        production: vars/production.yml
    jobs:
      - name: build-a
        stage: build
        command: make -C serviceA
        rules:
          - if: {changes: ["serviceA/**"], branch: main}
            when: run
      - name: build-b
        stage: build
        command: make -C serviceB
        rules:
          - if: {changes: ["serviceB/**"]}
            when: run
      - name: scan
        stage: test
        command: scan --report scan.json
        findings: scan.json
      - name: deploy-staging
        stage: deploy
        environment: staging
        provision: web-stack
        rules:
          - if: {branch: main}
            when: run
      - name: deploy-production
        stage: deploy
        environment: production
        provision: web-stack
        needs: [deploy-staging]
        rules:
          - if: {always: true}
            when: manual
    targets:
      web: {kind: memory}
    provisioning:
      web-stack:
        target: web
        steps:
          - id: network
            desired: {network: "{{ ENV_NAME }}-net"}
          - id: app
            depends_on: [network]
            desired: {image: "{{ REGISTRY }}/shop:latest", replicas: "{{ REPLICAS }}"}
""")


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def tmp_state_dir(tmp_path: Path) -> Path:
    """Return a temporary directory for state files."""
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def write_pipeline(tmp_path: Path) -> Callable[..., Path]:
    """Write a pipeline.yml (and optional extra files) into tmp_path."""

    def _write(content: str, files: dict[str, str] | None = None) -> Path:
        for rel, text in (files or {}).items():
            path = tmp_path / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(textwrap.dedent(text))
        config = tmp_path / "pipeline.yml"
        config.write_text(textwrap.dedent(content))
        return config

    return _write


@pytest.fixture
def shop_project(write_pipeline: Callable[..., Path]) -> Path:
    """The shop pipeline with its environment layers; returns pipeline.yml."""
    return write_pipeline(
        SHOP_PIPELINE,
        files={
            "vars/staging.yml": "ENV_NAME: staging\n",
            "vars/production.yml": "ENV_NAME: production\nREPLICAS: 4\n",
        },
    )


@pytest.fixture
def mock_adapter() -> MockAdapter:
    """Mock executor standing in for the shell adapter."""
    return MockAdapter(adapter_name="shell")


@pytest.fixture
def registry(mock_adapter: MockAdapter) -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register(mock_adapter)
    return registry


@pytest.fixture
def targets(tmp_path: Path) -> TargetPool:
    """In-memory targets, shared for the whole test."""
    return TargetPool(tmp_path, mock=True)


@pytest.fixture
def sleeps() -> list[float]:
    """Delays the retry policy would have slept."""
    return []


@pytest.fixture
def retry_policy(sleeps: list[float]) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.1, sleep=sleeps.append)


@pytest.fixture
def make_context() -> Callable[..., RunContext]:
    """Build a RunContext with sensible defaults."""

    def _make(
        ref: str = "main",
        changes: tuple[str, ...] | list[str] = (),
        trigger: TriggerKind = TriggerKind.PUSH,
        variables: dict[str, Any] | None = None,
        units: tuple[str, ...] | list[str] = (),
        environments: dict[str, dict[str, Any]] | None = None,
        run_id: str = "run-test",
    ) -> RunContext:
        return RunContext(
            run_id=run_id,
            ref=ref,
            change_set=frozenset(changes),
            trigger=trigger,
            variables=VariableSet(variables or {}),
            affected_units=frozenset(units),
            environment_variables={
                name: VariableSet(values) for name, values in (environments or {}).items()
            },
        )

    return _make


@pytest.fixture
def make_scheduler(
    tmp_state_dir: Path,
    registry: AdapterRegistry,
    targets: TargetPool,
    retry_policy: RetryPolicy,
    make_context: Callable[..., RunContext],
) -> Callable[..., StageScheduler]:
    """Build a StageScheduler over a pipeline given as a dict."""

    def _make(
        pipeline: dict[str, Any] | PipelineConfig,
        context: RunContext | None = None,
        record: RunRecord | None = None,
        **kwargs: Any,
    ) -> StageScheduler:
        config = (
            pipeline
            if isinstance(pipeline, PipelineConfig)
            else PipelineConfig.model_validate(pipeline)
        )
        context = context or make_context()
        store = RunStore(tmp_state_dir)
        kwargs.setdefault("locks", TargetLocks(store.locks_dir))
        return StageScheduler(
            config=config,
            context=context,
            record=record or RunRecord(run_id=context.run_id, pipeline=config.name),
            registry=registry,
            target_factory=targets,
            store=store,
            retry_policy=retry_policy,
            **kwargs,
        )

    return _make
