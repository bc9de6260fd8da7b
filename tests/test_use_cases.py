"""
Tests for use cases — start, approve, cancel, status, provision.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from pipewright.core.models.job import JobResult, JobStatus
from pipewright.core.models.provisioning import Outcome
from pipewright.core.models.run import ApprovalSignal, RunRecord, RunStatus, TriggerEvent
from pipewright.core.persistence.audit import AuditWriter
from pipewright.core.persistence.run_store import RunStore
from pipewright.core.use_cases.approve import approve_run
from pipewright.core.use_cases.cancel import cancel_run
from pipewright.core.use_cases.provision import provision
from pipewright.core.use_cases.run import start_run
from pipewright.core.use_cases.session import generate_run_id
from pipewright.core.use_cases.status import run_status

SERVICE_A = TriggerEvent(ref="main", changes=["serviceA/app.go"])


@pytest.fixture
def wired(registry, targets, retry_policy) -> dict:
    """Collaborators shared by every call within one test."""
    return {"registry": registry, "targets": targets, "retry_policy": retry_policy}


@pytest.fixture
def paused_run(shop_project: Path, wired: dict):
    """A shop run waiting for production approval."""
    result = start_run(SERVICE_A, config_path=shop_project, run_id="run-1", **wired)
    assert result.record.status == RunStatus.AWAITING_APPROVAL
    return result


def _signal(job: str = "deploy-production", run_id: str = "run-1") -> ApprovalSignal:
    return ApprovalSignal(run_id=run_id, job=job, approver="alice")


class TestStartRun:
    def test_generated_ids_unique(self):
        assert generate_run_id() != generate_run_id()
        assert generate_run_id().startswith("run-")

    def test_shop_run(self, paused_run, mock_adapter, targets, tmp_path: Path):
        record = paused_run.record
        results = record.job_results()

        assert paused_run.ok
        assert record.pipeline == "shop"
        assert record.affected_units == ["serviceA"]
        assert results["build-a"].status == JobStatus.SUCCEEDED
        assert results["build-b"].status == JobStatus.SKIPPED
        assert results["deploy-staging"].status == JobStatus.SUCCEEDED
        assert results["deploy-production"].status == JobStatus.MANUAL_PENDING
        assert mock_adapter.executed_jobs == ["build-a", "scan"]
        assert targets.memory("web").state["network"] == {"network": "staging-net"}
        assert targets.memory("web").state["app"]["image"] == "registry.local/shop:latest"

        stored = RunStore(tmp_path / ".state").load("run-1")
        assert stored.status == RunStatus.AWAITING_APPROVAL
        assert stored.config_digest
        assert [e.operation for e in AuditWriter(state_dir=tmp_path / ".state").read_all()] == ["run"]

    def test_unmatched_paths_recorded(self, shop_project: Path, wired: dict):
        event = TriggerEvent(ref="main", changes=["README.md"])
        record = start_run(event, config_path=shop_project, **wired).record
        assert record.unmatched_paths == ["README.md"]
        assert record.job_results()["build-a"].status == JobStatus.SKIPPED

    def test_config_error_recorded_as_failed_run(self, write_pipeline, tmp_path: Path, wired: dict):
        path = write_pipeline("workers: 0\n")
        result = start_run(SERVICE_A, config_path=path, run_id="run-bad", **wired)

        assert not result.ok
        assert result.error_kind == "ConfigError"
        stored = RunStore(tmp_path / ".state").load("run-bad")
        assert stored.status == RunStatus.FAILED
        assert stored.job_results() == {}
        assert result.to_dict()["error_kind"] == "ConfigError"

    def test_missing_pipeline(self, tmp_path: Path, wired: dict):
        result = start_run(SERVICE_A, config_path=tmp_path / "pipeline.yml", **wired)
        assert result.error_kind == "ConfigError"

    def test_templates_rendered_with_secret_references(self, write_pipeline, tmp_path: Path, wired: dict):
        path = write_pipeline(
            """\
            stages: [build]
            variables:
              values:
                PORT: 8080
                DB_PASSWORD: {secret: prod-db}
            templates:
              - {source: app.conf.tpl, output: out/app.conf}
            """,
            files={"app.conf.tpl": "listen {{ PORT }}\npassword {{ DB_PASSWORD }}\n"},
        )
        result = start_run(SERVICE_A, config_path=path, **wired)

        assert result.ok
        assert result.rendered == [str(tmp_path / "out" / "app.conf")]
        rendered = (tmp_path / "out" / "app.conf").read_text()
        assert "listen 8080" in rendered
        assert "password secret://prod-db" in rendered
        assert result.record.variables["DB_PASSWORD"] == "secret://prod-db"
        assert result.record.pinned_variables["DB_PASSWORD"] == {"secret": "prod-db"}

    def test_template_error_aborts_before_jobs(self, write_pipeline, mock_adapter, wired: dict):
        path = write_pipeline(
            """\
            jobs:
              - {name: build, stage: build, command: make}
            templates:
              - {source: app.conf.tpl, output: out/app.conf}
            """,
            files={"app.conf.tpl": "listen {{ PORT }}\n"},
        )
        result = start_run(SERVICE_A, config_path=path, **wired)
        assert result.error_kind == "TemplateError"
        assert mock_adapter.call_count == 0

    def test_dry_run(self, shop_project: Path, mock_adapter, targets, wired: dict):
        result = start_run(SERVICE_A, config_path=shop_project, dry_run=True, **wired)
        assert result.record.job_results()["deploy-staging"].status == JobStatus.SUCCEEDED
        assert mock_adapter.call_count == 0
        assert targets.memory("web").state == {}

    def test_lock_left_by_finished_run_is_reclaimed(self, shop_project: Path, wired: dict, tmp_path: Path):
        store = RunStore(tmp_path / ".state")
        store.save(RunRecord(run_id="run-old", status=RunStatus.FAILED))
        store.locks_dir.mkdir(parents=True)
        (store.locks_dir / "web.lock").write_text("run-old\n")

        record = start_run(SERVICE_A, config_path=shop_project, run_id="run-1", **wired).record

        assert record.job_results()["deploy-staging"].status == JobStatus.SUCCEEDED
        assert not (store.locks_dir / "web.lock").exists()


class TestApproveRun:
    def test_approval_completes_run(self, paused_run, shop_project: Path, targets, wired: dict, tmp_path: Path):
        result = approve_run(_signal(), config_path=shop_project, **wired)

        assert result.ok
        record = result.record
        assert record.status == RunStatus.SUCCEEDED
        production = record.job_results()["deploy-production"]
        assert production.status == JobStatus.SUCCEEDED
        assert production.approved_by == "alice"
        assert targets.memory("web").state["network"] == {"network": "production-net"}

        operations = [e.operation for e in AuditWriter(state_dir=tmp_path / ".state").read_all()]
        assert operations == ["run", "approve"]

    def test_job_not_waiting(self, paused_run, shop_project: Path, wired: dict):
        result = approve_run(_signal("build-a"), config_path=shop_project, **wired)
        assert result.error_kind == "RunStateError"
        assert "succeeded" in result.error

    def test_run_not_awaiting(self, paused_run, shop_project: Path, wired: dict):
        approve_run(_signal(), config_path=shop_project, **wired)
        result = approve_run(_signal(), config_path=shop_project, **wired)
        assert result.error_kind == "RunStateError"

    def test_unknown_run(self, shop_project: Path, wired: dict):
        result = approve_run(_signal(run_id="run-nope"), config_path=shop_project, **wired)
        assert result.error_kind == "RunNotFound"

    def test_resume_uses_variables_pinned_at_start(
        self, paused_run, shop_project: Path, targets, wired: dict
    ):
        layer = shop_project.parent / "vars" / "production.yml"
        layer.write_text("ENV_NAME: edited-after-start\nREPLICAS: 9\n")

        result = approve_run(_signal(), config_path=shop_project, **wired)

        assert result.ok
        assert result.record.pinned_environments["production"]["ENV_NAME"] == "production"
        assert targets.memory("web").state["network"] == {"network": "production-net"}

    def test_run_without_pinned_variables(self, shop_project: Path, wired: dict, tmp_path: Path):
        record = RunRecord(run_id="run-old", status=RunStatus.AWAITING_APPROVAL)
        record.record_result(JobResult(job="deploy-production", status=JobStatus.MANUAL_PENDING))
        RunStore(tmp_path / ".state").save(record)

        result = approve_run(_signal(run_id="run-old"), config_path=shop_project, **wired)
        assert result.error_kind == "ConfigError"
        assert "no recorded variables" in result.error

    def test_pipeline_changed(self, paused_run, shop_project: Path, wired: dict, tmp_path: Path):
        shop_project.write_text(shop_project.read_text() + "\n# edited\n")
        result = approve_run(_signal(), config_path=shop_project, **wired)

        assert result.error_kind == "ConfigError"
        assert RunStore(tmp_path / ".state").load("run-1").status == RunStatus.AWAITING_APPROVAL

    def test_concurrent_approval_rejected(self, paused_run, shop_project: Path, wired: dict, tmp_path: Path):
        store = RunStore(tmp_path / ".state")
        with store.claim("run-1"):
            result = approve_run(_signal(), config_path=shop_project, **wired)

        assert result.error_kind == "RunStateError"
        assert "another request" in result.error
        assert store.load("run-1").status == RunStatus.AWAITING_APPROVAL
        assert "deploy-production" not in store.load("run-1").approvals()

    def test_claim_released_after_approval(self, paused_run, shop_project: Path, wired: dict, tmp_path: Path):
        approve_run(_signal(), config_path=shop_project, **wired)
        assert not (tmp_path / ".state" / "runs" / "run-1.lock").exists()


class TestCancelRun:
    def test_cancel_paused_run(self, paused_run, shop_project: Path):
        result = cancel_run("run-1", config_path=shop_project)
        assert result.record.status == RunStatus.CANCELLED
        assert result.record.job_results()["deploy-production"].status == JobStatus.SKIPPED

    def test_cancel_running_run_drops_marker(self, shop_project: Path, tmp_path: Path):
        store = RunStore(tmp_path / ".state")
        store.save(RunRecord(run_id="run-live", status=RunStatus.RUNNING))
        result = cancel_run("run-live", config_path=shop_project)

        assert result.error is None
        assert store.cancel_requested("run-live")
        assert store.load("run-live").status == RunStatus.RUNNING

    def test_terminal_run_unchanged(self, paused_run, shop_project: Path, wired: dict):
        approve_run(_signal(), config_path=shop_project, **wired)
        result = cancel_run("run-1", config_path=shop_project)
        assert result.record.status == RunStatus.SUCCEEDED

    def test_unknown_run(self, shop_project: Path):
        assert cancel_run("run-nope", config_path=shop_project).error_kind == "RunNotFound"

    def test_cancel_during_approval_drops_marker(self, paused_run, shop_project: Path, tmp_path: Path):
        store = RunStore(tmp_path / ".state")
        with store.claim("run-1"):
            result = cancel_run("run-1", config_path=shop_project)

        assert result.error is None
        assert store.cancel_requested("run-1")
        assert store.load("run-1").status == RunStatus.AWAITING_APPROVAL


class TestRunStatus:
    def test_one_run(self, paused_run, shop_project: Path):
        result = run_status("run-1", config_path=shop_project)
        data = result.to_dict()
        assert data["runs"][0]["status"] == "awaiting_approval"
        assert data["runs"][0]["jobs"]["build-b"]["status"] == "skipped"

    def test_recent_runs(self, shop_project: Path, wired: dict):
        for run_id in ("run-1", "run-2"):
            start_run(SERVICE_A, config_path=shop_project, run_id=run_id, **wired)
        assert len(run_status(config_path=shop_project).runs) == 2
        assert len(run_status(config_path=shop_project, limit=1).runs) == 1

    def test_unknown_run(self, shop_project: Path):
        result = run_status("run-nope", config_path=shop_project)
        assert "RunNotFound" in result.error
        assert result.error_kind == "RunNotFound"
        assert result.to_dict()["error_kind"] == "RunNotFound"


class TestProvision:
    def test_plan_orders_steps(self, shop_project: Path, targets):
        result = provision("web-stack", config_path=shop_project, environment="staging", targets=targets)
        assert result.ok
        assert result.target == "web"
        assert result.order == ["network", "app"]
        assert result.report is None

    def test_check_does_not_mutate(self, shop_project: Path, targets):
        result = provision(
            "web-stack", config_path=shop_project, environment="staging", check=True, targets=targets
        )
        assert {o.outcome for o in result.report.outcomes} == {Outcome.SKIPPED}
        assert targets.memory("web").applied == []

    def test_apply_then_noop(self, shop_project: Path, targets, retry_policy, tmp_path: Path):
        first = provision(
            "web-stack",
            config_path=shop_project,
            environment="staging",
            apply=True,
            targets=targets,
            retry_policy=retry_policy,
        )
        second = provision(
            "web-stack",
            config_path=shop_project,
            environment="staging",
            apply=True,
            targets=targets,
            retry_policy=retry_policy,
        )
        assert first.report.applied == 2
        assert second.report.status == "unchanged"

        entries = AuditWriter(state_dir=tmp_path / ".state").read_all()
        assert [e.status for e in entries] == ["changed", "unchanged"]
        assert entries[0].context["plan"] == "web-stack"

    def test_unknown_plan(self, shop_project: Path, targets):
        result = provision("nope", config_path=shop_project, targets=targets)
        assert not result.ok
        assert "nope" in result.error

    def test_unresolved_variable(self, shop_project: Path, targets):
        # ENV_NAME only exists in the environment layers.
        result = provision("web-stack", config_path=shop_project, targets=targets)
        assert "TemplateError" in result.error
