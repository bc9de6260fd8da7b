"""
End-to-end scenarios — trigger to settled run through the public use cases.

Each test builds its collaborators fresh per call, the way separate
CLI invocations or HTTP requests would.
"""

from __future__ import annotations

import json
from pathlib import Path

from pipewright.core.models.job import JobStatus
from pipewright.core.models.provisioning import Outcome
from pipewright.core.models.run import ApprovalSignal, RunStatus, TriggerEvent
from pipewright.core.persistence.audit import AuditWriter
from pipewright.core.use_cases.approve import approve_run
from pipewright.core.use_cases.provision import provision
from pipewright.core.use_cases.run import start_run

SHELL_PIPELINE = """\
    name: shop
    stages: [build, test, deploy]
    security:
      threshold: high
    jobs:
      - name: build
        stage: build
        command: echo building
      - name: scan
        stage: test
        command: cp report.json scan.json
        findings: scan.json
      - name: deploy-staging
        stage: deploy
        command: echo deploying
"""

CONVERGING_PIPELINE = """\
    stages: [deploy]
    jobs:
      - name: deploy
        stage: deploy
        provision: stack
    targets:
      web: {kind: command}
    provisioning:
      stack:
        target: web
        steps:
          - id: config
            desired: {listen: 8080}
            check: |-
              cat state.json 2>/dev/null || echo '{}'
            apply: |-
              printf '%s' "$PIPEWRIGHT_DESIRED" > state.json
"""


def _report(*findings: tuple[str, str]) -> str:
    return json.dumps({"findings": [{"id": i, "severity": s} for i, s in findings]})


class TestChangeDrivenRun:
    def test_only_affected_unit_builds(self, shop_project: Path):
        event = TriggerEvent(ref="main", changes=["serviceA/app.go", "docs/index.md"])
        record = start_run(event, config_path=shop_project, mock_mode=True).record

        assert record.affected_units == ["serviceA"]
        assert record.unmatched_paths == ["docs/index.md"]
        decisions = record.decisions()
        assert decisions["build-a"] == "run"
        assert decisions["build-b"] == "skip"
        assert decisions["deploy-staging"] == "run"
        assert decisions["deploy-production"] == "manual"

    def test_feature_branch_skips_deploys(self, shop_project: Path):
        event = TriggerEvent(ref="feature/login", changes=["serviceA/app.go"])
        record = start_run(event, config_path=shop_project, mock_mode=True).record

        results = record.job_results()
        assert results["build-a"].status == JobStatus.SKIPPED
        assert results["deploy-staging"].status == JobStatus.SKIPPED
        # A need skipped by its own rule does not block; the manual rule still holds.
        assert results["deploy-production"].status == JobStatus.MANUAL_PENDING
        assert record.status == RunStatus.AWAITING_APPROVAL


class TestManualApproval:
    def test_approval_in_a_separate_process(self, shop_project: Path, tmp_path: Path):
        event = TriggerEvent(ref="main", changes=["serviceA/app.go"])
        started = start_run(event, config_path=shop_project, run_id="run-42", mock_mode=True)
        assert started.record.status == RunStatus.AWAITING_APPROVAL
        assert started.record.jobs_in(JobStatus.MANUAL_PENDING) == ["deploy-production"]

        approved = approve_run(
            ApprovalSignal(run_id="run-42", job="deploy-production", approver="release-bot"),
            config_path=shop_project,
            mock_mode=True,
        )
        assert approved.error is None
        assert approved.record.status == RunStatus.SUCCEEDED
        assert approved.record.job_results()["deploy-production"].approved_by == "release-bot"

        audit = AuditWriter(state_dir=tmp_path / ".state").read_all()
        assert [(e.operation, e.status) for e in audit] == [
            ("run", "awaiting_approval"),
            ("approve", "succeeded"),
        ]


class TestProvisioningOrder:
    def test_ties_follow_declaration_order(self, write_pipeline):
        path = write_pipeline("""\
            targets:
              web: {kind: memory}
            provisioning:
              stack:
                target: web
                steps:
                  - {id: A}
                  - {id: B, depends_on: [A]}
                  - {id: C, depends_on: [A]}
        """)
        assert provision("stack", config_path=path).order == ["A", "B", "C"]


class TestSecurityGate:
    def test_critical_finding_fails_run(self, write_pipeline, tmp_path: Path):
        path = write_pipeline(
            SHELL_PIPELINE,
            files={"report.json": _report(("CVE-2024-0001", "critical"), ("CVE-2024-0002", "low"))},
        )
        result = start_run(TriggerEvent(ref="main"), config_path=path)
        record = result.record

        assert record.status == RunStatus.FAILED
        assert record.error.kind == "JobFailure"
        assert "security gate" in record.error.message
        results = record.job_results()
        assert results["build"].status == JobStatus.SUCCEEDED
        assert results["scan"].gate_blocked
        assert results["deploy-staging"].status == JobStatus.SKIPPED
        assert (tmp_path / "scan.json").exists()

    def test_low_findings_let_deploy_run(self, write_pipeline):
        path = write_pipeline(SHELL_PIPELINE, files={"report.json": _report(("CVE-2024-0002", "low"))})
        record = start_run(TriggerEvent(ref="main"), config_path=path).record
        assert record.status == RunStatus.SUCCEEDED
        assert record.job_results()["deploy-staging"].status == JobStatus.SUCCEEDED

    def test_scanner_without_report_fails_run(self, write_pipeline):
        path = write_pipeline(SHELL_PIPELINE.replace("cp report.json scan.json", "true"))
        record = start_run(TriggerEvent(ref="main"), config_path=path).record

        results = record.job_results()
        assert record.status == RunStatus.FAILED
        assert results["scan"].reason == "Findings report not found: scan.json"
        assert results["deploy-staging"].status == JobStatus.SKIPPED


class TestIdempotentDeploy:
    def test_second_deploy_changes_nothing(self, write_pipeline, tmp_path: Path):
        path = write_pipeline(CONVERGING_PIPELINE)
        first = start_run(TriggerEvent(ref="main"), config_path=path).record
        second = start_run(TriggerEvent(ref="main"), config_path=path).record

        assert first.status == RunStatus.SUCCEEDED
        assert [o.outcome for o in first.step_outcomes()] == [Outcome.APPLIED]
        assert [o.outcome for o in second.step_outcomes()] == [Outcome.NOOP]
        assert json.loads((tmp_path / "state.json").read_text()) == {"listen": 8080}
