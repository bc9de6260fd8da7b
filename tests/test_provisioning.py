"""
Tests for provisioning — planner ordering and the idempotent executor.
"""

import pytest

from pipewright.adapters.targets.memory import MemoryTarget
from pipewright.core.engine.executor import execute, render_steps, satisfies
from pipewright.core.engine.planner import plan, stable_topological_order
from pipewright.core.errors import ConfigError, CycleError, FatalInfraError, TemplateError
from pipewright.core.models.provisioning import Outcome, ProvisioningStep


def _step(step_id: str, *deps: str, **desired) -> ProvisioningStep:
    return ProvisioningStep(id=step_id, depends_on=list(deps), desired=desired or {"state": step_id})


def _ids(steps) -> list[str]:
    return [s.id for s in steps]


# ── Planner ──────────────────────────────────────────────────────────


class TestPlanner:
    def test_scenario_c(self):
        steps = [_step("A"), _step("B", "A"), _step("C", "A")]
        assert _ids(plan(steps)) == ["A", "B", "C"]

    def test_declaration_order_breaks_ties(self):
        steps = [_step("A"), _step("C", "A"), _step("B", "A")]
        assert _ids(plan(steps)) == ["A", "C", "B"]

    def test_dependency_declared_later(self):
        steps = [_step("app", "db", "network"), _step("db", "network"), _step("network")]
        assert _ids(plan(steps)) == ["network", "db", "app"]

    def test_dependencies_always_first(self):
        steps = [
            _step("e", "d", "b"),
            _step("d", "c"),
            _step("b", "a"),
            _step("c", "a"),
            _step("a"),
            _step("f"),
        ]
        order = _ids(plan(steps))
        position = {s: i for i, s in enumerate(order)}
        for step in steps:
            for dep in step.depends_on:
                assert position[dep] < position[step.id]
        assert order == _ids(plan(steps))

    def test_cycle(self):
        steps = [_step("A", "C"), _step("B", "A"), _step("C", "B"), _step("D")]
        with pytest.raises(CycleError) as exc:
            plan(steps)
        assert exc.value.detail in {"A", "B", "C"}
        assert "→" in exc.value.message

    def test_self_dependency(self):
        with pytest.raises(CycleError):
            plan([_step("A", "A")])

    def test_unknown_dependency(self):
        with pytest.raises(ConfigError) as exc:
            plan([_step("A", "ghost")])
        assert exc.value.detail == "ghost"

    def test_duplicate_ids(self):
        with pytest.raises(ConfigError):
            plan([_step("A"), _step("A")])

    def test_empty_plan(self):
        assert plan([]) == []

    def test_job_ordering_wording(self):
        with pytest.raises(CycleError) as exc:
            stable_topological_order([("a", ["b"]), ("b", ["a"])], what="job")
        assert "jobs" in exc.value.message


# ── Executor ─────────────────────────────────────────────────────────


class TestSatisfies:
    def test_subset_satisfies(self):
        assert satisfies({"a": 1}, {"a": 1, "b": 2})

    def test_mismatch(self):
        assert not satisfies({"a": 1}, {"a": 2})
        assert not satisfies({"a": 1}, {})

    def test_empty_desired_never_satisfied(self):
        assert not satisfies({}, {"a": 1})


class TestExecute:
    STEPS = [_step("network"), _step("db", "network"), _step("app", "db")]

    def test_fresh_target_applies_everything(self, retry_policy):
        target = MemoryTarget("web")
        report = execute(self.STEPS, target, retry_policy)
        assert [o.outcome for o in report.outcomes] == [Outcome.APPLIED] * 3
        assert report.status == "changed"
        assert report.ok
        assert target.state["db"] == {"state": "db"}

    def test_second_pass_is_noop(self, retry_policy):
        target = MemoryTarget("web")
        execute(self.STEPS, target, retry_policy)
        applied_before = list(target.applied)

        report = execute(self.STEPS, target, retry_policy)
        assert [o.outcome for o in report.outcomes] == [Outcome.NOOP] * 3
        assert report.status == "unchanged"
        assert target.applied == applied_before

    def test_partially_converged_target(self, retry_policy):
        target = MemoryTarget("web", state={"network": {"state": "network", "extra": 1}})
        report = execute(self.STEPS, target, retry_policy)
        assert [o.outcome for o in report.outcomes] == [Outcome.NOOP, Outcome.APPLIED, Outcome.APPLIED]

    def test_transient_failure_retried(self, retry_policy, sleeps):
        target = MemoryTarget("web")
        target.fail_next("db", times=1, transient=True)
        report = execute(self.STEPS, target, retry_policy)
        db = report.outcomes[1]
        assert db.outcome == Outcome.APPLIED
        assert db.attempts == 2
        assert len(sleeps) == 1
        assert report.ok

    def test_retries_exhausted_become_fatal(self, retry_policy, sleeps):
        target = MemoryTarget("web")
        target.fail_next("db", times=5, transient=True, diagnostic="connection reset")
        report = execute(self.STEPS, target, retry_policy)

        db = report.outcomes[1]
        assert db.outcome == Outcome.FAILED
        assert db.attempts == 3
        assert db.error.kind == "FatalInfraError"
        assert "gave up after 3 attempts" in db.error.message
        assert len(sleeps) == 2
        assert report.error == db.error

    def test_fatal_aborts_rest_of_plan(self, retry_policy, sleeps):
        target = MemoryTarget("web")
        target.fail_next("db", transient=False, diagnostic="disk full")
        report = execute(self.STEPS, target, retry_policy)

        assert [o.outcome for o in report.outcomes] == [Outcome.APPLIED, Outcome.FAILED, Outcome.SKIPPED]
        assert report.outcomes[1].attempts == 1
        assert report.outcomes[2].diagnostic == "not attempted: step 'db' failed"
        assert sleeps == []
        assert "app" not in target.applied
        # Completed steps are not rolled back.
        assert target.state["network"] == {"state": "network"}
        assert report.status == "failed"

    def test_non_converging_target(self, retry_policy):
        target = MemoryTarget("web")
        target.never_converge("network")
        report = execute(self.STEPS, target, retry_policy)
        assert report.outcomes[0].outcome == Outcome.FAILED
        assert "did not converge" in report.outcomes[0].diagnostic
        assert target.applied.count("network") == 3

    def test_raise_for_failure(self, retry_policy):
        target = MemoryTarget("web")
        target.fail_next("network", transient=False)
        report = execute(self.STEPS, target, retry_policy)
        with pytest.raises(FatalInfraError) as exc:
            report.raise_for_failure()
        assert exc.value.detail == "network"

    def test_dry_run_does_not_mutate(self, retry_policy):
        target = MemoryTarget("web", state={"network": {"state": "network"}})
        report = execute(self.STEPS, target, retry_policy, dry_run=True)
        assert [o.outcome for o in report.outcomes] == [Outcome.NOOP, Outcome.SKIPPED, Outcome.SKIPPED]
        assert report.outcomes[1].diagnostic == "[dry-run] would apply"
        assert target.applied == []
        assert report.to_dict()["dry_run"] is True

    def test_empty_desired_always_applies(self, retry_policy):
        step = ProvisioningStep(id="restart")
        target = MemoryTarget("web")
        first = execute([step], target, retry_policy)
        second = execute([step], target, retry_policy)
        assert first.outcomes[0].outcome == Outcome.APPLIED
        assert second.outcomes[0].outcome == Outcome.APPLIED

    def test_on_outcome_streams(self, retry_policy):
        seen = []
        execute(self.STEPS, MemoryTarget("web"), retry_policy, on_outcome=seen.append)
        assert [o.step_id for o in seen] == ["network", "db", "app"]

    def test_default_policy(self):
        report = execute([_step("a")], MemoryTarget("web"))
        assert report.applied == 1

    def test_report_to_dict(self, retry_policy):
        report = execute(self.STEPS, MemoryTarget("web"), retry_policy)
        data = report.to_dict()
        assert data["target"] == "web"
        assert data["applied"] == 3
        assert data["outcomes"][0]["outcome"] == "applied"


class TestRenderSteps:
    def test_renders_documents_and_commands(self):
        step = ProvisioningStep(
            id="app",
            desired={"image": "{{ REGISTRY }}/app", "replicas": 2},
            check="probe {{ HOST }}",
            apply="deploy {{ HOST }}",
        )
        rendered = render_steps([step], {"REGISTRY": "reg", "HOST": "web-1"})[0]
        assert rendered.desired == {"image": "reg/app", "replicas": 2}
        assert rendered.check == "probe web-1"
        assert rendered.apply == "deploy web-1"
        assert step.desired["image"] == "{{ REGISTRY }}/app"

    def test_unresolved(self):
        step = ProvisioningStep(id="app", desired={"image": "{{ NOPE }}"})
        with pytest.raises(TemplateError):
            render_steps([step], {})
