"""
CLI commands for provisioning plans.

Thin wrappers over ``pipewright.core.use_cases.provision``.
"""

from __future__ import annotations

import json
import sys

import click

_OUTCOME_STYLE = {
    "noop": ("⊘", "white"),
    "applied": ("✓", "green"),
    "failed": ("✗", "red"),
    "skipped": ("…", "yellow"),
}


@click.group()
def provision() -> None:
    """Provisioning plans — order, check and apply steps."""


def _echo_report(result, dry_run: bool) -> None:
    report = result.report
    click.echo()
    for outcome in report.outcomes:
        icon, color = _OUTCOME_STYLE.get(outcome.outcome.value, ("•", "white"))
        label = "apply" if dry_run and outcome.outcome.value == "skipped" else outcome.outcome.value
        click.secho(f"   {icon} {outcome.step_id:<24}", fg=color, nl=False)
        click.echo(f" {label}", nl=False)
        if outcome.diagnostic and outcome.outcome.value in ("failed", "skipped") and not dry_run:
            click.echo(f" — {outcome.diagnostic}", nl=False)
        click.echo()
    click.echo()
    if report.error:
        click.secho(f"   {report.error}", fg="red")
    else:
        click.secho(
            f"   {report.applied} applied, {report.noop} unchanged",
            fg="green",
            bold=True,
        )
    click.echo()


@provision.command("plan")
@click.argument("plan_name")
@click.option("--env", "environment", default=None, help="Environment layer to render steps with.")
@click.option("--dry-run", "check", is_flag=True, help="Check each step against the target.")
@click.option("--mock", is_flag=True, help="Use in-memory targets.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan_cmd(
    ctx: click.Context,
    plan_name: str,
    environment: str | None,
    check: bool,
    mock: bool,
    as_json: bool,
) -> None:
    """Show the execution order of PLAN_NAME (and, with --dry-run, what would change)."""
    from pipewright.core.use_cases.provision import provision as run_provision

    result = run_provision(
        plan_name,
        config_path=ctx.obj.get("config_path"),
        environment=environment,
        check=check,
        mock_mode=mock,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.ok else 1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    click.secho(f"\n📐 {plan_name} → {result.target}", fg="cyan", bold=True)
    if result.report is None:
        for index, step_id in enumerate(result.order, start=1):
            click.echo(f"   {index:>2}. {step_id}")
        click.echo()
        return

    _echo_report(result, dry_run=True)
    sys.exit(0 if result.ok else 1)


@provision.command("apply")
@click.argument("plan_name")
@click.option("--env", "environment", default=None, help="Environment layer to render steps with.")
@click.option("--mock", is_flag=True, help="Use in-memory targets.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def apply_cmd(
    ctx: click.Context,
    plan_name: str,
    environment: str | None,
    mock: bool,
    as_json: bool,
) -> None:
    """Converge the target of PLAN_NAME."""
    from pipewright.core.use_cases.provision import provision as run_provision

    result = run_provision(
        plan_name,
        config_path=ctx.obj.get("config_path"),
        environment=environment,
        apply=True,
        mock_mode=mock,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.ok else 1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    click.secho(f"\n🛠  {plan_name} → {result.target}", fg="cyan", bold=True)
    _echo_report(result, dry_run=False)
    if not result.ok:
        sys.exit(1)
