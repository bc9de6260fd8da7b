"""
pipewright — CLI entrypoint.

Usage:
    pipewright --help
    pipewright run --ref main --changed serviceA/app.go
    pipewright approve RUN_ID deploy-production --approver alice
    pipewright status
    pipewright config check
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from pipewright import __version__
from pipewright.core.observability.logging_config import resolve_level, setup_logging

_STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "cancelled": "yellow",
    "awaiting_approval": "cyan",
    "running": "white",
    "skipped": "white",
    "manual_pending": "cyan",
    "pending": "white",
}

_STATUS_ICONS = {
    "succeeded": "✓",
    "failed": "✗",
    "skipped": "⊘",
    "manual_pending": "⏸",
    "pending": "…",
    "running": "▶",
}


@click.group()
@click.version_option(version=__version__, prog_name="pipewright")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to pipeline.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """pipewright — declarative pipeline and provisioning orchestrator."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    setup_logging(
        level=resolve_level(debug=debug, verbose=verbose, quiet=quiet),
        quiet_third_party=not debug,
    )


# ── Shared rendering ────────────────────────────────────────────────


def echo_run(run: dict, verbose: bool = False) -> None:
    """Print a run summary (as produced by ``summarize``)."""
    status = run["status"]
    click.echo()
    click.secho(f"🚀 {run['pipeline'] or 'pipeline'} — {run['run_id']}", fg="cyan", bold=True)
    click.echo(f"   Ref: {run['ref']} ({run['trigger']})", nl=False)
    if run["environment"]:
        click.echo(f" | Env: {run['environment']}", nl=False)
    click.echo()
    click.echo(f"   Units: {', '.join(run['affected_units']) or 'none'}")
    if verbose and run["unmatched_paths"]:
        click.echo(f"   Unmatched paths: {', '.join(run['unmatched_paths'])}")
    click.echo()

    for name, job in run["jobs"].items():
        job_status = job["status"]
        icon = _STATUS_ICONS.get(job_status, "•")
        click.secho(f"   {icon} {name} ", fg=_STATUS_COLORS.get(job_status, "white"), nl=False)
        click.echo(f"[{job['stage']}] {job_status}", nl=False)
        if job["reason"] and (verbose or job_status != "succeeded"):
            click.echo(f" — {job['reason']}", nl=False)
        click.echo()

    if verbose and run["steps"]:
        click.echo()
        click.secho("   Provisioning:", bold=True)
        for step in run["steps"]:
            click.echo(f"     • {step['target']}:{step['step_id']} → {step['outcome']}")

    click.echo()
    click.secho(f"   Status: {status}", fg=_STATUS_COLORS.get(status, "white"), bold=True)
    if run["error"]:
        error = run["error"]
        click.secho(f"   {error['kind']}: {error['message']}", fg="red")
    click.echo()


def _exit_for(result) -> None:
    if not result.ok:
        sys.exit(1)


def _dump_json(payload: dict, failed: bool) -> None:
    click.echo(json.dumps(payload, indent=2))
    sys.exit(1 if failed else 0)


# ── Run lifecycle ───────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--ref", default=None, help="Branch or tag (default: current git branch).")
@click.option("--changed", "changes", multiple=True, help="Changed path (repeatable).")
@click.option("--since", "base_ref", default=None, help="Compute changed paths with git diff against this revision.")
@click.option("--manual", "manual_trigger", is_flag=True, help="Mark the trigger as manual instead of push.")
@click.option("--env", "environment", default=None, help="Environment variable layer to apply.")
@click.option("--dry-run", is_flag=True, help="Validate jobs and check targets without changing anything.")
@click.option("--mock", is_flag=True, help="Use mock adapters and in-memory targets.")
@click.pass_context
def run(
    ctx: click.Context,
    as_json: bool,
    ref: str | None,
    changes: tuple[str, ...],
    base_ref: str | None,
    manual_trigger: bool,
    environment: str | None,
    dry_run: bool,
    mock: bool,
) -> None:
    """Start a pipeline run for a trigger event.

    Examples:

        pipewright run --ref main --changed serviceA/app.go

        pipewright run --since origin/main --env staging

        pipewright run --ref main --changed serviceA/app.go --mock
    """
    from pipewright.core.models.run import TriggerEvent, TriggerKind
    from pipewright.core.use_cases.run import start_run

    config_path: Path | None = ctx.obj.get("config_path")
    if ref is None:
        from pipewright.core.errors import ConfigError
        from pipewright.core.services.git_changes import current_ref

        try:
            ref = current_ref(config_path.parent if config_path else Path.cwd())
        except ConfigError as e:
            click.secho(f"❌ Cannot determine ref, pass --ref: {e.message}", fg="red")
            sys.exit(1)

    event = TriggerEvent(
        ref=ref,
        changes=list(changes),
        trigger=TriggerKind.MANUAL if manual_trigger else TriggerKind.PUSH,
    )
    result = start_run(
        event,
        config_path=config_path,
        environment=environment,
        base_ref=base_ref,
        dry_run=dry_run,
        mock_mode=mock,
    )

    if as_json:
        _dump_json(result.to_dict(), failed=not result.ok)

    if result.record is not None and result.record.entries:
        from pipewright.core.use_cases.run import summarize

        echo_run(summarize(result.record), verbose=ctx.obj.get("verbose", False))
    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
    _exit_for(result)


@cli.command()
@click.argument("run_id")
@click.argument("job")
@click.option("--approver", required=True, help="Identity of the approver.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--mock", is_flag=True, help="Use mock adapters and in-memory targets.")
@click.pass_context
def approve(
    ctx: click.Context,
    run_id: str,
    job: str,
    approver: str,
    as_json: bool,
    mock: bool,
) -> None:
    """Approve a manual-pending JOB in RUN_ID and resume the run."""
    from pipewright.core.models.run import ApprovalSignal
    from pipewright.core.use_cases.approve import approve_run
    from pipewright.core.use_cases.run import summarize

    result = approve_run(
        ApprovalSignal(run_id=run_id, job=job, approver=approver),
        config_path=ctx.obj.get("config_path"),
        mock_mode=mock,
    )

    if as_json:
        _dump_json(result.to_dict(), failed=not result.ok)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    assert result.record is not None
    click.secho(f"👍 {job} approved by {approver}", fg="green")
    echo_run(summarize(result.record), verbose=ctx.obj.get("verbose", False))
    _exit_for(result)


@cli.command()
@click.argument("run_id")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def cancel(ctx: click.Context, run_id: str, as_json: bool) -> None:
    """Cancel RUN_ID at its next stage boundary."""
    from pipewright.core.use_cases.cancel import cancel_run

    result = cancel_run(run_id, config_path=ctx.obj.get("config_path"))

    if as_json:
        _dump_json(result.to_dict(), failed=bool(result.error))

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    assert result.record is not None
    status = result.record.status.value
    if status == "running":
        click.secho(f"⏹  Cancellation requested for {run_id}", fg="yellow")
    else:
        click.echo(f"Run {run_id}: {status}")


@cli.command()
@click.argument("run_id", required=False)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--limit", "-n", default=10, type=int, help="How many recent runs to list.")
@click.pass_context
def status(ctx: click.Context, run_id: str | None, as_json: bool, limit: int) -> None:
    """Show one run, or list recent runs."""
    from pipewright.core.use_cases.run import summarize
    from pipewright.core.use_cases.status import run_status

    result = run_status(run_id, config_path=ctx.obj.get("config_path"), limit=limit)

    if as_json:
        _dump_json(result.to_dict(), failed=bool(result.error))

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    if run_id is not None:
        echo_run(summarize(result.runs[0]), verbose=True)
        return

    if not result.runs:
        click.echo("No runs recorded yet.")
        return

    click.echo()
    for record in result.runs:
        color = _STATUS_COLORS.get(record.status.value, "white")
        click.secho(f"   {record.run_id}  ", bold=True, nl=False)
        click.secho(f"{record.status.value:<18}", fg=color, nl=False)
        click.echo(f" {record.ref}  {record.created_at}")
    click.echo()


# ── Configuration ───────────────────────────────────────────────────


@cli.group()
def config() -> None:
    """Pipeline configuration commands."""


@config.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, as_json: bool) -> None:
    """Validate pipeline.yml."""
    from pipewright.core.use_cases.config_check import check_config

    result = check_config(config_path=ctx.obj.get("config_path"))

    if as_json:
        _dump_json(result.to_dict(), failed=not result.valid)

    if result.valid:
        assert result.config is not None
        click.secho("✅ Configuration is valid", fg="green", bold=True)
        click.echo(f"   Pipeline: {result.config.name}")
        click.echo(f"   Stages: {' → '.join(result.config.stages)}")
        click.echo(f"   Jobs: {len(result.config.jobs)}")
        click.echo(f"   Targets: {len(result.config.targets)}")
    else:
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        sys.exit(1)


# ── HTTP surface ────────────────────────────────────────────────────


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address.")
@click.option("--port", "-p", default=8000, type=int, help="Port number.")
@click.option("--mock", is_flag=True, help="Use mock adapters and in-memory targets.")
@click.pass_context
def web(ctx: click.Context, host: str, port: int, mock: bool) -> None:
    """Serve the trigger, approval and run-status API."""
    from pipewright.core.config.loader import find_pipeline_file
    from pipewright.ui.web.server import create_app, run_server

    config_path: Path | None = ctx.obj.get("config_path") or find_pipeline_file()
    if config_path is None:
        click.secho("❌ No pipeline.yml found. Create one or specify --config.", fg="red")
        sys.exit(1)

    app = create_app(config_path=config_path, mock_mode=mock)
    debug = ctx.obj.get("debug", False)

    click.echo()
    click.secho("⚡ pipewright API", bold=True)
    click.echo(f"   Listening: http://{host}:{port}/api/runs")
    click.echo(f"   Pipeline:  {config_path}")
    if mock:
        click.secho("   Mode: mock (no real execution)", fg="yellow")
    click.echo()

    run_server(app, host=host, port=port, debug=debug)


# ── Register sub-command groups from pipewright/ui/cli/ ─────────────

from pipewright.ui.cli.provision import provision  # noqa: E402
from pipewright.ui.cli.variables import variables  # noqa: E402

cli.add_command(variables)
cli.add_command(provision)


if __name__ == "__main__":
    cli()
