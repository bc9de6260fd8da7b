"""
CLI commands for the variable store and template renderer.

Thin wrappers over ``pipewright.core.config`` and
``pipewright.core.services.templates``.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click


def _load(ctx: click.Context):
    """Load the pipeline and its root; exits on error."""
    from pipewright.core.config.loader import load_pipeline, pipeline_root
    from pipewright.core.errors import PipewrightError
    from pipewright.core.use_cases.session import locate_config

    try:
        path = locate_config(ctx.obj.get("config_path"))
        return load_pipeline(path), pipeline_root(path)
    except PipewrightError as e:
        click.secho(f"❌ {e.to_info()}", fg="red")
        sys.exit(1)


@click.group("vars")
def variables() -> None:
    """Variable layers — resolve and render."""


@variables.command("resolve")
@click.option("--env", "environment", default=None, help="Environment layer to apply.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def resolve_cmd(ctx: click.Context, environment: str | None, as_json: bool) -> None:
    """Show the resolved variable set (secrets as references)."""
    from pipewright.core.config.loader import resolve_variables
    from pipewright.core.errors import PipewrightError

    config, root = _load(ctx)
    try:
        resolved = resolve_variables(config, root, environment)
    except PipewrightError as e:
        if as_json:
            click.echo(json.dumps({"error": e.to_info().model_dump(mode="json")}, indent=2))
        else:
            click.secho(f"❌ {e.to_info()}", fg="red")
        sys.exit(1)

    values = resolved.redacted()
    if as_json:
        click.echo(json.dumps({"environment": environment, "variables": values}, indent=2))
        return

    label = environment or "defaults"
    click.secho(f"\n🔧 Variables ({label}): {len(values)}", fg="cyan", bold=True)
    width = max((len(k) for k in values), default=0)
    for key, value in values.items():
        click.echo(f"   {key:<{width}}  {value}")
    click.echo()


@variables.command("render")
@click.argument("template", required=False, type=click.Path(exists=True, dir_okay=False))
@click.option("--env", "environment", default=None, help="Environment layer to apply.")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Write here instead of stdout.")
@click.pass_context
def render_cmd(
    ctx: click.Context,
    template: str | None,
    environment: str | None,
    output: str | None,
) -> None:
    """Render TEMPLATE, or every template declared in pipeline.yml."""
    from pipewright.core.config.loader import resolve_variables
    from pipewright.core.errors import PipewrightError
    from pipewright.core.services.templates import render, render_file

    config, root = _load(ctx)
    try:
        resolved = resolve_variables(config, root, environment)
        if template is None:
            for spec in config.templates:
                written = render_file(root / spec.source, resolved, root / spec.output)
                click.secho(f"   ✓ {spec.source} → {written}", fg="green")
            if not config.templates:
                click.echo("No templates declared.")
            return

        source = Path(template)
        if output:
            written = render_file(source, resolved, Path(output))
            click.secho(f"   ✓ {source} → {written}", fg="green")
        else:
            click.echo(render(source.read_text(encoding="utf-8"), resolved).decode("utf-8"), nl=False)
    except PipewrightError as e:
        click.secho(f"❌ {e.to_info()}", fg="red")
        sys.exit(1)
