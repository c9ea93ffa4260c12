"""changetrail generate -- render change-tracking triggers."""

from __future__ import annotations

import click
from rich.markup import escape

from changetrail.cli.formatting import format_error, format_success, format_triggers, get_console


@click.command()
@click.option("-o", "--output", default=None, help="Write one file per artifact into this directory.")
@click.option("-e", "--entity", "entity_name", default=None, help="Only generate triggers for this entity.")
@click.pass_context
def generate(ctx: click.Context, output: str | None, entity_name: str | None) -> None:
    """Generate triggers for every change-tracked entity."""
    from changetrail.cli import _get_synthesizer

    console = get_console()
    try:
        synth = _get_synthesizer(ctx)
        if output:
            written = synth.write(output, entity_name=entity_name)
            format_success(f"Wrote {len(written)} artifacts to {output}", console)
        else:
            format_triggers(synth.artifacts(entity_name=entity_name), console)

        for warning in synth.warnings:
            console.print(f"[yellow]Warning:[/yellow] {escape(str(warning))}", highlight=False)
    except SystemExit:
        raise
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None
