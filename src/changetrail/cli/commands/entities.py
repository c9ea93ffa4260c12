"""changetrail entities -- list change-tracked entities."""

from __future__ import annotations

import click

from changetrail.cli.formatting import format_entities, format_error, get_console


@click.command()
@click.pass_context
def entities(ctx: click.Context) -> None:
    """List the entities that get change-tracking triggers."""
    from changetrail.cli import _get_synthesizer

    console = get_console()
    try:
        synth = _get_synthesizer(ctx)
        format_entities(synth.tracked_entities(), console)
    except SystemExit:
        raise
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None
