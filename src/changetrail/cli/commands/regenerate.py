"""changetrail regenerate -- reinstall triggers on a SQLite database."""

from __future__ import annotations

import click

from changetrail.cli.formatting import format_error, format_success, get_console


@click.command()
@click.option("-e", "--entity", "entity_name", default=None, help="Only regenerate this entity's triggers.")
@click.pass_context
def regenerate(ctx: click.Context, entity_name: str | None) -> None:
    """Drop and recreate change-tracking triggers in the --db database."""
    from changetrail.cli import _get_config
    from changetrail.deploy.sqlite import regenerate_triggers
    from changetrail.models.schema import SchemaModel
    from changetrail.storage.engine import create_changetrail_engine, init_db

    console = get_console()
    try:
        schema = SchemaModel.from_file(ctx.obj["schema_path"])
        config = _get_config(ctx)
        engine = create_changetrail_engine(ctx.obj["db_path"])
        try:
            init_db(engine)
            installed = regenerate_triggers(engine, schema, config, entity_name)
        finally:
            engine.dispose()
        format_success(f"Installed {len(installed)} triggers", console)
    except SystemExit:
        raise
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None
