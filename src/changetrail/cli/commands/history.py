"""changetrail history -- show recorded changes."""

from __future__ import annotations

import click

from changetrail.cli.formatting import format_error, format_history, get_console
from changetrail.planning.encoding import join_key


@click.command()
@click.argument("entity")
@click.argument("key", nargs=-1)
@click.option("-n", "--limit", default=50, type=int, help="Maximum number of changes to show.")
@click.option("--root", is_flag=True, help="Match ENTITY/KEY against the root object instead.")
@click.option(
    "--op",
    "op_filter",
    default=None,
    type=click.Choice(["create", "update", "delete"], case_sensitive=False),
    help="Filter by modification.",
)
@click.pass_context
def history(
    ctx: click.Context,
    entity: str,
    key: tuple[str, ...],
    limit: int,
    root: bool,
    op_filter: str | None,
) -> None:
    """Show the change history of ENTITY, optionally for one KEY.

    A composite key is given as one KEY value per key element, in key order.
    """
    from changetrail.storage.engine import create_changetrail_engine, create_session_factory
    from changetrail.storage.sqlite import SqliteChangeRepository

    console = get_console()
    entity_key = join_key(key) if key else None
    try:
        engine = create_changetrail_engine(ctx.obj["db_path"])
        try:
            with create_session_factory(engine)() as session:
                repo = SqliteChangeRepository(session)
                if root:
                    changes = repo.list_changes(
                        root_entity=entity,
                        root_entity_key=entity_key,
                        modification=op_filter.lower() if op_filter else None,
                        limit=limit,
                    )
                else:
                    changes = repo.list_changes(
                        entity,
                        entity_key,
                        modification=op_filter.lower() if op_filter else None,
                        limit=limit,
                    )
                format_history(changes, console)
        finally:
            engine.dispose()
    except SystemExit:
        raise
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None
