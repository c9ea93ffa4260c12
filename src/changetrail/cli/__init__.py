"""ChangeTrail CLI -- generate, install and inspect change-tracking triggers.

This module is NEVER imported from changetrail/__init__.py.
It is only loaded via the ``changetrail`` entry point defined in pyproject.toml.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

try:
    import click
except ImportError:
    raise ImportError(
        "CLI dependencies not installed. Install with: pip install changetrail[cli]"
    ) from None


if TYPE_CHECKING:
    from changetrail.models.config import TrackingConfig
    from changetrail.synthesis import TriggerSynthesizer


@click.group()
@click.option(
    "--schema",
    default="csn.json",
    envvar="CHANGETRAIL_SCHEMA",
    help="Path to the annotated schema (JSON).",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    envvar="CHANGETRAIL_CONFIG",
    help="Path to a tracking configuration file (JSON).",
)
@click.option(
    "--kind",
    default=None,
    envvar="CHANGETRAIL_KIND",
    help="Database kind (sqlite, postgres, hana, h2). Overrides the config file.",
)
@click.option(
    "--db",
    default="changetrail.db",
    envvar="CHANGETRAIL_DB",
    help="Path to the SQLite database for regenerate/history.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log generation steps.")
@click.pass_context
def cli(
    ctx: click.Context,
    schema: str,
    config_path: str | None,
    kind: str | None,
    db: str,
    verbose: bool,
) -> None:
    """ChangeTrail: trigger-based change tracking for annotated schemas."""
    import logging

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["schema_path"] = schema
    ctx.obj["config_path"] = config_path
    ctx.obj["kind"] = kind
    ctx.obj["db_path"] = db


def _get_config(ctx: click.Context) -> "TrackingConfig":
    """Load the tracking config, applying ``--kind`` on top."""
    from changetrail.models.config import TrackingConfig

    config_path = ctx.obj["config_path"]
    config = TrackingConfig.from_file(config_path) if config_path else TrackingConfig()
    if ctx.obj["kind"]:
        config = TrackingConfig.from_dict({**config.model_dump(), "db_kind": ctx.obj["kind"]})
    return config


def _get_synthesizer(ctx: click.Context) -> "TriggerSynthesizer":
    from changetrail.models.schema import SchemaModel
    from changetrail.synthesis import TriggerSynthesizer

    return TriggerSynthesizer(SchemaModel.from_file(ctx.obj["schema_path"]), _get_config(ctx))


# Register subcommands after cli group is defined
from changetrail.cli.commands.generate import generate  # noqa: E402
from changetrail.cli.commands.entities import entities  # noqa: E402
from changetrail.cli.commands.regenerate import regenerate  # noqa: E402
from changetrail.cli.commands.history import history  # noqa: E402

cli.add_command(generate)
cli.add_command(entities)
cli.add_command(regenerate)
cli.add_command(history)
