"""Rich formatting helpers for the ChangeTrail CLI.

Rich auto-detects TTY and degrades gracefully when piped (no ANSI codes).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table

if TYPE_CHECKING:
    from changetrail.models.tracked import GeneratedTrigger, TrackedEntity
    from changetrail.storage.schema import ChangeRow


def get_console() -> Console:
    """Create a Rich Console that auto-detects TTY for graceful pipe degradation."""
    return Console(stderr=False)


def format_triggers(triggers: Sequence[GeneratedTrigger], console: Console) -> None:
    """Print generated artifacts, one titled block each."""
    if not triggers:
        console.print("[dim]Nothing to generate.[/dim]")
        return
    for i, trigger in enumerate(triggers):
        if i > 0:
            console.print()
        console.print(f"[yellow]-- {escape(trigger.file_name)}[/yellow]", highlight=False)
        if console.is_terminal:
            console.print(Syntax(trigger.source_text, "sql", word_wrap=True))
        else:
            console.print(trigger.source_text, markup=False, highlight=False, soft_wrap=True)


def format_entities(entities: Sequence[TrackedEntity], console: Console) -> None:
    """Compact table of tracked entities."""
    if not entities:
        console.print("[dim]No change-tracked entities.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Entity", style="cyan")
    table.add_column("Keys", style="dim")
    table.add_column("Attributes")
    table.add_column("Compositions", style="green")
    table.add_column("Root", style="yellow")

    for entity in entities:
        table.add_row(
            escape(entity.name),
            ", ".join(entity.primary_keys),
            escape(", ".join(a.name for a in entity.attributes)),
            escape(", ".join(c.name for c in entity.compositions_of_many)),
            escape(entity.root.entity) if entity.root else "",
        )
    console.print(table)


def format_history(changes: Sequence[ChangeRow], console: Console) -> None:
    """Change records, oldest first."""
    if not changes:
        console.print("[dim]No changes.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Time", style="dim")
    table.add_column("Op", style="cyan", width=6)
    table.add_column("Object")
    table.add_column("Attribute", style="yellow")
    table.add_column("From")
    table.add_column("To", style="green")
    table.add_column("By", style="dim")

    for change in changes:
        time_str = change.created_at.strftime("%Y-%m-%d %H:%M:%S") if change.created_at else ""
        table.add_row(
            time_str,
            change.modification,
            escape(change.object_id or change.entity_key),
            escape(change.attribute),
            escape(change.display_from or ""),
            escape(change.display_to or ""),
            escape(change.created_by or ""),
        )
    console.print(table)


def format_success(message: str, console: Console) -> None:
    console.print(f"[green]{message}[/green]", highlight=False)


def format_error(message: str, console: Console) -> None:
    """Display an error message."""
    console.print(f"[red]Error:[/red] {escape(message)}", highlight=False)
