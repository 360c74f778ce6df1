"""Command for displaying the recorded change history."""

from __future__ import annotations

from typing import List

from rich.console import Console
from rich.table import Table

from ..slash_commands import (
    SlashCommand,
    SlashCommandContext,
    parse_limit_args,
    render_rich,
)
from ..sync.errors import CacheError


def _flags(entry: dict) -> str:
    flags = []
    if entry.get("rolled_back"):
        flags.append("rolled back")
    if entry.get("acknowledged"):
        flags.append("acked")
    return ", ".join(flags)


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    """Display recent changes with optional filtering by entity or actor."""

    limit, search_term = parse_limit_args(args)
    try:
        history = context.load_journal().history
    except CacheError as exc:
        return f"[history] {exc}"

    if not history:
        return "[history] No changes recorded yet."

    filtered = history
    if search_term:
        search_lower = search_term.lower()
        filtered = [
            entry
            for entry in history
            if search_lower in f"{entry.get('entity_type')}/{entry.get('entity_id')}".lower()
            or search_lower in str(entry.get("actor", "")).lower()
        ]

    if not filtered:
        return f"[history] No changes matching '{search_term}' found."

    # Most recent last, like the log itself
    filtered = filtered[-limit:] if limit > 0 else filtered

    def _render(console: Console) -> None:
        table = Table(
            title=f"Change History (showing {len(filtered)} of {len(history)})",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("Change", style="dim", no_wrap=True)
        table.add_column("Entity", style="green", no_wrap=True)
        table.add_column("Action", no_wrap=True)
        table.add_column("Origin", no_wrap=True)
        table.add_column("Actor", overflow="fold")
        table.add_column("Fields", overflow="fold")
        table.add_column("Flags", style="yellow")

        for entry in filtered:
            table.add_row(
                str(entry.get("id")),
                f"{entry.get('entity_type')}/{entry.get('entity_id')}",
                str(entry.get("action")),
                str(entry.get("origin")),
                str(entry.get("actor", "")),
                ", ".join(sorted((entry.get("field_patch") or {}).keys())) or "-",
                _flags(entry),
            )

        console.print(table)

    return render_rich(_render)


COMMAND = SlashCommand(
    name="history",
    description="Show recorded changes. Usage: history [-n LIMIT] [ENTITY|ACTOR]",
    handler=_handler,
)
