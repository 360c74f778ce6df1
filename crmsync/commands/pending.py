"""Command for listing queued local changes."""

from __future__ import annotations

from typing import List

from rich.console import Console
from rich.table import Table

from ..slash_commands import (
    SlashCommand,
    SlashCommandContext,
    parse_limit_args,
    preview_value,
    render_rich,
)
from ..sync.errors import CacheError


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    """List the outbox, optionally filtered by collection."""

    limit, entity_type = parse_limit_args(args)
    try:
        journal = context.load_journal()
    except CacheError as exc:
        return f"[pending] {exc}"

    entries = journal.pending
    if entity_type:
        entries = [entry for entry in entries if entry.get("entity_type") == entity_type]

    if not entries:
        if entity_type:
            return f"[pending] No queued changes for '{entity_type}'."
        return "[pending] Outbox is empty; every local change has been acknowledged."

    shown = entries[:limit] if limit > 0 else entries

    def _render(console: Console) -> None:
        table = Table(
            title=f"Pending Changes (showing {len(shown)} of {len(entries)})",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("#", style="dim", width=4)
        table.add_column("Entity", style="green", no_wrap=True)
        table.add_column("Action", no_wrap=True)
        table.add_column("Fields", overflow="fold")
        table.add_column("Retries", justify="right")
        table.add_column("Last error", style="red", overflow="fold")

        for i, entry in enumerate(shown, 1):
            patch = entry.get("field_patch") or {}
            fields = ", ".join(f"{name}={preview_value(value, 20)}" for name, value in patch.items())
            table.add_row(
                str(i),
                f"{entry.get('entity_type')}/{entry.get('entity_id')}",
                str(entry.get("action", "update")),
                fields or "-",
                str(entry.get("retry_count", 0)),
                preview_value(entry.get("last_error")) if entry.get("last_error") else "",
            )

        console.print(table)

    return render_rich(_render)


COMMAND = SlashCommand(
    name="pending",
    description="Show queued local changes. Usage: pending [-n LIMIT] [COLLECTION]",
    handler=_handler,
)
