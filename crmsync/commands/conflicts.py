"""Command for listing unresolved field conflicts."""

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
    limit, entity_type = parse_limit_args(args)
    try:
        conflicts = context.load_journal().conflicts
    except CacheError as exc:
        return f"[conflicts] {exc}"

    if entity_type:
        conflicts = [item for item in conflicts if item.get("entity_type") == entity_type]
    if not conflicts:
        return "[conflicts] No unresolved conflicts."

    shown = conflicts[:limit] if limit > 0 else conflicts

    def _render(console: Console) -> None:
        table = Table(
            title=f"Unresolved Conflicts ({len(conflicts)})",
            show_header=True,
            header_style="bold red",
        )
        table.add_column("Conflict", style="dim", no_wrap=True)
        table.add_column("Entity", style="green", no_wrap=True)
        table.add_column("Field", style="bold")
        table.add_column("Local", overflow="fold")
        table.add_column("Server", overflow="fold")
        table.add_column("Detected", style="dim")

        for item in shown:
            table.add_row(
                str(item.get("id")),
                f"{item.get('entity_type')}/{item.get('entity_id')}",
                str(item.get("field")),
                preview_value(item.get("local_value")),
                preview_value(item.get("server_value")),
                str(item.get("detected_at") or ""),
            )

        console.print(table)
        console.print(
            "[dim]Resolve with POST /api/v1/sync/conflicts/<id>/resolve "
            "and a body of {\"side\": \"local\"} or {\"side\": \"server\"}.[/dim]"
        )

    return render_rich(_render)


COMMAND = SlashCommand(
    name="conflicts",
    description="Show unresolved field conflicts. Usage: conflicts [-n LIMIT] [COLLECTION]",
    handler=_handler,
)
