"""Command for runtime and sync status."""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Tuple

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..slash_commands import SlashCommand, SlashCommandContext, render_rich
from ..sync.errors import CacheError
from ..sync.journal import JournalState

SECTION_ALIASES: Dict[str, Sequence[str]] = {
    "info": ("info", "summary"),
    "sync": ("sync", "journal"),
    "diagnostics": ("diagnostics", "diag", "diags"),
}
DEFAULT_MAX_ROWS = 5


def _resolve_sections(args: Iterable[str]) -> Tuple[List[str], bool]:
    """Return sections to render and whether all rows should be shown."""

    normalized = [arg.strip().lower() for arg in args]
    show_all = any(arg in {"--all", "-a", "all"} for arg in normalized)

    requested: List[str] = []
    for section, aliases in SECTION_ALIASES.items():
        if any(arg in aliases for arg in normalized):
            requested.append(section)

    if not requested:
        requested = list(SECTION_ALIASES.keys())

    return requested, show_all


def _add_rows_with_limit(
    table: Table,
    rows: Sequence[Sequence[str]],
    *,
    max_rows: int,
) -> Tuple[int, bool]:
    """Append up to max_rows rows and return total + truncated flag."""

    for row in rows[:max_rows]:
        table.add_row(*row)

    return len(rows), len(rows) > max_rows


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    config = context.config
    settings = context.settings
    sections, show_all = _resolve_sections(args)

    journal_error = ""
    try:
        journal = context.load_journal()
    except CacheError as exc:
        journal = JournalState()
        journal_error = str(exc)

    def _render_summary(console: Console) -> None:
        info = Table.grid(padding=(0, 1))
        info.add_column("Key", style="bold", no_wrap=True)
        info.add_column("Value", overflow="fold")
        info.add_row("Vault", str(config.vault_dir))
        info.add_row("Status", config.status)
        info.add_row("Config files", str(len(config.files_loaded)))
        info.add_row("Log path", str(config.log_path or "(not initialized)"))
        info.add_row("State dir", str(context.journal_path.parent))
        info.add_row("Collections", ", ".join(settings.entity_types))

        console.print(
            Panel(
                info,
                title="Runtime Status",
                border_style="green",
                padding=(0, 1),
            )
        )

    def _render_sync(console: Console) -> None:
        if journal_error:
            console.print(Panel(f"[red]{escape(journal_error)}", title="Sync", border_style="red"))
            return
        if journal.is_empty:
            console.print(Panel("[yellow]No sync journal recorded yet.", title="Sync", border_style="cyan"))
            return

        pending_for = {entry.get("entity_type") for entry in journal.pending}
        info = Table.grid(padding=(0, 1))
        info.add_column("Key", style="bold", no_wrap=True)
        info.add_column("Value", overflow="fold")
        info.add_row("Last sync", str(journal.last_sync_time or "never"))
        info.add_row("Journal saved", str(journal.saved_at or "unknown"))
        info.add_row("Pending changes", str(len(journal.pending)))
        info.add_row("Waiting collections", ", ".join(sorted(filter(None, pending_for))) or "(none)")
        info.add_row("Open conflicts", str(len(journal.conflicts)))
        info.add_row("History entries", str(len(journal.history)))

        console.print(Panel(info, title="Sync", border_style="cyan", padding=(0, 1)))

    def _render_diagnostics(console: Console) -> None:
        if not config.diagnostics:
            console.print(Panel("[green]No diagnostics reported.", title="Diagnostics", border_style="red"))
            return

        diag_table = Table(
            show_header=True,
            header_style="bold red",
            box=box.SIMPLE,
            pad_edge=False,
        )
        diag_table.add_column("Lvl", style="red", no_wrap=True)
        diag_table.add_column("Message", overflow="fold", ratio=2)
        diag_table.add_column("Source", overflow="fold", ratio=2)

        max_rows = len(config.diagnostics) if show_all else DEFAULT_MAX_ROWS
        rows = [
            (
                diag.level.upper(),
                diag.message,
                str(diag.source or config.vault_dir),
            )
            for diag in config.diagnostics
        ]
        total_rows, truncated = _add_rows_with_limit(diag_table, rows, max_rows=max_rows)

        console.print(
            Panel(
                diag_table,
                title="Diagnostics",
                border_style="red",
                padding=(0, 1),
            )
        )
        if truncated:
            console.print(
                f"\n[dim]Showing {max_rows}/{total_rows}. "
                "Use 'status diagnostics --all' for the full list.[/dim]"
            )

    renderers = {
        "info": _render_summary,
        "sync": _render_sync,
        "diagnostics": _render_diagnostics,
    }

    def _render(console: Console) -> None:
        for section in sections:
            renderers[section](console)

    return render_rich(_render)


COMMAND = SlashCommand(
    name="status",
    description="Show vault, sync journal, and configuration diagnostics.",
    handler=_handler,
)
