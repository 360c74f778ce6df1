"""Shared operator command registry and helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from io import StringIO
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from .configuration import ConfigurationBundle
from .sync.journal import JOURNAL_KEY, JournalState, JournalStore
from .sync.settings import SyncSettings
from .sync.storage import FileStorage

SlashCommandHandler = Callable[["SlashCommandContext", List[str]], str]


@dataclass
class SlashCommandContext:
    """Context passed into each command handler."""

    config: ConfigurationBundle
    router: "CommandRouter"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def settings(self) -> SyncSettings:
        return SyncSettings.from_config(self.config.merged)

    @property
    def journal_path(self) -> Path:
        storage = FileStorage(self.settings.state_path(Path(self.config.vault_dir)))
        return storage.path_for(JOURNAL_KEY)

    def load_journal(self) -> JournalState:
        """Read the persisted journal of the vault.

        Raises CacheError when the file exists but cannot be decoded.
        """
        path = self.journal_path
        if not path.exists():
            return JournalState()
        storage = FileStorage(path.parent)
        return JournalStore(storage).decode(path.read_bytes())


@dataclass
class SlashCommand:
    """Metadata about an operator command."""

    name: str
    description: str
    handler: SlashCommandHandler
    requires_ready: bool = False


class CommandRouter:
    """Registry + dispatcher for operator commands."""

    def __init__(
        self,
        config: ConfigurationBundle,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.config = config
        self._commands: Dict[str, SlashCommand] = {}
        self.metadata = metadata or {}

    def register(self, command: SlashCommand) -> None:
        self._commands[command.name.lower()] = command

    def handle(self, command_name: str, args: List[str]) -> str:
        command = self._commands.get(command_name.lower())
        if command is None:
            return (
                f"[router] Unknown command '{command_name}'. "
                "Run 'help' to list available commands."
            )
        if command.requires_ready and self.config.status != "ready":
            return (
                f"[router] '{command_name}' requires a ready configuration "
                f"(current status: {self.config.status})."
            )
        context = SlashCommandContext(
            config=self.config,
            router=self,
            metadata=self.metadata,
        )
        return command.handler(context, args)

    @property
    def command_names(self) -> Sequence[str]:
        return sorted(self._commands.keys())

    def commands(self) -> Sequence[SlashCommand]:
        return [self._commands[name] for name in self.command_names]

    def get(self, command_name: str) -> Optional[SlashCommand]:
        return self._commands.get(command_name.lower())


def parse_limit_args(args: Sequence[str], default_limit: int = 20) -> tuple[int, Optional[str]]:
    """Split ``[-n LIMIT] [FILTER]`` style arguments."""

    limit = default_limit
    term: Optional[str] = None
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("-n", "--limit") and i + 1 < len(args):
            try:
                limit = int(args[i + 1])
            except ValueError:
                pass
            i += 2
        elif not arg.startswith("-"):
            term = arg
            i += 1
        else:
            i += 1
    return limit, term


def preview_value(value: Any, width: int = 40) -> str:
    text = "(unset)" if value is None else str(value)
    text = text.replace("\n", " ").strip()
    if len(text) > width:
        text = text[: width - 3] + "..."
    return text


def render_help_table(commands: Sequence[SlashCommand]) -> str:
    """Render a help table listing operator commands."""

    def _render(console: Console) -> None:
        table = Table(title="Commands", show_header=True, header_style="bold cyan")
        table.add_column("Command", style="green", no_wrap=True)
        table.add_column("Description")
        for cmd in commands:
            table.add_row(cmd.name, cmd.description)
        console.print(table)

    return render_rich(_render)


def render_rich(render_fn: Callable[[Console], None]) -> str:
    """Render a Rich layout to an ANSI string without printing live."""

    terminal_size = shutil.get_terminal_size(fallback=(80, 24))
    # Clamp to a reasonable minimum so Rich does not choke on ultra-small widths.
    width = max(20, terminal_size.columns)
    height = max(10, terminal_size.lines)

    console = Console(
        record=True,
        force_terminal=True,
        color_system="auto",
        width=width,
        height=height,
        file=StringIO(),
    )
    render_fn(console)
    return console.export_text(clear=False, styles=True)


__all__ = [
    "SlashCommand",
    "SlashCommandContext",
    "CommandRouter",
    "parse_limit_args",
    "preview_value",
    "render_help_table",
    "render_rich",
]
