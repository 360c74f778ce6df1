"""Operator command registry."""

from __future__ import annotations

from .conflicts import COMMAND as CONFLICTS_COMMAND
from .help import COMMAND as HELP_COMMAND
from .history import COMMAND as HISTORY_COMMAND
from .pending import COMMAND as PENDING_COMMAND
from .status import COMMAND as STATUS_COMMAND

COMMANDS = [
    STATUS_COMMAND,
    HELP_COMMAND,
    PENDING_COMMAND,
    HISTORY_COMMAND,
    CONFLICTS_COMMAND,
]

__all__ = ["COMMANDS"]
