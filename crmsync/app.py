# crmsync/app.py
"""
Operator entry point for crmsync.

``crmsync <command> [args]`` runs one inspection command against the vault's
persisted sync journal, ``crmsync serve`` starts the HTTP API, and running it
without arguments opens a small interactive prompt.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
try:
    import readline
except ImportError:  # pragma: no cover
    readline = None
import sys
from typing import List, Optional, Sequence

from .commands import COMMANDS
from .configuration import (
    ConfigurationBundle,
    Diagnostic,
    load_runtime_configuration,
    resolve_vault_dir,
)
from .logging_utils import BACKUP_COUNT, MAX_BYTES, setup_logging
from .slash_commands import CommandRouter

REPO_ROOT = Path(__file__).resolve().parent.parent
logger = logging.getLogger("crmsync")
SERVE_COMMAND = "serve"


def _log_path_within_vault(log_path: Path, vault_dir: Path) -> bool:
    try:
        log_path.relative_to(vault_dir)
        return True
    except ValueError:
        return False


def build_router(config: ConfigurationBundle) -> CommandRouter:
    """Register every operator command."""

    router = CommandRouter(
        config,
        metadata={"repo_root": str(REPO_ROOT)},
    )
    for command in COMMANDS:
        router.register(command)
    return router


def emit_configuration_report(config: ConfigurationBundle) -> None:
    """Print diagnostics so operators can correct issues quickly."""

    if not config.diagnostics:
        print(
            f"[config] Loaded {len(config.files_loaded)} file(s) "
            f"from repo and vault config directories."
        )
        return

    print("[config] Diagnostics:")
    for diag in config.diagnostics:
        prefix = diag.source or config.vault_dir
        print(f"  - ({diag.level.upper()}) {diag.message} [{prefix}]")


def configure_logging(config_bundle: ConfigurationBundle) -> Path:
    """Install log handlers using the configured (or environment) level."""

    logging_cfg = (config_bundle.merged.get("logging", {}) or {}) if config_bundle.merged else {}
    env_level = os.environ.get("CRMSYNC_LOG_LEVEL")
    log_level_name = (env_level or logging_cfg.get("level") or "WARNING").upper()
    log_path = setup_logging(
        config_bundle.vault_dir,
        log_level_name,
        structured=bool(logging_cfg.get("structured", True)),
        max_bytes=int(logging_cfg.get("max_bytes") or MAX_BYTES),
        backup_count=int(logging_cfg.get("backup_count") or BACKUP_COUNT),
    )
    config_bundle.log_path = log_path
    if not _log_path_within_vault(log_path, config_bundle.vault_dir):
        config_bundle.diagnostics.append(
            Diagnostic(
                level="warning",
                message=(
                    "Vault log directory is not writable; "
                    f"logging to fallback path '{log_path}'."
                ),
                source=log_path,
            )
        )
    logger.info("Logging initialized at %s", log_path)
    return log_path


def configure_autocomplete(router: CommandRouter) -> None:
    """Enable readline tab completion for command names."""

    if readline is None:
        return

    commands = list(router.command_names) + [SERVE_COMMAND]

    def completer(text: str, state: int):
        matches = [cmd for cmd in commands if cmd.startswith(text)]
        if state < len(matches):
            return matches[state]
        return None

    readline.set_completer(completer)
    readline.parse_and_bind("tab: complete")
    readline.set_completer_delims(" \t")


def execute_cli_command(command_line: str, router: CommandRouter) -> str:
    """Run one command line and print its output."""

    stripped = command_line.strip()
    if not stripped:
        return ""

    parts = stripped.split()
    command, args = parts[0], parts[1:]
    result = router.handle(command, args)
    print(result)
    logger.info("Executed CLI command: %s", stripped)
    return result


def serve(config_bundle: ConfigurationBundle) -> int:
    """Run the HTTP API until interrupted."""
    from .api import SyncAPIServer

    server = SyncAPIServer(config_bundle=config_bundle)
    print(f"[api] Serving on http://{server.host}:{server.port}")
    print(f"[api] API key stored at {server._keys.key_file_path}")
    return 0 if server.run() else 1


def interactive_loop(router: CommandRouter) -> None:
    configure_autocomplete(router)
    print("[crmsync] Type 'help' for commands, 'exit' to quit.")
    while True:
        try:
            raw_line = input("crmsync> ")
        except (EOFError, KeyboardInterrupt):
            print("\n[Exiting crmsync]")
            break

        line = raw_line.strip()
        if not line:
            continue
        if line.lower() in {"quit", "exit"}:
            print("[Goodbye]")
            break
        execute_cli_command(line, router)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for `python -m crmsync` and the `crmsync` script."""

    args: List[str] = list(sys.argv[1:] if argv is None else argv)
    config_bundle = load_runtime_configuration(resolve_vault_dir())
    configure_logging(config_bundle)

    if args and args[0].lower() == SERVE_COMMAND:
        if config_bundle.status != "ready":
            emit_configuration_report(config_bundle)
            return 2
        return serve(config_bundle)

    router = build_router(config_bundle)
    if args:
        execute_cli_command(" ".join(args), router)
        return 0

    emit_configuration_report(config_bundle)
    interactive_loop(router)
    return 0


__all__ = ["build_router", "configure_logging", "execute_cli_command", "main", "serve"]
