"""Logging setup for crmsync: rotating text log plus JSON lines keyed by record."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Any, Dict, Optional, Union

LOG_SUBPATH = Path("logs") / "crmsync" / "sync.log"
STRUCTURED_LOG_SUBPATH = Path("logs") / "crmsync" / "sync.jsonl"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB per log segment
BACKUP_COUNT = 3
REPO_ROOT = Path(__file__).resolve().parent.parent
FALLBACK_ROOT = REPO_ROOT / ".crmsync_runtime"

# Record attributes set through ``extra=log_context(...)``
CONTEXT_FIELDS = ("entity_type", "entity_id", "change_id", "pending_id", "conflict_id")


def log_context(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    **ids: Optional[str],
) -> Dict[str, Any]:
    """Build an ``extra=`` mapping naming the record a log line is about."""
    context = {"entity_type": entity_type, "entity_id": entity_id, **ids}
    return {key: value for key, value in context.items() if key in CONTEXT_FIELDS and value is not None}


def _context_of(record: logging.LogRecord) -> Dict[str, Any]:
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if getattr(record, name, None) is not None}


class SyncTextFormatter(logging.Formatter):
    """Plain text lines, suffixed with ``[type/id]`` when a record is named."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        entity_type = getattr(record, "entity_type", None)
        if entity_type is None:
            return line
        entity_id = getattr(record, "entity_id", None)
        target = f"{entity_type}/{entity_id}" if entity_id is not None else entity_type
        return f"{line} [{target}]"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(_context_of(record))
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging(
    vault_dir: Path,
    level: Union[str, int] = logging.WARNING,
    structured: bool = True,
    structured_path: Optional[str] = None,
    *,
    max_bytes: int = MAX_BYTES,
    backup_count: int = BACKUP_COUNT,
) -> Path:
    """Configure crmsync logging with optional structured JSON output.

    Args:
        vault_dir: Path to the vault directory for log storage.
        level: Logging level (string name or int constant).
        structured: Whether to also write ``sync.jsonl``.
        structured_path: Custom path for structured logs (relative to vault_dir).
        max_bytes: Size at which a log segment rotates.
        backup_count: Rotated segments kept per log.

    Returns:
        Path to the primary (text) log file.
    """
    log_path = _resolve_path(vault_dir, LOG_SUBPATH, "logs")
    text_formatter = SyncTextFormatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    def _rotating(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
        handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        handler.setFormatter(formatter)
        return handler

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(text_formatter)

    logger = logging.getLogger("crmsync")
    _reset_handlers(logger)
    logger.setLevel(_resolve_level(level))
    logger.addHandler(_rotating(log_path, text_formatter))
    logger.addHandler(console_handler)

    if structured:
        subpath = Path(structured_path) if structured_path else STRUCTURED_LOG_SUBPATH
        json_path = _resolve_path(vault_dir, subpath, "structured logs")
        logger.addHandler(_rotating(json_path, JSONFormatter()))

    logger.propagate = False

    # uvicorn logs every request at INFO; keep its access log quieter than ours.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    return log_path


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.WARNING)
    return int(level)


def _resolve_path(vault_dir: Path, subpath: Path, label: str) -> Path:
    primary = vault_dir / subpath
    try:
        primary.parent.mkdir(parents=True, exist_ok=True)
        return primary
    except PermissionError:
        fallback = FALLBACK_ROOT / subpath
        fallback.parent.mkdir(parents=True, exist_ok=True)
        print(
            f"[config] Unable to write {label} under '{vault_dir}'; "
            f"falling back to '{fallback.parent}'.",
            file=sys.stderr,
        )
        return fallback


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


__all__ = [
    "setup_logging",
    "log_context",
    "JSONFormatter",
    "SyncTextFormatter",
    "LOG_SUBPATH",
    "STRUCTURED_LOG_SUBPATH",
    "FALLBACK_ROOT",
]
