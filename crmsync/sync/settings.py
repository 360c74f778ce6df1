"""Typed settings for the synchronization engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .history import DEFAULT_HISTORY_LIMIT
from .outbox import DEFAULT_MAX_PENDING, RetryPolicy

DEFAULT_ENTITY_TYPES: Tuple[str, ...] = (
    "leads",
    "clients",
    "crewJobs",
    "warranties",
    "profitSharingPlans",
)
DEFAULT_ACTOR = "Unknown User"
DEFAULT_STATE_DIR = "state/crmsync"


def _string_list(raw: Any, default: Sequence[str]) -> List[str]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        return list(default)
    values = [str(item).strip() for item in raw if str(item).strip()]
    return values or list(default)


def _positive_float(raw: Any, default: float) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _positive_int(raw: Any, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


@dataclass
class SyncSettings:
    """Settings for a sync engine, resolved from the merged configuration."""

    entity_types: Tuple[str, ...] = DEFAULT_ENTITY_TYPES
    actor: str = DEFAULT_ACTOR
    history_limit: int = DEFAULT_HISTORY_LIMIT
    state_dir: str = DEFAULT_STATE_DIR
    max_pending: int = DEFAULT_MAX_PENDING
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    connectivity_enabled: bool = True
    poll_interval: float = 5.0
    include_loopback: bool = False
    connectivity_checks: Tuple[str, ...] = ()
    connectivity_timeout: float = 1.0

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "SyncSettings":
        config = config or {}
        sync = config.get("sync", {}) or {}
        outbox = config.get("outbox", {}) or {}
        connectivity = config.get("connectivity", {}) or {}
        defaults = RetryPolicy()
        return cls(
            entity_types=tuple(_string_list(sync.get("entity_types"), DEFAULT_ENTITY_TYPES)),
            actor=str(sync.get("actor") or DEFAULT_ACTOR),
            history_limit=_positive_int(sync.get("history_limit"), DEFAULT_HISTORY_LIMIT),
            state_dir=str(sync.get("state_dir") or DEFAULT_STATE_DIR),
            max_pending=_positive_int(outbox.get("max_pending"), DEFAULT_MAX_PENDING),
            retry_policy=RetryPolicy(
                base_delay=_positive_float(outbox.get("base_delay"), defaults.base_delay),
                max_delay=_positive_float(outbox.get("max_delay"), defaults.max_delay),
                multiplier=_positive_float(outbox.get("backoff_multiplier"), defaults.multiplier),
            ),
            connectivity_enabled=bool(connectivity.get("enabled", True)),
            poll_interval=_positive_float(connectivity.get("poll_interval"), 5.0),
            include_loopback=bool(connectivity.get("include_loopback", False)),
            connectivity_checks=tuple(_string_list(connectivity.get("checks"), ())),
            connectivity_timeout=_positive_float(connectivity.get("timeout"), 1.0),
        )

    def state_path(self, vault_dir: Path) -> Path:
        return vault_dir / self.state_dir


__all__ = ["DEFAULT_ACTOR", "DEFAULT_ENTITY_TYPES", "SyncSettings"]
