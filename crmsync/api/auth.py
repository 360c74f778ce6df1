"""Authentication utilities for the crmsync API."""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger("crmsync.api.auth")


@dataclass
class APIKeyManager:
    """Manages API key generation and validation."""

    vault_dir: Path
    _cached_key: Optional[str] = None

    @property
    def key_file_path(self) -> Path:
        """Path to the stored API key file."""
        return self.vault_dir / "config" / ".api_key"

    def get_or_generate_key(self) -> str:
        """Get existing API key or generate a new one."""
        if self._cached_key:
            return self._cached_key

        if self.key_file_path.exists():
            try:
                key = self.key_file_path.read_text(encoding="utf-8").strip()
            except OSError as exc:
                logger.warning("Could not read API key file %s: %s", self.key_file_path, exc)
                key = ""
            if key:
                self._cached_key = key
                return key

        key = self._generate_key()
        self._save_key(key)
        self._cached_key = key
        return key

    def validate_key(self, provided_key: str) -> bool:
        """Validate a provided API key."""
        if not provided_key:
            return False

        stored_key = self.get_or_generate_key()
        # Constant-time comparison
        return secrets.compare_digest(provided_key, stored_key)

    def regenerate_key(self) -> str:
        """Generate a new API key, replacing any existing one."""
        key = self._generate_key()
        self._save_key(key)
        self._cached_key = key
        return key

    def _generate_key(self) -> str:
        # 32 random bytes, hex encoded (64 chars)
        return secrets.token_hex(32)

    def _save_key(self, key: str) -> None:
        try:
            self.key_file_path.parent.mkdir(parents=True, exist_ok=True)
            self.key_file_path.write_text(key, encoding="utf-8")
            self.key_file_path.chmod(0o600)
        except OSError as exc:
            # The key stays cached in memory for this process.
            logger.warning("Could not persist API key to %s: %s", self.key_file_path, exc)


def hash_key(key: str) -> str:
    """Create a one-way hash of an API key for logging/comparison."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


__all__ = ["APIKeyManager", "hash_key"]
