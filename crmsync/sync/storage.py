"""Durable key/value storage backends."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger("crmsync.sync.storage")

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


class MemoryStorage:
    """Process-local storage. Survives engine restarts within one process."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None) -> None:
        self._data: Dict[str, bytes] = dict(initial or {})

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    def keys(self) -> list:
        return sorted(self._data)


class FileStorage:
    """One file per key under a state directory.

    Writes go to a temp file and are renamed into place so a crash never
    leaves a half-written value behind.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, key: str) -> Path:
        name = _UNSAFE_KEY_CHARS.sub("-", key).strip("-") or "default"
        return self.root / f"{name}.json"

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._read, self.path_for(key))

    async def set(self, key: str, value: bytes) -> None:
        await asyncio.to_thread(self._write, self.path_for(key), bytes(value))

    def _read(self, path: Path) -> Optional[bytes]:
        if not path.exists():
            return None
        return path.read_bytes()

    def _write(self, path: Path, value: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(value)
        os.replace(tmp_path, path)
        logger.debug("Wrote %d bytes to %s", len(value), path)


__all__ = ["FileStorage", "MemoryStorage"]
