"""crmsync HTTP API server module."""

from __future__ import annotations

from .server import APIServerState, SyncAPIServer

__all__ = ["SyncAPIServer", "APIServerState"]
