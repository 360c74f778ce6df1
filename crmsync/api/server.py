"""crmsync API server implementation using Starlette."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route
import uvicorn

from ..sync.engine import SyncEngine
from ..sync.memory import InMemoryRemoteStore
from .auth import APIKeyManager, hash_key

if TYPE_CHECKING:
    from ..configuration import ConfigurationBundle
    from ..sync.protocol import RemoteStore

logger = logging.getLogger("crmsync.api.server")


class APIServerState(str, Enum):
    """API server lifecycle states."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class SyncAPIServer:
    """HTTP API exposing one sync engine.

    Without an explicit remote the engine talks to an in-process
    ``InMemoryRemoteStore``, which is enough for local demos.
    """

    config_bundle: "ConfigurationBundle"
    remote: Optional["RemoteStore"] = None
    engine: Optional[SyncEngine] = None
    watch_connectivity: Optional[bool] = None

    _state: APIServerState = field(default=APIServerState.STOPPED, init=False)
    _server: Optional[uvicorn.Server] = field(default=None, init=False)
    _keys: Optional[APIKeyManager] = field(default=None, init=False)

    def __post_init__(self) -> None:
        if self.engine is None:
            self.engine = SyncEngine.from_config(self.config_bundle, self.remote or InMemoryRemoteStore())
        if self.watch_connectivity is None:
            self.watch_connectivity = self.engine.settings.connectivity_enabled
        self._keys = APIKeyManager(self.config_bundle.vault_dir)

    @property
    def state(self) -> APIServerState:
        return self._state

    @property
    def host(self) -> str:
        return str(self._get_api_config().get("host", "127.0.0.1"))

    @property
    def port(self) -> int:
        return int(self._get_api_config().get("port", 8765))

    @property
    def api_key(self) -> str:
        """Get or generate the API key."""
        return self._keys.get_or_generate_key()

    def _get_api_config(self) -> Dict[str, Any]:
        if self.config_bundle.merged:
            return self.config_bundle.merged.get("api", {}) or {}
        return {}

    def create_app(self) -> Starlette:
        """Create the Starlette application."""
        from . import routes

        middleware = []
        cors_origins = self._get_api_config().get("cors_origins", [])
        if cors_origins:
            middleware.append(
                Middleware(
                    CORSMiddleware,
                    allow_origins=cors_origins,
                    allow_credentials=True,
                    allow_methods=["*"],
                    allow_headers=["*"],
                )
            )
        middleware.append(Middleware(self._auth_middleware_class()))

        sync_prefix = "/api/v1/sync"
        records_prefix = "/api/v1/records"
        app_routes = [
            Route("/health", routes.health_handler, methods=["GET"]),
            Route(f"{sync_prefix}/status", routes.status_handler, methods=["GET"]),
            Route(f"{sync_prefix}/pending", routes.pending_handler, methods=["GET"]),
            Route(f"{sync_prefix}/history", routes.history_handler, methods=["GET"]),
            Route(
                f"{sync_prefix}/history/{{change_id}}/rollback",
                routes.rollback_handler,
                methods=["POST"],
            ),
            Route(f"{sync_prefix}/conflicts", routes.conflicts_handler, methods=["GET"]),
            Route(
                f"{sync_prefix}/conflicts/{{conflict_id}}/resolve",
                routes.resolve_conflict_handler,
                methods=["POST"],
            ),
            Route(f"{sync_prefix}/online", routes.online_handler, methods=["POST"]),
            Route(f"{sync_prefix}/drain", routes.drain_handler, methods=["POST"]),
            Route(f"{sync_prefix}/cache", routes.cache_handler, methods=["POST"]),
            Route(f"{sync_prefix}/cache/load", routes.cache_load_handler, methods=["POST"]),
            Route(f"{records_prefix}/{{entity_type}}", routes.records_handler, methods=["GET"]),
            Route(f"{records_prefix}/{{entity_type}}/bulk", routes.bulk_handler, methods=["POST"]),
            Route(
                f"{records_prefix}/{{entity_type}}/{{entity_id}}",
                routes.record_handler,
                methods=["GET", "POST", "PATCH", "DELETE"],
            ),
        ]

        app = Starlette(
            routes=app_routes,
            middleware=middleware,
            lifespan=self._lifespan,
        )
        app.state.sync_server = self
        return app

    def _auth_middleware_class(self) -> type:
        """Create an authentication middleware class."""
        server = self

        class AuthMiddleware(BaseHTTPMiddleware):
            async def dispatch(self, request, call_next):
                if request.url.path == "/health":
                    return await call_next(request)

                api_key = request.headers.get("X-API-Key", "")
                if not api_key:
                    api_key = request.query_params.get("api_key", "")

                if not server._keys.validate_key(api_key):
                    if api_key:
                        logger.info("Rejected API key %s", hash_key(api_key))
                    return JSONResponse(
                        {"error": "Invalid or missing API key"},
                        status_code=401,
                    )

                return await call_next(request)

        return AuthMiddleware

    @asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        await self._on_startup()
        try:
            yield
        finally:
            await self._on_shutdown()

    async def _on_startup(self) -> None:
        logger.info("API server starting on %s:%s", self.host, self.port)
        await self.engine.restore()
        await self.engine.start_realtime_listeners()
        if self.watch_connectivity:
            self.engine.watch_connectivity()
        self._state = APIServerState.RUNNING

    async def _on_shutdown(self) -> None:
        logger.info("API server shutting down")
        self._state = APIServerState.STOPPING
        await self.engine.close()
        self._state = APIServerState.STOPPED

    def run(self) -> bool:
        """Serve until interrupted. Returns False if the server crashed."""
        if self._state == APIServerState.RUNNING:
            logger.warning("API server is already running")
            return False

        self._state = APIServerState.STARTING
        config = uvicorn.Config(
            self.create_app(),
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        try:
            asyncio.run(self._server.serve())
        except Exception as exc:
            logger.exception("API server error: %s", exc)
            self._state = APIServerState.ERROR
            return False
        finally:
            self._server = None
        return True

    def status(self) -> Dict[str, Any]:
        """Get server status information."""
        return {
            "state": self._state.value,
            "host": self.host,
            "port": self.port,
            "url": f"http://{self.host}:{self.port}" if self._state == APIServerState.RUNNING else None,
        }


__all__ = ["SyncAPIServer", "APIServerState"]
