"""API route handlers for the crmsync API server."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from starlette.requests import Request
from starlette.responses import JSONResponse

from ..sync.errors import (
    ConflictResolutionError,
    EntityNotFoundError,
    OutboxFullError,
    RollbackError,
    SyncError,
)
from ..sync.models import ChangeAction, ConflictSide

if TYPE_CHECKING:
    from ..sync.engine import SyncEngine

logger = logging.getLogger("crmsync.api.routes")

_ERROR_STATUS: Tuple[Tuple[type, int], ...] = (
    (EntityNotFoundError, 404),
    (ConflictResolutionError, 404),
    (RollbackError, 409),
    (OutboxFullError, 507),
    (ValueError, 422),
)

_WRITE_ACTIONS = {
    "POST": ChangeAction.CREATE,
    "PATCH": ChangeAction.UPDATE,
    "DELETE": ChangeAction.DELETE,
}


def _engine(request: Request) -> "SyncEngine":
    return request.app.state.sync_server.engine


def _error_response(exc: Exception) -> JSONResponse:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            logger.info("Request failed with %s: %s", type(exc).__name__, exc)
            return JSONResponse(
                {"error": str(exc), "type": type(exc).__name__},
                status_code=status_code,
            )
    raise exc


async def _json_body(request: Request) -> Optional[Dict[str, Any]]:
    """Parsed JSON object body; an empty body is an empty object, anything else None."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def _invalid_body() -> JSONResponse:
    return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)


def _actor(request: Request) -> Optional[str]:
    return request.headers.get("X-Actor") or None


def _limit(request: Request, default: int = 50) -> int:
    try:
        return int(request.query_params.get("limit", str(default)))
    except ValueError:
        return default


async def health_handler(request: Request) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "crmsync-api",
    })


async def status_handler(request: Request) -> JSONResponse:
    server = request.app.state.sync_server
    config = server.config_bundle
    return JSONResponse({
        "config_status": config.status,
        "vault_dir": str(config.vault_dir),
        "sync": _engine(request).status(),
        "diagnostics": [
            {"level": d.level, "message": d.message}
            for d in config.diagnostics
        ],
    })


async def pending_handler(request: Request) -> JSONResponse:
    engine = _engine(request)
    entries = engine.pending_changes
    entity_type = request.query_params.get("entity_type")
    if entity_type:
        entries = [entry for entry in entries if entry.entity_type == entity_type]
    return JSONResponse({
        "pending": [entry.to_dict() for entry in entries],
        "total": len(entries),
    })


async def history_handler(request: Request) -> JSONResponse:
    """Recorded changes, oldest first, trimmed to the most recent ``limit``."""
    engine = _engine(request)
    history = engine.history.to_list()
    limit = _limit(request)
    history_slice = history[-limit:] if limit > 0 else history
    return JSONResponse({
        "history": history_slice,
        "total": len(history),
    })


async def rollback_handler(request: Request) -> JSONResponse:
    engine = _engine(request)
    change_id = request.path_params["change_id"]
    try:
        change = await engine.rollback_change(change_id, actor=_actor(request))
    except SyncError as exc:
        return _error_response(exc)
    return JSONResponse({"rolled_back": change_id, "change": engine.history.describe(change)})


async def conflicts_handler(request: Request) -> JSONResponse:
    conflicts = _engine(request).conflict_resolution.conflicts
    return JSONResponse({
        "conflicts": [conflict.to_dict() for conflict in conflicts],
        "total": len(conflicts),
    })


async def resolve_conflict_handler(request: Request) -> JSONResponse:
    engine = _engine(request)
    conflict_id = request.path_params["conflict_id"]
    body = await _json_body(request)
    if body is None:
        return _invalid_body()

    side = str(body.get("side", "")).lower()
    if side not in (ConflictSide.LOCAL.value, ConflictSide.SERVER.value):
        return JSONResponse(
            {"error": "Field 'side' must be 'local' or 'server'"},
            status_code=422,
        )
    try:
        change = await engine.resolve_conflict(conflict_id, side, actor=_actor(request))
    except SyncError as exc:
        return _error_response(exc)
    return JSONResponse({"resolved": conflict_id, "side": side, "change": engine.history.describe(change)})


async def online_handler(request: Request) -> JSONResponse:
    engine = _engine(request)
    body = await _json_body(request)
    if body is None:
        return _invalid_body()
    online = body.get("online")
    if not isinstance(online, bool):
        return JSONResponse({"error": "Field 'online' must be a boolean"}, status_code=422)
    changed = await engine.set_online_status(online)
    return JSONResponse({
        "is_online": engine.is_online,
        "changed": changed,
        "pending_changes": len(engine.pending_changes),
    })


async def drain_handler(request: Request) -> JSONResponse:
    result = await _engine(request).drain_outbox()
    return JSONResponse(result.to_dict())


async def cache_handler(request: Request) -> JSONResponse:
    counts = await _engine(request).cache_data()
    return JSONResponse({"cached": counts})


async def cache_load_handler(request: Request) -> JSONResponse:
    counts = await _engine(request).load_from_cache()
    return JSONResponse({"loaded": counts})


async def records_handler(request: Request) -> JSONResponse:
    engine = _engine(request)
    entity_type = request.path_params["entity_type"]
    try:
        records = engine.records(entity_type)
    except ValueError as exc:
        return JSONResponse({"error": str(exc)}, status_code=404)
    return JSONResponse({"entity_type": entity_type, "records": records, "total": len(records)})


async def record_handler(request: Request) -> JSONResponse:
    """Read (GET), create (POST), update (PATCH) or delete (DELETE) one record."""
    engine = _engine(request)
    entity_type = request.path_params["entity_type"]
    entity_id = request.path_params["entity_id"]

    if entity_type not in engine.entity_types:
        return JSONResponse({"error": f"'{entity_type}' is not a tracked collection."}, status_code=404)

    if request.method == "GET":
        record = engine.get_record(entity_type, entity_id)
        if record is None:
            return JSONResponse({"error": f"{entity_type}/{entity_id} does not exist"}, status_code=404)
        return JSONResponse({"record": record})

    body = await _json_body(request)
    if body is None:
        return _invalid_body()

    action = _WRITE_ACTIONS[request.method]
    try:
        change = await engine.mutate(entity_type, entity_id, body, action=action, actor=_actor(request))
    except (SyncError, ValueError) as exc:
        return _error_response(exc)

    status_code = 201 if action == ChangeAction.CREATE else 200
    return JSONResponse(
        {
            "change": engine.history.describe(change),
            "record": engine.get_record(entity_type, entity_id),
            "queued": not engine.history.is_acknowledged(change.id),
        },
        status_code=status_code,
    )


async def bulk_handler(request: Request) -> JSONResponse:
    """Apply ``{"action": ..., "items": [...]}`` to one collection."""
    engine = _engine(request)
    entity_type = request.path_params["entity_type"]
    if entity_type not in engine.entity_types:
        return JSONResponse({"error": f"'{entity_type}' is not a tracked collection."}, status_code=404)

    body = await _json_body(request)
    if body is None:
        return _invalid_body()
    items = body.get("items")
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        return JSONResponse({"error": "Field 'items' must be a list of objects"}, status_code=422)
    try:
        action = ChangeAction(str(body.get("action", ChangeAction.UPDATE.value)).lower())
    except ValueError:
        return JSONResponse({"error": "Field 'action' must be create, update or delete"}, status_code=422)

    result = await engine.bulk_mutate(entity_type, items, action=action, actor=_actor(request))
    return JSONResponse(result.to_dict(), status_code=200 if result.success else 207)


__all__ = [
    "bulk_handler",
    "cache_handler",
    "cache_load_handler",
    "conflicts_handler",
    "drain_handler",
    "health_handler",
    "history_handler",
    "online_handler",
    "pending_handler",
    "record_handler",
    "records_handler",
    "resolve_conflict_handler",
    "rollback_handler",
    "status_handler",
]
