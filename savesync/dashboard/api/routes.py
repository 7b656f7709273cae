"""API route handlers for the dashboard.

    GET    /api/status                         - Pipeline and store status
    GET    /api/entities                       - Monitored entities
    POST   /api/entities                       - Create or upsert an entity
    PUT    /api/entities/<id>                  - Edit an entity
    POST   /api/entities/<id>/capture          - Manual backup now
    POST   /api/entities/<id>/restore          - Restore the latest backup
    GET    /api/events                         - Sync event history (paginated)
    GET    /api/watch-roots                    - Discovery watch roots
    POST   /api/watch-roots                    - Add a watch root
    DELETE /api/watch-roots                    - Remove a watch root
    PUT    /api/settings/offline-backup-dir    - Choose the local mirror folder
"""

import logging

from flask import Blueprint, jsonify, request

from savesync.errors import (
    NetworkError,
    NoFilesFoundError,
    NotFoundError,
    PreconditionError,
    RestoreRollbackError,
    SaveSyncError,
)

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")

# These are set by app.py at init time via init_routes()
_service = None
_event_logger = None
_ws_handler = None


def init_routes(service, event_logger, ws_handler):
    """Wire up shared application state into the route handlers."""
    global _service, _event_logger, _ws_handler
    _service = service
    _event_logger = event_logger
    _ws_handler = ws_handler


def _error_status(exc: SaveSyncError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, PreconditionError):
        return 409
    if isinstance(exc, NoFilesFoundError):
        return 422
    if isinstance(exc, NetworkError):
        return 502
    return 500


@api.errorhandler(SaveSyncError)
def handle_sync_error(exc):
    body = {"error": str(exc), "type": type(exc).__name__}
    if isinstance(exc, RestoreRollbackError):
        body["original_error"] = str(exc.original)
        body["rollback_error"] = str(exc.rollback_error)
    return jsonify(body), _error_status(exc)


def _require_service():
    if _service is None:
        return jsonify({"error": "Sync service not available"}), 503
    return None


# ------------------------------------------------------------------
# GET /api/status
# ------------------------------------------------------------------

@api.route("/status", methods=["GET"])
def get_status():
    unavailable = _require_service()
    if unavailable:
        return unavailable
    status = _service.status()
    status["websocket_clients"] = _ws_handler.client_count if _ws_handler else 0
    return jsonify(status)


# ------------------------------------------------------------------
# Entities
# ------------------------------------------------------------------

@api.route("/entities", methods=["GET"])
def list_entities():
    unavailable = _require_service()
    if unavailable:
        return unavailable
    entities = [e.to_dict() for e in _service.state_store.entities()]
    return jsonify({"entities": entities, "total": len(entities)})


@api.route("/entities", methods=["POST"])
def create_entity():
    unavailable = _require_service()
    if unavailable:
        return unavailable
    data = request.get_json(silent=True) or {}
    patterns = data.get("file_patterns")
    if patterns is not None and not isinstance(patterns, list):
        return jsonify({"error": "file_patterns must be a list"}), 400
    entity = _service.add_entity(data)
    return jsonify(entity.to_dict()), 201


@api.route("/entities/<entity_id>", methods=["PUT"])
def update_entity(entity_id):
    unavailable = _require_service()
    if unavailable:
        return unavailable
    data = request.get_json(silent=True) or {}
    if not data:
        return jsonify({"error": "No data provided"}), 400
    entity = _service.update_entity(entity_id, data)
    return jsonify(entity.to_dict())


# ------------------------------------------------------------------
# POST /api/entities/<id>/capture
# ------------------------------------------------------------------

@api.route("/entities/<entity_id>/capture", methods=["POST"])
def capture_entity(entity_id):
    """Manual backup. Refused while the game is running."""
    unavailable = _require_service()
    if unavailable:
        return unavailable
    snapshot = _service.capture_now(entity_id)
    return jsonify({"ok": True, "snapshot": snapshot.to_dict()})


# ------------------------------------------------------------------
# POST /api/entities/<id>/restore
# ------------------------------------------------------------------

@api.route("/entities/<entity_id>/restore", methods=["POST"])
def restore_entity(entity_id):
    """Replace the live save directory with the latest backup."""
    unavailable = _require_service()
    if unavailable:
        return unavailable
    result = _service.restore_latest(entity_id)
    if _ws_handler:
        _ws_handler.broadcast("restore", {"entity_id": entity_id, **result.to_dict()})
    return jsonify({"ok": True, **result.to_dict()})


# ------------------------------------------------------------------
# GET /api/events
# ------------------------------------------------------------------

@api.route("/events", methods=["GET"])
def get_events():
    """Recent sync events, paginated."""
    kind = request.args.get("kind")
    entity_id = request.args.get("entity")
    since = request.args.get("since")
    limit = request.args.get("limit", 50, type=int)
    offset = request.args.get("offset", 0, type=int)

    if not _event_logger:
        return jsonify({"events": [], "total": 0})

    try:
        events = _event_logger.get_events(
            kind=kind,
            entity_id=entity_id,
            since=since,
            limit=limit + offset,
        )
    except Exception as exc:
        logger.exception("Database error fetching events")
        return jsonify({"error": f"Database error: {exc}"}), 500

    paginated = events[offset: offset + limit]
    return jsonify({
        "events": paginated,
        "total": len(events),
        "limit": limit,
        "offset": offset,
    })


# ------------------------------------------------------------------
# Watch roots
# ------------------------------------------------------------------

@api.route("/watch-roots", methods=["GET"])
def get_watch_roots():
    unavailable = _require_service()
    if unavailable:
        return unavailable
    return jsonify({"watch_roots": list(_service.state_store.state.watch_roots)})


@api.route("/watch-roots", methods=["POST", "DELETE"])
def change_watch_roots():
    unavailable = _require_service()
    if unavailable:
        return unavailable
    data = request.get_json(silent=True) or {}
    path = data.get("path")
    if not path or not isinstance(path, str):
        return jsonify({"error": "path is required"}), 400
    if request.method == "POST":
        roots = _service.add_watch_root(path)
    else:
        roots = _service.remove_watch_root(path)
    return jsonify({"watch_roots": roots})


# ------------------------------------------------------------------
# PUT /api/settings/offline-backup-dir
# ------------------------------------------------------------------

@api.route("/settings/offline-backup-dir", methods=["PUT"])
def set_offline_backup_dir():
    unavailable = _require_service()
    if unavailable:
        return unavailable
    data = request.get_json(silent=True) or {}
    path = data.get("path")
    if not path or not isinstance(path, str):
        return jsonify({"error": "path is required"}), 400
    directory = _service.set_offline_backup_dir(path)
    return jsonify({"offline_backup_dir": directory})
