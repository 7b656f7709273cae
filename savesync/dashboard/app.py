"""Flask application for the SaveSync dashboard.

Serves the REST API (see ``api/routes.py``) and the live event feed:

    WS   /ws/live
"""

import logging
import os

from flask import Flask, jsonify
from flask_sock import Sock

from savesync.config import DEFAULT_CONFIG_PATH, load_config
from savesync.dashboard.api.routes import api, init_routes
from savesync.dashboard.websocket_handler import WebSocketHandler
from savesync.database.event_logger import EventLogger
from savesync.service import SyncService

logger = logging.getLogger(__name__)


def create_app(
    config_path: str = None,
    service: SyncService = None,
    event_logger: EventLogger = None,
) -> Flask:
    """Application factory.

    Accepts pre-built service instances (for testing) or constructs
    defaults from config. The caller owns starting the service.
    """
    cfg_path = config_path or DEFAULT_CONFIG_PATH
    config = service.config if service is not None else load_config(cfg_path)

    if service is None:
        service = SyncService(config)

    if event_logger is None:
        event_logger = EventLogger(config["database"]["path"])
        service.events.subscribe(event_logger.log_event)

    ws_handler = WebSocketHandler()
    ws_handler.attach(service.events)

    app = Flask(__name__)
    sock = Sock(app)

    init_routes(service=service, event_logger=event_logger, ws_handler=ws_handler)
    app.register_blueprint(api)

    # WebSocket: /ws/live
    @sock.route("/ws/live")
    def ws_live(ws):
        ws_handler.register(ws)
        try:
            while True:
                # Keep connection alive; client can send pings
                data = ws.receive(timeout=60)
                if data is None:
                    break
        except Exception:
            logger.debug("Live connection closed")
        finally:
            ws_handler.unregister(ws)

    @app.route("/")
    def index():
        return jsonify({"app": service.app_name, "api": "/api/status", "live": "/ws/live"})

    # Store references for test access
    app.sync_service = service
    app.event_logger = event_logger
    app.ws_handler = ws_handler

    return app


def main():
    import argparse

    parser = argparse.ArgumentParser(description="SaveSync - Web Dashboard")
    parser.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to config.json",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        default=5000,
        type=int,
        help="Port to listen on (default: 5000)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    app = create_app(config_path=args.config)
    app.sync_service.startup()
    logger.info("Dashboard starting on http://%s:%d", args.host, args.port)
    try:
        app.run(host=args.host, port=args.port, debug=False)
    finally:
        app.sync_service.stop()


if __name__ == "__main__":
    main()
