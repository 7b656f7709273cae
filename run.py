"""Unified launcher for SaveSync.

Starts save monitoring and the web dashboard in a single process.
Monitoring runs on background threads while the Flask dashboard runs
on the main thread.

Usage:
    python run.py
    python run.py --config config/config.json --port 5000
    python run.py --monitor-only
    python run.py --dashboard-only
"""

import argparse
import logging
import os
import signal
import threading

from savesync.config import DEFAULT_CONFIG_PATH, load_config

logger = logging.getLogger("savesync")


def build_service(config_path):
    """Load config, wire the event history, and start the service."""
    from savesync.database.event_logger import EventLogger
    from savesync.service import SyncService

    config = load_config(config_path)
    service = SyncService(config)
    event_logger = EventLogger(config["database"]["path"])
    service.events.subscribe(event_logger.log_event)

    report = service.startup()
    if report.removed or report.failed:
        logger.info(
            "Swept %d stale restore workspaces (%d failed)",
            len(report.removed), len(report.failed),
        )
    return service, event_logger


def main():
    parser = argparse.ArgumentParser(
        description="SaveSync - game save backup and restore",
    )
    parser.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to config.json (default: config/config.json)",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Dashboard host (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        default=5000,
        type=int,
        help="Dashboard port (default: 5000)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--monitor-only",
        action="store_true",
        help="Run only save monitoring (no dashboard)",
    )
    parser.add_argument(
        "--dashboard-only",
        action="store_true",
        help="Run only the web dashboard (no save monitoring)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.monitor_only and args.dashboard_only:
        parser.error("Cannot use --monitor-only and --dashboard-only together")

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down...", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    service, event_logger = build_service(args.config)

    # Monitor only
    if args.monitor_only:
        logger.info("Starting save monitoring (no dashboard)...")
        service.start_monitoring()
        try:
            while not stop_event.is_set():
                stop_event.wait(timeout=1.0)
        finally:
            service.stop()
            event_logger.close()
        return

    from savesync.dashboard.app import create_app
    app = create_app(config_path=args.config, service=service, event_logger=event_logger)

    if args.dashboard_only:
        logger.info("Starting dashboard (no save monitoring)...")
    else:
        watched = service.start_monitoring()
        logger.info("Starting SaveSync...")
        logger.info("  Monitor: watching %d save directories", watched)
    logger.info("  Dashboard: http://%s:%d", args.host, args.port)

    try:
        app.run(host=args.host, port=args.port, debug=False)
    finally:
        service.stop()
        event_logger.close()
        logger.info("SaveSync stopped.")


if __name__ == "__main__":
    main()
