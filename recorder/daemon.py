"""Activity Recording Daemon Module.

This module implements the long-running process that owns every capture
loop. It starts the loops enabled in the configuration, runs the retention
purge periodically, optionally serves the JSON API, and on SIGTERM/SIGINT
stops all loops so that open focus and browsing sessions and the current
audio recording are saved before exit.

Example:
    # Run daemon programmatically
    >>> from recorder.daemon import ActivityDaemon
    >>> daemon = ActivityDaemon(RecorderService.from_config())
    >>> daemon.run()  # Runs until interrupted

    # Or via command line
    $ activity-recorder --web --log-level DEBUG
"""

import argparse
import logging
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import ConfigManager, get_config_manager
from .service import RecorderService

logger = logging.getLogger(__name__)

RETENTION_INTERVAL_SECONDS = 3600
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> Optional[Path]:
    """Configure the root logger: stderr always, a rotating file optionally.

    Returns:
        Path of the log file, if one was configured.
    """
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")

    root = logging.getLogger()
    root.setLevel(numeric_level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root.handlers):
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        root.addHandler(stream)

    if log_dir is None:
        return None

    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "activity-recorder.log"
    if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=3)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    return log_path


class ActivityDaemon:
    """Main daemon process coordinating all capture loops.

    Attributes:
        service (RecorderService): Facade owning the loops and the store
        enable_web (bool): Serve the JSON API from a background thread
    """

    def __init__(self, service: RecorderService, enable_web: bool = False,
                 web_host: str = "127.0.0.1", web_port: int = 55555):
        """Initialize the activity daemon.

        Args:
            service: Facade owning the loops and the store
            enable_web: Whether to start the JSON API server
            web_host: Host address for the API server
            web_port: Port for the API server (default: 55555)
        """
        self.service = service
        self.enable_web = enable_web
        self.web_host = web_host
        self.web_port = web_port
        self.web_thread: Optional[threading.Thread] = None
        self._shutdown = threading.Event()

    def install_signal_handlers(self):
        """Handle SIGTERM (systemd stop) and SIGINT (Ctrl+C) with a graceful shutdown."""
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self._shutdown.set()

    def request_shutdown(self):
        self._shutdown.set()

    def _start_web_server(self):
        """Start the Flask API server in a daemon thread."""
        from web.app import create_app

        app = create_app(self.service)
        self.web_thread = threading.Thread(
            target=lambda: app.run(host=self.web_host, port=self.web_port, debug=False, use_reloader=False),
            name="web-api",
            daemon=True,
        )
        self.web_thread.start()
        logger.info(f"Web API listening on http://{self.web_host}:{self.web_port}")

    def _run_retention(self):
        result = self.service.purge_older_than()
        if not result.success:
            logger.warning(f"Retention purge incomplete: {result.error}")

    def run(self) -> int:
        """Run until a shutdown is requested.

        Returns:
            Process exit code (non-zero if no loop could be started).
        """
        logger.info("Activity recorder starting")
        result = self.service.start_enabled()
        for name, error in (result.data or {}).get("failed", {}).items():
            logger.error(f"Could not start {name}: {error}")
        if not result.success:
            logger.error(result.error)
            self.service.stop_all()
            return 1

        if self.enable_web:
            self._start_web_server()

        self._run_retention()
        while not self._shutdown.wait(RETENTION_INTERVAL_SECONDS):
            self._run_retention()

        logger.info("Shutting down...")
        stopped = self.service.stop_all()
        if not stopped.success:
            logger.error(f"Shutdown incomplete: {stopped.data}")
        logger.info("Activity recorder stopped")
        return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Continuous personal activity recorder")
    parser.add_argument("--config", type=Path, default=None,
                        help=f"Config file (default: {ConfigManager.DEFAULT_PATH})")
    parser.add_argument("--web", action="store_true", help="Serve the JSON API")
    parser.add_argument("--web-host", default=None, help="API host (default: from config)")
    parser.add_argument("--web-port", type=int, default=None, help="API port (default: from config)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: INFO)")
    parser.add_argument("--log-to-file", action="store_true",
                        help="Also log to a rotating file in the data directory")
    args = parser.parse_args(argv)

    config_manager = get_config_manager(args.config)
    config = config_manager.config
    setup_logging(args.log_level, config.storage.data_path / "logs" if args.log_to_file else None)

    service = RecorderService.from_config(config_manager)
    daemon = ActivityDaemon(
        service,
        enable_web=args.web or config.web.enabled,
        web_host=args.web_host or config.web.host,
        web_port=args.web_port or config.web.port,
    )
    daemon.install_signal_handlers()
    return daemon.run()


if __name__ == "__main__":
    sys.exit(main())
