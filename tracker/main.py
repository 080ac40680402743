import logging
import sys

import cherrypy

from tracker.config import DEFAULT_CONFIG_PATH, load_config
from tracker.core.config import TrackerConfig
from tracker.core.service import TickService
from tracker.core.store import create_store
from tracker.web.tick_api import TickAPI

logger = logging.getLogger("TrackerDaemon")


class TrackerDaemon:

    def __init__(self, config: dict):
        self.config = config
        self.tracker_config = None
        self.store = None
        self.service = None

        log_level = config.get("logging", {}).get("level", "INFO")
        logging.basicConfig(
            level=getattr(logging, log_level),
            format=config.get("logging", {}).get("format"),
        )

    def initialize(self):
        self.tracker_config = TrackerConfig.from_dict(self.config.get("tracker"))
        storage = self.tracker_config.STORAGE
        logger.info(f"Initializing tracker: backend={storage.BACKEND}, dir={storage.STORAGE_DIR}")

        self.store = create_store(self.tracker_config)
        self.service = TickService(self.store, self.tracker_config)

        # Prime duplicate/validation history from disk before the first request
        self.service.seed_last_accepted()

    def run(self):
        self.initialize()

        http = self.config.get("http", {})
        http_host = http.get("host", "0.0.0.0")
        http_port = int(http.get("port", 8000))

        cherrypy.config.update({
            "server.socket_host": http_host,
            "server.socket_port": http_port,
            "engine.autoreload.on": False,
            "log.screen": False,
        })
        cherrypy.tree.mount(
            TickAPI(self.service, http),
            "/api",
            {"/": {"request.dispatch": cherrypy.dispatch.Dispatcher()}},
        )
        cherrypy.engine.subscribe("stop", self.shutdown)

        logger.info(f"HTTP API listening on {http_host}:{http_port}")
        cherrypy.engine.start()
        cherrypy.engine.block()

    def shutdown(self):
        if self.service:
            logger.info("Closing tick store")
            self.service.close()
            self.service = None


def main():

    import argparse

    parser = argparse.ArgumentParser(description="Petition signature tracker")
    parser.add_argument(
        "--config",
        help=f"Path to config file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )

    args = parser.parse_args()

    config = load_config(args.config)

    if args.log_level:
        if "logging" not in config:
            config["logging"] = {}
        config["logging"]["level"] = args.log_level

    daemon = TrackerDaemon(config)

    try:
        daemon.run()
    except KeyboardInterrupt:
        logger.info("Tracker stopped")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        daemon.shutdown()


if __name__ == "__main__":
    main()
