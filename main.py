#!/usr/bin/env python3
"""
PlexShelf Main Entry Point

Loads and validates the configuration, sets up logging and serves the
FastAPI application with uvicorn. Uvicorn installs its own SIGINT/SIGTERM
handlers, which run the application lifespan shutdown (closing the database
connection and the Plex HTTP session) before the process exits.

Environment:
    CONFIG_PATH: Configuration file (JSON or YAML), default /app/config/config.yaml

Project: PlexShelf
Version: 1.0.0
License: MIT
"""

import os
import sys

import uvicorn

from plexshelf.config_models import ConfigurationValidator
from plexshelf.utils import setup_logging, get_logger
from plexshelf.web_api import create_app


class ServiceLauncher:
    """Loads configuration and runs the web service."""

    def __init__(self, config_path: str):
        self.config_path = config_path
        self.logger = get_logger("plexshelf.launcher")

    def run(self) -> None:
        config = ConfigurationValidator().load_and_validate_config(self.config_path)
        setup_logging(log_level=config.server.log_level, log_dir=config.server.log_dir)

        self.logger.info("=" * 60)
        self.logger.info("Starting PlexShelf")
        self.logger.info(f"Listening on http://{config.server.host}:{config.server.port}")
        self.logger.info("=" * 60)

        try:
            uvicorn.run(
                create_app(config),
                host=config.server.host,
                port=config.server.port,
                log_level=config.server.log_level.lower(),
                access_log=False  # Requests are logged by the API layer
            )
        except KeyboardInterrupt:
            self.logger.info("Keyboard interrupt received")


def main():
    """Main entry point"""
    launcher = ServiceLauncher(os.getenv("CONFIG_PATH", "/app/config/config.yaml"))
    try:
        launcher.run()
    except OSError as e:
        get_logger("plexshelf.launcher").error(f"Launcher error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
