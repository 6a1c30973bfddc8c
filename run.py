#!/usr/bin/env python3
"""
Internet Banking Backend Entry Point

Loads configuration from the environment (NETBANK_* variables or .env),
configures logging and serves the API with uvicorn. SIGINT/SIGTERM drain
in-flight requests before the storage is closed.
"""

import sys

import uvicorn

from netbank.api import create_app
from netbank.config import load_config
from netbank.logging_config import setup_logging


GRACEFUL_SHUTDOWN_SECONDS = 5


def main() -> int:
    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    logger = setup_logging(config.log_level, config.log_format)
    logger.info(f"Starting netbank on {config.api_host}:{config.api_port} (mode={config.mode})")

    app = create_app(config)
    uvicorn.run(
        app,
        host=config.api_host,
        port=config.api_port,
        log_level=config.log_level.lower(),
        timeout_graceful_shutdown=GRACEFUL_SHUTDOWN_SECONDS
    )
    logger.info("Server stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
