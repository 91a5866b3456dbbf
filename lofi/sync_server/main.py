"""
Lofi sync server - Main entry point.

Starts the HTTP API that drives backups, restores and the one-shot
legacy migration for one account session:
- Canonical SQLite store (local data)
- Remote transport (OneDrive via Graph, or S3)
- Backup orchestrator (debounce + periodic timers)

Usage:
    python -m lofi.sync_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Shutdown waits for an in-flight backup or restore (lifespan dispose)
    - Logging is configured before any component starts
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn

from .api import create_app
from .config import ServerConfig

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    app = create_app(config)
    uvicorn.run(app, host=config.http.host, port=config.http.port, log_config=None)


if __name__ == "__main__":
    main()
