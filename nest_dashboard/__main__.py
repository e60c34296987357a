"""Command line entry point for the dashboard backend."""

from __future__ import annotations

import logging
import sys

import uvicorn

from .app import create_asgi_app
from .config import ConfigError, Settings

_LOGGER = logging.getLogger(__name__)


def main() -> int:
    """Load settings from the environment and serve the backend."""
    try:
        settings = Settings.from_env()
    except ConfigError as err:
        logging.basicConfig(level=logging.ERROR)
        _LOGGER.error("Invalid configuration: %s", err)  # noqa: TRY400
        return 1

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _LOGGER.info("Starting dashboard backend on %s:%d", settings.host, settings.port)

    uvicorn.run(
        create_asgi_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
