from __future__ import annotations

import logging

from leasepool.core.config import Settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_configured = False


def configure_logging(settings: Settings) -> None:
    # Configure the root logger once per process; later calls only adjust the level.
    global _configured
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if not _configured:
        logging.basicConfig(level=level, format=LOG_FORMAT)
        # Keep HTTP client request lines out of the info stream.
        logging.getLogger("httpx").setLevel(logging.WARNING)
        _configured = True
    logging.getLogger().setLevel(level)
