"""
Process logging for the ttsrelay CLI.

LOG_LEVEL sets the root level. TTSRELAY_DEBUG=1 (or -v on the command
line) raises only the ttsrelay loggers to DEBUG, so per-frame session
traces show up without aiohttp/websockets internals.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
PACKAGE_LOGGER = "ttsrelay"


def setup_logging(level: Optional[str] = None, package_debug: Optional[bool] = None) -> None:
    """Configure root logging; arguments override LOG_LEVEL / TTSRELAY_DEBUG."""
    name = (level or os.getenv("LOG_LEVEL") or "INFO").upper().strip()
    logging.basicConfig(level=getattr(logging, name, logging.INFO), format=LOG_FORMAT)

    if package_debug is None:
        package_debug = os.getenv("TTSRELAY_DEBUG", "0").strip().lower() in ("1", "true", "yes", "y", "on")
    if package_debug:
        logging.getLogger(PACKAGE_LOGGER).setLevel(logging.DEBUG)
