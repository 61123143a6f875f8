"""Logging configuration helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
TRANSPORT_LOGGER = "espfly_link.crtp.transport"


def configure_logging(level: str = "INFO", *, log_path: Optional[Path] = None) -> None:
    """Install console (and optional file) handlers on the root logger.

    Replaces any handlers already present, so calling it twice is safe. The
    websockets library is kept at WARNING; packet dumps are enabled separately
    with :func:`set_packet_trace`.
    """

    logging.captureWarnings(True)

    for handler in list(logging.getLogger().handlers):
        logging.getLogger().removeHandler(handler)

    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(file_handler)

    logging.getLogger("websockets").setLevel(logging.WARNING)


def set_packet_trace(enabled: bool) -> None:
    """Toggle per-datagram hex dumps from the transport."""
    logging.getLogger(TRANSPORT_LOGGER).setLevel(logging.DEBUG if enabled else logging.NOTSET)
