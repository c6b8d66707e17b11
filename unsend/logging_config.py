"""Logging setup shared by ``python -m unsend`` and ``uvicorn unsend.asgi:app``."""

from __future__ import annotations

import logging
import sys
from typing import Any

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class SuppressHealthCheckAccessLog(logging.Filter):
    """Drop uvicorn access log records for the liveness endpoint."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 (filter)
        args: Any = record.args
        if isinstance(args, tuple) and len(args) >= 3:
            path = str(args[2])
            if path == "/health" or path.startswith("/health?"):
                return False
        return True


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger. Safe to call more than once."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("multipart").setLevel(logging.WARNING)

    access_logger = logging.getLogger("uvicorn.access")
    for existing in access_logger.filters:
        if isinstance(existing, SuppressHealthCheckAccessLog):
            return
    access_logger.addFilter(SuppressHealthCheckAccessLog())
