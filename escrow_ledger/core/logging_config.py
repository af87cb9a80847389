"""Structured JSON logging for the API process and the Celery workers."""

import logging
import sys

from pythonjsonlogger import jsonlogger

from escrow_ledger.core.config import settings

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "sqlalchemy.engine", "celery.beat")


def setup_logging() -> None:
    """Route every record to stdout as one JSON object tagged with the service name."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
            static_fields={"service": settings.app_name},
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
