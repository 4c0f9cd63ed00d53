"""Root logger setup shared by the API process and spawned workers.

Spawned processes start with a fresh interpreter, so every worker entry point
calls :func:`setup_logging` before doing anything else.
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone

from .config import settings

_CONFIGURED_FLAG = "_recordhub_configured"


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "pid": os.getpid(),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger from ``settings.logging``.

    Safe to call more than once; handlers are only installed the first time.
    """
    root = logging.getLogger()
    if getattr(root, _CONFIGURED_FLAG, False):
        return

    if settings.logging.format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s [%(process)d] %(name)s: %(message)s"
        )

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.logging.file:
        handlers.append(logging.FileHandler(settings.logging.file, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    root.setLevel((level or settings.logging.level).upper())
    setattr(root, _CONFIGURED_FLAG, True)
