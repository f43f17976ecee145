"""Structured logging configuration.

Provides a JSON formatter and a ``job_id`` context variable. The FastAPI app
and the CLI call ``configure_logging()`` at startup; the pipeline wraps each
job in ``job_context(job_id)`` so every record emitted while the job runs,
including those from Pass 2 workers, carries the same correlation id.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, TextIO

job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)

_STANDARD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        data: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        job_id = job_id_var.get()
        if job_id and "job_id" not in record.__dict__:
            data["job_id"] = job_id
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key in _STANDARD_FIELDS or key.startswith("_"):
                continue
            data[key] = value
        return json.dumps(data, ensure_ascii=False, default=str)


def configure_logging(
    level: int = logging.INFO, force: bool = False, stream: TextIO | None = None
) -> None:
    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
    elif any(isinstance(h, logging.StreamHandler) for h in root.handlers):
        root.setLevel(level)
        for handler in root.handlers:
            handler.setLevel(level)
        return
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.setLevel(level)
    root.addHandler(handler)


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    token = job_id_var.set(job_id)
    try:
        yield
    finally:
        job_id_var.reset(token)


__all__ = ["JsonFormatter", "configure_logging", "job_context", "job_id_var"]
