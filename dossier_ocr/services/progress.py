"""Per-job progress channel.

Pipeline stages push typed events into a bounded ``asyncio.Queue``; a single
consumer drains it through ``events()``. The channel accepts exactly one
terminal event (``ResultEvent`` or ``ErrorEvent``); once that is queued the
channel is closed and later emits are dropped, so the terminal event is always
the last one a consumer sees.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from dossier_ocr.models.events import (
    ErrorEvent,
    JobResult,
    LogEvent,
    LogLevel,
    Phase,
    PhaseEvent,
    ProgressEvent,
    ResultEvent,
    StepEvent,
)
from dossier_ocr.utils.redact import redact_mapping, redact_text

LOG = logging.getLogger("progress")

_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}
_CLOSED = object()


class ProgressEmitter:
    def __init__(self, *, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._detached = False
        self.terminal_event: ProgressEvent | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def detach(self) -> None:
        """Consumer is gone; stop queueing so producers never block on a full queue."""
        self._detached = True

    async def emit(self, event: ProgressEvent) -> bool:
        if self._closed:
            LOG.debug("progress_event_dropped", extra={"reason": "closed"})
            return False
        if event.terminal:
            self._closed = True
            self.terminal_event = event
        if not self._detached:
            await self._queue.put(event)
            if event.terminal:
                await self._queue.put(_CLOSED)
        return True

    async def step(self, step: str, progress: int, message: str) -> None:
        await self.emit(StepEvent(step=step, progress=progress, message=message))

    async def phase(self, phase: Phase, status: str, **details: Any) -> None:
        await self.emit(PhaseEvent(phase=phase, status=status, details=details))

    async def log(self, level: LogLevel, message: str, data: dict[str, Any] | None = None) -> None:
        safe_message = redact_text(message)
        safe_data = redact_mapping(data) if data else None
        LOG.log(_LEVELS[level], safe_message, extra={"log_data": safe_data} if safe_data else None)
        await self.emit(LogEvent(level=level, message=safe_message, data=safe_data))

    async def finish_result(self, result: JobResult) -> bool:
        return await self.emit(ResultEvent(result=result))

    async def finish_error(self, message: str, error_type: str | None = None) -> bool:
        return await self.emit(ErrorEvent(message=message, error_type=error_type))

    async def events(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


__all__ = ["ProgressEmitter"]
