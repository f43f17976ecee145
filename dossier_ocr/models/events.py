"""Typed progress events streamed to the caller of a job.

Each event serialises to one JSON object. On the wire it is framed as a
server-sent event line (``data: {...}\\n\\n``). ``ResultEvent`` and
``ErrorEvent`` are terminal: exactly one of them closes every stream.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Union

LogLevel = Literal["info", "warn", "error"]
Phase = Literal["pass1", "pass2", "pass3", "pass4"]


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _encode(payload: Mapping[str, Any]) -> bytes:
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)
    return f"data: {body}\n\n".encode("utf-8")


@dataclass(slots=True, frozen=True)
class StepEvent:
    """Coarse stage progress: ``{step, progress, message}``."""

    step: str
    progress: int
    message: str

    terminal = False

    def to_payload(self) -> dict[str, Any]:
        return {"step": self.step, "progress": max(0, min(100, int(self.progress))), "message": self.message}

    def encode(self) -> bytes:
        return _encode(self.to_payload())


@dataclass(slots=True, frozen=True)
class PhaseEvent:
    """Fine-grained telemetry for one pass, e.g. ``cluster:start``."""

    phase: Phase
    status: str
    details: dict[str, Any] = field(default_factory=dict)

    terminal = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"phase": self.phase, "status": self.status}
        for key, value in self.details.items():
            payload.setdefault(key, value)
        return payload

    def encode(self) -> bytes:
        return _encode(self.to_payload())


@dataclass(slots=True, frozen=True)
class LogEvent:
    """Free-form diagnostic trace; consumers may ignore it."""

    level: LogLevel
    message: str
    data: dict[str, Any] | None = None
    timestamp: str = field(default_factory=_now_iso)

    terminal = False

    def to_payload(self) -> dict[str, Any]:
        log: dict[str, Any] = {
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.data:
            log["data"] = self.data
        return {"log": log}

    def encode(self) -> bytes:
        return _encode(self.to_payload())


@dataclass(slots=True, frozen=True)
class JobResult:
    file_name: str
    total_pages: int
    extracted_data: str
    processing_method: str
    processing_notes: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_iso)
    supports_pdf_generation: bool = True

    def to_payload(self) -> dict[str, Any]:
        return {
            "fileName": self.file_name,
            "totalPages": self.total_pages,
            "extractedData": self.extracted_data,
            "processingMethod": self.processing_method,
            "timestamp": self.timestamp,
            "supportsPDFGeneration": self.supports_pdf_generation,
            "processingNotes": self.processing_notes,
        }


@dataclass(slots=True, frozen=True)
class ResultEvent:
    result: JobResult

    terminal = True

    def to_payload(self) -> dict[str, Any]:
        return {"result": self.result.to_payload()}

    def encode(self) -> bytes:
        return _encode(self.to_payload())


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    message: str
    error_type: str | None = None

    terminal = True

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"step": "Error", "progress": 0, "message": self.message, "error": True}
        if self.error_type:
            payload["errorType"] = self.error_type
        return payload

    def encode(self) -> bytes:
        return _encode(self.to_payload())


ProgressEvent = Union[StepEvent, PhaseEvent, LogEvent, ResultEvent, ErrorEvent]


def decode_event_line(line: bytes | str) -> dict[str, Any]:
    """Parse one ``data: ...`` frame back into its JSON payload."""
    raw = line.decode("utf-8") if isinstance(line, bytes) else line
    raw = raw.strip()
    if raw.startswith("data:"):
        raw = raw[len("data:") :].strip()
    return json.loads(raw)


__all__ = [
    "ErrorEvent",
    "JobResult",
    "LogEvent",
    "PhaseEvent",
    "ProgressEvent",
    "ResultEvent",
    "StepEvent",
    "decode_event_line",
]
