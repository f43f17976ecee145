"""Shared interfaces used across the dossier extraction services."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Protocol

from dossier_ocr.models.records import OcrResult


class ObjectStore(Protocol):
    """One bucket of durable object storage."""

    bucket: str

    async def bucket_exists(self) -> bool: ...

    async def put(self, key: str, data: bytes, content_type: str) -> str: ...

    async def get(self, key: str) -> bytes: ...

    async def list_keys(self, prefix: str) -> list[str]: ...

    async def delete(self, key: str) -> None: ...

    async def delete_prefix(self, prefix: str) -> int: ...


class OcrInvoker(Protocol):
    """Batch OCR over a stored PDF, writing results under ``output_uri``."""

    async def run_ocr(
        self,
        input_uri: str,
        output_uri: str,
        *,
        on_submitted: Callable[[], Awaitable[None] | None] | None = None,
    ) -> OcrResult: ...


class LLMClient(Protocol):
    """Single chat-completion call; retries are the caller's business."""

    async def complete(
        self,
        *,
        model: str,
        system: str,
        user: str,
        timeout: float,
        json_mode: bool = False,
    ) -> str: ...


class SourceFetcher(Protocol):
    async def fetch(self, url: str) -> bytes: ...


class ResultSink(Protocol):
    """Fire-and-forget persistence of a finished job result."""

    async def save_result(self, *, job_id: str, user_id: str, payload: Mapping[str, Any]) -> None: ...


class MetricsClient(Protocol):
    """Interface for emitting metrics to Prometheus."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None: ...

    def increment(self, name: str, amount: int = 1, **labels: str) -> None: ...


__all__ = [
    "LLMClient",
    "MetricsClient",
    "ObjectStore",
    "OcrInvoker",
    "ResultSink",
    "SourceFetcher",
]

