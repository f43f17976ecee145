"""Batch Document AI OCR for one stored PDF.

Submits a BatchProcessRequest that reads ``input_uri`` and writes sharded
Document JSON under ``output_uri``, polls the long-running operation until it
finishes (or the configured timeout passes) and then rebuilds the page list
from the shards. Pages are renumbered 1..N in shard order so downstream
citations never depend on how the provider split its output.

A failed or timed-out operation is fatal for the job; resubmission is left to
the caller.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List

from google.api_core import exceptions as gexc
from google.api_core.client_options import ClientOptions
from google.cloud import documentai_v1 as documentai
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_fixed

from dossier_ocr.errors import OCRServiceError, TransientUpstreamError
from dossier_ocr.models.records import OcrResult, Page
from dossier_ocr.services.interfaces import ObjectStore
from dossier_ocr.services.object_store import split_gcs_uri
from dossier_ocr.utils.logging_utils import structured_log

LOG = logging.getLogger("ocr")

_DIGITS = re.compile(r"(\d+)")


class _StillRunning(Exception):
    """Internal poll signal; never escapes this module."""


def _natural_key(name: str) -> list[Any]:
    return [int(part) if part.isdigit() else part for part in _DIGITS.split(name)]


def _segment_text(full_text: str, anchor: Dict[str, Any] | None) -> str:
    if not isinstance(anchor, dict):
        return ""
    segments = anchor.get("textSegments") or anchor.get("text_segments") or []
    parts: List[str] = []
    for segment in segments:
        start = int(segment.get("startIndex") or segment.get("start_index") or 0)
        end = int(segment.get("endIndex") or segment.get("end_index") or 0)
        if end > start:
            parts.append(full_text[start:end])
    return "".join(parts)


def pages_from_document(doc: Dict[str, Any]) -> List[str]:
    """Per-page text for one Document JSON shard, in page order."""
    full_text = doc.get("text") or ""
    texts: List[str] = []
    for page in doc.get("pages") or []:
        if not isinstance(page, dict):
            continue
        layout = page.get("layout") or {}
        anchor = layout.get("textAnchor") or layout.get("text_anchor")
        text = _segment_text(full_text, anchor)
        if not text:
            text = layout.get("text", "") or page.get("text", "")
        texts.append(text)
    return texts


def _default_client(location: str, credentials: Any = None) -> documentai.DocumentProcessorServiceClient:
    endpoint = f"{location}-documentai.googleapis.com"
    return documentai.DocumentProcessorServiceClient(
        credentials=credentials, client_options=ClientOptions(api_endpoint=endpoint)
    )


class DocumentAIOcrInvoker:
    def __init__(
        self,
        *,
        processor_name: str,
        output_store: ObjectStore,
        location: str = "eu",
        language_hints: list[str] | None = None,
        timeout: float = 1800.0,
        poll_interval: float = 5.0,
        client: documentai.DocumentProcessorServiceClient | None = None,
        credentials: Any = None,
    ) -> None:
        self.processor_name = processor_name
        self.output_store = output_store
        self.language_hints = list(language_hints or [])
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._client = client or _default_client(location, credentials)

    def build_request(self, input_uri: str, output_uri: str) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "name": self.processor_name,
            "input_documents": {
                "gcs_documents": {
                    "documents": [{"gcs_uri": input_uri, "mime_type": "application/pdf"}]
                }
            },
            "document_output_config": {
                "gcs_output_config": {"gcs_uri": output_uri.rstrip("/") + "/"}
            },
        }
        if self.language_hints:
            request["process_options"] = {
                "ocr_config": {"hints": {"language_hints": self.language_hints}}
            }
        return request

    async def run_ocr(
        self,
        input_uri: str,
        output_uri: str,
        *,
        on_submitted: Callable[[], Awaitable[None] | None] | None = None,
    ) -> OcrResult:
        request = self.build_request(input_uri, output_uri)
        structured_log(LOG, logging.INFO, "ocr_batch_submit", path=output_uri)
        try:
            operation = await asyncio.to_thread(self._client.batch_process_documents, request=request)
        except gexc.GoogleAPICallError as exc:
            raise OCRServiceError(f"OCR batch submission failed: {exc}") from exc

        if on_submitted is not None:
            outcome = on_submitted()
            if inspect.isawaitable(outcome):
                await outcome

        await self._wait(operation)
        try:
            await asyncio.to_thread(operation.result)
        except Exception as exc:  # noqa: BLE001 - any provider failure is fatal here
            raise OCRServiceError(f"OCR batch operation failed: {exc}") from exc

        pages, shards = await self._read_output(output_uri)
        structured_log(LOG, logging.INFO, "ocr_batch_complete", pages=len(pages), shards=shards)
        return OcrResult(pages=tuple(pages), output_uri=output_uri)

    async def _wait(self, operation: Any) -> None:
        async def _check() -> None:
            if not await asyncio.to_thread(operation.done):
                raise _StillRunning()

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(self.timeout),
                wait=wait_fixed(self.poll_interval),
                retry=retry_if_exception_type((_StillRunning, gexc.ServiceUnavailable)),
                reraise=True,
            ):
                with attempt:
                    await _check()
        except _StillRunning as exc:
            raise OCRServiceError(
                f"OCR batch operation did not finish within {self.timeout:.0f}s"
            ) from exc
        except gexc.GoogleAPICallError as exc:
            raise OCRServiceError(f"OCR batch polling failed: {exc}") from exc

    async def _read_output(self, output_uri: str) -> tuple[List[Page], int]:
        _bucket, prefix = split_gcs_uri(output_uri.rstrip("/") + "/")
        try:
            keys = [key for key in await self.output_store.list_keys(prefix) if key.endswith(".json")]
        except TransientUpstreamError as exc:
            raise OCRServiceError(f"Could not list OCR output: {exc}") from exc
        if not keys:
            raise OCRServiceError("No JSON outputs found in OCR output prefix")
        keys.sort(key=_natural_key)
        pages: List[Page] = []
        for key in keys:
            try:
                parsed = json.loads((await self.output_store.get(key)).decode("utf-8"))
            except (TransientUpstreamError, ValueError) as exc:
                raise OCRServiceError(f"Failed reading OCR output shard {key}: {exc}") from exc
            doc = parsed.get("document") if isinstance(parsed, dict) and "document" in parsed else parsed
            if not isinstance(doc, dict):
                continue
            for text in pages_from_document(doc):
                pages.append(Page(number=len(pages) + 1, text=text))
        return pages, len(keys)


__all__ = ["DocumentAIOcrInvoker", "pages_from_document"]
