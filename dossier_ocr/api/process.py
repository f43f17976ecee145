"""Streaming process route.

``POST /process`` starts one job and answers with ``text/event-stream``. The
pipeline runs as its own task and feeds the job's progress channel; the
response generator is the only reader. If the client goes away the generator
detaches the channel and cancels the task, whose handler still cleans up.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from dossier_ocr.errors import ConfigurationError
from dossier_ocr.models.events import ErrorEvent
from dossier_ocr.models.job import JobRequest
from dossier_ocr.services.pipeline import ExtractionPipeline, build_pipeline
from dossier_ocr.services.progress import ProgressEmitter
from dossier_ocr.startup import build_google_credentials
from dossier_ocr.utils.logging_utils import structured_log

router = APIRouter()

_API_LOG = logging.getLogger("api")
_RUNNING: set[asyncio.Task[object]] = set()

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


class ProcessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    source_document_url: str | None = Field(
        None, validation_alias=AliasChoices("sourceDocumentUrl", "pdfUrl", "source_document_url")
    )
    storage_uri: str | None = Field(
        None, validation_alias=AliasChoices("storageUri", "gcsUri", "storage_uri")
    )
    file_name: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("fileName", "file_name")
    )
    user_id: str | None = Field(None, validation_alias=AliasChoices("userId", "user_id"))

    @model_validator(mode="after")
    def _require_source(self) -> "ProcessRequest":
        if not (self.source_document_url or self.storage_uri):
            raise ValueError("sourceDocumentUrl or storageUri is required")
        if self.storage_uri and not self.storage_uri.startswith("gs://"):
            raise ValueError("storageUri must be a gs:// URI")
        return self

    def to_job_request(self) -> JobRequest:
        return JobRequest(
            file_name=self.file_name,
            source_document_url=self.source_document_url,
            storage_uri=self.storage_uri,
            user_id=self.user_id,
        )


def get_pipeline(request: Request) -> ExtractionPipeline:
    app = request.app
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is None:
        cfg = app.state.config
        pipeline = build_pipeline(
            cfg,
            metrics=getattr(app.state, "metrics", None),
            credentials=build_google_credentials(cfg),
        )
        app.state.pipeline = pipeline
    return pipeline


async def stream_job(
    pipeline: ExtractionPipeline, job_request: JobRequest, emitter: ProgressEmitter
) -> AsyncIterator[bytes]:
    async def _run() -> None:
        try:
            await pipeline.run(job_request, emitter)
        finally:
            if not emitter.closed:
                await emitter.finish_error("Job ended without a terminal event", "InternalError")

    task: asyncio.Task[object] = asyncio.create_task(_run())
    _RUNNING.add(task)
    task.add_done_callback(_RUNNING.discard)
    drained = False
    try:
        async for event in emitter.events():
            yield event.encode()
        drained = True
        await task
    finally:
        if not drained and not task.done():
            structured_log(_API_LOG, logging.WARNING, "client_disconnected", reason="stream_closed")
            emitter.detach()
            task.cancel()


async def _single_error(message: str, error_type: str) -> AsyncIterator[bytes]:
    yield ErrorEvent(message=message, error_type=error_type).encode()


@router.post("")
async def process(body: ProcessRequest, request: Request) -> StreamingResponse:
    try:
        pipeline = get_pipeline(request)
    except ConfigurationError as exc:
        structured_log(_API_LOG, logging.ERROR, "pipeline_unconfigured", error_type=exc.__class__.__name__)
        return StreamingResponse(
            _single_error(str(exc), exc.__class__.__name__),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
    cfg = request.app.state.config
    emitter = ProgressEmitter(maxsize=cfg.progress_queue_size)
    return StreamingResponse(
        stream_job(pipeline, body.to_job_request(), emitter),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


__all__ = ["ProcessRequest", "get_pipeline", "router", "stream_job"]
