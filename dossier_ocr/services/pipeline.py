"""Job orchestrator: ingest → OCR → four extraction passes → cleanup.

``ExtractionPipeline.run`` owns one job from creation to its terminal event.
Stages run strictly in sequence and every state change emits a progress
event. Exceptions from any stage land in a single handler that cleans up and
emits the one ``error`` event; success cleans up and then emits ``result``.
Cleanup always precedes the terminal event so the terminal event is the last
thing on the stream.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Coroutine

from dossier_ocr.config import AppConfig
from dossier_ocr.errors import (
    BoundaryError,
    ConfigurationError,
    ObjectStoreWriteError,
    PipelineError,
)
from dossier_ocr.logging_setup import job_context
from dossier_ocr.models.events import JobResult
from dossier_ocr.models.job import JobContext, JobRequest, JobState, safe_file_stem
from dossier_ocr.models.records import OcrResult
from dossier_ocr.services.cleanup import Cleaner
from dossier_ocr.services.cluster_extractor import ClusterExtractor
from dossier_ocr.services.consolidator import Consolidator
from dossier_ocr.services.indexer import Indexer
from dossier_ocr.services.interfaces import (
    LLMClient,
    MetricsClient,
    ObjectStore,
    OcrInvoker,
    ResultSink,
    SourceFetcher,
)
from dossier_ocr.services.metrics import NullMetrics
from dossier_ocr.services.object_store import split_gcs_uri
from dossier_ocr.services.progress import ProgressEmitter
from dossier_ocr.services.validator import Validator
from dossier_ocr.utils.logging_utils import stage_marker, structured_log

LOG = logging.getLogger("pipeline")

PROCESSING_METHOD = "documentai-batch-ocr+llm-4-pass"
PDF_MAGIC = b"%PDF-"
PROBE_BODY = b"probe"

# Coarse progress per state; Pass 2 reports inside its own sub-range.
PROGRESS = {
    JobState.UPLOADING: 5,
    JobState.OCR_RUNNING: 20,
    JobState.INDEXING: 40,
    JobState.EXTRACTING: 45,
    JobState.CONSOLIDATING: 72,
    JobState.VALIDATING: 88,
    JobState.CLEANING_UP: 95,
}
EXTRACT_RANGE = (45, 70)


@dataclass(slots=True)
class _StageResults:
    total_pages: int
    clusters: int
    failed_clusters: list[dict[str, Any]]
    indexer_fallback: bool
    consolidation_strategy: str
    consolidation_attempts: int
    addendum: bool
    report: str


class ExtractionPipeline:
    """High-level orchestrator for one dossier job."""

    def __init__(
        self,
        *,
        input_store: ObjectStore,
        output_store: ObjectStore,
        fetcher: SourceFetcher,
        ocr: OcrInvoker,
        indexer: Indexer,
        extractor: ClusterExtractor,
        consolidator: Consolidator,
        validator: Validator,
        cleaner: Cleaner,
        output_prefix: str = "ocr-out",
        result_sink: ResultSink | None = None,
        metrics: MetricsClient | None = None,
    ) -> None:
        self.input_store = input_store
        self.output_store = output_store
        self.fetcher = fetcher
        self.ocr = ocr
        self.indexer = indexer
        self.extractor = extractor
        self.consolidator = consolidator
        self.validator = validator
        self.cleaner = cleaner
        self.output_prefix = output_prefix.strip("/")
        self.result_sink = result_sink
        self.metrics = metrics or NullMetrics()
        self._background: set[asyncio.Task[None]] = set()

    # Entry point ---------------------------------------------------------
    async def run(
        self,
        request: JobRequest,
        emitter: ProgressEmitter,
        *,
        job_id: str | None = None,
    ) -> JobContext:
        ctx = JobContext.create(request, job_id=job_id)
        with job_context(ctx.job_id):
            started = time.perf_counter()
            structured_log(LOG, logging.INFO, "job_start", job_id=ctx.job_id, file_name=ctx.file_name)
            try:
                results = await self._execute(ctx, request, emitter)
            except asyncio.CancelledError:
                await _run_to_completion(self._finish_failure(ctx, emitter, None, started))
                raise
            except Exception as exc:  # noqa: BLE001 - single top-level handler
                await _run_to_completion(self._finish_failure(ctx, emitter, exc, started))
            else:
                await _run_to_completion(
                    self._finish_success(ctx, request, emitter, results, started)
                )
        return ctx

    # Stages --------------------------------------------------------------
    async def _execute(
        self, ctx: JobContext, request: JobRequest, emitter: ProgressEmitter
    ) -> _StageResults:
        await self._advance(ctx, emitter, JobState.UPLOADING, "Preparing document")
        async with stage_marker(LOG, stage="ingest", job_id=ctx.job_id) as marker:
            await self._ingest(ctx, request, emitter)
        self._observe("ingest", marker.elapsed)

        await self._advance(ctx, emitter, JobState.OCR_RUNNING, "Running OCR")
        async with stage_marker(LOG, stage="ocr", job_id=ctx.job_id) as marker:
            ocr_result = await self._run_ocr(ctx)
            marker.add_completion_fields(pages=ocr_result.page_count)
        self._observe("ocr", marker.elapsed)
        if ocr_result.page_count == 0:
            raise BoundaryError("OCR returned no pages")
        ctx.set_total_pages(ocr_result.page_count)
        await emitter.log("info", "OCR complete", {"pages": ocr_result.page_count})

        await self._advance(ctx, emitter, JobState.INDEXING, "Indexing pages")
        async with stage_marker(LOG, stage="pass1", job_id=ctx.job_id) as marker:
            index = await self.indexer.index(ocr_result.pages, emitter)
            marker.add_completion_fields(clusters=len(index.clusters), fallback=index.used_fallback)
        self._observe("pass1", marker.elapsed)

        await self._advance(
            ctx, emitter, JobState.EXTRACTING, f"Extracting {len(index.clusters)} clusters"
        )
        async with stage_marker(LOG, stage="pass2", job_id=ctx.job_id) as marker:
            extraction = await self.extractor.extract(index.clusters, ocr_result.pages, emitter)
            marker.add_completion_fields(
                records=len(extraction.records), failed=len(extraction.failures)
            )
        self._observe("pass2", marker.elapsed)

        await self._advance(ctx, emitter, JobState.CONSOLIDATING, "Consolidating report")
        async with stage_marker(LOG, stage="pass3", job_id=ctx.job_id) as marker:
            consolidation = await self.consolidator.consolidate(
                extraction.records,
                extraction.failures,
                file_name=ctx.file_name,
                page_count=ocr_result.page_count,
                emitter=emitter,
            )
            marker.add_completion_fields(strategy=consolidation.strategy)
        self._observe("pass3", marker.elapsed)

        await self._advance(ctx, emitter, JobState.VALIDATING, "Reviewing coverage")
        async with stage_marker(LOG, stage="pass4", job_id=ctx.job_id) as marker:
            validation = await self.validator.validate(
                consolidation.report,
                clusters=index.clusters,
                failures=extraction.failures,
                file_name=ctx.file_name,
                page_count=ocr_result.page_count,
                emitter=emitter,
            )
        self._observe("pass4", marker.elapsed)

        return _StageResults(
            total_pages=ocr_result.page_count,
            clusters=len(index.clusters),
            failed_clusters=[
                {"title": failure.title, "error": failure.error} for failure in extraction.failures
            ],
            indexer_fallback=index.used_fallback,
            consolidation_strategy=consolidation.strategy,
            consolidation_attempts=consolidation.attempts,
            addendum=validation.addendum_added,
            report=validation.report,
        )

    async def _ingest(self, ctx: JobContext, request: JobRequest, emitter: ProgressEmitter) -> None:
        if request.storage_uri:
            try:
                split_gcs_uri(request.storage_uri)
            except ValueError as exc:
                raise BoundaryError(str(exc)) from exc
            ctx.set_input_uri(request.storage_uri)
            await emitter.log("info", "Using stored document", {"source": "storage"})
            return
        if not request.source_document_url:
            raise BoundaryError("No source document reference supplied")

        if not await self.input_store.bucket_exists():
            raise ConfigurationError(f"Input bucket {self.input_store.bucket} does not exist")

        base = f"uploads/{ctx.job_id}"
        probe_key = f"{base}/_probe.txt"
        await self._put_owned(ctx, probe_key, PROBE_BODY, "text/plain")

        await emitter.step("Uploading", PROGRESS[JobState.UPLOADING] + 3, "Downloading source document")
        data = await self.fetcher.fetch(request.source_document_url)
        if not data.startswith(PDF_MAGIC):
            raise BoundaryError("Source document is not a PDF")

        input_key = f"{base}/{safe_file_stem(ctx.file_name)}.pdf"
        uri = await self._put_owned(ctx, input_key, data, "application/pdf")
        ctx.set_input_uri(uri)
        await emitter.step("Uploading", PROGRESS[JobState.UPLOADING] + 10, "Document stored")

    async def _put_owned(self, ctx: JobContext, key: str, data: bytes, content_type: str) -> str:
        bucket = self.input_store.bucket
        try:
            uri = await self.input_store.put(key, data, content_type)
        except ObjectStoreWriteError as exc:
            if exc.may_exist:
                ctx.register_key(bucket, key)
            raise
        except asyncio.CancelledError:
            ctx.register_key(bucket, key)
            raise
        ctx.register_key(bucket, key)
        return uri

    async def _run_ocr(self, ctx: JobContext) -> OcrResult:
        prefix = f"{self.output_prefix}/{ctx.job_id}/"
        output_uri = f"gs://{self.output_store.bucket}/{prefix}"
        ctx.set_output_uri(output_uri)

        def _register_output() -> None:
            ctx.register_prefix(self.output_store.bucket, prefix)

        if ctx.input_uri is None:
            raise BoundaryError("No stored input document to run OCR on")
        return await self.ocr.run_ocr(ctx.input_uri, output_uri, on_submitted=_register_output)

    # Terminal paths ------------------------------------------------------
    async def _finish_success(
        self,
        ctx: JobContext,
        request: JobRequest,
        emitter: ProgressEmitter,
        results: _StageResults,
        started: float,
    ) -> None:
        await self._cleanup(ctx, emitter)
        result = JobResult(
            file_name=ctx.file_name,
            total_pages=results.total_pages,
            extracted_data=results.report,
            processing_method=PROCESSING_METHOD,
            processing_notes={
                "clusters": results.clusters,
                "failedClusters": results.failed_clusters,
                "indexerFallback": results.indexer_fallback,
                "consolidation": results.consolidation_strategy,
                "consolidationAttempts": results.consolidation_attempts,
                "addendum": results.addendum,
            },
        )
        ctx.advance(JobState.DONE)
        self.metrics.increment("jobs_total", stage="pipeline", outcome="done")
        self._observe("job", time.perf_counter() - started)
        structured_log(
            LOG,
            logging.INFO,
            "job_complete",
            job_id=ctx.job_id,
            pages=results.total_pages,
            clusters=results.clusters,
            failed=len(results.failed_clusters),
            outcome="done",
        )
        await emitter.finish_result(result)
        if request.user_id and self.result_sink is not None:
            self._save_result_detached(ctx.job_id, request.user_id, result.to_payload())

    async def _finish_failure(
        self,
        ctx: JobContext,
        emitter: ProgressEmitter,
        exc: BaseException | None,
        started: float,
    ) -> None:
        if exc is None:
            message, error_type = "Job cancelled", "CancelledError"
        else:
            message, error_type = _user_message(exc), exc.__class__.__name__
        structured_log(
            LOG,
            logging.ERROR,
            "job_failed",
            job_id=ctx.job_id,
            state=ctx.state.value,
            error_type=error_type,
            outcome="failed",
        )
        if exc is not None:
            LOG.debug("job_failure_detail", exc_info=exc)
        await self._cleanup(ctx, emitter)
        if not ctx.state.terminal:
            ctx.advance(JobState.FAILED)
        self.metrics.increment("jobs_total", stage="pipeline", outcome="failed")
        self._observe("job", time.perf_counter() - started)
        await emitter.finish_error(message, error_type)

    async def _cleanup(self, ctx: JobContext, emitter: ProgressEmitter) -> None:
        if ctx.state is not JobState.CLEANING_UP and not ctx.state.terminal:
            await self._advance(ctx, emitter, JobState.CLEANING_UP, "Cleaning up")
        async with stage_marker(LOG, stage="cleanup", job_id=ctx.job_id) as marker:
            report = await self.cleaner.run(ctx)
            marker.add_completion_fields(targets=len(report.released), failed=len(report.failed))
        if report.failed:
            await emitter.log(
                "warn",
                "Some temporary files could not be removed",
                {"failed": len(report.failed)},
            )

    # Helpers -------------------------------------------------------------
    async def _advance(
        self, ctx: JobContext, emitter: ProgressEmitter, state: JobState, message: str
    ) -> None:
        ctx.advance(state)
        await emitter.step(_STEP_LABELS[state], PROGRESS[state], message)

    def _observe(self, stage: str, seconds: float) -> None:
        self.metrics.observe_latency("stage_latency_seconds", seconds, stage=stage)

    def _save_result_detached(self, job_id: str, user_id: str, payload: dict[str, Any]) -> None:
        sink = self.result_sink
        if sink is None:
            raise RuntimeError("No result sink configured")

        async def _save() -> None:
            with job_context(job_id):
                try:
                    await sink.save_result(job_id=job_id, user_id=user_id, payload=payload)
                except Exception as exc:  # noqa: BLE001 - persistence never changes the outcome
                    structured_log(
                        LOG,
                        logging.WARNING,
                        "result_save_failed",
                        job_id=job_id,
                        error_type=exc.__class__.__name__,
                    )

        task = asyncio.create_task(_save())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain_background(self) -> None:
        """Wait for detached result writes; used on shutdown and in tests."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


_STEP_LABELS = {
    JobState.UPLOADING: "Uploading",
    JobState.OCR_RUNNING: "OCR",
    JobState.INDEXING: "Indexing",
    JobState.EXTRACTING: "Extracting",
    JobState.CONSOLIDATING: "Consolidating",
    JobState.VALIDATING: "Validating",
    JobState.CLEANING_UP: "Cleanup",
}


async def _run_to_completion(finish: Coroutine[Any, Any, None]) -> None:
    """Await a terminal path to the end even if the job task is cancelled meanwhile."""
    task = asyncio.create_task(finish)
    cancelled = False
    while not task.done():
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            cancelled = True
    task.result()
    if cancelled:
        raise asyncio.CancelledError


def _user_message(exc: BaseException) -> str:
    if isinstance(exc, PipelineError):
        return str(exc) or exc.__class__.__name__
    return f"Unexpected error: {exc.__class__.__name__}"


def build_pipeline(
    cfg: AppConfig,
    *,
    llm: LLMClient | None = None,
    metrics: MetricsClient | None = None,
    credentials: Any = None,
) -> ExtractionPipeline:
    """Wire the production collaborators from configuration."""
    from google.cloud import storage  # type: ignore[attr-defined]

    from dossier_ocr.services.llm_client import OpenAIChatClient
    from dossier_ocr.services.object_store import GCSObjectStore
    from dossier_ocr.services.ocr_service import DocumentAIOcrInvoker
    from dossier_ocr.services.result_sink import ObjectStoreResultSink
    from dossier_ocr.services.source_fetcher import HttpSourceFetcher

    cfg.validate_required()
    metrics = metrics or NullMetrics()
    client = storage.Client(project=cfg.project_id or None, credentials=credentials)
    store_kwargs = {
        "client": client,
        "timeout": cfg.upload_timeout_seconds,
        "signed_url_ttl": cfg.signed_url_ttl_seconds,
        "metrics": metrics,
    }
    input_store = GCSObjectStore(cfg.input_bucket, **store_kwargs)
    output_store = (
        input_store
        if cfg.output_bucket == cfg.input_bucket
        else GCSObjectStore(cfg.output_bucket, **store_kwargs)
    )
    llm = llm or OpenAIChatClient(api_key=cfg.openai_api_key)
    return ExtractionPipeline(
        input_store=input_store,
        output_store=output_store,
        fetcher=HttpSourceFetcher(
            timeout=cfg.download_timeout_seconds,
            proxy_base_url=cfg.proxy_base_url,
            max_bytes=cfg.max_pdf_bytes,
        ),
        ocr=DocumentAIOcrInvoker(
            processor_name=cfg.docai_processor_name,
            output_store=output_store,
            location=cfg.docai_location,
            language_hints=cfg.ocr_language_hints,
            timeout=cfg.ocr_timeout_seconds,
            poll_interval=cfg.ocr_poll_interval_seconds,
            credentials=credentials,
        ),
        indexer=Indexer(
            llm, model=cfg.index_model, timeout=cfg.llm_timeout, window_size=cfg.window_size
        ),
        extractor=ClusterExtractor(
            llm,
            model=cfg.extract_model,
            timeout=cfg.llm_timeout,
            worker_count=cfg.worker_count,
            max_chars=cfg.cluster_max_chars,
            progress_range=EXTRACT_RANGE,
            metrics=metrics,
        ),
        consolidator=Consolidator(
            llm,
            primary_model=cfg.consolidate_model,
            fallback_model=cfg.consolidate_fallback_model,
            primary_timeout=cfg.llm_timeout,
            fallback_timeout=cfg.fallback_timeout,
            compact_field_chars=cfg.compact_field_chars,
            compact_max_quotes=cfg.compact_max_quotes,
            metrics=metrics,
        ),
        validator=Validator(llm, model=cfg.validate_model, timeout=cfg.llm_timeout),
        cleaner=Cleaner(
            {store.bucket: store for store in (input_store, output_store)},
            timeout=cfg.cleanup_timeout_seconds,
            metrics=metrics,
        ),
        output_prefix=cfg.output_prefix,
        result_sink=(
            ObjectStoreResultSink(output_store, prefix=cfg.results_prefix)
            if cfg.results_prefix
            else None
        ),
        metrics=metrics,
    )


__all__ = ["ExtractionPipeline", "PROCESSING_METHOD", "build_pipeline"]
