from __future__ import annotations

import asyncio

import httpx
import pytest
from google.api_core import exceptions as gexc

from dossier_ocr.errors import BoundaryError, LLMCallError, OCRServiceError, ObjectStoreWriteError
from dossier_ocr.models.events import ErrorEvent
from dossier_ocr.models.job import JobContext, JobRequest, JobState
from dossier_ocr.services import prompts
from dossier_ocr.services.object_store import GCSObjectStore, InMemoryObjectStore
from dossier_ocr.services.pipeline import PROCESSING_METHOD
from dossier_ocr.services.progress import ProgressEmitter
from tests.stubs.metrics_stub import RecordingMetrics
from tests.stubs.pipeline_stubs import (
    ScriptedLLM,
    StubFetcher,
    StubOCR,
    StubSink,
    build_pipeline,
    cluster_title,
    index_json,
    pages_text,
    record_json,
    run_and_collect,
)
from tests.stubs.storage_stub import FakeStorageClient

SOURCE = "https://files.example/Akte 2023.pdf"
REQUEST = JobRequest(file_name="Akte 2023.pdf", source_document_url=SOURCE)


def _extract_ok(user, **_):
    return record_json(cluster_title(user), [])


def _terminal(payloads: list[dict]) -> dict:
    terminals = [payload for payload in payloads if "result" in payload or payload.get("error") is True]
    assert len(terminals) == 1, terminals
    assert payloads[-1] is terminals[0]
    return terminals[0]


def _steps(payloads: list[dict]) -> list[str]:
    return [payload["step"] for payload in payloads if "step" in payload and payload.get("error") is not True]


def _seed_output(store: InMemoryObjectStore, job_id: str = "job-1") -> None:
    store.objects[f"ocr-out/{job_id}/op/0/akte-0.json"] = (b"{}", "application/json")
    store.objects["ocr-out/other-job/op/0/akte-0.json"] = (b"{}", "application/json")


class SlowDeleteStore(InMemoryObjectStore):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.delete_started = asyncio.Event()

    async def delete(self, key: str) -> None:
        self.delete_started.set()
        await asyncio.sleep(0.05)
        await super().delete(key)


class LateLandingStore(InMemoryObjectStore):
    """Direct write timed out and the signed URL was refused, but the upload still landed."""

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        if key.endswith(".pdf"):
            self.objects[key] = (data, content_type)
            raise ObjectStoreWriteError(f"Could not write gs://{self.bucket}/{key}", may_exist=True)
        return await super().put(key, data, content_type)


@pytest.mark.asyncio
async def test_eight_pages_two_clusters_happy_path(memory_stores):
    input_store, output_store = memory_stores
    _seed_output(output_store)
    llm = ScriptedLLM(
        index=index_json(("Speeding", [1, 2, 3, 4]), ("Licence withdrawal", [5, 6, 7, 8])),
        extract=_extract_ok,
        consolidate="# Report\n\nTwo incidents.",
    )
    metrics = RecordingMetrics()
    ocr = StubOCR(pages_text(8))
    pipeline = build_pipeline(
        llm, ocr, input_store=input_store, output_store=output_store, metrics=metrics
    )

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    result = _terminal(payloads)["result"]
    assert result["fileName"] == "Akte 2023.pdf"
    assert result["totalPages"] == 8
    assert result["extractedData"] == "# Report\n\nTwo incidents."
    assert prompts.ADDENDUM_HEADING not in result["extractedData"]
    assert result["processingMethod"] == PROCESSING_METHOD
    assert result["supportsPDFGeneration"] is True
    assert result["processingNotes"] == {
        "clusters": 2,
        "failedClusters": [],
        "indexerFallback": False,
        "consolidation": "primary",
        "consolidationAttempts": 1,
        "addendum": False,
    }
    assert ctx.state is JobState.DONE
    assert ocr.calls == [
        ("gs://in-bucket/uploads/job-1/Akte_2023.pdf", "gs://out-bucket/ocr-out/job-1/")
    ]
    assert [call["kind"] for call in llm.calls].count("extract") == 2

    assert _steps(payloads) == [
        "Uploading",
        "Uploading",
        "Uploading",
        "OCR",
        "Indexing",
        "Extracting",
        "Extracting",
        "Extracting",
        "Consolidating",
        "Validating",
        "Cleanup",
    ]
    progress = [payload["progress"] for payload in payloads if "step" in payload]
    assert progress == sorted(progress)

    assert pipeline.cleaner.invocations == 1
    assert input_store.objects == {}
    assert set(output_store.objects) == {"ocr-out/other-job/op/0/akte-0.json"}
    assert metrics.count("jobs_total", "done") == 1
    assert {name for name, _value, _labels in metrics.latencies} == {"stage_latency_seconds"}


@pytest.mark.asyncio
async def test_indexer_failure_falls_back_to_one_window():
    llm = ScriptedLLM(index=LLMCallError("index model down"), extract=_extract_ok)
    pipeline = build_pipeline(llm, StubOCR(pages_text(8)), window=10)

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    result = _terminal(payloads)["result"]
    assert result["processingNotes"]["indexerFallback"] is True
    assert result["processingNotes"]["clusters"] == 1
    (extract_call,) = llm.calls_for("extract")
    assert "Pages: 1, 2, 3, 4, 5, 6, 7, 8" in extract_call["user"]
    assert ctx.state is JobState.DONE


@pytest.mark.asyncio
async def test_one_cluster_timing_out_still_produces_a_report():
    async def extract(user, **_):
        title = cluster_title(user)
        if title == "Cluster 2":
            await asyncio.sleep(1)
        return record_json(title, [])

    llm = ScriptedLLM(index="not json", extract=extract)
    pipeline = build_pipeline(llm, StubOCR(pages_text(25)), window=10, llm_timeout=0.1)

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    notes = _terminal(payloads)["result"]["processingNotes"]
    assert notes["clusters"] == 3
    assert [failure["title"] for failure in notes["failedClusters"]] == ["Cluster 2"]
    consolidate_user = llm.calls_for("consolidate")[0]["user"]
    assert '"title": "Cluster 1"' in consolidate_user
    assert '"title": "Cluster 3"' in consolidate_user
    assert '"title": "Cluster 2"' not in consolidate_user
    fails = [p for p in payloads if p.get("status") == "cluster:fail"]
    assert [p["title"] for p in fails] == ["Cluster 2"]
    assert ctx.state is JobState.DONE


@pytest.mark.asyncio
async def test_consolidation_primary_timeout_uses_fallback():
    async def consolidate(user, model, timeout):
        if model == "primary-model":
            await asyncio.sleep(1)
        return "# Report from fallback"

    llm = ScriptedLLM(
        index=index_json(("A", [1]), ("B", [2])), extract=_extract_ok, consolidate=consolidate
    )
    metrics = RecordingMetrics()
    pipeline = build_pipeline(
        llm, StubOCR(pages_text(2)), llm_timeout=0.05, fallback_timeout=1.0, metrics=metrics
    )

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    result = _terminal(payloads)["result"]
    assert result["extractedData"] == "# Report from fallback"
    assert result["processingNotes"]["consolidation"] == "fallback"
    assert result["processingNotes"]["consolidationAttempts"] == 2
    assert metrics.count("consolidation_fallbacks_total") == 1
    assert ctx.state is JobState.DONE


@pytest.mark.asyncio
async def test_probe_write_falls_back_to_signed_url():
    client = FakeStorageClient()
    bucket = client.bucket("dossier-in")
    bucket.upload_error = gexc.Forbidden("storage.objects.create denied")

    def signed_put(request: httpx.Request) -> httpx.Response:
        key = request.url.path.split("/", 2)[2]
        bucket.objects[key] = request.content
        return httpx.Response(200)

    metrics = RecordingMetrics()
    input_store = GCSObjectStore(
        "dossier-in",
        client=client,
        timeout=1.0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(signed_put)),
        metrics=metrics,
    )
    ocr = StubOCR(pages_text(3))
    llm = ScriptedLLM(extract=_extract_ok)
    pipeline = build_pipeline(llm, ocr, input_store=input_store, metrics=metrics)

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    assert "result" in _terminal(payloads)
    assert not any(p.get("log", {}).get("level") == "error" for p in payloads)
    assert metrics.count("signed_url_fallbacks_total") == 2
    assert ocr.calls[0][0] == "gs://dossier-in/uploads/job-1/Akte_2023.pdf"
    assert bucket.objects == {}
    assert ctx.state is JobState.DONE


@pytest.mark.asyncio
async def test_zero_pages_fails_before_pass_one(memory_stores):
    input_store, output_store = memory_stores
    llm = ScriptedLLM()
    pipeline = build_pipeline(llm, StubOCR([]), input_store=input_store, output_store=output_store)

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    error = _terminal(payloads)
    assert error["errorType"] == "BoundaryError"
    assert error["message"] == "OCR returned no pages"
    assert llm.calls == []
    assert not any(p.get("phase") == "pass1" for p in payloads)
    assert pipeline.cleaner.invocations == 1
    assert input_store.objects == {}
    assert {target.path for target in ctx.released} == {
        "uploads/job-1/_probe.txt",
        "uploads/job-1/Akte_2023.pdf",
        "ocr-out/job-1/",
    }
    assert ctx.state is JobState.FAILED


@pytest.mark.asyncio
async def test_ocr_rejected_before_submission_never_targets_output(memory_stores):
    input_store, output_store = memory_stores
    _seed_output(output_store)
    ocr = StubOCR(pages_text(2), error=OCRServiceError("OCR batch submission failed: 403"), submit=False)
    pipeline = build_pipeline(ScriptedLLM(), ocr, input_store=input_store, output_store=output_store)

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    error = _terminal(payloads)
    assert error["errorType"] == "OCRServiceError"
    assert "403" in error["message"]
    assert {target.bucket for target in ctx.cleanup_targets} == {"in-bucket"}
    assert len(output_store.objects) == 2
    assert input_store.objects == {}


@pytest.mark.asyncio
async def test_failed_probe_write_creates_no_targets(memory_stores):
    input_store, output_store = memory_stores
    input_store.fail_puts.add("_probe.txt")
    fetcher = StubFetcher()
    pipeline = build_pipeline(
        ScriptedLLM(), StubOCR(pages_text(1)), fetcher=fetcher, input_store=input_store
    )

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    assert _terminal(payloads)["errorType"] == "ObjectStoreWriteError"
    assert ctx.cleanup_targets == ()
    assert fetcher.urls == []
    assert pipeline.cleaner.invocations == 1


@pytest.mark.asyncio
async def test_uncertain_input_write_is_still_cleaned_up():
    input_store = LateLandingStore("in-bucket")
    pipeline = build_pipeline(ScriptedLLM(), StubOCR(pages_text(1)), input_store=input_store)

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    assert _terminal(payloads)["errorType"] == "ObjectStoreWriteError"
    assert [target.path for target in ctx.cleanup_targets] == [
        "uploads/job-1/_probe.txt",
        "uploads/job-1/Akte_2023.pdf",
    ]
    assert input_store.objects == {}


@pytest.mark.asyncio
async def test_cancel_during_failure_cleanup_still_removes_everything():
    input_store = SlowDeleteStore("in-bucket")
    ocr = StubOCR(pages_text(2), error=OCRServiceError("OCR batch failed"), submit=False)
    pipeline = build_pipeline(ScriptedLLM(), ocr, input_store=input_store)
    emitter = ProgressEmitter(maxsize=32)

    task = asyncio.create_task(pipeline.run(REQUEST, emitter, job_id="job-f"))
    await asyncio.wait_for(input_store.delete_started.wait(), timeout=2)
    emitter.detach()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert input_store.objects == {}
    assert sorted(input_store.deleted) == ["uploads/job-f/Akte_2023.pdf", "uploads/job-f/_probe.txt"]
    assert isinstance(emitter.terminal_event, ErrorEvent)
    assert emitter.terminal_event.error_type == "OCRServiceError"
    assert pipeline.cleaner.invocations == 1


@pytest.mark.asyncio
async def test_missing_bucket_is_a_configuration_error():
    fetcher = StubFetcher()
    pipeline = build_pipeline(
        ScriptedLLM(),
        StubOCR(pages_text(1)),
        fetcher=fetcher,
        input_store=InMemoryObjectStore("in-bucket", exists=False),
    )

    _ctx, payloads = await run_and_collect(pipeline, REQUEST)

    error = _terminal(payloads)
    assert error["errorType"] == "ConfigurationError"
    assert "in-bucket" in error["message"]
    assert fetcher.urls == []


@pytest.mark.asyncio
async def test_non_pdf_source_is_rejected_and_probe_cleaned(memory_stores):
    input_store, _ = memory_stores
    pipeline = build_pipeline(
        ScriptedLLM(),
        StubOCR(pages_text(1)),
        fetcher=StubFetcher(body=b"<html>login required</html>"),
        input_store=input_store,
    )

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    assert _terminal(payloads)["message"] == "Source document is not a PDF"
    assert [target.path for target in ctx.cleanup_targets] == ["uploads/job-1/_probe.txt"]
    assert input_store.objects == {}


@pytest.mark.asyncio
async def test_storage_uri_skips_download_and_is_never_deleted(memory_stores):
    input_store, output_store = memory_stores
    input_store.objects["users/u1/akte.pdf"] = (b"%PDF-1.4", "application/pdf")
    fetcher = StubFetcher()
    ocr = StubOCR(pages_text(2))
    pipeline = build_pipeline(
        ScriptedLLM(extract=_extract_ok),
        ocr,
        fetcher=fetcher,
        input_store=input_store,
        output_store=output_store,
    )
    request = JobRequest(file_name="akte.pdf", storage_uri="gs://in-bucket/users/u1/akte.pdf")

    ctx, payloads = await run_and_collect(pipeline, request)

    assert "result" in _terminal(payloads)
    assert fetcher.urls == []
    assert ocr.calls[0][0] == "gs://in-bucket/users/u1/akte.pdf"
    assert [target.uri for target in ctx.cleanup_targets] == ["gs://out-bucket/ocr-out/job-1/"]
    assert set(input_store.objects) == {"users/u1/akte.pdf"}


@pytest.mark.asyncio
async def test_consolidation_failure_reports_the_fallback_error():
    def consolidate(user, model, timeout):
        return LLMCallError(f"{model} unavailable")

    llm = ScriptedLLM(extract=_extract_ok, consolidate=consolidate)
    pipeline = build_pipeline(llm, StubOCR(pages_text(3)))

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    error = _terminal(payloads)
    assert error["errorType"] == "ConsolidationError"
    assert "fallback-model unavailable" in error["message"]
    assert llm.calls_for("validate") == []
    assert pipeline.cleaner.invocations == 1
    assert ctx.state is JobState.FAILED


@pytest.mark.asyncio
async def test_validator_failure_does_not_change_the_outcome():
    llm = ScriptedLLM(extract=_extract_ok, consolidate="# Report", validate=LLMCallError("down"))
    pipeline = build_pipeline(llm, StubOCR(pages_text(3)))

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    result = _terminal(payloads)["result"]
    assert result["extractedData"] == "# Report"
    assert result["processingNotes"]["addendum"] is False
    assert {"phase": "pass4", "status": "skipped", "error": "LLMCallError"} in payloads
    assert ctx.state is JobState.DONE


@pytest.mark.asyncio
async def test_validator_addendum_is_appended():
    llm = ScriptedLLM(extract=_extract_ok, consolidate="# Report", validate="- Page 3 not covered")
    pipeline = build_pipeline(llm, StubOCR(pages_text(3)))

    _ctx, payloads = await run_and_collect(pipeline, REQUEST)

    result = _terminal(payloads)["result"]
    assert result["extractedData"].startswith("# Report")
    assert prompts.ADDENDUM_HEADING in result["extractedData"]
    assert result["processingNotes"]["addendum"] is True


@pytest.mark.asyncio
async def test_every_cluster_failing_yields_a_minimal_report():
    llm = ScriptedLLM(extract="I'm sorry, but I can't assist with that.")
    pipeline = build_pipeline(llm, StubOCR(pages_text(12)), window=10)

    ctx, payloads = await run_and_collect(pipeline, REQUEST)

    result = _terminal(payloads)["result"]
    assert result["processingNotes"]["consolidation"] == "minimal"
    assert len(result["processingNotes"]["failedClusters"]) == 2
    assert "not stated" in result["extractedData"]
    assert llm.calls_for("consolidate") == []
    assert ctx.state is JobState.DONE


@pytest.mark.asyncio
async def test_unexpected_errors_are_reported_generically():
    pipeline = build_pipeline(ScriptedLLM(), StubOCR(pages_text(1), error=RuntimeError("secret detail")))

    _ctx, payloads = await run_and_collect(pipeline, REQUEST)

    error = _terminal(payloads)
    assert error["message"] == "Unexpected error: RuntimeError"
    assert error["errorType"] == "RuntimeError"
    assert "secret detail" not in error["message"]


@pytest.mark.asyncio
async def test_result_is_saved_for_users_without_blocking():
    sink = StubSink()
    pipeline = build_pipeline(ScriptedLLM(extract=_extract_ok), StubOCR(pages_text(1)), sink=sink)
    request = JobRequest(file_name="akte.pdf", source_document_url=SOURCE, user_id="user-7")

    _ctx, payloads = await run_and_collect(pipeline, request)
    await pipeline.drain_background()

    (saved,) = sink.saved
    assert saved["job_id"] == "job-1"
    assert saved["user_id"] == "user-7"
    assert saved["payload"] == _terminal(payloads)["result"]


@pytest.mark.asyncio
async def test_result_sink_failure_is_ignored():
    sink = StubSink(error=RuntimeError("db down"))
    pipeline = build_pipeline(ScriptedLLM(extract=_extract_ok), StubOCR(pages_text(1)), sink=sink)
    request = JobRequest(file_name="akte.pdf", source_document_url=SOURCE, user_id="user-7")

    ctx, payloads = await run_and_collect(pipeline, request)
    await pipeline.drain_background()

    assert "result" in _terminal(payloads)
    assert ctx.state is JobState.DONE


@pytest.mark.asyncio
async def test_no_save_without_user_id():
    sink = StubSink()
    pipeline = build_pipeline(ScriptedLLM(extract=_extract_ok), StubOCR(pages_text(1)), sink=sink)
    await run_and_collect(pipeline, REQUEST)
    await pipeline.drain_background()
    assert sink.saved == []


@pytest.mark.asyncio
async def test_cancellation_still_cleans_up_and_emits_one_error(memory_stores):
    input_store, output_store = memory_stores
    started = asyncio.Event()

    async def extract(user, **_):
        started.set()
        await asyncio.sleep(10)

    pipeline = build_pipeline(
        ScriptedLLM(extract=extract),
        StubOCR(pages_text(4)),
        input_store=input_store,
        output_store=output_store,
        llm_timeout=30.0,
    )
    emitter = ProgressEmitter(maxsize=8)
    payloads: list[dict] = []

    async def drain() -> None:
        async for event in emitter.events():
            payloads.append(event.to_payload())

    drainer = asyncio.create_task(drain())
    task = asyncio.create_task(pipeline.run(REQUEST, emitter, job_id="job-c"))
    await asyncio.wait_for(started.wait(), timeout=2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.wait_for(drainer, timeout=2)

    error = _terminal(payloads)
    assert error["errorType"] == "CancelledError"
    assert error["message"] == "Job cancelled"
    assert isinstance(emitter.terminal_event, ErrorEvent)
    assert pipeline.cleaner.invocations == 1
    assert input_store.objects == {}


@pytest.mark.asyncio
async def test_internal_guards_raise_typed_errors():
    ocr = StubOCR(pages_text(1))
    pipeline = build_pipeline(ScriptedLLM(), ocr)
    ctx = JobContext.create(REQUEST, job_id="job-g")

    with pytest.raises(BoundaryError):
        await pipeline._run_ocr(ctx)
    assert ocr.calls == []
    with pytest.raises(RuntimeError):
        pipeline._save_result_detached("job-g", "user-7", {})
