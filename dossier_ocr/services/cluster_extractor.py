"""Pass 2: per-cluster extraction with a fixed-size worker pool.

All clusters are queued up front and ``worker_count`` workers drain the queue,
one cluster at a time each. A failed cluster (timeout, provider error, refusal,
unparseable answer) is recorded and the worker moves on; cluster failures
never abort the job. Records are returned in cluster order regardless of
completion order.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Sequence

from dossier_ocr.errors import ExtractionError
from dossier_ocr.models.records import (
    CandidateCluster,
    ClusterFailure,
    ExtractionOutcome,
    ExtractionRecord,
    Page,
    join_pages,
    parse_extraction_record,
)
from dossier_ocr.services import prompts
from dossier_ocr.services.interfaces import LLMClient, MetricsClient
from dossier_ocr.services.metrics import NullMetrics
from dossier_ocr.services.progress import ProgressEmitter
from dossier_ocr.utils.logging_utils import structured_log

LOG = logging.getLogger("pass2")

REFUSAL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bI['’]m sorry,? (?:but )?I can['’]?t assist",
        r"\bI['’]m unable to\b",
        r"\bI cannot (?:process|help|assist)\b",
        r"\bI can['’]?t (?:analy[sz]e|process|help)\b",
        r"\bI can['’]?t process PDFs directly\b",
    )
)

TRUNCATION_MARKER = "\n[... truncated ...]"


def looks_like_refusal(text: str) -> bool:
    head = (text or "").lstrip()[:400]
    # A JSON answer is a record, even when a quote inside it reads like a refusal.
    if head.startswith("{"):
        return False
    return any(pattern.search(head) for pattern in REFUSAL_PATTERNS)


def cluster_text(cluster: CandidateCluster, pages: Sequence[Page], max_chars: int) -> str:
    by_number = {page.number: page for page in pages}
    text = join_pages(by_number[number] for number in cluster.pages if number in by_number)
    if max_chars and len(text) > max_chars:
        text = text[:max_chars] + TRUNCATION_MARKER
    return text


class ClusterExtractor:
    def __init__(
        self,
        llm: LLMClient,
        *,
        model: str,
        timeout: float,
        worker_count: int,
        max_chars: int = 60000,
        progress_range: tuple[int, int] = (45, 70),
        metrics: MetricsClient | None = None,
    ) -> None:
        self.llm = llm
        self.model = model
        self.timeout = timeout
        self.worker_count = max(1, worker_count)
        self.max_chars = max_chars
        self.progress_range = progress_range
        self.metrics = metrics or NullMetrics()

    async def extract(
        self,
        clusters: Sequence[CandidateCluster],
        pages: Sequence[Page],
        emitter: ProgressEmitter,
    ) -> ExtractionOutcome:
        total = len(clusters)
        outcome = ExtractionOutcome(total_clusters=total)
        if total == 0:
            return outcome

        queue: asyncio.Queue[tuple[int, CandidateCluster]] = asyncio.Queue()
        for index, cluster in enumerate(clusters):
            queue.put_nowait((index, cluster))

        records: list[tuple[int, ExtractionRecord]] = []
        failures: list[ClusterFailure] = []
        completed = 0
        workers = min(self.worker_count, total)
        await emitter.phase("pass2", "start", clusters=total, workers=workers)

        async def worker(worker_id: int) -> None:
            nonlocal completed
            while True:
                try:
                    index, cluster = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    record = await self._extract_one(index, cluster, pages, emitter)
                    records.append((index, record))
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001 - per-cluster failures are recorded
                    failures.append(
                        ClusterFailure(
                            index=index,
                            title=cluster.title,
                            error=str(exc) or exc.__class__.__name__,
                            error_type=exc.__class__.__name__,
                        )
                    )
                    self.metrics.increment("cluster_failures_total", stage="pass2")
                    structured_log(
                        LOG,
                        logging.WARNING,
                        "cluster_failed",
                        cluster_index=index,
                        error_type=exc.__class__.__name__,
                    )
                    await emitter.phase(
                        "pass2",
                        "cluster:fail",
                        index=index,
                        title=cluster.title,
                        error=str(exc) or exc.__class__.__name__,
                    )
                finally:
                    queue.task_done()
                completed += 1
                await emitter.step(
                    "Extracting",
                    self._scaled_progress(completed, total),
                    f"Processed cluster {completed} of {total}",
                )

        await asyncio.gather(*(worker(worker_id) for worker_id in range(workers)))

        records.sort(key=lambda item: item[0])
        outcome.records = [record for _index, record in records]
        outcome.failures = sorted(failures, key=lambda failure: failure.index)
        structured_log(
            LOG,
            logging.INFO,
            "pass2_complete",
            clusters=total,
            records=len(outcome.records),
            failed=len(outcome.failures),
            workers=workers,
        )
        await emitter.phase(
            "pass2", "done", records=len(outcome.records), failed=len(outcome.failures)
        )
        return outcome

    async def _extract_one(
        self,
        index: int,
        cluster: CandidateCluster,
        pages: Sequence[Page],
        emitter: ProgressEmitter,
    ) -> ExtractionRecord:
        await emitter.phase(
            "pass2", "cluster:start", index=index, title=cluster.title, pages=list(cluster.pages)
        )
        user = prompts.EXTRACT_USER.format(
            title=cluster.title,
            pages=prompts.format_pages(cluster.pages),
            reason=cluster.reason or "-",
            text=cluster_text(cluster, pages, self.max_chars),
        )
        try:
            raw = await asyncio.wait_for(
                self.llm.complete(
                    model=self.model,
                    system=prompts.EXTRACT_SYSTEM,
                    user=user,
                    timeout=self.timeout,
                    json_mode=True,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ExtractionError(f"Cluster timed out after {self.timeout:.0f}s") from exc
        if looks_like_refusal(raw):
            raise ExtractionError("Model refused to process the cluster")
        record = parse_extraction_record(raw)
        allowed = set(cluster.pages)
        source_pages = sorted({page for page in record.source_pages if page in allowed})
        record = record.model_copy(
            update={
                "title": record.title or cluster.title,
                "source_pages": source_pages or list(cluster.pages),
            }
        )
        await emitter.phase("pass2", "cluster:done", index=index, title=record.title)
        return record

    def _scaled_progress(self, completed: int, total: int) -> int:
        low, high = self.progress_range
        return low + int((high - low) * completed / total)


__all__ = ["ClusterExtractor", "REFUSAL_PATTERNS", "cluster_text", "looks_like_refusal"]
