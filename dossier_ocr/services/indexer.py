"""Pass 1: propose candidate page clusters.

One model call over the whole OCR text. Any failure (call error, timeout,
unparseable answer, no usable candidates) falls back to a deterministic
partition of 1..N into contiguous windows, so Pass 1 always yields clusters
for a non-empty document.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from dossier_ocr.errors import BoundaryError
from dossier_ocr.models.records import CandidateCluster, Page, join_pages, parse_index_response
from dossier_ocr.services import prompts
from dossier_ocr.services.interfaces import LLMClient
from dossier_ocr.services.progress import ProgressEmitter
from dossier_ocr.utils.logging_utils import structured_log

LOG = logging.getLogger("pass1")


@dataclass(slots=True, frozen=True)
class IndexOutcome:
    clusters: tuple[CandidateCluster, ...]
    used_fallback: bool
    fallback_reason: str | None = None


def fallback_partition(page_count: int, window: int) -> tuple[CandidateCluster, ...]:
    """Split pages 1..N into contiguous windows of at most ``window`` pages."""
    if page_count <= 0:
        raise BoundaryError("Cannot cluster a document with zero pages")
    if window < 1:
        raise ValueError("window must be at least 1")
    clusters = []
    for index, start in enumerate(range(1, page_count + 1, window), start=1):
        end = min(start + window - 1, page_count)
        clusters.append(
            CandidateCluster(
                title=f"Cluster {index}",
                pages=tuple(range(start, end + 1)),
                reason=f"Sequential pages {start}-{end}",
            )
        )
    return tuple(clusters)


def normalise_candidates(
    candidates: Sequence[CandidateCluster], page_count: int
) -> tuple[CandidateCluster, ...]:
    """Keep in-range pages (sorted, de-duplicated); drop candidates left empty."""
    kept = []
    for position, candidate in enumerate(candidates, start=1):
        pages = tuple(sorted({page for page in candidate.pages if 1 <= page <= page_count}))
        if not pages:
            continue
        kept.append(
            CandidateCluster(
                title=candidate.title or f"Cluster {position}",
                pages=pages,
                reason=candidate.reason,
            )
        )
    return tuple(kept)


class Indexer:
    def __init__(
        self,
        llm: LLMClient,
        *,
        model: str,
        timeout: float,
        window_size: int,
    ) -> None:
        self.llm = llm
        self.model = model
        self.timeout = timeout
        self.window_size = window_size

    async def index(self, pages: Sequence[Page], emitter: ProgressEmitter | None = None) -> IndexOutcome:
        page_count = len(pages)
        if page_count == 0:
            raise BoundaryError("Cannot index a document with zero pages")
        if emitter:
            await emitter.phase("pass1", "start", pages=page_count, model=self.model)
        reason: str | None = None
        clusters: tuple[CandidateCluster, ...] = ()
        try:
            raw = await asyncio.wait_for(
                self.llm.complete(
                    model=self.model,
                    system=prompts.INDEX_SYSTEM,
                    user=prompts.INDEX_USER.format(pages=page_count, text=join_pages(pages)),
                    timeout=self.timeout,
                    json_mode=True,
                ),
                timeout=self.timeout,
            )
            clusters = normalise_candidates(parse_index_response(raw).candidates, page_count)
            if not clusters:
                reason = "no usable candidates"
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - any failure falls back to the partition
            reason = f"{exc.__class__.__name__}: {exc}"

        if reason is None:
            structured_log(LOG, logging.INFO, "pass1_candidates", clusters=len(clusters), pages=page_count)
            if emitter:
                await emitter.phase("pass1", "done", clusters=len(clusters), fallback=False)
            return IndexOutcome(clusters=clusters, used_fallback=False)

        clusters = fallback_partition(page_count, self.window_size)
        structured_log(
            LOG,
            logging.WARNING,
            "pass1_fallback",
            clusters=len(clusters),
            pages=page_count,
            reason=reason,
        )
        if emitter:
            await emitter.log("warn", "Indexer fell back to sequential clusters", {"reason": reason})
            await emitter.phase("pass1", "done", clusters=len(clusters), fallback=True)
        return IndexOutcome(clusters=clusters, used_fallback=True, fallback_reason=reason)


__all__ = ["IndexOutcome", "Indexer", "fallback_partition", "normalise_candidates"]
