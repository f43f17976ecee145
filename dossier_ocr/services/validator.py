"""Pass 4: coverage review of the consolidated report.

The model either answers with the ``NO_ADDENDUM`` marker or with a list of
gaps, which is appended under a delimited heading. Any failure here leaves
the report exactly as Pass 3 produced it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from dossier_ocr.errors import ValidationStageError
from dossier_ocr.models.records import CandidateCluster, ClusterFailure
from dossier_ocr.services import prompts
from dossier_ocr.services.interfaces import LLMClient
from dossier_ocr.services.progress import ProgressEmitter
from dossier_ocr.utils.logging_utils import log_stage_skipped, structured_log

LOG = logging.getLogger("pass4")


@dataclass(frozen=True, slots=True)
class ValidationOutcome:
    report: str
    addendum_added: bool
    skipped_reason: str | None = None


def append_addendum(report: str, addendum: str) -> str:
    return f"{report.rstrip()}{prompts.ADDENDUM_DELIMITER}{prompts.ADDENDUM_HEADING}\n\n{addendum.strip()}\n"


class Validator:
    def __init__(self, llm: LLMClient, *, model: str, timeout: float) -> None:
        self.llm = llm
        self.model = model
        self.timeout = timeout

    async def review(
        self,
        report: str,
        *,
        clusters: Sequence[CandidateCluster],
        failures: Sequence[ClusterFailure],
        file_name: str,
        page_count: int,
    ) -> str | None:
        """Return addendum text, or ``None`` when the report is complete."""
        user = prompts.VALIDATE_USER.format(
            file_name=file_name,
            pages=page_count,
            clusters="\n".join(
                f"- {cluster.title} (pages {prompts.format_pages(cluster.pages)})" for cluster in clusters
            ),
            failures="\n".join(f"- {failure.title}: {failure.error}" for failure in failures) or "none",
            report=report,
        )
        try:
            answer = await asyncio.wait_for(
                self.llm.complete(
                    model=self.model,
                    system=prompts.VALIDATE_SYSTEM,
                    user=user,
                    timeout=self.timeout,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ValidationStageError(f"Coverage review timed out after {self.timeout:.0f}s") from exc
        answer = (answer or "").strip()
        if not answer or prompts.NO_ADDENDUM in answer:
            return None
        return answer

    async def validate(
        self,
        report: str,
        *,
        clusters: Sequence[CandidateCluster],
        failures: Sequence[ClusterFailure],
        file_name: str,
        page_count: int,
        emitter: ProgressEmitter,
    ) -> ValidationOutcome:
        await emitter.phase("pass4", "start", model=self.model)
        try:
            addendum = await self.review(
                report,
                clusters=clusters,
                failures=failures,
                file_name=file_name,
                page_count=page_count,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - coverage review never changes the outcome
            log_stage_skipped(
                LOG, stage="pass4", reason="review_failed", level=logging.WARNING, error_type=exc.__class__.__name__
            )
            await emitter.phase("pass4", "skipped", error=exc.__class__.__name__)
            return ValidationOutcome(report=report, addendum_added=False, skipped_reason=str(exc))
        if addendum is None:
            await emitter.phase("pass4", "done", addendum=False)
            return ValidationOutcome(report=report, addendum_added=False)
        structured_log(LOG, logging.INFO, "pass4_addendum", chars=len(addendum))
        await emitter.phase("pass4", "done", addendum=True)
        return ValidationOutcome(report=append_addendum(report, addendum), addendum_added=True)


__all__ = ["ValidationOutcome", "Validator", "append_addendum"]
