"""Pass 3: merge extraction records into one report.

The policy is two attempt strategies: the primary model with the full record
set, then the fallback model with a compacted payload and a longer timeout.
The compacted payload is always strictly smaller than the primary one. When
both fail the job fails with the fallback's error.

With no records at all there is nothing for a model to merge; the report is
built deterministically and lists every failed cluster.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Sequence

from dossier_ocr.errors import ConsolidationError
from dossier_ocr.models.records import NOT_STATED, ClusterFailure, ExtractionRecord
from dossier_ocr.services import prompts
from dossier_ocr.services.attempts import AttemptStrategy, try_with_fallbacks
from dossier_ocr.services.interfaces import LLMClient, MetricsClient
from dossier_ocr.services.metrics import NullMetrics
from dossier_ocr.services.progress import ProgressEmitter
from dossier_ocr.utils.logging_utils import structured_log

LOG = logging.getLogger("pass3")

ELLIPSIS = "…"


@dataclass(frozen=True, slots=True)
class ConsolidationPayload:
    records: tuple[dict[str, Any], ...]
    compacted: bool = False

    def serialise(self) -> str:
        if self.compacted:
            return json.dumps(list(self.records), ensure_ascii=False, separators=(",", ":"))
        return json.dumps(list(self.records), ensure_ascii=False, indent=2)

    @property
    def size(self) -> int:
        return len(self.serialise())


@dataclass(slots=True)
class ConsolidationOutcome:
    report: str
    strategy: str
    attempts: int
    compacted: bool = False
    errors: list[str] = field(default_factory=list)


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: max(0, limit - 1)].rstrip() + ELLIPSIS


def compact_record(record: dict[str, Any], *, field_chars: int, max_quotes: int) -> dict[str, Any]:
    compacted: dict[str, Any] = {}
    for key, value in record.items():
        if key == "quotes":
            compacted[key] = [
                {**quote, "text": _truncate(str(quote.get("text", "")), max(40, field_chars // 4))}
                for quote in list(value)[:max_quotes]
            ]
        elif isinstance(value, str):
            compacted[key] = _truncate(value, field_chars)
        elif isinstance(value, list) and value and all(isinstance(item, str) for item in value):
            compacted[key] = [_truncate(item, field_chars) for item in value]
        else:
            compacted[key] = value
    return compacted


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def minimal_report(
    *,
    file_name: str,
    page_count: int,
    failures: Sequence[ClusterFailure],
    report_date: date,
) -> str:
    lines = [
        f"# Dossier report: {file_name}",
        "",
        f"Pages: {page_count}",
        f"Report date: {report_date.isoformat()}",
        "",
        "No incident could be extracted from this document.",
        "",
        f"- What: {NOT_STATED}",
        f"- When: {NOT_STATED}",
        f"- Where: {NOT_STATED}",
        f"- Reference numbers: {NOT_STATED}",
        f"- Legal references: {NOT_STATED}",
        f"- Penalties: {NOT_STATED}",
        f"- Points: {NOT_STATED}",
        f"- Status: {NOT_STATED}",
    ]
    if failures:
        lines += ["", "## Clusters that could not be processed", ""]
        lines += [f"- {failure.title}: {failure.error}" for failure in failures]
    return "\n".join(lines)


class Consolidator:
    def __init__(
        self,
        llm: LLMClient,
        *,
        primary_model: str,
        fallback_model: str,
        primary_timeout: float,
        fallback_timeout: float,
        compact_field_chars: int = 400,
        compact_max_quotes: int = 3,
        metrics: MetricsClient | None = None,
    ) -> None:
        self.llm = llm
        self.primary_model = primary_model
        self.fallback_model = fallback_model
        self.primary_timeout = primary_timeout
        self.fallback_timeout = fallback_timeout
        self.compact_field_chars = compact_field_chars
        self.compact_max_quotes = compact_max_quotes
        self.metrics = metrics or NullMetrics()

    def compact(self, payload: ConsolidationPayload) -> ConsolidationPayload:
        records = tuple(
            compact_record(
                record,
                field_chars=self.compact_field_chars,
                max_quotes=self.compact_max_quotes,
            )
            for record in payload.records
        )
        return replace(payload, records=records, compacted=True)

    def strategies(self) -> list[AttemptStrategy[ConsolidationPayload]]:
        return [
            AttemptStrategy("primary", self.primary_model, self.primary_timeout),
            AttemptStrategy("fallback", self.fallback_model, self.fallback_timeout, self.compact),
        ]

    async def consolidate(
        self,
        records: Sequence[ExtractionRecord],
        failures: Sequence[ClusterFailure],
        *,
        file_name: str,
        page_count: int,
        emitter: ProgressEmitter,
        report_date: date | None = None,
    ) -> ConsolidationOutcome:
        report_date = report_date or utc_today()
        if not records:
            structured_log(LOG, logging.WARNING, "pass3_minimal_report", records=0, failed=len(failures))
            await emitter.phase("pass3", "done", strategy="minimal", records=0)
            return ConsolidationOutcome(
                report=minimal_report(
                    file_name=file_name,
                    page_count=page_count,
                    failures=failures,
                    report_date=report_date,
                ),
                strategy="minimal",
                attempts=0,
            )

        payload = ConsolidationPayload(records=tuple(record.to_prompt_dict() for record in records))
        await emitter.phase("pass3", "start", records=len(records))
        errors: list[str] = []

        async def on_attempt(index: int, strategy: AttemptStrategy[Any], error: BaseException | None) -> None:
            if error is None:
                await emitter.phase(
                    "pass3", "attempt", attempt=index + 1, strategy=strategy.name, model=strategy.model
                )
                if index > 0:
                    self.metrics.increment("consolidation_fallbacks_total", stage="pass3")
                return
            errors.append(f"{strategy.name}: {error.__class__.__name__}: {error}")
            await emitter.log(
                "warn",
                f"Consolidation attempt '{strategy.name}' failed",
                {"error_type": error.__class__.__name__, "model": strategy.model},
            )

        async def call(strategy: AttemptStrategy[Any], attempt_payload: ConsolidationPayload) -> str:
            user = prompts.CONSOLIDATE_USER.format(
                file_name=file_name,
                pages=page_count,
                report_date=report_date.isoformat(),
                note=prompts.COMPACTION_NOTE if attempt_payload.compacted else "",
                records=attempt_payload.serialise(),
            )
            return await self.llm.complete(
                model=strategy.model,
                system=prompts.CONSOLIDATE_SYSTEM,
                user=user,
                timeout=strategy.timeout,
            )

        try:
            outcome = await try_with_fallbacks(self.strategies(), payload, call, on_attempt=on_attempt)
        except ConsolidationError:
            raise
        except Exception as exc:  # noqa: BLE001 - last attempt's error becomes the cause
            raise ConsolidationError(f"All consolidation attempts failed; last error: {exc}") from exc

        report = outcome.value.strip()
        structured_log(
            LOG,
            logging.INFO,
            "pass3_complete",
            strategy=outcome.strategy.name,
            attempt=outcome.index + 1,
            chars=len(report),
        )
        await emitter.phase("pass3", "done", strategy=outcome.strategy.name, attempts=outcome.index + 1)
        return ConsolidationOutcome(
            report=report,
            strategy=outcome.strategy.name,
            attempts=outcome.index + 1,
            compacted=outcome.index > 0,
            errors=errors,
        )


__all__ = [
    "ConsolidationOutcome",
    "ConsolidationPayload",
    "Consolidator",
    "compact_record",
    "minimal_report",
    "utc_today",
]
