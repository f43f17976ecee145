"""Best-effort deletion of everything a job wrote to storage.

Only targets registered on the ``JobContext`` are touched, each under its own
timeout. Failures are logged and swallowed. Released targets are remembered
on the context, so a second run for the same job only retries what is still
pending and never raises.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Mapping

from dossier_ocr.errors import CleanupError
from dossier_ocr.models.job import CleanupTarget, JobContext
from dossier_ocr.services.interfaces import MetricsClient, ObjectStore
from dossier_ocr.services.metrics import NullMetrics
from dossier_ocr.utils.logging_utils import structured_log

LOG = logging.getLogger("cleanup")


@dataclass(slots=True)
class CleanupReport:
    released: list[CleanupTarget] = field(default_factory=list)
    failed: list[tuple[CleanupTarget, str]] = field(default_factory=list)


class Cleaner:
    def __init__(
        self,
        stores: Mapping[str, ObjectStore],
        *,
        timeout: float = 10.0,
        metrics: MetricsClient | None = None,
    ) -> None:
        self.stores = dict(stores)
        self.timeout = timeout
        self.metrics = metrics or NullMetrics()

    async def run(self, ctx: JobContext) -> CleanupReport:
        ctx.cleanup_runs += 1
        report = CleanupReport()
        pending = ctx.pending_targets()
        structured_log(LOG, logging.INFO, "cleanup_start", targets=len(pending), attempt=ctx.cleanup_runs)
        for target in pending:
            try:
                await asyncio.wait_for(self._release(target), timeout=self.timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - cleanup never propagates
                error = CleanupError(f"{target.uri}: {exc.__class__.__name__}: {exc}")
                report.failed.append((target, str(error)))
                self.metrics.increment("cleanup_failures_total", stage="cleanup")
                structured_log(
                    LOG,
                    logging.WARNING,
                    "cleanup_target_failed",
                    bucket=target.bucket,
                    path=target.path,
                    error_type=exc.__class__.__name__,
                )
                continue
            ctx.mark_released(target)
            report.released.append(target)
        structured_log(
            LOG,
            logging.INFO,
            "cleanup_complete",
            targets=len(report.released),
            failed=len(report.failed),
        )
        return report

    async def _release(self, target: CleanupTarget) -> None:
        store = self.stores.get(target.bucket)
        if store is None:
            raise CleanupError(f"no object store configured for bucket {target.bucket}")
        if target.kind == "prefix":
            await store.delete_prefix(target.path)
        else:
            await store.delete(target.path)


__all__ = ["Cleaner", "CleanupReport"]
