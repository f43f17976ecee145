"""FastAPI application entrypoint for the dossier extraction service."""

from __future__ import annotations

import logging
import os
import sys

from fastapi import FastAPI

from dossier_ocr.api import build_api_router
from dossier_ocr.config import get_config
from dossier_ocr.logging_setup import configure_logging
from dossier_ocr.services.metrics import NullMetrics, PrometheusMetrics
from dossier_ocr.services.pipeline import ExtractionPipeline
from dossier_ocr.utils.logging_utils import structured_log

DEBUG_ENABLED = any(arg == "--debug" for arg in sys.argv) or os.getenv(
    "DEBUG", "false"
).strip().lower() in {"1", "true", "yes", "on"}
LOG_LEVEL = logging.DEBUG if DEBUG_ENABLED else logging.INFO

_API_LOG = logging.getLogger("api")


def _metrics_enabled(default: bool) -> bool:
    raw = os.getenv("ENABLE_METRICS")
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _health_payload() -> dict[str, str]:
    return {"status": "ok"}


def create_app(pipeline: ExtractionPipeline | None = None) -> FastAPI:
    """Build the app; ``pipeline`` is injected by tests, otherwise built on first use."""
    configure_logging(level=LOG_LEVEL)
    get_config.cache_clear()
    cfg = get_config()

    app = FastAPI(title="Dossier OCR Extraction API", version="1.0.0")
    app.state.config = cfg
    if _metrics_enabled(True):
        app.state.metrics = PrometheusMetrics.instrument_app(app)
    else:
        app.state.metrics = NullMetrics()
    app.state.pipeline = pipeline

    @app.get("/healthz", summary="Healthz")
    async def healthz():
        return _health_payload()

    @app.get("/health", include_in_schema=False)
    async def health_alias():
        return _health_payload()

    @app.get("/readyz", include_in_schema=False)
    async def readyz():
        return _health_payload()

    app.include_router(build_api_router())

    @app.on_event("shutdown")
    async def _drain_result_writes():  # pragma: no cover - runs on server shutdown
        if app.state.pipeline is not None:
            await app.state.pipeline.drain_background()

    structured_log(
        _API_LOG,
        logging.INFO,
        "service_bootstrap",
        component="api",
        workers=cfg.worker_count,
        model=cfg.consolidate_model,
    )
    return app


__all__ = ["create_app"]
