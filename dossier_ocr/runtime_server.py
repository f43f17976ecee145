"""Process launcher for the dossier extraction API."""

from __future__ import annotations

import multiprocessing
import os

import uvicorn

# Each worker process runs its own pipeline and Pass 2 pool.
MAX_DEFAULT_WORKERS = 4


def _worker_count() -> int:
    for name in ("UVICORN_WORKERS", "WEB_CONCURRENCY"):
        explicit = os.getenv(name)
        if not explicit:
            continue
        try:
            value = int(explicit)
        except ValueError:
            continue
        if value > 0:
            return value
    cpu_total = multiprocessing.cpu_count() or 1
    return max(1, min(cpu_total, MAX_DEFAULT_WORKERS))


def main() -> None:
    workers = _worker_count()
    port = int(os.getenv("PORT", "8080"))
    app_path = os.getenv("FASTAPI_APP", "dossier_ocr.main:create_app")
    uvicorn.run(
        app_path,
        host="0.0.0.0",
        port=port,
        factory=True,
        workers=workers,
        lifespan="on",
        timeout_graceful_shutdown=30,
    )


if __name__ == "__main__":  # pragma: no cover - exercised in runtime
    main()
