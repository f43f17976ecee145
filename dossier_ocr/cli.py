"""Run one dossier job from the command line.

Every progress event is printed as one JSON line on stdout. The exit status is
0 when the job ends with a ``result`` event, 1 when it ends with ``error`` and
2 when the configuration is incomplete.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Iterable, Optional, TextIO

from dossier_ocr.config import get_config
from dossier_ocr.errors import ConfigurationError
from dossier_ocr.logging_setup import configure_logging
from dossier_ocr.models.events import ErrorEvent
from dossier_ocr.models.job import JobRequest
from dossier_ocr.services.pipeline import ExtractionPipeline, build_pipeline
from dossier_ocr.services.progress import ProgressEmitter
from dossier_ocr.startup import build_google_credentials


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Extract a structured report from a scanned dossier PDF."
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--url", help="HTTP(S) URL of the source PDF.")
    source.add_argument("--gcs-uri", help="gs://bucket/object of an already stored PDF.")
    parser.add_argument("--file-name", required=True, help="Display file name for the report.")
    parser.add_argument("--user-id", help="Persist the result for this user when a sink is configured.")
    parser.add_argument("--debug", action="store_true", help="Verbose logging on stderr.")
    return parser


async def run_job(
    pipeline: ExtractionPipeline,
    job_request: JobRequest,
    *,
    out: TextIO,
    queue_size: int = 256,
) -> int:
    emitter = ProgressEmitter(maxsize=queue_size)
    task = asyncio.create_task(pipeline.run(job_request, emitter))
    async for event in emitter.events():
        payload = event.to_payload()
        out.write(json.dumps(payload, ensure_ascii=False) + "\n")
        out.flush()
    await task
    await pipeline.drain_background()
    return 1 if isinstance(emitter.terminal_event, ErrorEvent) else 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = _parser().parse_args(list(argv) if argv is not None else None)
    configure_logging(level=logging.DEBUG if args.debug else logging.WARNING, stream=sys.stderr)
    cfg = get_config()
    try:
        pipeline = build_pipeline(cfg, credentials=build_google_credentials(cfg))
    except ConfigurationError as exc:
        error = ErrorEvent(message=str(exc), error_type=exc.__class__.__name__)
        sys.stdout.write(json.dumps(error.to_payload()) + "\n")
        return 2
    job_request = JobRequest(
        file_name=args.file_name,
        source_document_url=args.url,
        storage_uri=args.gcs_uri,
        user_id=args.user_id,
    )
    return asyncio.run(
        run_job(pipeline, job_request, out=sys.stdout, queue_size=cfg.progress_queue_size)
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())


__all__ = ["main", "run_job"]
