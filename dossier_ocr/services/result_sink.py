"""Persistence of finished job results for the user-facing application."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from dossier_ocr.services.interfaces import ObjectStore
from dossier_ocr.utils.logging_utils import structured_log

LOG = logging.getLogger("result_sink")

class ObjectStoreResultSink:
    """Writes ``<prefix>/<user_id>/<job_id>.json`` to the given store."""

    def __init__(self, store: ObjectStore, *, prefix: str) -> None:
        self.store = store
        self.prefix = prefix.strip("/")

    def key_for(self, *, job_id: str, user_id: str) -> str:
        return f"{self.prefix}/{user_id}/{job_id}.json"

    async def save_result(self, *, job_id: str, user_id: str, payload: Mapping[str, Any]) -> None:
        key = self.key_for(job_id=job_id, user_id=user_id)
        body = json.dumps(dict(payload), ensure_ascii=False).encode("utf-8")
        await self.store.put(key, body, "application/json")
        structured_log(LOG, logging.INFO, "result_saved", bucket=self.store.bucket, key=key)


__all__ = ["ObjectStoreResultSink"]
