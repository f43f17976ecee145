from __future__ import annotations

import json

import pytest

from dossier_ocr.services.object_store import InMemoryObjectStore
from dossier_ocr.services.result_sink import ObjectStoreResultSink


def test_key_layout():
    sink = ObjectStoreResultSink(InMemoryObjectStore("out"), prefix="/results/")
    assert sink.key_for(job_id="job-1", user_id="u7") == "results/u7/job-1.json"


@pytest.mark.asyncio
async def test_save_result_writes_json():
    store = InMemoryObjectStore("out")
    sink = ObjectStoreResultSink(store, prefix="results")

    await sink.save_result(job_id="job-1", user_id="u7", payload={"fileName": "Akte.pdf", "totalPages": 3})

    body, content_type = store.objects["results/u7/job-1.json"]
    assert content_type == "application/json"
    assert json.loads(body) == {"fileName": "Akte.pdf", "totalPages": 3}
