from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from dossier_ocr.main import create_app
from dossier_ocr.models.events import decode_event_line
from tests.stubs.pipeline_stubs import ScriptedLLM, StubFetcher, StubOCR, build_pipeline, pages_text, record_json

_REQUIRED_ENV = (
    "GOOGLE_CLOUD_PROJECT_ID",
    "PROJECT_ID",
    "GCS_INPUT_BUCKET",
    "GCS_OUTPUT_BUCKET",
    "DOC_AI_PROCESSOR_ID",
    "OPENAI_API_KEY",
    "GOOGLE_CLOUD_CLIENT_EMAIL",
    "GOOGLE_CLOUD_PRIVATE_KEY",
)


def _events(body: str) -> list[dict]:
    return [decode_event_line(frame) for frame in body.split("\n\n") if frame.strip()]


def _client(monkeypatch, pipeline=None) -> TestClient:
    monkeypatch.setenv("ENABLE_METRICS", "false")
    return TestClient(create_app(pipeline=pipeline))


def _pipeline(**kwargs):
    llm = kwargs.pop("llm", None) or ScriptedLLM(extract=lambda user, **_: record_json("Incident", []))
    return build_pipeline(llm, StubOCR(pages_text(3)), **kwargs)


def test_process_streams_progress_then_result(monkeypatch):
    fetcher = StubFetcher()
    client = _client(monkeypatch, _pipeline(fetcher=fetcher))

    response = client.post(
        "/process",
        json={"sourceDocumentUrl": "https://files.example/akte.pdf", "fileName": "akte.pdf"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.text.startswith("data: ")
    events = _events(response.text)
    assert events[0] == {"step": "Uploading", "progress": 5, "message": "Preparing document"}
    assert "result" in events[-1]
    assert events[-1]["result"]["fileName"] == "akte.pdf"
    assert events[-1]["result"]["totalPages"] == 3
    assert sum(1 for event in events if "result" in event or event.get("error") is True) == 1
    assert fetcher.urls == ["https://files.example/akte.pdf"]


def test_pipeline_errors_arrive_as_one_error_event(monkeypatch):
    client = _client(monkeypatch, _pipeline(fetcher=StubFetcher(body=b"not a pdf")))

    response = client.post(
        "/process", json={"pdfUrl": "https://files.example/akte.pdf", "fileName": "akte.pdf"}
    )

    events = _events(response.text)
    assert events[-1] == {
        "step": "Error",
        "progress": 0,
        "message": "Source document is not a PDF",
        "error": True,
        "errorType": "BoundaryError",
    }
    assert not any("result" in event for event in events)


def test_storage_uri_alias_is_accepted(monkeypatch):
    fetcher = StubFetcher()
    client = _client(monkeypatch, _pipeline(fetcher=fetcher))

    response = client.post(
        "/process", json={"gcsUri": "gs://in-bucket/users/u1/akte.pdf", "file_name": "akte.pdf"}
    )

    assert "result" in _events(response.text)[-1]
    assert fetcher.urls == []


@pytest.mark.parametrize(
    "payload",
    [
        {"fileName": "akte.pdf"},
        {"sourceDocumentUrl": "https://files.example/akte.pdf"},
        {"storageUri": "https://bucket/akte.pdf", "fileName": "akte.pdf"},
        {"sourceDocumentUrl": "https://files.example/akte.pdf", "fileName": "   "},
    ],
)
def test_invalid_requests_are_rejected(monkeypatch, payload):
    client = _client(monkeypatch, _pipeline())
    response = client.post("/process", json=payload)
    assert response.status_code == 422


def test_missing_configuration_yields_single_error_event(monkeypatch):
    for name in _REQUIRED_ENV:
        monkeypatch.delenv(name, raising=False)
    client = _client(monkeypatch)

    response = client.post(
        "/process",
        json={"sourceDocumentUrl": "https://files.example/akte.pdf", "fileName": "akte.pdf"},
    )

    assert response.status_code == 200
    (event,) = _events(response.text)
    assert event["error"] is True
    assert event["errorType"] == "ConfigurationError"
    assert "OPENAI_API_KEY" in event["message"]


@pytest.mark.parametrize("path", ["/healthz", "/health", "/readyz"])
def test_health_endpoints(monkeypatch, path):
    client = _client(monkeypatch, _pipeline())
    response = client.get(path)
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_metrics_route_only_when_enabled(monkeypatch):
    assert _client(monkeypatch, _pipeline()).get("/metrics").status_code == 404

    monkeypatch.setenv("ENABLE_METRICS", "true")
    response = TestClient(create_app(pipeline=_pipeline())).get("/metrics")
    assert response.status_code == 200
    assert "dossier_pipeline_events_total" in response.text
