from __future__ import annotations

from types import SimpleNamespace

import dossier_ocr.runtime_server as runtime_server


def test_worker_count_prefers_env(monkeypatch):
    monkeypatch.delenv("WEB_CONCURRENCY", raising=False)
    monkeypatch.setenv("UVICORN_WORKERS", "3")
    assert runtime_server._worker_count() == 3

    monkeypatch.setenv("UVICORN_WORKERS", "invalid")
    monkeypatch.setenv("WEB_CONCURRENCY", "2")
    assert runtime_server._worker_count() == 2


def test_worker_count_defaults_to_capped_cpu_count(monkeypatch):
    monkeypatch.delenv("UVICORN_WORKERS", raising=False)
    monkeypatch.delenv("WEB_CONCURRENCY", raising=False)
    monkeypatch.setattr(runtime_server.multiprocessing, "cpu_count", lambda: 16)
    assert runtime_server._worker_count() == runtime_server.MAX_DEFAULT_WORKERS
    monkeypatch.setattr(runtime_server.multiprocessing, "cpu_count", lambda: 1)
    assert runtime_server._worker_count() == 1


def test_main_invokes_uvicorn_with_app_factory(monkeypatch):
    monkeypatch.setattr(runtime_server, "_worker_count", lambda: 2)
    monkeypatch.setenv("PORT", "9090")
    monkeypatch.delenv("FASTAPI_APP", raising=False)
    recorded: dict[str, object] = {}

    def _fake_run(app, **kwargs):
        recorded.update(kwargs, app=app)

    monkeypatch.setattr(runtime_server, "uvicorn", SimpleNamespace(run=_fake_run))
    runtime_server.main()
    assert recorded["app"] == "dossier_ocr.main:create_app"
    assert recorded["factory"] is True
    assert recorded["port"] == 9090
    assert recorded["workers"] == 2
