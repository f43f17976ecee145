from __future__ import annotations

import pytest

from dossier_ocr.config import get_config
from dossier_ocr.services.object_store import InMemoryObjectStore


@pytest.fixture
def memory_stores() -> tuple[InMemoryObjectStore, InMemoryObjectStore]:
    return InMemoryObjectStore("in-bucket"), InMemoryObjectStore("out-bucket")


@pytest.fixture(autouse=True)
def _reset_config_cache():
    get_config.cache_clear()
    yield
    get_config.cache_clear()
