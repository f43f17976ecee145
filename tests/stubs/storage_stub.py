"""In-memory stand-in for the google-cloud-storage client surface the object store uses."""

from __future__ import annotations

import time
from types import SimpleNamespace

from google.api_core import exceptions as gexc


class FakeBlob:
    def __init__(self, bucket: "FakeBucket", name: str) -> None:
        self._bucket = bucket
        self.name = name

    def upload_from_string(self, data: bytes, content_type: str | None = None) -> None:
        if self._bucket.upload_delay:
            time.sleep(self._bucket.upload_delay)
        if self._bucket.upload_error is not None:
            raise self._bucket.upload_error
        self._bucket.objects[self.name] = data

    def generate_signed_url(self, **kwargs) -> str:
        self._bucket.signed_requests.append(kwargs)
        return f"https://storage.example/{self._bucket.name}/{self.name}?X-Goog-Signature=abc"

    def download_as_bytes(self) -> bytes:
        try:
            return self._bucket.objects[self.name]
        except KeyError:
            raise gexc.NotFound(self.name) from None

    def delete(self) -> None:
        if self.name not in self._bucket.objects:
            raise gexc.NotFound(self.name)
        del self._bucket.objects[self.name]


class FakeBucket:
    def __init__(self, name: str) -> None:
        self.name = name
        self.objects: dict[str, bytes] = {}
        self.upload_error: Exception | None = None
        self.upload_delay = 0.0
        self.exists_result: bool | Exception = True
        self.signed_requests: list[dict] = []

    def exists(self) -> bool:
        if isinstance(self.exists_result, Exception):
            raise self.exists_result
        return self.exists_result

    def blob(self, name: str) -> FakeBlob:
        return FakeBlob(self, name)


class FakeStorageClient:
    def __init__(self) -> None:
        self.buckets: dict[str, FakeBucket] = {}

    def bucket(self, name: str) -> FakeBucket:
        return self.buckets.setdefault(name, FakeBucket(name))

    def list_blobs(self, bucket: str, prefix: str = ""):
        return [SimpleNamespace(name=key) for key in self.bucket(bucket).objects if key.startswith(prefix)]
