"""Object storage adapters.

``GCSObjectStore`` wraps one Cloud Storage bucket. The google client is
synchronous, so every call runs in a worker thread under ``asyncio.wait_for``.
Writes take the direct path first and, when that is refused or times out,
retry once through a short-lived v4 signed PUT URL. Only when both paths fail
does the caller see ``ObjectStoreWriteError``.

``InMemoryObjectStore`` backs tests and local dry runs.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Callable, TypeVar

import httpx
from google.api_core import exceptions as gexc
from google.cloud import storage  # type: ignore[attr-defined]

from dossier_ocr.errors import ObjectStoreWriteError, TransientUpstreamError
from dossier_ocr.services.interfaces import MetricsClient
from dossier_ocr.services.metrics import NullMetrics
from dossier_ocr.utils.logging_utils import structured_log

LOG = logging.getLogger("object_store")

T = TypeVar("T")


def split_gcs_uri(uri: str) -> tuple[str, str]:
    """``gs://bucket/path`` -> ``("bucket", "path")``."""
    if not uri.startswith("gs://"):
        raise ValueError(f"not a gs:// URI: {uri!r}")
    bucket, _, path = uri[len("gs://") :].partition("/")
    if not bucket:
        raise ValueError(f"gs:// URI has no bucket: {uri!r}")
    return bucket, path


class GCSObjectStore:
    def __init__(
        self,
        bucket: str,
        *,
        client: storage.Client | None = None,
        timeout: float = 180.0,
        signed_url_ttl: int = 300,
        http_client: httpx.AsyncClient | None = None,
        metrics: MetricsClient | None = None,
    ) -> None:
        self.bucket = bucket
        self._client = client or storage.Client()
        self._timeout = timeout
        self._signed_url_ttl = signed_url_ttl
        self._http_client = http_client
        self._metrics = metrics or NullMetrics()

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"GCSObjectStore(bucket={self.bucket!r})"

    async def _run(self, func: Callable[..., T], *args: Any, timeout: float | None = None, **kwargs: Any) -> T:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), timeout=timeout or self._timeout
        )

    async def bucket_exists(self) -> bool:
        bucket = self._client.bucket(self.bucket)
        try:
            return bool(await self._run(bucket.exists))
        except gexc.Forbidden:
            # Object-level permissions without bucket.get; let the probe write decide.
            structured_log(LOG, logging.WARNING, "bucket_exists_forbidden", bucket=self.bucket)
            return True
        except (gexc.GoogleAPICallError, asyncio.TimeoutError) as exc:
            raise TransientUpstreamError(f"Could not inspect bucket {self.bucket}: {exc}") from exc

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        blob = self._client.bucket(self.bucket).blob(key)
        try:
            await self._run(blob.upload_from_string, data, content_type=content_type)
        except (gexc.GoogleAPICallError, asyncio.TimeoutError, OSError) as direct_exc:
            structured_log(
                LOG,
                logging.WARNING,
                "object_put_direct_failed",
                bucket=self.bucket,
                key=key,
                error_type=direct_exc.__class__.__name__,
                fallback="signed_url",
            )
            self._metrics.increment("signed_url_fallbacks_total", stage="storage")
            try:
                await self._put_signed(blob, key, data, content_type)
            except Exception as signed_exc:  # noqa: BLE001 - both paths exhausted
                raise ObjectStoreWriteError(
                    f"Could not write gs://{self.bucket}/{key}: direct write failed "
                    f"({direct_exc.__class__.__name__}: {direct_exc}); signed URL write failed "
                    f"({signed_exc.__class__.__name__}: {signed_exc})",
                    may_exist=isinstance(direct_exc, asyncio.TimeoutError),
                ) from signed_exc
        structured_log(LOG, logging.INFO, "object_put", bucket=self.bucket, key=key, bytes=len(data))
        return f"gs://{self.bucket}/{key}"

    async def _put_signed(self, blob: Any, key: str, data: bytes, content_type: str) -> None:
        url = await self._run(
            blob.generate_signed_url,
            version="v4",
            expiration=timedelta(seconds=self._signed_url_ttl),
            method="PUT",
            content_type=content_type,
        )
        owns_client = self._http_client is None
        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.put(url, content=data, headers={"Content-Type": content_type})
            response.raise_for_status()
        finally:
            if owns_client:
                await client.aclose()
        structured_log(LOG, logging.INFO, "object_put_signed", bucket=self.bucket, key=key)

    async def get(self, key: str) -> bytes:
        blob = self._client.bucket(self.bucket).blob(key)
        try:
            return await self._run(blob.download_as_bytes)
        except (gexc.GoogleAPICallError, asyncio.TimeoutError) as exc:
            raise TransientUpstreamError(f"Could not read gs://{self.bucket}/{key}: {exc}") from exc

    async def list_keys(self, prefix: str) -> list[str]:
        def _list() -> list[str]:
            return [blob.name for blob in self._client.list_blobs(self.bucket, prefix=prefix)]

        try:
            return sorted(await self._run(_list))
        except (gexc.GoogleAPICallError, asyncio.TimeoutError) as exc:
            raise TransientUpstreamError(f"Could not list gs://{self.bucket}/{prefix}: {exc}") from exc

    async def delete(self, key: str) -> None:
        blob = self._client.bucket(self.bucket).blob(key)
        try:
            await self._run(blob.delete)
        except gexc.NotFound:
            return

    async def delete_prefix(self, prefix: str) -> int:
        keys = await self.list_keys(prefix)
        for key in keys:
            await self.delete(key)
        return len(keys)


class InMemoryObjectStore:
    """Dict-backed store with optional fault injection for tests."""

    def __init__(self, bucket: str = "memory", *, exists: bool = True) -> None:
        self.bucket = bucket
        self.exists = exists
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail_puts: set[str] = set()
        self.fail_deletes: set[str] = set()
        self.deleted: list[str] = []

    async def bucket_exists(self) -> bool:
        return self.exists

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        if key in self.fail_puts or any(key.endswith(suffix) for suffix in self.fail_puts):
            raise ObjectStoreWriteError(f"Could not write gs://{self.bucket}/{key}")
        self.objects[key] = (data, content_type)
        return f"gs://{self.bucket}/{key}"

    async def get(self, key: str) -> bytes:
        try:
            return self.objects[key][0]
        except KeyError as exc:
            raise TransientUpstreamError(f"gs://{self.bucket}/{key} not found") from exc

    async def list_keys(self, prefix: str) -> list[str]:
        return sorted(key for key in self.objects if key.startswith(prefix))

    async def delete(self, key: str) -> None:
        if key in self.fail_deletes:
            raise TransientUpstreamError(f"delete refused for gs://{self.bucket}/{key}")
        if self.objects.pop(key, None) is not None:
            self.deleted.append(key)

    async def delete_prefix(self, prefix: str) -> int:
        keys = await self.list_keys(prefix)
        for key in keys:
            await self.delete(key)
        return len(keys)


__all__ = ["GCSObjectStore", "InMemoryObjectStore", "split_gcs_uri"]
