"""Download the source PDF for a job.

The direct URL is tried first. Hosts that block server-side downloads are
reached through the web app's document proxy
(``{EXTERNAL_PUBLIC_BASE_URL}/api/documents/proxy?url=...``) when a base URL is
configured.
"""

from __future__ import annotations

import logging

import httpx

from dossier_ocr.errors import BoundaryError, SourceFetchError
from dossier_ocr.utils.logging_utils import structured_log

LOG = logging.getLogger("source_fetcher")

USER_AGENT = "dossier-ocr/1.0 (+pdf-fetch)"
PROXY_PATH = "/api/documents/proxy"


class HttpSourceFetcher:
    def __init__(
        self,
        *,
        timeout: float = 120.0,
        proxy_base_url: str | None = None,
        max_bytes: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.proxy_base_url = (proxy_base_url or "").rstrip("/") or None
        self.max_bytes = max_bytes
        self._transport = transport

    async def fetch(self, url: str) -> bytes:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            transport=self._transport,
        ) as client:
            try:
                body = await self._get(client, url, params=None)
                structured_log(LOG, logging.INFO, "source_fetched", source="direct", bytes=len(body))
            except httpx.HTTPError as direct_exc:
                if not self.proxy_base_url:
                    raise SourceFetchError(f"Failed to download source document: {direct_exc}") from direct_exc
                structured_log(
                    LOG,
                    logging.WARNING,
                    "source_fetch_direct_failed",
                    error_type=direct_exc.__class__.__name__,
                    fallback="proxy",
                )
                try:
                    body = await self._get(client, f"{self.proxy_base_url}{PROXY_PATH}", params={"url": url})
                except httpx.HTTPError as proxy_exc:
                    raise SourceFetchError(
                        f"Failed to download source document directly ({direct_exc}) and via proxy ({proxy_exc})"
                    ) from proxy_exc
                structured_log(LOG, logging.INFO, "source_fetched", source="proxy", bytes=len(body))
        if not body:
            raise BoundaryError("Source document is empty")
        if self.max_bytes and len(body) > self.max_bytes:
            raise BoundaryError(
                f"Source document is {len(body)} bytes; the limit is {self.max_bytes} bytes"
            )
        return body

    @staticmethod
    async def _get(client: httpx.AsyncClient, url: str, params: dict[str, str] | None) -> bytes:
        response = await client.get(url, params=params)
        response.raise_for_status()
        return response.content


__all__ = ["HttpSourceFetcher", "PROXY_PATH", "USER_AGENT"]
