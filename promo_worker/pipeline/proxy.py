"""
Result proxy.

Streams a finished video to the browser so players never hit the provider
directly. D-ID result links are pre-signed and expire; when one comes back
401/403/410 the talk is re-read for a fresh link, the job is updated and
the fetch is retried once. A link that cannot be refreshed is marked
``expired:video_not_found`` and answered with 410.
"""

import logging
from typing import Optional

import httpx
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from .. import metrics
from ..config import Settings
from ..did import DIDClient, extract_talk_id, is_result_url
from ..errors import ProviderError, message_for_reason
from .models import VideoKind
from .states import is_success, make_expired

logger = logging.getLogger(__name__)

EXPIRED_STATUS_CODES = {401, 403, 410}
PASSTHROUGH_HEADERS = ("content-length", "content-range", "accept-ranges", "last-modified", "etag")


class VideoProxy:
    def __init__(
        self,
        store,
        settings: Settings,
        did: DIDClient,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.settings = settings
        self.did = did
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self.transport,
            timeout=self.settings.proxy_request_timeout,
            follow_redirects=True,
        )

    async def serve(self, url: str, job_id: Optional[str] = None, range_header: Optional[str] = None):
        metrics.inc_counter("requests.video_proxy")
        if not is_success(url):
            return JSONResponse({"error": "url must be an http(s) URL"}, status_code=400)

        client = self._client()
        try:
            resp = await self._open(client, url, range_header)
            if resp.status_code < 400:
                return self._stream(client, resp, refreshed=False)
            await resp.aclose()

            if resp.status_code in EXPIRED_STATUS_CODES and is_result_url(url, self.settings.avatar_result_hosts):
                logger.info(f"Proxy: upstream {resp.status_code} for avatar link, refreshing")
                return await self._refresh_and_retry(client, url, job_id, range_header)

            logger.warning(f"Proxy: upstream returned {resp.status_code} for {url[:80]}")
            metrics.inc_counter("errors.proxy_upstream")
            await client.aclose()
            return JSONResponse(
                {"error": f"Upstream returned {resp.status_code}", "status": resp.status_code},
                status_code=resp.status_code,
            )
        except httpx.HTTPError as e:
            logger.error(f"Proxy: fetch failed for {url[:80]}: {e}")
            metrics.inc_counter("errors.proxy_fetch")
            await client.aclose()
            return JSONResponse({"error": "Failed to fetch video", "details": str(e)}, status_code=502)

    async def _open(self, client: httpx.AsyncClient, url: str, range_header: Optional[str]) -> httpx.Response:
        headers = {"Range": range_header} if range_header else {}
        request = client.build_request("GET", url, headers=headers)
        return await client.send(request, stream=True)

    def _stream(self, client: httpx.AsyncClient, resp: httpx.Response, refreshed: bool) -> StreamingResponse:
        async def body():
            try:
                async for chunk in resp.aiter_bytes():
                    yield chunk
            finally:
                await resp.aclose()
                await client.aclose()

        headers = {
            "Content-Disposition": "inline",
            "Cache-Control": "public, max-age=3600",
        }
        for name in PASSTHROUGH_HEADERS:
            if name in resp.headers:
                headers[name] = resp.headers[name]
        if refreshed:
            headers["X-Video-Refreshed"] = "true"
            metrics.inc_counter("proxy.refreshed")

        return StreamingResponse(
            body(),
            status_code=resp.status_code,
            media_type=resp.headers.get("content-type", "video/mp4"),
            headers=headers,
        )

    async def _refresh_and_retry(
        self,
        client: httpx.AsyncClient,
        url: str,
        job_id: Optional[str],
        range_header: Optional[str],
    ):
        field = VideoKind.AVATAR.field
        stored = url
        fresh = None

        talk_id = extract_talk_id(url)
        if talk_id:
            try:
                fresh = await run_in_threadpool(self.did.refresh_result_url, talk_id)
            except ProviderError as e:
                logger.warning(f"Proxy: refresh for {talk_id} failed: {e}")
        else:
            logger.warning(f"Proxy: no talk id in {url[:80]}")

        if fresh:
            if job_id and await run_in_threadpool(self.store.update_if, job_id, field, url, fresh):
                stored = fresh
                await run_in_threadpool(self.store.log_step, job_id, "avatar_url_refreshed", {"talkId": talk_id})

            resp = await self._open(client, fresh, range_header)
            if resp.status_code < 400:
                return self._stream(client, resp, refreshed=True)
            await resp.aclose()
            logger.warning(f"Proxy: refreshed link for {talk_id} also returned {resp.status_code}")

        await client.aclose()
        if job_id:
            expired = make_expired("video_not_found")
            if await run_in_threadpool(self.store.update_if, job_id, field, stored, expired):
                await run_in_threadpool(self.store.log_step, job_id, "avatar_expired", {"talkId": talk_id})
        metrics.inc_counter("proxy.expired")

        return JSONResponse(
            {
                "error": "Video link has expired",
                "reason": "video_not_found",
                "message": message_for_reason("video_not_found"),
            },
            status_code=410,
        )
