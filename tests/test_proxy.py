import httpx
import pytest

from promo_worker import services
from promo_worker.errors import TransientProviderError
from promo_worker.main import app
from promo_worker.pipeline.proxy import VideoProxy


STALE = "https://d-id-talks-prod.s3.us-west-2.amazonaws.com/tlk_123/video.mp4"
FRESH = "https://d-id-talks-prod.s3.us-west-2.amazonaws.com/tlk_123/video2.mp4"
OTHER = "https://cdn.runwayml.com/out/task_1.mp4"


@pytest.fixture
def upstream():
    """url → (status, body). Requests for unknown URLs raise a connect error."""
    return {}


@pytest.fixture
def proxy_client(client, store, settings, did, upstream):
    seen = []

    def handler(request: httpx.Request):
        url = str(request.url)
        seen.append((url, request.headers.get("range")))
        if url not in upstream:
            raise httpx.ConnectError("connection refused", request=request)
        status, body = upstream[url]
        return httpx.Response(status, content=body, headers={"content-type": "video/mp4"})

    transport = httpx.MockTransport(handler)
    app.dependency_overrides[services.get_proxy] = lambda: VideoProxy(store, settings, did, transport=transport)
    client.seen = seen
    return client


def test_streams_video(proxy_client, upstream):
    upstream[OTHER] = (200, b"cinematic-bytes")

    resp = proxy_client.get("/video-proxy", params={"url": OTHER})

    assert resp.status_code == 200
    assert resp.content == b"cinematic-bytes"
    assert resp.headers["content-type"] == "video/mp4"
    assert resp.headers["content-disposition"] == "inline"
    assert resp.headers["cache-control"] == "public, max-age=3600"
    assert "x-video-refreshed" not in resp.headers


def test_forwards_range_header(proxy_client, upstream):
    upstream[OTHER] = (206, b"part")

    resp = proxy_client.get("/video-proxy", params={"url": OTHER}, headers={"Range": "bytes=0-3"})

    assert resp.status_code == 206
    assert proxy_client.seen == [(OTHER, "bytes=0-3")]


def test_expired_link_is_refreshed(proxy_client, upstream, store, did):
    store.add("j1", status="complete", avatar_video_url=STALE)
    upstream[STALE] = (403, b"AccessDenied")
    upstream[FRESH] = (200, b"fresh-bytes")
    did.refresh_result_url.return_value = FRESH

    resp = proxy_client.get("/video-proxy", params={"url": STALE, "jobId": "j1"})

    assert resp.status_code == 200
    assert resp.content == b"fresh-bytes"
    assert resp.headers["x-video-refreshed"] == "true"
    did.refresh_result_url.assert_called_once_with("tlk_123")
    assert store.value("j1", "avatar_video_url") == FRESH


def test_refresh_without_job_id_does_not_write(proxy_client, upstream, store, did):
    upstream[STALE] = (410, b"")
    upstream[FRESH] = (200, b"fresh-bytes")
    did.refresh_result_url.return_value = FRESH

    resp = proxy_client.get("/video-proxy", params={"url": STALE})

    assert resp.status_code == 200
    assert store.writes == []


def test_unrefreshable_link_marked_expired(proxy_client, upstream, store, did):
    store.add("j1", status="complete", avatar_video_url=STALE)
    upstream[STALE] = (403, b"")
    did.refresh_result_url.return_value = None

    resp = proxy_client.get("/video-proxy", params={"url": STALE, "jobId": "j1"})

    assert resp.status_code == 410
    assert resp.json()["reason"] == "video_not_found"
    assert store.value("j1", "avatar_video_url") == "expired:video_not_found"
    assert store.value("j1", "status") == "complete"


def test_refresh_error_marked_expired(proxy_client, upstream, store, did):
    store.add("j1", status="complete", avatar_video_url=STALE)
    upstream[STALE] = (401, b"")
    did.refresh_result_url.side_effect = TransientProviderError("d-id", "down")

    resp = proxy_client.get("/video-proxy", params={"url": STALE, "jobId": "j1"})

    assert resp.status_code == 410
    assert store.value("j1", "avatar_video_url") == "expired:video_not_found"


def test_refreshed_link_also_dead(proxy_client, upstream, store, did):
    store.add("j1", status="complete", avatar_video_url=STALE)
    upstream[STALE] = (403, b"")
    upstream[FRESH] = (403, b"")
    did.refresh_result_url.return_value = FRESH

    resp = proxy_client.get("/video-proxy", params={"url": STALE, "jobId": "j1"})

    assert resp.status_code == 410
    assert store.value("j1", "avatar_video_url") == "expired:video_not_found"


def test_non_avatar_host_is_not_refreshed(proxy_client, upstream, did):
    upstream[OTHER] = (403, b"")

    resp = proxy_client.get("/video-proxy", params={"url": OTHER})

    assert resp.status_code == 403
    assert resp.json()["status"] == 403
    did.refresh_result_url.assert_not_called()


def test_upstream_server_error_passed_through(proxy_client, upstream):
    upstream[OTHER] = (500, b"oops")

    resp = proxy_client.get("/video-proxy", params={"url": OTHER})

    assert resp.status_code == 500


def test_transport_failure_is_502(proxy_client):
    resp = proxy_client.get("/video-proxy", params={"url": "https://unreachable.example.com/v.mp4"})
    assert resp.status_code == 502


def test_rejects_non_http_url(proxy_client):
    resp = proxy_client.get("/video-proxy", params={"url": "file:///etc/passwd"})
    assert resp.status_code == 400
