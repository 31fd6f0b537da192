from promo_worker import fallback_limiter
from promo_worker.errors import ProviderConfigError, ProviderRejectedError, TransientProviderError

from conftest import ago


AVATAR_URL = "https://d-id-talks-prod.s3.us-west-2.amazonaws.com/tlk_1/video.mp4"


def test_health_check(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["did_api_key_set"] is True


def test_metrics_snapshot(client):
    client.get("/reconcile")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.json()["counters"]["requests.reconcile"] == 1


# ── Jobs ─────────────────────────────────────────────────────────────────────

def test_get_job_view(client, store):
    store.add("j1", status="generating", avatar_video_url="failed:moderation", cinematic_video_url="pending:t1")

    resp = client.get("/jobs/j1")

    assert resp.status_code == 200
    body = resp.json()
    assert body["avatar"]["state"] == "failed"
    assert body["avatar"]["reason"] == "moderation"
    assert body["cinematic"]["state"] == "processing"
    assert body["terminal"] is False


def test_get_job_not_found(client):
    assert client.get("/jobs/nope").status_code == 404


def test_script_ready(client, store):
    store.add("j1")
    resp = client.post("/jobs/j1/script-ready")
    assert resp.json() == {"success": True, "jobId": "j1", "updated": True}
    assert store.value("j1", "avatar_video_url") == "script_ready"


def test_submit_avatar(client, store, did):
    store.add("j1", avatar_script="Fresh bread every morning at our bakery.", avatar_video_url="script_ready")
    did.create_talk.return_value = {"id": "tlk_9"}

    resp = client.post("/jobs/j1/avatar", json={})

    assert resp.status_code == 200
    assert resp.json()["external_id"] == "tlk_9"
    assert store.value("j1", "avatar_video_url") == "pending:tlk_9"


def test_submit_avatar_without_body(client, store, did):
    store.add("j1", avatar_script="Fresh bread every morning at our bakery.")
    did.create_talk.return_value = {"id": "tlk_9"}

    assert client.post("/jobs/j1/avatar").status_code == 200


def test_submit_avatar_conflict(client, store, did):
    store.add("j1", avatar_script="Fresh bread every morning.", avatar_video_url=AVATAR_URL)

    resp = client.post("/jobs/j1/avatar", json={})

    assert resp.status_code == 409
    did.create_talk.assert_not_called()


def test_submit_avatar_missing_job(client):
    assert client.post("/jobs/nope/avatar", json={}).status_code == 404


def test_submit_avatar_misconfigured(client, store, did):
    store.add("j1", avatar_script="Fresh bread every morning.")
    did.create_talk.side_effect = ProviderConfigError("d-id", "DID_API_KEY not set")

    assert client.post("/jobs/j1/avatar", json={}).status_code == 503


def test_submit_avatar_provider_unreachable(client, store, did):
    store.add("j1", avatar_script="Fresh bread every morning.", avatar_video_url="script_ready")
    did.create_talk.side_effect = TransientProviderError(
        "d-id", "network error calling /talks: Max retries exceeded with url: /talks"
    )

    resp = client.post("/jobs/j1/avatar", json={})

    assert resp.status_code == 503
    assert "retry-after" not in resp.headers
    assert store.value("j1", "avatar_video_url") == "script_ready"
    assert did.create_talk.call_count == 4


def test_provider_retry_after_pauses_submissions(client, store, did):
    store.add("j1", avatar_script="Fresh bread every morning.")
    did.create_talk.side_effect = TransientProviderError("d-id", "slow down", 429, retry_after=30)

    resp = client.post("/jobs/j1/avatar", json={})

    assert resp.status_code == 503
    assert resp.headers["retry-after"] == "30"

    again = client.post("/jobs/j1/avatar", json={})

    assert again.status_code == 429
    assert 0 < int(again.headers["retry-after"]) <= 31
    assert did.create_talk.call_count == 4


def test_submit_failure_is_reported_not_raised(client, store, did):
    store.add("j1", avatar_script="Fresh bread every morning.")
    did.create_talk.side_effect = ProviderRejectedError("d-id", "bad", 400)

    resp = client.post("/jobs/j1/avatar", json={})

    assert resp.status_code == 200
    assert resp.json()["ok"] is False
    assert resp.json()["status"] == "failed"


def test_submit_cinematic(client, store, runway):
    store.add("j1", image_url="https://img/x.png", cinematic_script="Pan across the counter")
    runway.create_image_to_video.return_value = {"id": "task_1"}
    runway.wait_for_task.return_value = {"id": "task_1", "status": "SUCCEEDED", "output": ["https://r/1.mp4"]}

    resp = client.post("/jobs/j1/cinematic", json={"ratio": "16:9"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "complete"
    assert fallback_limiter.get_active_polls() == 0


def test_submit_cinematic_rejected_poll_keeps_marker(client, store, runway):
    store.add("j1", image_url="https://img/x.png", cinematic_script="Pan across the counter")
    runway.create_image_to_video.return_value = {"id": "task_1"}
    runway.wait_for_task.side_effect = ProviderRejectedError("runway", "Task not found", 404)

    resp = client.post("/jobs/j1/cinematic", json={})

    assert resp.status_code == 200
    assert resp.json()["status"] == "pending"
    assert store.value("j1", "cinematic_video_url") == "pending:task_1"
    assert fallback_limiter.get_active_polls() == 0


def test_cinematic_at_capacity(client, store, settings):
    store.add("j1", image_url="https://img/x.png", cinematic_script="Pan")
    for _ in range(settings.max_concurrent_long_polls):
        fallback_limiter.acquire_poll_slot(settings.max_concurrent_long_polls)

    resp = client.post("/jobs/j1/cinematic", json={})

    assert resp.status_code == 503


def test_submissions_rate_limited(client, store, did, settings):
    store.add("j1", avatar_script="Fresh bread every morning.")
    did.create_talk.return_value = {"id": "tlk_9"}
    for _ in range(fallback_limiter.FALLBACK_MAX_REQUESTS):
        fallback_limiter.check_rate_limit("d-id")

    resp = client.post("/jobs/j1/avatar", json={})

    assert resp.status_code == 429
    assert int(resp.headers["retry-after"]) > 0


def test_watch_returns_when_settled(client, store):
    store.add("j1", status="complete", avatar_video_url=AVATAR_URL)

    resp = client.get("/jobs/j1/watch", params={"interval": 0, "attempts": 3})

    body = resp.json()
    assert body["done"] is True
    assert body["attempts"] == 1
    assert body["job"]["avatar"]["url"] == AVATAR_URL


def test_watch_gives_up(client, store, did):
    store.add("j1", status="generating", avatar_video_url="pending:tlk_1")
    did.get_talk.return_value = {"status": "started"}

    body = client.get("/jobs/j1/watch", params={"interval": 0, "attempts": 2}).json()

    assert body["done"] is False
    assert body["attempts"] == 2
    assert did.get_talk.call_count == 2


def test_watch_sweeps_until_settled(client, store, did):
    store.add("j1", status="generating", avatar_video_url="pending:tlk_1")
    did.get_talk.return_value = {"status": "done", "result_url": AVATAR_URL}

    body = client.get("/jobs/j1/watch", params={"interval": 0, "attempts": 3}).json()

    assert body["done"] is True
    assert body["attempts"] == 1
    assert body["job"]["avatar"]["url"] == AVATAR_URL
    assert store.value("j1", "avatar_video_url") == AVATAR_URL
    assert store.value("j1", "status") == "complete"
    did.get_talk.assert_called_once_with("tlk_1")


def test_watch_unknown_job(client, did):
    assert client.get("/jobs/nope/watch", params={"interval": 0, "attempts": 1}).status_code == 404
    did.get_talk.assert_not_called()


# ── Reconcile / webhook ─────────────────────────────────────────────────────

def test_reconcile_response_shape(client, store, did):
    store.add("j1", status="generating", avatar_video_url="pending:x1")
    store.add("j2", status="generating", avatar_video_url="pending:x2", avatar_submitted_at=ago(700))
    did.get_talk.return_value = {"status": "done", "result_url": AVATAR_URL}

    body = client.get("/reconcile").json()

    assert body["success"] is True
    assert body["checked"] == 2
    assert body["updated"] == 1
    assert body["timedOut"] == 1
    by_job = {item["jobId"]: item for item in body["results"]}
    assert by_job["j1"]["videoUrl"] == AVATAR_URL
    assert by_job["j1"]["type"] == "avatar"
    assert by_job["j2"]["status"] == "timeout"


def test_webhook_endpoint(client, store):
    store.add("j1", status="generating", avatar_video_url="pending:tlk_1")

    resp = client.post("/webhook/video", json={"id": "tlk_1", "status": "done", "result_url": AVATAR_URL})

    assert resp.status_code == 200
    assert resp.json()["status"] == "updated"


def test_webhook_invalid_shape(client):
    assert client.post("/webhook/video", json={"foo": "bar"}).status_code == 400
    assert client.post("/webhook/video", content=b"not json").status_code == 400


def test_webhook_token(client, store, settings):
    settings.webhook_token = "s3cret"
    store.add("j1", avatar_video_url="pending:tlk_1")
    payload = {"id": "tlk_1", "status": "started"}

    assert client.post("/webhook/video", json=payload).status_code == 401
    assert client.post("/webhook/video?token=wrong", json=payload).status_code == 401
    assert client.post("/webhook/video?token=s3cret", json=payload).status_code == 200


# ── Auth ─────────────────────────────────────────────────────────────────────

def test_worker_secret_required(client, settings, store):
    settings.worker_shared_secret = "shh"
    store.add("j1")

    assert client.get("/jobs/j1").status_code == 401
    assert client.get("/reconcile").status_code == 401
    assert client.get("/jobs/j1", headers={"X-Worker-Secret": "shh"}).status_code == 200
    assert client.get("/health").status_code == 200


def test_production_requires_secret(client, settings):
    settings.environment = "production"
    assert client.get("/reconcile").status_code == 500
