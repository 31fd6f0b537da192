"""
FastAPI routes for the video orchestrator.

Webhook Endpoints:
  POST /webhook/video              D-ID / Runway / custom completion callback

Job Endpoints (X-Worker-Secret):
  POST /jobs/{id}/script-ready     avatar hand-off after script generation
  POST /jobs/{id}/avatar           submit (or resubmit) the avatar video
  POST /jobs/{id}/cinematic        submit the cinematic video (long-polls)
  GET  /jobs/{id}                  video states as the UI shows them
  GET  /jobs/{id}/watch            sweep and re-read until the job settles

Ops Endpoints:
  GET  /reconcile                  sweep all pending videos (X-Worker-Secret)
  GET  /video-proxy                stream a finished video, refreshing dead links
"""

import secrets
import logging
from typing import Optional

import redis
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from starlette.concurrency import run_in_threadpool

from .. import fallback_limiter, metrics, rate_limiter
from .. import services
from ..config import Settings
from ..errors import InvalidTransitionError, JobNotFoundError, ProviderConfigError, TransientProviderError
from .models import AvatarSubmitRequest, CinematicSubmitRequest, JobView, SubmitResult, VideoKind
from .poll_trigger import PollSchedule, poll_until
from .proxy import VideoProxy
from .reconciler import Reconciler
from .states import job_view
from .submitter import Submitter
from .webhooks import InvalidWebhookError, WebhookReceiver

logger = logging.getLogger(__name__)

MAX_WATCH_INTERVAL = 60


def _enforce_submit_limit(provider: str, settings: Settings, r) -> None:
    """429 when the provider's submission window is full."""
    if r is not None:
        try:
            allowed, _, retry_after = rate_limiter.check_rate_limit(
                r, provider, settings.submit_rate_limit, settings.submit_rate_window_seconds
            )
        except redis.exceptions.RedisError as e:
            logger.warning(f"Redis rate limit check failed: {e}, using in-memory limiter")
            allowed, _, retry_after = fallback_limiter.check_rate_limit(provider)
    else:
        allowed, _, retry_after = fallback_limiter.check_rate_limit(provider)

    if not allowed:
        metrics.inc_counter(f"errors.rate_limited_{provider}")
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Try again in {retry_after}s.",
            headers={"Retry-After": str(retry_after)},
        )


def _start_provider_cooldown(provider: str, seconds: int, r) -> None:
    if r is not None:
        try:
            rate_limiter.start_cooldown(r, provider, seconds)
            return
        except redis.exceptions.RedisError as e:
            logger.warning(f"Redis cooldown write failed: {e}, using in-memory limiter")
    fallback_limiter.start_cooldown(provider, seconds)


def _run_submission(submit, job_id: str, provider: str, r) -> SubmitResult:
    try:
        return submit()
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderConfigError as e:
        logger.error(f"Submission for {job_id} misconfigured: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    except TransientProviderError as e:
        headers = None
        if e.retry_after:
            _start_provider_cooldown(provider, e.retry_after, r)
            headers = {"Retry-After": str(e.retry_after)}
        raise HTTPException(
            status_code=503,
            detail=f"{provider} is unavailable right now, the video was not submitted: {e}",
            headers=headers,
        )
    except Exception as e:
        logger.error(f"Submission for {job_id} failed: {e}", exc_info=True)
        metrics.record_error("submit", type(e).__name__, str(e), job_id)
        raise HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Webhook Router
# ═════════════════════════════════════════════════════════════════════════════

webhook_router = APIRouter(tags=["webhook"])


@webhook_router.post("/webhook/video")
async def video_webhook(
    request: Request,
    token: Optional[str] = Query(None),
    settings: Settings = Depends(services.get_settings),
    receiver: WebhookReceiver = Depends(services.get_webhook_receiver),
):
    """Provider completion callback. Non-terminal callbacks are acknowledged only."""
    metrics.inc_counter("requests.webhook")
    if settings.webhook_token and not secrets.compare_digest(token or "", settings.webhook_token):
        raise HTTPException(status_code=401, detail="Invalid webhook token")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be JSON")

    try:
        return await run_in_threadpool(receiver.handle, payload)
    except InvalidWebhookError as e:
        metrics.inc_counter("webhook.invalid")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        metrics.record_error("webhook", type(e).__name__, str(e))
        raise HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Job Router
# ═════════════════════════════════════════════════════════════════════════════

jobs_router = APIRouter(prefix="/jobs", tags=["jobs"])


@jobs_router.post("/{job_id}/script-ready")
def script_ready(job_id: str, submitter: Submitter = Depends(services.get_submitter)):
    try:
        moved = submitter.mark_script_ready(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "jobId": job_id, "updated": moved}


@jobs_router.post("/{job_id}/avatar", response_model=SubmitResult)
def submit_avatar(
    job_id: str,
    request: Optional[AvatarSubmitRequest] = None,
    settings: Settings = Depends(services.get_settings),
    r=Depends(services.get_redis),
    submitter: Submitter = Depends(services.get_submitter),
):
    """
    Create the talking-avatar video. Returns as soon as D-ID accepted it;
    the sweep or webhook fills in the URL.

    Errors: 404 unknown job, 409 already finished, 429 rate limited,
            503 D-ID unreachable (field left untouched)
    """
    metrics.inc_counter("requests.submit_avatar")
    _enforce_submit_limit("d-id", settings, r)
    script = request.script if request else None
    return _run_submission(lambda: submitter.submit_avatar(job_id, script=script), job_id, "d-id", r)


@jobs_router.post("/{job_id}/cinematic", response_model=SubmitResult)
def submit_cinematic(
    job_id: str,
    request: Optional[CinematicSubmitRequest] = None,
    settings: Settings = Depends(services.get_settings),
    r=Depends(services.get_redis),
    submitter: Submitter = Depends(services.get_submitter),
):
    """
    Create the cinematic video and wait for it (up to the long-poll budget).

    Errors: 404 unknown job, 409 already finished, 429 rate limited,
            503 too many long-polls in flight or Runway unreachable
    """
    metrics.inc_counter("requests.submit_cinematic")
    _enforce_submit_limit("runway", settings, r)
    request = request or CinematicSubmitRequest()

    def submit():
        return submitter.submit_cinematic(
            job_id, prompt=request.prompt, ratio=request.ratio, duration=request.duration
        )

    if r is not None:
        return _run_submission(submit, job_id, "runway", r)

    if not fallback_limiter.acquire_poll_slot(settings.max_concurrent_long_polls):
        raise HTTPException(
            status_code=503,
            detail=f"Server at capacity ({settings.max_concurrent_long_polls} cinematic renders). Try again shortly.",
        )
    metrics.set_gauge("active_long_polls", fallback_limiter.get_active_polls())
    try:
        return _run_submission(submit, job_id, "runway", r)
    finally:
        fallback_limiter.release_poll_slot()
        metrics.set_gauge("active_long_polls", fallback_limiter.get_active_polls())


@jobs_router.get("/{job_id}", response_model=JobView)
def get_job(job_id: str, store=Depends(services.get_store)):
    job = store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return job_view(job)


@jobs_router.get("/{job_id}/watch")
def watch_job(
    job_id: str,
    interval: Optional[float] = Query(None, ge=0),
    attempts: Optional[int] = Query(None, ge=1),
    settings: Settings = Depends(services.get_settings),
    store=Depends(services.get_store),
    reconciler: Reconciler = Depends(services.get_reconciler),
):
    """
    Client poll trigger: each tick runs a reconcile sweep, then re-reads the
    job, until every requested video is settled or the attempt budget is spent.
    """
    schedule = PollSchedule(
        interval=min(interval if interval is not None else settings.watch_interval_seconds, MAX_WATCH_INTERVAL),
        max_attempts=min(attempts or settings.watch_max_attempts, settings.watch_max_attempts),
    )

    def fetch():
        job = store.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        if job_view(job).terminal:
            return job_view(job)
        reconciler.sweep()
        return job_view(store.get(job_id))

    view, used, done = poll_until(fetch, lambda v: v.terminal, schedule)
    return {"job": view.model_dump(), "attempts": used, "done": done}


# ═════════════════════════════════════════════════════════════════════════════
# Ops Router
# ═════════════════════════════════════════════════════════════════════════════

ops_router = APIRouter(tags=["ops"])


@ops_router.get("/reconcile")
def reconcile(reconciler: Reconciler = Depends(services.get_reconciler)):
    """Sweep every pending video once."""
    metrics.inc_counter("requests.reconcile")
    try:
        report = reconciler.sweep()
    except Exception as e:
        logger.error(f"Reconcile failed: {e}", exc_info=True)
        metrics.record_error("reconcile", type(e).__name__, str(e))
        raise HTTPException(status_code=500, detail=str(e))
    return report.model_dump(by_alias=True, exclude_none=True)


@ops_router.get("/video-proxy")
async def video_proxy(
    url: str = Query(...),
    job_id: Optional[str] = Query(None, alias="jobId"),
    range_header: Optional[str] = Header(None, alias="Range"),
    proxy: VideoProxy = Depends(services.get_proxy),
):
    return await proxy.serve(url, job_id=job_id, range_header=range_header)
