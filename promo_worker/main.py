"""
Promo video worker.

FastAPI service that drives avatar (D-ID) and cinematic (Runway) videos for
a job from submission to a terminal state, via webhooks, an on-demand /
background sweep and a link-refreshing video proxy.

Run:  uvicorn promo_worker.main:app --port 8080
"""

import os
import time
import logging
import uvicorn
from contextlib import asynccontextmanager
from fastapi import FastAPI
from dotenv import load_dotenv

from . import fallback_limiter
from . import metrics
from . import services
from .auth_middleware import WorkerAuthMiddleware
from .pipeline.poll_trigger import Sweeper
from .pipeline.routes import jobs_router, ops_router, webhook_router

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _background_sweep():
    services.get_reconciler().sweep()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())
    settings = services.get_settings()

    sweeper = None
    if settings.sweep_interval_seconds > 0:
        sweeper = Sweeper(_background_sweep, settings.sweep_interval_seconds)
        sweeper.start()
    else:
        logger.info("Background sweep disabled; relying on GET /reconcile and webhooks")

    if services.get_redis() is None:
        logger.info("No Redis, using in-memory submission limiter + long-poll guard")
    yield
    if sweeper is not None:
        sweeper.stop()
    logger.info("Worker shutting down...")


app = FastAPI(lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)
app.include_router(webhook_router)
app.include_router(jobs_router)
app.include_router(ops_router)


@app.get("/health")
def health_check():
    """Verify worker is running and env vars are configured."""
    settings = services.get_settings()
    return {
        "status": "ok",
        "supabase_url_set": bool(settings.supabase_url),
        "did_api_key_set": bool(settings.did_api_key),
        "runway_api_key_set": bool(settings.runway_api_key),
        "webhook_url_set": bool(settings.webhook_url),
        "sweep_interval_seconds": settings.sweep_interval_seconds,
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    metrics.set_gauge("active_long_polls", fallback_limiter.get_active_polls())
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("promo_worker.main:app", host="0.0.0.0", port=port, reload=True)
