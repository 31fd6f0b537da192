"""
Lazy service singletons.

Settings are read once; every other component is built from them on first
use. Routers depend on the ``get_*`` functions, so tests swap any of them
through ``app.dependency_overrides``.
"""

import logging
from typing import Optional

import redis

from .config import Settings
from .did import DIDClient
from .runway import RunwayClient
from .pipeline.proxy import VideoProxy
from .pipeline.reconciler import Reconciler
from .pipeline.store import SupabaseJobStore
from .pipeline.submitter import Submitter
from .pipeline.webhooks import WebhookReceiver

logger = logging.getLogger(__name__)

_settings: Optional[Settings] = None
_store: Optional[SupabaseJobStore] = None
_did: Optional[DIDClient] = None
_runway: Optional[RunwayClient] = None
_redis_client = None
_redis_checked = False


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def get_store() -> SupabaseJobStore:
    global _store
    if _store is None:
        _store = SupabaseJobStore.from_settings(get_settings())
    return _store


def get_did() -> DIDClient:
    global _did
    if _did is None:
        _did = DIDClient(get_settings())
    return _did


def get_runway() -> RunwayClient:
    global _runway
    if _runway is None:
        _runway = RunwayClient(get_settings())
    return _runway


# ── Lazy Redis client ─────────────────────────────────────────────────────────

def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured or unreachable."""
    global _redis_client, _redis_checked
    if not _redis_checked:
        _redis_checked = True
        redis_url = get_settings().redis_url
        if redis_url:
            client = redis.from_url(redis_url, decode_responses=False)
            try:
                client.ping()
                _redis_client = client
                logger.info(f"Redis connected: {redis_url[:30]}...")
            except redis.exceptions.RedisError as e:
                logger.warning(f"Redis connection failed: {e}, using in-memory limiter")
    return _redis_client


# ── Pipeline components ───────────────────────────────────────────────────────

def get_submitter() -> Submitter:
    return Submitter(get_store(), get_settings(), get_did(), get_runway())


def get_reconciler() -> Reconciler:
    return Reconciler(get_store(), get_settings(), get_did())


def get_webhook_receiver() -> WebhookReceiver:
    return WebhookReceiver(get_store())


def get_proxy() -> VideoProxy:
    return VideoProxy(get_store(), get_settings(), get_did())


def reset():
    """Drop all cached singletons (tests, settings reload)."""
    global _settings, _store, _did, _runway, _redis_client, _redis_checked
    _settings = _store = _did = _runway = _redis_client = None
    _redis_checked = False
