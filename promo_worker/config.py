"""
Worker settings.

Everything the orchestrator needs (credentials, timeouts, retry budgets) is
read from the environment once, at startup, into a single ``Settings``
object. Components receive it in their constructor and never call
``os.environ`` themselves.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field


# ── Defaults ─────────────────────────────────────────────────────────────────

DEFAULT_DID_API_BASE = "https://api.d-id.com"
DEFAULT_RUNWAY_API_BASE = "https://api.dev.runwayml.com"
DEFAULT_AVATAR_RESULT_HOSTS = (
    "d-id-talks-prod.s3.us-west-2.amazonaws.com",
    "d-id.com",
)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw) if raw.strip() else default
    except ValueError:
        return default


def _env_list(name: str, default: tuple) -> list[str]:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return list(default)
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


class Settings(BaseModel):
    # ── Store ────────────────────────────────────────────────────────────
    supabase_url: str = ""
    supabase_key: str = ""

    # ── Provider A (avatar / D-ID) ───────────────────────────────────────
    did_api_key: str = ""
    did_api_base: str = DEFAULT_DID_API_BASE
    did_plan_tier: str = "basic"
    avatar_result_hosts: list[str] = Field(default_factory=lambda: list(DEFAULT_AVATAR_RESULT_HOSTS))

    # ── Provider B (cinematic / Runway) ──────────────────────────────────
    runway_api_key: str = ""
    runway_api_base: str = DEFAULT_RUNWAY_API_BASE
    runway_model: str = "gen4_turbo"
    runway_ratio: str = "1280:720"
    runway_duration: int = 5

    # ── Webhooks ─────────────────────────────────────────────────────────
    public_base_url: str = ""
    webhook_token: str = ""

    # ── Timeouts (seconds) ───────────────────────────────────────────────
    job_timeout_seconds: int = 600
    cinematic_grace_seconds: int = 300
    provider_request_timeout: float = 30.0
    status_request_timeout: float = 15.0
    proxy_request_timeout: float = 60.0

    # ── Retry budget for status calls ────────────────────────────────────
    status_max_retries: int = 3
    status_retry_base_delay: float = 1.0
    status_retry_max_delay: float = 10.0

    # ── Cinematic long-poll (kept under the grace period) ────────────────
    runway_poll_interval: float = 5.0
    runway_max_poll_attempts: int = 48

    # ── Sweeping ─────────────────────────────────────────────────────────
    sweep_concurrency: int = 8
    sweep_interval_seconds: int = 0
    watch_interval_seconds: int = 10
    watch_max_attempts: int = 30

    # ── Rate limiting ────────────────────────────────────────────────────
    redis_url: str = ""
    submit_rate_limit: int = 20
    submit_rate_window_seconds: int = 60
    max_concurrent_long_polls: int = 3

    # ── Worker auth ──────────────────────────────────────────────────────
    worker_shared_secret: str = ""
    environment: str = "development"

    @property
    def webhook_url(self) -> Optional[str]:
        """Callback URL handed to providers, or None when no public URL is set."""
        if not self.public_base_url:
            return None
        url = f"{self.public_base_url.rstrip('/')}/webhook/video"
        if self.webhook_token:
            url = f"{url}?token={self.webhook_token}"
        return url

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (call after load_dotenv)."""
        return cls(
            supabase_url=os.environ.get("SUPABASE_URL", ""),
            supabase_key=os.environ.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            did_api_key=os.environ.get("DID_API_KEY", ""),
            did_api_base=os.environ.get("DID_API_BASE", DEFAULT_DID_API_BASE),
            did_plan_tier=os.environ.get("DID_PLAN_TIER", "basic"),
            avatar_result_hosts=_env_list("AVATAR_RESULT_HOSTS", DEFAULT_AVATAR_RESULT_HOSTS),
            runway_api_key=(
                os.environ.get("RUNWAY_API_KEY")
                or os.environ.get("RUNWAYML_API_SECRET", "")
            ),
            runway_api_base=os.environ.get("RUNWAY_API_BASE", DEFAULT_RUNWAY_API_BASE),
            runway_model=os.environ.get("RUNWAY_MODEL", "gen4_turbo"),
            public_base_url=os.environ.get("PUBLIC_BASE_URL", ""),
            webhook_token=os.environ.get("WEBHOOK_TOKEN", ""),
            job_timeout_seconds=_env_int("JOB_TIMEOUT_SECONDS", 600),
            cinematic_grace_seconds=_env_int("CINEMATIC_GRACE_SECONDS", 300),
            provider_request_timeout=_env_float("PROVIDER_REQUEST_TIMEOUT", 30.0),
            status_request_timeout=_env_float("STATUS_REQUEST_TIMEOUT", 15.0),
            proxy_request_timeout=_env_float("PROXY_REQUEST_TIMEOUT", 60.0),
            status_max_retries=_env_int("STATUS_MAX_RETRIES", 3),
            status_retry_base_delay=_env_float("STATUS_RETRY_BASE_DELAY", 1.0),
            status_retry_max_delay=_env_float("STATUS_RETRY_MAX_DELAY", 10.0),
            runway_poll_interval=_env_float("RUNWAY_POLL_INTERVAL", 5.0),
            runway_max_poll_attempts=_env_int("RUNWAY_MAX_POLL_ATTEMPTS", 48),
            sweep_concurrency=_env_int("SWEEP_CONCURRENCY", 8),
            sweep_interval_seconds=_env_int("SWEEP_INTERVAL_SECONDS", 0),
            watch_interval_seconds=_env_int("WATCH_INTERVAL_SECONDS", 10),
            watch_max_attempts=_env_int("WATCH_MAX_ATTEMPTS", 30),
            redis_url=os.environ.get("REDIS_URL", ""),
            submit_rate_limit=_env_int("SUBMIT_RATE_LIMIT", 20),
            submit_rate_window_seconds=_env_int("SUBMIT_RATE_WINDOW_SECONDS", 60),
            max_concurrent_long_polls=_env_int("MAX_CONCURRENT_LONG_POLLS", 3),
            worker_shared_secret=os.environ.get("WORKER_SHARED_SECRET", ""),
            environment=os.environ.get("ENVIRONMENT", "development"),
        )
