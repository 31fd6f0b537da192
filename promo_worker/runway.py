"""
Runway image-to-video client (cinematic provider).

  POST /v1/image_to_video  → { id }
  GET  /v1/tasks/{id}      → { id, status, output?: [url], failure?, failureCode? }

Runway's intended access pattern is create → poll until terminal inside the
same call, so ``wait_for_task`` is the long-poll the submitter uses.
"""

import time
import logging
from typing import Callable, Optional

import requests

from .config import Settings
from .errors import (
    ProviderConfigError,
    ProviderRejectedError,
    TransientProviderError,
)
from .rate_limiter import parse_retry_after

logger = logging.getLogger(__name__)

PROVIDER = "runway"
API_VERSION = "2024-11-06"

TERMINAL_STATUSES = ("SUCCEEDED", "FAILED", "CANCELLED")
TASK_STATUSES = ("PENDING", "THROTTLED", "RUNNING") + TERMINAL_STATUSES
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

# Ratios gen4_turbo accepts for image-to-video
SUPPORTED_RATIOS = {"1280:720", "720:1280", "1104:832", "832:1104", "960:960", "1584:672"}
_FRIENDLY_RATIOS = {
    "16:9": "1280:720",
    "9:16": "720:1280",
    "4:3": "1104:832",
    "3:4": "832:1104",
    "1:1": "960:960",
    "21:9": "1584:672",
}
MIN_DURATION = 2
MAX_DURATION = 10


def map_ratio(ratio: Optional[str], default: str = "1280:720") -> str:
    """Convert "16:9"-style ratios to Runway pixel ratios; unknown → default."""
    if not ratio:
        return default
    mapped = _FRIENDLY_RATIOS.get(ratio, ratio)
    return mapped if mapped in SUPPORTED_RATIOS else default


def clamp_duration(seconds, default: int = 5) -> int:
    try:
        seconds = int(seconds)
    except (TypeError, ValueError):
        return default
    return max(MIN_DURATION, min(MAX_DURATION, seconds))


def task_output_url(task: dict) -> Optional[str]:
    output = task.get("output")
    if isinstance(output, list) and output:
        return output[0]
    if isinstance(output, str):
        return output
    return None


def task_failure_reason(task: dict) -> str:
    return (
        task.get("failureReason")
        or task.get("failure")
        or task.get("failureCode")
        or "Video generation failed"
    )


class RunwayClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.api_key = settings.runway_api_key
        self.base_url = settings.runway_api_base.rstrip("/")
        self.request_timeout = settings.provider_request_timeout
        self.status_timeout = settings.status_request_timeout
        self.max_poll_errors = settings.status_max_retries
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderConfigError(PROVIDER, "RUNWAY_API_KEY not configured")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "X-Runway-Version": API_VERSION,
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, timeout: float, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, headers=self._headers(), timeout=timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise TransientProviderError(PROVIDER, f"timeout calling {path}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(PROVIDER, f"network error calling {path}: {e}") from e

        if resp.status_code in RETRYABLE_STATUS_CODES:
            retry_after = parse_retry_after(resp.headers.get("Retry-After")) if resp.status_code == 429 else None
            raise TransientProviderError(PROVIDER, resp.text[:500], resp.status_code, retry_after=retry_after)
        if resp.status_code >= 400:
            raise ProviderRejectedError(PROVIDER, resp.text[:500], resp.status_code)

        try:
            return resp.json()
        except ValueError as e:
            raise TransientProviderError(PROVIDER, f"non-JSON response from {path}") from e

    # ── Tasks ────────────────────────────────────────────────────────────

    def create_image_to_video(
        self,
        image_url: str,
        prompt: str,
        model: str = "gen4_turbo",
        ratio: str = "1280:720",
        duration: int = 5,
        **extra,
    ) -> dict:
        """Start an image-to-video task. Returns {id, status}."""
        payload = {
            "model": model,
            "promptImage": image_url,
            "promptText": (prompt or "")[:1000],
            "ratio": ratio,
            "duration": duration,
        }
        payload.update({k: v for k, v in extra.items() if v is not None})

        logger.info(f"Runway create: model={model}, ratio={ratio}, duration={duration}s")
        data = self._request("POST", "/v1/image_to_video", self.request_timeout, json=payload)
        if not data.get("id"):
            raise ProviderRejectedError(PROVIDER, f"no task id in response: {data}")
        data.setdefault("status", "PENDING")
        return data

    def get_task(self, task_id: str) -> dict:
        return self._request("GET", f"/v1/tasks/{task_id}", self.status_timeout)

    def wait_for_task(
        self,
        task_id: str,
        interval: float,
        max_attempts: int,
        sleep: Callable[[float], None] = time.sleep,
    ) -> dict:
        """
        Poll until the task is terminal or the attempt budget runs out.

        Returns the last task object seen; its status is non-terminal when the
        budget ran out. Transient poll errors are tolerated up to
        ``max_poll_errors`` in a row; a rejection is raised immediately.
        """
        task: dict = {"id": task_id, "status": "PENDING"}
        consecutive_errors = 0

        for attempt in range(max_attempts):
            sleep(interval)
            try:
                task = self.get_task(task_id)
                consecutive_errors = 0
            except TransientProviderError as e:
                consecutive_errors += 1
                logger.warning(f"Runway poll #{attempt + 1} for {task_id} failed: {e}")
                if consecutive_errors > self.max_poll_errors:
                    raise
                continue

            status = task.get("status", "")
            logger.info(f"Runway poll #{attempt + 1}: task={task_id} status={status}")
            if status in TERMINAL_STATUSES:
                return task

        logger.warning(f"Runway task {task_id} still {task.get('status')} after {max_attempts} polls")
        return task

