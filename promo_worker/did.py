"""
D-ID Talks API client (avatar provider).

  POST /talks        → { id, status: "created", ... }
  GET  /talks/{id}   → { id, status: created|started|done|error, result_url?, error? }

Result URLs are pre-signed S3 links that expire; ``refresh_result_url``
re-reads the talk to get a fresh one. Auth is HTTP Basic with the
"username:password" key from D-ID Studio.
"""

import re
import logging
from typing import Optional
from urllib.parse import urlparse

import requests

from .config import Settings
from .errors import ProviderConfigError, ProviderRejectedError, TransientProviderError
from .rate_limiter import parse_retry_after
from .voices import DEFAULT_PRESENTER_URL, DEFAULT_STYLE, DEFAULT_VOICE

logger = logging.getLogger(__name__)

PROVIDER = "d-id"

# ── Script bounds ────────────────────────────────────────────────────────────
MIN_SCRIPT_CHARS = 10
MAX_SCRIPT_CHARS = 500
SCRIPT_PADDING = " Thank you for watching this video presentation."

TALK_STATUSES = ("created", "started", "done", "error")
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

TALK_ID_PATTERN = re.compile(r"(tlk_[A-Za-z0-9_-]+)")


def normalize_script(script: str) -> str:
    """Pad short scripts and truncate long ones; never reject on length."""
    script = (script or "").strip()
    if len(script) < MIN_SCRIPT_CHARS:
        logger.warning(f"Avatar script too short ({len(script)} chars), padding")
        script = script + SCRIPT_PADDING
    if len(script) > MAX_SCRIPT_CHARS:
        logger.warning(f"Avatar script too long ({len(script)} chars), truncating to {MAX_SCRIPT_CHARS}")
        script = script[:MAX_SCRIPT_CHARS] + "..."
    return script


def extract_talk_id(url: str) -> Optional[str]:
    """Pull the tlk_... id out of a result URL path, if there is one."""
    match = TALK_ID_PATTERN.search(urlparse(url).path or "")
    return match.group(1) if match else None


def is_result_url(url: str, hosts: list[str]) -> bool:
    """True if the URL is served from one of the avatar provider's result hosts."""
    host = (urlparse(url).hostname or "").lower()
    return any(host == h or host.endswith("." + h) for h in hosts)


def build_talk_request(
    image_url: str,
    script: str,
    voice: str = DEFAULT_VOICE,
    style: str = DEFAULT_STYLE,
    use_default_presenter: bool = True,
    expressions: Optional[list[dict]] = None,
    webhook: Optional[str] = None,
    webhook_data: Optional[dict] = None,
) -> dict:
    """
    Build a /talks payload. Provider and output config are always explicit;
    expressions and webhook are optional extras.
    """
    payload = {
        "source_url": DEFAULT_PRESENTER_URL if use_default_presenter else image_url,
        "script": {
            "type": "text",
            "input": normalize_script(script),
            "provider": {
                "type": "microsoft",
                "voice_id": voice,
                "voice_config": {"style": style},
            },
        },
        "config": {
            "stitch": True,
            "result_format": "mp4",
        },
    }

    if expressions:
        payload["config"]["driver_expressions"] = {
            "expressions": expressions,
            "transition_frames": 20,
        }

    if webhook:
        payload["webhook"] = webhook
        if webhook_data:
            payload["webhook_data"] = webhook_data

    return payload


class DIDClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.api_key = settings.did_api_key
        self.base_url = settings.did_api_base.rstrip("/")
        self.request_timeout = settings.provider_request_timeout
        self.status_timeout = settings.status_request_timeout
        self.session = session or requests.Session()

    def _auth(self) -> tuple[str, str]:
        if not self.api_key:
            raise ProviderConfigError(PROVIDER, "DID_API_KEY not set")
        if ":" not in self.api_key:
            raise ProviderConfigError(PROVIDER, "DID_API_KEY must be in format 'username:password'")
        username, password = self.api_key.split(":", 1)
        return username, password

    def _request(self, method: str, path: str, timeout: float, **kwargs) -> dict:
        """
        Single HTTP call with errors mapped onto the provider taxonomy.
        No retries here; callers own their retry budget.
        """
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method,
                url,
                auth=self._auth(),
                headers={"Accept": "application/json"},
                timeout=timeout,
                **kwargs,
            )
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

    # ── Talks ────────────────────────────────────────────────────────────

    def create_talk(self, payload: dict) -> dict:
        """POST /talks. Returns the talk object ({id, status, ...})."""
        logger.info(
            f"D-ID create talk: source={payload.get('source_url', '')[:60]}, "
            f"voice={payload['script']['provider']['voice_id']}, "
            f"script_len={len(payload['script']['input'])}"
        )
        data = self._request("POST", "/talks", self.request_timeout, json=payload)
        if not data.get("id"):
            raise ProviderRejectedError(PROVIDER, f"no talk id in response: {data}")
        return data

    def get_talk(self, talk_id: str) -> dict:
        """GET /talks/{id}. Returns {status, result_url?, error?, ...}."""
        return self._request("GET", f"/talks/{talk_id}", self.status_timeout)

    def refresh_result_url(self, talk_id: str) -> Optional[str]:
        """
        Re-resolve a fresh signed result URL for a finished talk.
        Returns None when the talk is not done or has no result.
        """
        logger.info(f"Refreshing result URL for talk {talk_id}")
        talk = self.get_talk(talk_id)
        if talk.get("status") == "done" and talk.get("result_url"):
            return talk["result_url"]
        logger.warning(f"Cannot refresh talk {talk_id}: status={talk.get('status')}")
        return None
