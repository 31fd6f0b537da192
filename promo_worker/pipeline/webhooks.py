"""
Webhook receiver for provider callbacks.

Accepted payloads:
  D-ID     { id: "tlk_...", status, result_url?, error?, webhook_data? }
  Runway   { id, status: PENDING|THROTTLED|RUNNING|SUCCEEDED|FAILED|CANCELLED,
             output?: [url], failure?, webhook_data? }
  custom   { jobId, videoType: avatar|cinematic|promo, videoUrl | error }

Non-terminal callbacks are acknowledged and ignored. Terminal ones apply
the same guarded write as the sweep, so a callback racing a sweep (or a
stale callback for a replaced submission) is a logged no-op.
"""

import json
import logging
from typing import Optional

from .. import metrics
from ..did import TALK_STATUSES
from ..errors import classify_provider_error
from ..runway import TASK_STATUSES, TERMINAL_STATUSES, task_failure_reason, task_output_url
from .models import VIDEO_KIND_ALIASES, VideoKind, WebhookEvent
from .reconciler import talk_error_text
from .states import PENDING_PREFIX, is_success, make_failed, make_pending, refresh_job_status

logger = logging.getLogger(__name__)


class InvalidWebhookError(ValueError):
    """Payload shape not recognised, or it names no job."""


def _webhook_data(payload: dict) -> dict:
    data = payload.get("webhook_data")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return {}
    return data if isinstance(data, dict) else {}


def _kind(value, default: Optional[VideoKind] = None) -> Optional[VideoKind]:
    if value is None:
        return default
    kind = VIDEO_KIND_ALIASES.get(str(value).lower())
    if kind is None:
        raise InvalidWebhookError(f"Unknown videoType: {value!r}")
    return kind


# ── Normalisation ────────────────────────────────────────────────────────────

def normalize_payload(payload) -> WebhookEvent:
    """Map any accepted callback onto a WebhookEvent, or raise InvalidWebhookError."""
    if not isinstance(payload, dict):
        raise InvalidWebhookError("Payload must be a JSON object")

    data = _webhook_data(payload)
    external_id = payload.get("id")
    status = payload.get("status")

    if isinstance(external_id, str) and external_id.startswith("tlk_"):
        if status not in TALK_STATUSES:
            raise InvalidWebhookError(f"Unknown D-ID status: {status!r}")
        return WebhookEvent(
            source="d-id",
            job_id=data.get("jobId"),
            kind=_kind(data.get("videoType"), VideoKind.AVATAR),
            external_id=external_id,
            provider_status=status,
            terminal=status in ("done", "error"),
            url=payload.get("result_url") if status == "done" else None,
            error=talk_error_text(payload) if status == "error" else None,
        )

    if external_id and status in TASK_STATUSES:
        terminal = status in TERMINAL_STATUSES
        url = task_output_url(payload) if status == "SUCCEEDED" else None
        error = None
        if terminal and not url:
            error = task_failure_reason(payload) if status != "SUCCEEDED" else "Runway returned no output"
        return WebhookEvent(
            source="runway",
            job_id=data.get("jobId"),
            kind=_kind(data.get("videoType"), VideoKind.CINEMATIC),
            external_id=str(external_id),
            provider_status=status,
            terminal=terminal,
            url=url,
            error=error,
        )

    if "jobId" in payload or "videoType" in payload:
        job_id = payload.get("jobId")
        kind = _kind(payload.get("videoType"))
        if not job_id or kind is None:
            raise InvalidWebhookError("jobId and videoType are required")
        url = payload.get("videoUrl")
        error = payload.get("error")
        if url and not is_success(url):
            raise InvalidWebhookError("videoUrl must be an http(s) URL")
        if not url and not error:
            raise InvalidWebhookError("videoUrl or error is required")
        return WebhookEvent(
            source="custom",
            job_id=str(job_id),
            kind=kind,
            terminal=True,
            url=url or None,
            error=None if url else str(error),
        )

    raise InvalidWebhookError("Unrecognised webhook payload")


# ── Receiver ─────────────────────────────────────────────────────────────────

class WebhookReceiver:
    def __init__(self, store):
        self.store = store

    def handle(self, payload) -> dict:
        event = normalize_payload(payload)
        metrics.inc_counter(f"webhook.{event.source}")

        if not event.terminal:
            logger.info(f"Webhook ({event.source}): {event.external_id} still {event.provider_status}")
            return {"success": True, "status": "processing"}

        job_id = event.job_id
        if not job_id:
            if not event.external_id:
                raise InvalidWebhookError("Cannot locate job: no jobId and no provider id")
            job = self.store.find_by_marker(event.kind.field, make_pending(event.external_id))
            if job is None:
                logger.info(f"Webhook ({event.source}): no job pending on {event.external_id}, skipping")
                metrics.inc_counter("webhook.skipped")
                return {"success": True, "skipped": True}
            job_id = job.id

        expected = make_pending(event.external_id) if event.external_id else f"{PENDING_PREFIX}*"
        field = event.kind.field

        if event.url:
            new_value, extra, user_message = event.url, None, None
        else:
            reason, user_message = classify_provider_error(event.error)
            new_value = make_failed(reason)
            extra = {"cinematic_video_error": user_message} if event.kind == VideoKind.CINEMATIC else None

        if not self.store.update_if(job_id, field, expected, new_value, extra=extra):
            logger.info(f"Webhook ({event.source}): job {job_id} {field} not {expected}, skipping")
            metrics.inc_counter("webhook.skipped")
            return {"success": True, "skipped": True}

        logger.info(f"Webhook ({event.source}): job {job_id} {event.kind.value} → {new_value[:80]}")
        self.store.log_step(job_id, f"webhook_{event.kind.value}", {
            "source": event.source,
            "externalId": event.external_id,
            "value": new_value,
            "error": event.error,
        })
        metrics.inc_counter("webhook.updated")
        job_status = refresh_job_status(self.store, job_id)

        response = {
            "success": True,
            "jobId": job_id,
            "type": event.kind.value,
            "status": "updated",
            "videoUrl": event.url,
        }
        if user_message:
            response["error"] = user_message
        if job_status is not None:
            response["jobStatus"] = job_status.value
        return response
