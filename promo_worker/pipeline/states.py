"""
Video-field state machine.

A video column holds one of:

    null                 not requested
    "script_ready"       avatar script generated, waiting for the user
    "pending:<id>"       submitted to a provider
    "https://..."        finished (terminal success)
    "failed:<reason>"    terminal failure
    "expired:<reason>"   finished, link later found dead (terminal)

Values only ever move forward. Every terminal write goes through the
store's guarded ``update_if`` so the first writer wins.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from ..errors import message_for_reason
from .models import Job, JobStatus, JobView, VideoKind, VideoView

logger = logging.getLogger(__name__)

SCRIPT_READY = "script_ready"
PENDING_PREFIX = "pending:"
FAILED_PREFIX = "failed:"
EXPIRED_PREFIX = "expired:"


# ── Predicates ───────────────────────────────────────────────────────────────

def is_pending(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(PENDING_PREFIX)


def is_failed(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(FAILED_PREFIX)


def is_expired(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(EXPIRED_PREFIX)


def is_success(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(("http://", "https://"))


def is_terminal(value: Optional[str]) -> bool:
    return is_success(value) or is_failed(value) or is_expired(value)


def can_submit(value: Optional[str]) -> bool:
    """A new submission may replace only a non-terminal value."""
    return value is None or value == SCRIPT_READY or is_pending(value)


# ── Markers ──────────────────────────────────────────────────────────────────

def pending_id(value: Optional[str]) -> Optional[str]:
    if not is_pending(value):
        return None
    return value[len(PENDING_PREFIX):] or None


def make_pending(external_id: str) -> str:
    return f"{PENDING_PREFIX}{external_id}"


def make_failed(reason: str) -> str:
    return f"{FAILED_PREFIX}{reason}"


def make_expired(reason: str) -> str:
    return f"{EXPIRED_PREFIX}{reason}"


def terminal_reason(value: Optional[str]) -> Optional[str]:
    if is_failed(value):
        return value[len(FAILED_PREFIX):]
    if is_expired(value):
        return value[len(EXPIRED_PREFIX):]
    return None


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def age_seconds(since: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Seconds elapsed since ``since``; 0 when unknown."""
    if since is None:
        return 0.0
    now = now or datetime.now(timezone.utc)
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return max(0.0, (now - since).total_seconds())


# ── Views ────────────────────────────────────────────────────────────────────

def describe_video(value: Optional[str]) -> VideoView:
    """Turn a raw field value into what the UI shows."""
    if value is None:
        return VideoView(state="not_requested")
    if value == SCRIPT_READY:
        return VideoView(state="awaiting_script")
    if is_pending(value):
        return VideoView(state="processing")
    if is_success(value):
        return VideoView(state="ready", url=value)
    if is_failed(value):
        reason = terminal_reason(value)
        return VideoView(state="failed", reason=reason, message=message_for_reason(reason))
    if is_expired(value):
        reason = terminal_reason(value)
        return VideoView(state="expired", reason=reason, message=message_for_reason(reason))

    logger.warning(f"Unrecognised video field value: {value[:80]!r}")
    return VideoView(state="failed", reason="generation_error", message=message_for_reason(None))


# ── Job status ───────────────────────────────────────────────────────────────

def requested_values(job: Job) -> list[str]:
    """Non-null video fields. A script_ready avatar counts: it still needs the user."""
    return [value for value in (job.video(kind) for kind in VideoKind) if value is not None]


def compute_job_status(job: Job) -> Optional[JobStatus]:
    """
    The status the job should move to, or None if it should stay as is.

    Only pending/generating jobs move. When every requested field is
    terminal the job completes if all succeeded, otherwise it fails.
    """
    if job.status not in (JobStatus.PENDING, JobStatus.GENERATING):
        return None

    values = requested_values(job)
    if not values or not all(is_terminal(v) for v in values):
        return None

    if all(is_success(v) for v in values):
        return JobStatus.COMPLETE
    return JobStatus.FAILED


def refresh_job_status(store, job_id: str) -> Optional[JobStatus]:
    """
    Re-read the job and apply the recomputed status with a guarded write.
    Returns the new status when this call moved it.
    """
    job = store.get(job_id)
    if job is None:
        return None

    new_status = compute_job_status(job)
    if new_status is None:
        return None

    expected: Iterable[str] = (JobStatus.PENDING.value, JobStatus.GENERATING.value)
    if store.update_status_if(job_id, new_status.value, list(expected)):
        logger.info(f"Job {job_id}: status {job.status.value} → {new_status.value}")
        store.log_step(job_id, "status_changed", {"from": job.status.value, "to": new_status.value})
        return new_status
    return None


def job_view(job: Job) -> JobView:
    values = requested_values(job)
    settled = job.status in (JobStatus.COMPLETE, JobStatus.FAILED) or (
        bool(values) and all(is_terminal(v) for v in values)
    )
    return JobView(
        job_id=job.id,
        status=job.status,
        avatar=describe_video(job.avatar_video_url),
        cinematic=describe_video(job.cinematic_video_url),
        terminal=settled,
    )
