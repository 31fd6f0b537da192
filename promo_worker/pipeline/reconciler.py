"""
Reconciler: settle every ``pending:`` video field.

One sweep:
  1. list jobs with a pending avatar or cinematic field
  2. per job, in a thread pool, per pending field:
       - older than the job timeout      → failed:timeout, no provider call
       - avatar                          → ask D-ID (retry transient errors
                                            with capped exponential backoff)
       - cinematic past the grace period → failed:stuck
  3. every write is guarded on the exact marker read, then the job status
     is recomputed

Runway tasks are not polled here; the submitter long-polls them and the
webhook covers the rest. A sweep can run any number of times, concurrently
with webhooks, without double-applying a terminal write.
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Optional

from .. import metrics
from ..config import Settings
from ..did import DIDClient
from ..errors import (
    ProviderRejectedError,
    TransientProviderError,
    classify_provider_error,
    message_for_reason,
)
from .models import Job, SweepItem, SweepReport, VideoKind
from .poll_trigger import backoff_delays
from .states import (
    age_seconds,
    is_pending,
    make_failed,
    pending_id,
    refresh_job_status,
)

logger = logging.getLogger(__name__)


def talk_error_text(talk: dict) -> str:
    """D-ID reports errors as a string or as {kind, description}."""
    error = talk.get("error")
    if isinstance(error, dict):
        return error.get("description") or error.get("kind") or "generation failed"
    return str(error or "generation failed")


class Reconciler:
    def __init__(
        self,
        store,
        settings: Settings,
        did: DIDClient,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.settings = settings
        self.did = did
        self.sleep = sleep
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Sweep ────────────────────────────────────────────────────────────

    def sweep(self) -> SweepReport:
        started = time.time()
        metrics.inc_counter("sweep.runs")

        jobs = self.store.list_pending()
        metrics.set_gauge("sweep.pending_jobs", len(jobs))
        logger.info(f"Sweep: {len(jobs)} job(s) with pending videos")

        items: list[SweepItem] = []
        if jobs:
            workers = max(1, min(self.settings.sweep_concurrency, len(jobs)))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                for job_items in pool.map(self._reconcile_safely, jobs):
                    items.extend(job_items)

        report = SweepReport.from_items(items, checked=len(jobs))
        for name in ("updated", "failed", "timed_out", "stuck", "errors"):
            value = getattr(report, name)
            if value:
                metrics.inc_counter(f"sweep.{name}", value)
        metrics.record_latency("sweep", (time.time() - started) * 1000)

        logger.info(
            f"Sweep done: checked={report.checked} updated={report.updated} "
            f"processing={report.processing} failed={report.failed} "
            f"timed_out={report.timed_out} stuck={report.stuck} errors={report.errors}"
        )
        return report

    def _reconcile_safely(self, job: Job) -> list[SweepItem]:
        try:
            return self.reconcile_job(job)
        except Exception as e:
            logger.error(f"Sweep: job {job.id} failed: {e}", exc_info=True)
            metrics.record_error("sweep", type(e).__name__, str(e), job.id)
            return [SweepItem(job_id=job.id, status="error", error=str(e)[:300])]

    def reconcile_job(self, job: Job) -> list[SweepItem]:
        now = self.clock()
        items: list[SweepItem] = []
        wrote_terminal = False

        for kind in VideoKind:
            marker = job.video(kind)
            if not is_pending(marker):
                continue

            age = age_seconds(job.pending_since(kind), now)
            if age > self.settings.job_timeout_seconds:
                item = self._fail(job, kind, marker, "timeout", "timeout", age)
            elif kind == VideoKind.AVATAR:
                item = self._check_avatar(job, marker)
            elif age > self.settings.cinematic_grace_seconds:
                item = self._fail(job, kind, marker, "stuck", "stuck", age)
            else:
                item = SweepItem(job_id=job.id, status="processing", type=kind.value)

            wrote_terminal = wrote_terminal or item.status in ("updated", "failed", "timeout", "stuck")
            items.append(item)

        if wrote_terminal:
            refresh_job_status(self.store, job.id)
        return items

    # ── Field handlers ───────────────────────────────────────────────────

    def _fail(self, job: Job, kind: VideoKind, marker: str, reason: str, item_status: str, age: float) -> SweepItem:
        """Guarded pending → failed:<reason> without contacting the provider."""
        user_message = message_for_reason(reason)

        extra = {"cinematic_video_error": user_message} if kind == VideoKind.CINEMATIC else None
        if not self.store.update_if(job.id, kind.field, marker, make_failed(reason), extra=extra):
            return SweepItem(job_id=job.id, status="skipped", type=kind.value)

        logger.warning(f"Job {job.id}: {kind.value} {reason} after {int(age)}s ({marker})")
        self.store.log_step(job.id, f"{kind.value}_{reason}", {"marker": marker, "age_seconds": int(age)})
        return SweepItem(job_id=job.id, status=item_status, type=kind.value, error=user_message)

    def _get_talk_with_retry(self, talk_id: str) -> tuple[dict, int]:
        delays = backoff_delays(
            self.settings.status_max_retries,
            self.settings.status_retry_base_delay,
            self.settings.status_retry_max_delay,
        )
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.did.get_talk(talk_id), attempt
            except ProviderRejectedError as e:
                e.attempts = attempt
                raise
            except TransientProviderError as e:
                e.attempts = attempt
                if attempt > len(delays):
                    raise
                delay = delays[attempt - 1]
                logger.warning(f"D-ID status for {talk_id} failed (attempt {attempt}), retrying in {delay}s: {e}")
                self.sleep(delay)

    def _check_avatar(self, job: Job, marker: str) -> SweepItem:
        kind = VideoKind.AVATAR
        talk_id = pending_id(marker)
        if not talk_id:
            return self._fail(job, kind, marker, "generation_error", "failed", 0)

        try:
            talk, attempts = self._get_talk_with_retry(talk_id)
        except (TransientProviderError, ProviderRejectedError) as e:
            logger.warning(f"Job {job.id}: giving up on talk {talk_id} this sweep: {e}")
            self.store.log_step(job.id, "avatar_status_unavailable", {"talkId": talk_id, "error": str(e)[:300]})
            metrics.inc_counter("errors.did_status")
            metrics.record_error("sweep", "did_status", str(e), job.id)
            return SweepItem(
                job_id=job.id,
                status="retry_exhausted",
                type=kind.value,
                error=str(e)[:300],
                attempts=e.attempts,
            )

        status = talk.get("status")
        if status == "done" and talk.get("result_url"):
            url = talk["result_url"]
            if not self.store.update_if(job.id, kind.field, marker, url):
                return SweepItem(job_id=job.id, status="skipped", type=kind.value, attempts=attempts)
            logger.info(f"Job {job.id}: avatar ready ({talk_id})")
            self.store.log_step(job.id, "avatar_complete", {"talkId": talk_id})
            return SweepItem(job_id=job.id, status="updated", type=kind.value, video_url=url, attempts=attempts)

        if status == "error":
            raw = talk_error_text(talk)
            reason, user_message = classify_provider_error(raw)
            if not self.store.update_if(job.id, kind.field, marker, make_failed(reason)):
                return SweepItem(job_id=job.id, status="skipped", type=kind.value, attempts=attempts)
            logger.warning(f"Job {job.id}: talk {talk_id} failed: {raw}")
            self.store.log_step(job.id, "avatar_failed", {"talkId": talk_id, "reason": reason, "error": raw})
            return SweepItem(job_id=job.id, status="failed", type=kind.value, error=user_message, attempts=attempts)

        return SweepItem(job_id=job.id, status="processing", type=kind.value, attempts=attempts)
