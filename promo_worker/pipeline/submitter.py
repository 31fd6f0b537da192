"""
Generation submitter.

Starts a video at a provider and records the ``pending:<id>`` marker on the
job. Two completion models sit behind the same entry point:

  avatar (D-ID)      create talk → marker → done; the sweep / webhook finish it
  cinematic (Runway) create task → marker → long-poll inside this call;
                     if the poll budget runs out the marker stays and the
                     webhook or sweep settles it

Each submission walks an ordered list of attempts (primary, then a
stripped-down fallback). A transient failure (network, timeout, 429, 5xx)
repeats the same attempt on a capped backoff; only a rejection moves on to
the next attempt. When every attempt is rejected the field is written
``failed:<reason>`` and the caller gets an error result. When the provider
stays unreachable the field is left as it was and the error is raised.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Optional

from .. import metrics
from ..config import Settings
from ..did import DIDClient, build_talk_request
from ..errors import (
    InvalidTransitionError,
    JobNotFoundError,
    ProviderError,
    ProviderRejectedError,
    TransientProviderError,
    classify_provider_error,
)
from ..runway import (
    TERMINAL_STATUSES,
    RunwayClient,
    clamp_duration,
    map_ratio,
    task_failure_reason,
    task_output_url,
)
from ..voices import DEFAULT_STYLE, DEFAULT_VOICE, get_voice_preset
from .models import Job, JobStatus, SubmitResult, VideoKind
from .poll_trigger import backoff_delays
from .states import (
    SCRIPT_READY,
    can_submit,
    make_failed,
    make_pending,
    now_iso,
    refresh_job_status,
)

logger = logging.getLogger(__name__)

DEFAULT_EXPRESSIONS = [{"start_frame": 0, "expression": "neutral", "intensity": 0.8}]


@dataclass
class Attempt:
    label: str
    params: dict = field(default_factory=dict)


class Submitter:
    def __init__(self, store, settings: Settings, did: DIDClient, runway: RunwayClient, sleep=None):
        self.store = store
        self.settings = settings
        self.did = did
        self.runway = runway
        self.sleep = sleep

    # ── Hand-off ─────────────────────────────────────────────────────────

    def mark_script_ready(self, job_id: str) -> bool:
        """Guarded null → script_ready on the avatar field."""
        if self.store.get(job_id) is None:
            raise JobNotFoundError(job_id)
        moved = self.store.update_if(job_id, VideoKind.AVATAR.field, None, SCRIPT_READY)
        if moved:
            self.store.log_step(job_id, "script_ready")
        return moved

    def submit(self, job_id: str, kind: VideoKind, **options) -> SubmitResult:
        if kind == VideoKind.AVATAR:
            return self.submit_avatar(job_id, script=options.get("script"))
        return self.submit_cinematic(
            job_id,
            prompt=options.get("prompt"),
            ratio=options.get("ratio"),
            duration=options.get("duration"),
        )

    # ── Shared steps ─────────────────────────────────────────────────────

    def _load_submittable(self, job_id: str, kind: VideoKind) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        current = job.video(kind)
        if not can_submit(current):
            raise InvalidTransitionError(job_id, kind.field, current)
        return job

    def _create_with_retry(self, job_id: str, kind: VideoKind, label: str, create):
        """
        Run one create call, repeating it on transient failures with the
        status-call backoff budget. Re-raises the last transient error once
        the budget is spent; rejections are raised straight away.
        """
        delays = backoff_delays(
            self.settings.status_max_retries,
            self.settings.status_retry_base_delay,
            self.settings.status_retry_max_delay,
        )
        sleep = self.sleep or time.sleep
        call = 0
        while True:
            call += 1
            try:
                return create()
            except TransientProviderError as e:
                e.attempts = call
                if call > len(delays):
                    logger.error(f"Job {job_id}: {kind.value} {label} create unavailable after {call} calls: {e}")
                    self.store.log_step(
                        job_id,
                        f"{kind.value}_submit_unavailable",
                        {"attempt": label, "calls": call, "error": str(e)[:300]},
                    )
                    metrics.inc_counter(f"errors.submit_{kind.value}_unavailable")
                    metrics.record_error(f"submit_{kind.value}", "unavailable", str(e), job_id)
                    raise
                delay = delays[call - 1]
                logger.warning(f"Job {job_id}: {kind.value} {label} create failed (call {call}), retrying in {delay}s: {e}")
                sleep(delay)

    def _record_pending(self, job: Job, kind: VideoKind, external_id: str) -> bool:
        """Replace the value read before submission with the new marker."""
        moved = self.store.update_if(
            job.id,
            kind.field,
            job.video(kind),
            make_pending(external_id),
            extra={kind.submitted_at_field: now_iso()},
        )
        if moved:
            self.store.update_status_if(job.id, JobStatus.GENERATING.value, [JobStatus.PENDING.value])
        else:
            logger.warning(f"Job {job.id}: {kind.value} changed during submission, {external_id} not recorded")
        return moved

    def _record_failure(self, job: Job, kind: VideoKind, error: Exception, attempts: int) -> SubmitResult:
        reason, user_message = classify_provider_error(getattr(error, "message", str(error)))
        extra = {"cinematic_video_error": user_message} if kind == VideoKind.CINEMATIC else None

        written = self.store.update_if(job.id, kind.field, job.video(kind), make_failed(reason), extra=extra)
        self.store.log_step(job.id, f"{kind.value}_failed", {"reason": reason, "error": str(error)[:300]})
        metrics.inc_counter(f"errors.submit_{kind.value}")
        metrics.record_error(f"submit_{kind.value}", reason, str(error), job.id)
        if written:
            refresh_job_status(self.store, job.id)

        return SubmitResult(
            job_id=job.id,
            kind=kind,
            ok=False,
            status="failed",
            video_value=make_failed(reason),
            reason=reason,
            error=user_message,
            attempts=attempts,
            fallback_used=attempts > 1,
        )

    def _skipped(self, job: Job, kind: VideoKind, external_id: str, attempts: int) -> SubmitResult:
        return SubmitResult(
            job_id=job.id,
            kind=kind,
            ok=False,
            status="skipped",
            external_id=external_id,
            error="Video changed while submitting",
            attempts=attempts,
            fallback_used=attempts > 1,
        )

    # ── Avatar ───────────────────────────────────────────────────────────

    def avatar_attempts(self, job: Job, script: str) -> list[Attempt]:
        preset = get_voice_preset(job.brand_style, self.settings.did_plan_tier)
        webhook_url = self.settings.webhook_url
        primary = Attempt("primary", {
            "image_url": job.image_url,
            "script": script,
            "voice": preset["voice"],
            "style": preset["style"],
            "use_default_presenter": preset["use_default_presenter"],
            "expressions": DEFAULT_EXPRESSIONS,
            "webhook": webhook_url,
            "webhook_data": {"jobId": job.id, "videoType": VideoKind.AVATAR.value} if webhook_url else None,
        })
        fallback = Attempt("fallback", {
            "image_url": job.image_url,
            "script": script,
            "voice": DEFAULT_VOICE,
            "style": DEFAULT_STYLE,
            "use_default_presenter": True,
        })
        return [primary, fallback]

    def submit_avatar(self, job_id: str, script: Optional[str] = None) -> SubmitResult:
        kind = VideoKind.AVATAR
        job = self._load_submittable(job_id, kind)

        if script and script != job.avatar_script:
            self.store.update(job_id, {"avatar_script": script})
            self.store.log_step(job_id, "script_edited", {"length": len(script)})
        script = script or job.avatar_script
        if not script:
            raise ValueError(f"Job {job_id} has no avatar script")

        last_error: Optional[Exception] = None
        attempts = self.avatar_attempts(job, script)
        for n, attempt in enumerate(attempts, start=1):
            payload = build_talk_request(**attempt.params)
            try:
                talk = self._create_with_retry(
                    job_id, kind, attempt.label, lambda: self.did.create_talk(payload)
                )
            except ProviderRejectedError as e:
                last_error = e
                logger.warning(f"Job {job_id}: avatar {attempt.label} attempt failed: {e}")
                self.store.log_step(job_id, "avatar_attempt_failed", {"attempt": attempt.label, "error": str(e)[:300]})
                continue

            talk_id = talk["id"]
            logger.info(f"Job {job_id}: talk {talk_id} created ({attempt.label})")
            self.store.log_step(job_id, "talk_created", {"talkId": talk_id, "attempt": attempt.label})
            metrics.inc_counter("submit.avatar")

            if not self._record_pending(job, kind, talk_id):
                return self._skipped(job, kind, talk_id, n)
            return SubmitResult(
                job_id=job_id,
                kind=kind,
                ok=True,
                status="pending",
                external_id=talk_id,
                video_value=make_pending(talk_id),
                attempts=n,
                fallback_used=n > 1,
            )

        return self._record_failure(job, kind, last_error, len(attempts))

    # ── Cinematic ────────────────────────────────────────────────────────

    def cinematic_attempts(
        self, job: Job, prompt: str, ratio: Optional[str], duration: Optional[int]
    ) -> list[Attempt]:
        s = self.settings
        primary = Attempt("primary", {
            "image_url": job.image_url,
            "prompt": prompt,
            "model": s.runway_model,
            "ratio": map_ratio(ratio, s.runway_ratio),
            "duration": clamp_duration(duration if duration is not None else s.runway_duration, s.runway_duration),
        })
        fallback = Attempt("fallback", {
            "image_url": job.image_url,
            "prompt": prompt,
            "model": s.runway_model,
            "ratio": s.runway_ratio,
            "duration": s.runway_duration,
        })
        return [primary, fallback]

    def submit_cinematic(
        self,
        job_id: str,
        prompt: Optional[str] = None,
        ratio: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> SubmitResult:
        kind = VideoKind.CINEMATIC
        job = self._load_submittable(job_id, kind)
        prompt = prompt or job.cinematic_script
        if not prompt:
            raise ValueError(f"Job {job_id} has no cinematic prompt")
        if not job.image_url:
            raise ValueError(f"Job {job_id} has no image")

        last_error: Optional[Exception] = None
        attempts = self.cinematic_attempts(job, prompt, ratio, duration)
        task_id = None
        used = 0
        for n, attempt in enumerate(attempts, start=1):
            used = n
            params = attempt.params
            try:
                task = self._create_with_retry(
                    job_id, kind, attempt.label, lambda: self.runway.create_image_to_video(**params)
                )
                task_id = task["id"]
                break
            except ProviderRejectedError as e:
                last_error = e
                logger.warning(f"Job {job_id}: cinematic {attempt.label} attempt failed: {e}")
                self.store.log_step(job_id, "cinematic_attempt_failed", {"attempt": attempt.label, "error": str(e)[:300]})

        if task_id is None:
            return self._record_failure(job, kind, last_error, len(attempts))

        logger.info(f"Job {job_id}: Runway task {task_id} created")
        self.store.log_step(job_id, "task_created", {"taskId": task_id, "attempt": attempts[used - 1].label})
        metrics.inc_counter("submit.cinematic")

        if not self._record_pending(job, kind, task_id):
            return self._skipped(job, kind, task_id, used)

        return self._settle_cinematic(job_id, task_id, used)

    def _settle_cinematic(self, job_id: str, task_id: str, attempts: int) -> SubmitResult:
        """Long-poll the Runway task and write its outcome if it finishes in budget."""
        kind = VideoKind.CINEMATIC
        marker = make_pending(task_id)
        result = SubmitResult(
            job_id=job_id,
            kind=kind,
            ok=True,
            status="pending",
            external_id=task_id,
            video_value=marker,
            attempts=attempts,
            fallback_used=attempts > 1,
        )

        wait_kwargs = {"sleep": self.sleep} if self.sleep else {}
        try:
            task = self.runway.wait_for_task(
                task_id,
                interval=self.settings.runway_poll_interval,
                max_attempts=self.settings.runway_max_poll_attempts,
                **wait_kwargs,
            )
        except ProviderError as e:
            logger.warning(f"Job {job_id}: long-poll for {task_id} gave up: {e}")
            self.store.log_step(job_id, "long_poll_abandoned", {"taskId": task_id, "error": str(e)[:300]})
            return result

        status = task.get("status")
        url = task_output_url(task)

        if status == "SUCCEEDED" and url:
            if self.store.update_if(job_id, kind.field, marker, url):
                self.store.log_step(job_id, "cinematic_complete", {"taskId": task_id})
                metrics.inc_counter("submit.cinematic_complete")
                refresh_job_status(self.store, job_id)
            return result.model_copy(update={"status": "complete", "video_value": url})

        if status in TERMINAL_STATUSES:
            raw = task_failure_reason(task) if status != "SUCCEEDED" else "task succeeded without output"
            reason, user_message = classify_provider_error(raw)
            if self.store.update_if(
                job_id, kind.field, marker, make_failed(reason),
                extra={"cinematic_video_error": user_message},
            ):
                self.store.log_step(job_id, "cinematic_failed", {"taskId": task_id, "reason": reason, "error": raw})
                metrics.inc_counter("errors.cinematic_failed")
                refresh_job_status(self.store, job_id)
            return result.model_copy(update={
                "ok": False,
                "status": "failed",
                "video_value": make_failed(reason),
                "reason": reason,
                "error": user_message,
            })

        logger.info(f"Job {job_id}: task {task_id} still {status}, leaving pending")
        return result
