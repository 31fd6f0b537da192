"""
Video orchestration pipeline

  Submitter     create avatar (D-ID) / cinematic (Runway) videos, with fallback
  Reconciler    sweep pending videos to a terminal state
  Webhooks      apply provider completion callbacks
  Proxy         stream finished videos, refreshing expired links

Routers live in ``pipeline.routes`` and are mounted by ``promo_worker.main``.
"""

from .models import Job, JobStatus, VideoKind
from .states import describe_video, compute_job_status

__all__ = [
    "Job",
    "JobStatus",
    "VideoKind",
    "describe_video",
    "compute_job_status",
]
