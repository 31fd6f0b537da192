"""
Pydantic models and enums for the video orchestrator.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ────────────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"


class VideoKind(str, Enum):
    AVATAR = "avatar"
    CINEMATIC = "cinematic"

    @property
    def field(self) -> str:
        """The jobs column holding this video's state."""
        return f"{self.value}_video_url"

    @property
    def submitted_at_field(self) -> str:
        return f"{self.value}_submitted_at"


# Legacy payloads call the cinematic video "promo"
VIDEO_KIND_ALIASES = {
    "avatar": VideoKind.AVATAR,
    "cinematic": VideoKind.CINEMATIC,
    "promo": VideoKind.CINEMATIC,
}


# ── Job row ──────────────────────────────────────────────────────────────────

class Job(BaseModel):
    """One row of the ``jobs`` table, limited to the columns this worker touches."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: JobStatus = JobStatus.PENDING
    avatar_video_url: Optional[str] = None
    cinematic_video_url: Optional[str] = None
    cinematic_video_error: Optional[str] = None
    created_at: Optional[datetime] = None
    avatar_submitted_at: Optional[datetime] = None
    cinematic_submitted_at: Optional[datetime] = None

    # Inputs written by the upload / text-generation steps
    image_url: Optional[str] = None
    brand_style: Optional[str] = None
    avatar_script: Optional[str] = None
    cinematic_script: Optional[str] = None

    def video(self, kind: VideoKind) -> Optional[str]:
        return getattr(self, kind.field)

    def pending_since(self, kind: VideoKind) -> Optional[datetime]:
        """When the current marker was written, falling back to job creation."""
        return getattr(self, kind.submitted_at_field) or self.created_at


# ── API Request Models ───────────────────────────────────────────────────────

class AvatarSubmitRequest(BaseModel):
    """Submit (or resubmit after an edit) the avatar video."""
    script: Optional[str] = Field(None, description="Edited script; defaults to the job's avatar_script")


class CinematicSubmitRequest(BaseModel):
    prompt: Optional[str] = Field(None, description="Motion prompt; defaults to the job's cinematic_script")
    ratio: Optional[str] = Field(None, description="'16:9', '9:16', '1:1' or a Runway pixel ratio")
    duration: Optional[int] = Field(None, description="Seconds, 2-10")


# ── Results ──────────────────────────────────────────────────────────────────

class SubmitResult(BaseModel):
    job_id: str
    kind: VideoKind
    ok: bool
    status: str  # pending | complete | failed
    external_id: Optional[str] = None
    video_value: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    fallback_used: bool = False


class SweepItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(serialization_alias="jobId")
    status: str  # updated | processing | failed | timeout | stuck | retry_exhausted | skipped | error
    type: Optional[str] = None
    video_url: Optional[str] = Field(None, serialization_alias="videoUrl")
    error: Optional[str] = None
    attempts: int = 0


class SweepReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    checked: int = 0
    updated: int = 0
    processing: int = 0
    failed: int = 0
    errors: int = 0
    timed_out: int = Field(0, serialization_alias="timedOut")
    stuck: int = 0
    results: list[SweepItem] = Field(default_factory=list)

    @classmethod
    def from_items(cls, items: list[SweepItem], checked: Optional[int] = None) -> "SweepReport":
        def count(*statuses):
            return sum(1 for item in items if item.status in statuses)

        return cls(
            checked=len(items) if checked is None else checked,
            updated=count("updated"),
            processing=count("processing"),
            failed=count("failed"),
            errors=count("retry_exhausted", "error"),
            timed_out=count("timeout"),
            stuck=count("stuck"),
            results=items,
        )


# ── Views ────────────────────────────────────────────────────────────────────

class VideoView(BaseModel):
    """What the UI should show for one video field."""
    state: str  # not_requested | awaiting_script | processing | ready | failed | expired
    url: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class JobView(BaseModel):
    job_id: str
    status: JobStatus
    avatar: VideoView
    cinematic: VideoView
    terminal: bool = False


class WebhookEvent(BaseModel):
    """A provider callback normalised to one shape."""
    source: str  # d-id | runway | custom
    job_id: Optional[str] = None
    kind: Optional[VideoKind] = None
    external_id: Optional[str] = None
    provider_status: Optional[str] = None
    terminal: bool = False
    url: Optional[str] = None
    error: Optional[str] = None
